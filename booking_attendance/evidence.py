# evidence.py
"""
Evidence references.

Uploading is the job of an external store; the protocol only keeps the
reference it returns. An asset is owned by the user who uploaded it and, once
attached to a slot as one party's proof, is never attached anywhere else.
"""
import logging
import mimetypes
import os
import uuid
from datetime import datetime
from typing import Dict, Optional

import sqlalchemy
from databases import Database
from fastapi.concurrency import run_in_threadpool

from booking_attendance.config import EVIDENCE_BASE_URL, EVIDENCE_DIR, MAX_EVIDENCE_BYTES
from booking_attendance.data_models import EvidenceAsset, Party
from booking_attendance.errors import EvidenceUploadFailed, InvalidTransition, NotAuthorized, NotFound
from booking_attendance.models import evidence_assets

logger = logging.getLogger(__name__)


class EvidenceStore:
    """Interface of the external file store."""

    async def upload(self, filename: str, content: bytes, content_type: Optional[str] = None) -> Dict:
        """Store the file and return {view_url, download_url, size_bytes, mime_type}."""
        raise NotImplementedError


class LocalEvidenceStore(EvidenceStore):
    """Writes uploads under a directory; good enough for development and tests."""

    def __init__(self, directory: str = EVIDENCE_DIR, base_url: str = EVIDENCE_BASE_URL,
                 max_bytes: int = MAX_EVIDENCE_BYTES):
        self.directory = directory
        self.base_url = base_url.rstrip("/")
        self.max_bytes = max_bytes

    async def upload(self, filename: str, content: bytes, content_type: Optional[str] = None) -> Dict:
        if not content:
            raise EvidenceUploadFailed("The evidence file is empty.")
        if len(content) > self.max_bytes:
            raise EvidenceUploadFailed(f"The evidence file exceeds {self.max_bytes} bytes.")

        extension = os.path.splitext(filename or "")[1]
        stored_name = f"{uuid.uuid4().hex}{extension}"
        try:
            await run_in_threadpool(self._write, stored_name, content)
        except OSError as e:
            logger.error("Evidence upload failed for %s: %s", filename, e)
            raise EvidenceUploadFailed(f"Could not store {filename}; try again.") from e

        mime_type = content_type or mimetypes.guess_type(filename or "")[0] or "application/octet-stream"
        return {
            "view_url": f"{self.base_url}/{stored_name}",
            "download_url": f"{self.base_url}/{stored_name}?download=1",
            "size_bytes": len(content),
            "mime_type": mime_type,
        }

    def _write(self, stored_name: str, content: bytes) -> None:
        os.makedirs(self.directory, exist_ok=True)
        with open(os.path.join(self.directory, stored_name), "wb") as fh:
            fh.write(content)


class EvidenceRegistry:
    """Keeps the references returned by the store and guards their attachment."""

    def __init__(self, db: Database, store: Optional[EvidenceStore] = None):
        self.db = db
        self.store = store or LocalEvidenceStore()

    async def upload(self, owner_id: int, filename: str, content: bytes,
                     content_type: Optional[str], now: datetime) -> EvidenceAsset:
        # Nothing is written until the store has accepted the file.
        uploaded = await self.store.upload(filename, content, content_type)
        return await self.register(owner_id, uploaded, now)

    async def register(self, owner_id: int, uploaded: Dict, now: datetime) -> EvidenceAsset:
        ref = uuid.uuid4().hex
        await self.db.execute(evidence_assets.insert().values(
            id=ref,
            owner_id=owner_id,
            view_url=uploaded["view_url"],
            download_url=uploaded["download_url"],
            size_bytes=uploaded["size_bytes"],
            mime_type=uploaded["mime_type"],
            created_at=now,
        ))
        logger.info("Registered evidence %s for user %s", ref, owner_id, extra={"evidence_ref": ref})
        return await self.get(ref)

    async def get(self, ref: str) -> EvidenceAsset:
        row = await self.db.fetch_one(evidence_assets.select().where(evidence_assets.c.id == ref))
        if row is None:
            raise NotFound(f"Evidence {ref} not found.", evidence_ref=ref)
        return EvidenceAsset.from_row(row)

    async def require_attachable(self, ref: Optional[str], owner_id: int) -> EvidenceAsset:
        """Validate before any state changes: the caller's own, still unattached asset."""
        if not ref:
            raise InvalidTransition("Evidence is required for this action.")
        asset = await self.get(ref)
        if asset.owner_id != owner_id:
            raise NotAuthorized("Evidence can only be submitted by the user who uploaded it.", evidence_ref=ref)
        if asset.slot_id is not None:
            raise InvalidTransition("This evidence is already attached to a slot.", evidence_ref=ref)
        return asset

    async def attach(self, ref: str, slot_id: int, party: Party, now: datetime) -> None:
        """Attach inside the caller's transaction; raises if someone else attached it first."""
        await self.db.execute(
            evidence_assets.update()
            .where(evidence_assets.c.id == ref, evidence_assets.c.slot_id.is_(None))
            .values(slot_id=slot_id, party=party.value, attached_at=now)
        )
        attached_to = await self.db.fetch_one(
            sqlalchemy.select(evidence_assets.c.slot_id, evidence_assets.c.party).where(evidence_assets.c.id == ref)
        )
        if attached_to is None or attached_to["slot_id"] != slot_id or attached_to["party"] != party.value:
            raise InvalidTransition("This evidence is already attached to a slot.", evidence_ref=ref)
