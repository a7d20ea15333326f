# idempotency.py
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import sqlalchemy
from databases import Database

from booking_attendance.errors import ConcurrentUpdate
from booking_attendance.models import idempotency_keys

logger = logging.getLogger(__name__)


class IdempotencyStore:
    """
    Remembers the response of a successful mutating request per
    (Idempotency-Key, user, operation) so a resent request gets the same answer
    instead of running again. Failed requests are not remembered.

    A key is reserved before the request runs. A second request arriving while
    the first is still running is told to retry; one arriving afterwards gets
    the stored response.
    """

    def __init__(self, db: Database):
        self.db = db

    def _match(self, key: str, user_id: int, operation: str):
        return (
            idempotency_keys.c.key == key,
            idempotency_keys.c.user_id == user_id,
            idempotency_keys.c.operation == operation,
        )

    async def lookup(self, key: str, user_id: int, operation: str) -> Optional[Any]:
        response = await self.db.fetch_val(
            sqlalchemy.select(idempotency_keys.c.response).where(*self._match(key, user_id, operation))
        )
        if response is None:
            return None
        logger.info("Replaying %s for idempotency key %s", operation, key,
                    extra={"operation": operation, "user_id": user_id})
        return json.loads(response)

    async def reserve(self, key: str, user_id: int, operation: str, now: datetime) -> Optional[str]:
        """Claim the key. Returns this request's token, or None when another request holds it."""
        token = uuid.uuid4().hex
        unclaimed = sqlalchemy.select(
            sqlalchemy.literal(key),
            sqlalchemy.literal(user_id),
            sqlalchemy.literal(operation),
            sqlalchemy.literal(token),
            sqlalchemy.literal(now, sqlalchemy.DateTime(timezone=True)),
        ).where(~sqlalchemy.exists().where(*self._match(key, user_id, operation)))
        await self.db.execute(
            idempotency_keys.insert().from_select(
                ["key", "user_id", "operation", "write_token", "created_at"], unclaimed
            )
        )
        holder = await self.db.fetch_val(
            sqlalchemy.select(idempotency_keys.c.write_token).where(*self._match(key, user_id, operation))
        )
        return token if holder == token else None

    async def remember(self, key: str, user_id: int, operation: str, token: str, response: Any) -> None:
        await self.db.execute(
            idempotency_keys.update()
            .where(*self._match(key, user_id, operation), idempotency_keys.c.write_token == token)
            .values(response=json.dumps(response))
        )

    async def release(self, key: str, user_id: int, operation: str, token: str) -> None:
        await self.db.execute(
            idempotency_keys.delete()
            .where(*self._match(key, user_id, operation), idempotency_keys.c.write_token == token)
        )

    async def run(self, key: str, user_id: int, operation: str,
                  action: Callable[[], Awaitable[Any]], now: datetime) -> Any:
        """Run `action` once for this key; `action` must return a JSON-serialisable value."""
        token = await self.reserve(key, user_id, operation, now)
        if token is None:
            stored = await self.lookup(key, user_id, operation)
            if stored is not None:
                return stored
            raise ConcurrentUpdate(f"A request with idempotency key {key} is still in progress.",
                                   operation=operation)
        try:
            response = await action()
        except Exception:
            await self.release(key, user_id, operation, token)
            raise
        await self.remember(key, user_id, operation, token, response)
        return response
