# errors.py
"""
Error taxonomy for the attendance and dispute protocol.

Every error below is recoverable and user-facing except InvariantViolation,
which halts automatic processing of the affected slot until an admin repairs
it. The HTTP layer renders all of them as {"code", "detail", "retryable"}.
"""
import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BookingError(Exception):
    """Base class for protocol errors raised by the services."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "BOOKING_ERROR"
    retryable = False

    def __init__(self, detail: str = None, **context):
        self.detail = detail or self.__class__.__doc__.strip()
        self.context = context
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        body = {"code": self.code, "detail": self.detail, "retryable": self.retryable}
        if self.context:
            body["context"] = self.context
        return body


class OutsideTimeWindow(BookingError):
    """The action is only allowed between the slot's start and end time."""

    status_code = status.HTTP_409_CONFLICT
    code = "OUTSIDE_TIME_WINDOW"


class AlreadyResponded(BookingError):
    """This party has already responded for this slot."""

    status_code = status.HTTP_409_CONFLICT
    code = "ALREADY_RESPONDED"


class InvalidTransition(BookingError):
    """The action is not valid from the slot's current state."""

    status_code = status.HTTP_409_CONFLICT
    code = "INVALID_TRANSITION"


class NotAuthorized(BookingError):
    """The caller is neither a party to this slot nor an admin."""

    status_code = status.HTTP_403_FORBIDDEN
    code = "NOT_AUTHORIZED"


class EvidenceUploadFailed(BookingError):
    """The evidence file could not be stored. Nothing was changed."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "EVIDENCE_UPLOAD_FAILED"
    retryable = True


class NotFound(BookingError):
    """The requested record does not exist."""

    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class ConcurrentUpdate(BookingError):
    """The slot changed while the request was being processed. Retry it."""

    status_code = status.HTTP_409_CONFLICT
    code = "CONCURRENT_UPDATE"
    retryable = True


class InvariantViolation(BookingError):
    """The slot is in a state the protocol cannot reach and is held for manual repair."""

    status_code = status.HTTP_423_LOCKED
    code = "INVARIANT_VIOLATION"

    def __init__(self, detail: str = None, problems=None, **context):
        self.problems = list(problems or [])
        if problems:
            context["problems"] = self.problems
        super().__init__(detail, **context)


async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    if isinstance(exc, InvariantViolation):
        logger.critical("Invariant violation on %s %s: %s", request.method, request.url.path, exc.detail,
                        extra={"error_type": exc.code, "problems": exc.problems})
    else:
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc.detail,
                       extra={"error_type": exc.code})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_exception_handlers(app) -> None:
    app.add_exception_handler(BookingError, booking_error_handler)
