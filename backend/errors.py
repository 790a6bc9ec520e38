from datetime import datetime
from typing import Any


class PunctooError(Exception):
    """Base class for errors that reject a request."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PunctooError):
    status_code = 400


class NotFoundError(PunctooError):
    status_code = 404


class ConflictError(PunctooError):
    """
    A valid-looking scan that is refused on purpose (cooldown after OUT).

    Nothing was written; the caller may retry after `retry_after_seconds`.
    """

    status_code = 409

    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: int,
        status_before: str,
        server_time: datetime,
        reason: str = "COOLDOWN_AFTER_OUT",
    ):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds
        self.status_before = status_before
        self.server_time = server_time
        self.reason = reason


class ConcurrencyError(PunctooError):
    """The employee's event stream moved or stayed locked; retry from scratch."""

    status_code = 503


class PersistenceError(PunctooError):
    status_code = 500


class GateError(PunctooError):
    """Eligibility lookup refused the request; `body` is returned as-is."""

    def __init__(self, status_code: int, body: dict[str, Any]):
        super().__init__(str(body.get("reason") or body.get("error") or "not allowed"))
        self.status_code = status_code
        self.body = body
