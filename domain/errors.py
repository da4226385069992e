from typing import Optional


class TicketingError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TicketingError):
    """Malformed input row or request. Rejected, never retried."""
    status_code = 400


class ConflictError(TicketingError):
    """A uniqueness key already exists."""
    status_code = 409


class NotFoundError(TicketingError):
    status_code = 404


class EventMismatchError(TicketingError):
    """The ticket is real but belongs to a different event."""
    status_code = 400


class ForbiddenError(TicketingError):
    status_code = 403


class RateLimitExceeded(TicketingError):
    status_code = 429

    def __init__(self, message: str, retry_after: float):
        super().__init__(message)
        self.retry_after = retry_after


class DependencyError(TicketingError):
    """Artifact generation or dispatch failed for one recipient."""
    status_code = 502

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class FatalPipelineError(TicketingError):
    pass
