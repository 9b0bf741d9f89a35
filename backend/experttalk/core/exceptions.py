"""
Domain errors raised by the consultation services.

HTTP translation lives in ``experttalk.main``; the services themselves never
raise ``HTTPException``.
"""
from typing import Optional
from uuid import UUID


class ExpertTalkError(Exception):
    """Base class for consultation errors."""
    status_code = 400
    detail = "Request could not be processed"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail


class SessionNotFound(ExpertTalkError):
    """
    The session does not exist or the caller is not one of its participants.

    Both cases share one error so callers cannot probe for session ids.
    """
    status_code = 404
    detail = "Session not found"


class CounterpartyUnavailable(ExpertTalkError):
    """Expert is missing, not an expert, or not currently available."""
    status_code = 400
    detail = "Expert not available"


class InvalidState(ExpertTalkError):
    """Operation not allowed in the session's current status."""
    status_code = 409
    detail = "Session is not active"


class PaymentInvalid(ExpertTalkError):
    status_code = 400
    detail = "Payment cannot be used for this session"


class SettlementConflict(ExpertTalkError):
    """Another settlement already moved the session out of Active."""

    def __init__(self, session_id: UUID):
        super().__init__(f"Session {session_id} was already settled")
        self.session_id = session_id
