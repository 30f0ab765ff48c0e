"""
Error taxonomy shared by services and controllers.

Services return result dicts for expected failures; these exceptions are raised where a
caller must not continue (illegal transition, rejected credentials) or are converted into
result dicts at the service boundary.
"""
from typing import Optional


class PrintLinkError(Exception):
    """Base class for all domain errors."""


class ValidationError(PrintLinkError):
    """Local constraint or save failure, surfaced to the caller."""


class ExternalApiError(PrintLinkError):
    """Network or HTTP failure talking to a storefront platform or the production API."""

    CLIENT = "client"
    SERVER = "server"
    TRANSPORT = "transport"

    def __init__(
        self,
        message: str,
        kind: str = TRANSPORT,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.response_body = response_body

    @classmethod
    def from_status(cls, status_code: int, message: str, response_body: Optional[str] = None) -> "ExternalApiError":
        kind = cls.CLIENT if 400 <= status_code < 500 else cls.SERVER
        return cls(message, kind=kind, status_code=status_code, response_body=response_body)


class AuthenticationError(ExternalApiError):
    """Platform credentials rejected (401/403). Triggers store reauthentication flagging."""

    def __init__(self, message: str = "Authentication failed", status_code: Optional[int] = 401, response_body: Optional[str] = None):
        super().__init__(message, kind=ExternalApiError.CLIENT, status_code=status_code, response_body=response_body)


class DuplicateEventError(PrintLinkError):
    """An already-seen event id. Not a failure: callers treat it as an idempotent no-op."""

    def __init__(self, event_id: Optional[str] = None):
        super().__init__(f"Duplicate event: {event_id}")
        self.event_id = event_id


class StateTransitionError(PrintLinkError):
    """Illegal order state transition."""

    def __init__(self, event: str, state: str):
        super().__init__(f"Cannot {event} order in {state} state")
        self.event = event
        self.state = state
