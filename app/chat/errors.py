"""
Error taxonomy for the messaging core.

Every failure that crosses the backend boundary is translated into one of
these once, so call sites branch on `kind` instead of inspecting PostgREST or
httpx exceptions.
"""


class MessagingError(Exception):
    kind = "server_error"
    retryable = True
    status_code = 500

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.code = code

    def __str__(self) -> str:
        if self.code:
            return f"{self.message} (code: {self.code})"
        return self.message


class AuthRequired(MessagingError):
    """No active session. Fatal to the operation, the caller must re-authenticate."""

    kind = "auth_required"
    retryable = False
    status_code = 401

    def __init__(self, message: str = "Authentication required", **kwargs):
        super().__init__(message, **kwargs)


class NetworkTimeout(MessagingError):
    kind = "timeout"
    status_code = 504

    def __init__(self, message: str = "Request timed out", **kwargs):
        super().__init__(message, **kwargs)


class ServerError(MessagingError):
    kind = "server_error"


class ProcedureMissing(MessagingError):
    """Server procedure not deployed. Triggers a fallback path, never shown to users."""

    kind = "procedure_missing"
    retryable = False
    status_code = 501


class Conflict(MessagingError):
    """Unique constraint hit while creating a conversation. Resolved by re-reading."""

    kind = "conflict"
    retryable = False
    status_code = 409


class LoadError(MessagingError):
    kind = "load_error"
    status_code = 502


class ConversationNotFound(LoadError):
    kind = "not_found"
    retryable = False
    status_code = 404

    def __init__(self, message: str = "Conversation not found", **kwargs):
        super().__init__(message, **kwargs)


class SendError(MessagingError):
    kind = "send_error"
    retryable = False
    status_code = 400


class RequestAborted(MessagingError):
    """Deliberate cancellation. Unwinds stale work, never reported as a failure."""

    kind = "aborted"
    retryable = False
    status_code = 499


MISSING_PROCEDURE_CODES = {"PGRST202", "42883"}
UNIQUE_VIOLATION_CODE = "23505"


def is_missing_procedure(code: str | None, message: str | None, procedure: str = "") -> bool:
    text = (message or "").lower()
    if code in MISSING_PROCEDURE_CODES:
        return True
    if "could not find the function" in text:
        return True
    return bool(procedure) and f"function public.{procedure.lower()}" in text


__all__ = [
    "MessagingError",
    "AuthRequired",
    "NetworkTimeout",
    "ServerError",
    "ProcedureMissing",
    "Conflict",
    "LoadError",
    "ConversationNotFound",
    "SendError",
    "RequestAborted",
    "is_missing_procedure",
]
