"""Error taxonomy shared by the chat core, the REST surface and the socket.

Every domain failure is a ``ChatError`` subclass carrying a stable ``code``
(sent to clients) and the HTTP status used by the REST endpoints. Only
``AuthenticationError`` terminates a socket; everything else is reported
as an ``error`` frame and the connection stays open.
"""


class ChatError(Exception):
    """Base class for recoverable chat errors."""

    code = "chat_error"
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: str = "") -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_event(self) -> dict:
        """Socket frame describing this error."""
        return {"type": "error", "code": self.code, "message": self.message}

    def to_body(self) -> dict:
        """JSON body describing this error for REST responses."""
        return {"error": self.code, "message": self.message}


# =============================================================================
# Authentication (fatal to the connection attempt)
# =============================================================================


class AuthenticationError(ChatError):
    code = "authentication_failed"
    status_code = 401
    default_message = "Authentication failed - please login again"

    def to_event(self) -> dict:
        return {"type": "auth-error", "code": self.code, "message": self.message}


class MissingCredential(AuthenticationError):
    code = "missing_credential"
    default_message = "Authentication error: No token provided"


class ExpiredCredential(AuthenticationError):
    code = "expired_credential"
    default_message = "Authentication error: Token expired - please login again"


class InvalidCredential(AuthenticationError):
    code = "invalid_credential"
    default_message = "Authentication error: Invalid token - please login again"


class UnknownUser(AuthenticationError):
    code = "unknown_user"
    default_message = "Authentication error: User not found - please login again"


class AuthenticationTimeout(AuthenticationError):
    code = "authentication_timeout"
    default_message = "Authentication error: No credential received in time"


# =============================================================================
# Recoverable errors
# =============================================================================


class AccessDenied(ChatError):
    code = "access_denied"
    status_code = 403
    default_message = "Access denied to this course"


class ValidationError(ChatError):
    code = "validation_error"
    status_code = 400
    default_message = "Invalid request"


class NotFound(ChatError):
    code = "not_found"
    status_code = 404
    default_message = "Not found"


class EditWindowExpired(ChatError):
    """The edit window has elapsed; distinct from AccessDenied."""

    code = "edit_window_expired"
    status_code = 409
    default_message = "Message is too old to edit"
