"""
Error kinds for the session layer.

StorageError and CredentialParseError are recovered inside the token manager
(treated as "credential absent"). Everything that reaches calling code is an
ApiError: one shape with a status-code-like field and a message.
"""
from typing import Any


class StorageError(Exception):
    """Credential store read/write failed."""


class CredentialParseError(ValueError):
    """Token is not self-describing or carries no usable claims."""


class ApiError(Exception):
    """Normalized API failure. status_code 0 means no HTTP response was received."""

    def __init__(self, status_code: int, message: str, reason: str | None = None, data: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.reason = reason
        self.data = data

    @classmethod
    def from_response_body(cls, status_code: int, body: Any) -> "ApiError":
        """Build from an error response body: {message, reason, data} dict or plain text."""
        if isinstance(body, dict) and "message" in body:
            return cls(
                status_code,
                body.get("message") or "An error occurred",
                reason=body.get("reason"),
                data=body.get("data"),
            )
        message = body if isinstance(body, str) and body else "An error occurred"
        return cls(status_code, message)

    def to_dict(self) -> dict:
        return {
            "status_code": self.status_code,
            "message": self.message,
            "reason": self.reason,
            "data": self.data,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status_code={self.status_code!r}, message={self.message!r})"


class NetworkError(ApiError):
    """Connectivity failure. Never triggers the session-expired cascade."""

    def __init__(self, message: str = "Network error", status_code: int = 0):
        super().__init__(status_code, message)


class RequestTimeoutError(NetworkError):
    def __init__(self, message: str = "Request timeout"):
        super().__init__(message, status_code=408)


class AuthorizationError(ApiError):
    """401 from the server, or a synthetic 401 while the session is being torn down."""

    def __init__(self, message: str = "Unauthorized", reason: str | None = None, data: Any = None):
        super().__init__(401, message, reason=reason, data=data)


class RenewalError(ApiError):
    """The renewal call failed; credential state has already been cleared."""

    def __init__(self, message: str = "Refresh token failed", status_code: int = 0):
        super().__init__(status_code, message)
