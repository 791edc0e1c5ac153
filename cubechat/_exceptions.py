"""Typed error hierarchy for the Cube chat pipeline."""


class CubeChatError(Exception):
    """Base exception for all cubechat errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        request_id: str | None = None,
        method: str | None = None,
        path: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.request_id = request_id
        self.method = method
        self.path = path


class DecodeError(CubeChatError):
    """One stream line could not be decoded. Logged and skipped, never raised."""

    def __init__(self, message: str, line: str = ""):
        super().__init__(message)
        self.line = line


class ConfigurationError(CubeChatError):
    """Upstream endpoint or credential configuration is missing."""

    def __init__(self, message: str, missing: list[str] | None = None):
        super().__init__(message)
        self.missing = missing or []


class UpstreamHttpError(CubeChatError):
    """Upstream returned a non-success status, no body, or the connection failed."""


class AuthenticationError(UpstreamHttpError):
    """401: invalid or missing credential."""


class PermissionDeniedError(UpstreamHttpError):
    """403: credential not allowed for this resource."""


class RateLimitError(UpstreamHttpError):
    """429: too many requests."""


class NotFoundError(CubeChatError):
    """404: conversation does not exist or belongs to another user."""


# Map HTTP status codes to exception classes.
STATUS_MAP: dict[int, type[CubeChatError]] = {
    401: AuthenticationError,
    403: PermissionDeniedError,
    404: NotFoundError,
    429: RateLimitError,
}
