from __future__ import annotations


class VidstreamError(Exception):
    """Base error carrying the HTTP status it maps to."""

    status_code = 500
    message = "Internal Server Error"

    def __init__(self, message: str | None = None, *, detail: str | None = None):
        super().__init__(message or self.message)
        self.detail = detail

    @property
    def public_message(self) -> str:
        return str(self)


class InvalidLocator(VidstreamError):
    status_code = 400
    message = "Locator does not match any known storage backend"


class InvalidParameter(VidstreamError):
    status_code = 400
    message = "Invalid request parameter"


class MissingParameter(InvalidParameter):
    message = "Missing required parameter"


class ObjectNotFound(VidstreamError):
    status_code = 404
    message = "Object not found"


class RangeNotSatisfiable(VidstreamError):
    status_code = 416
    message = "Requested range not satisfiable"

    def __init__(self, total_size: int, message: str | None = None):
        super().__init__(message)
        self.total_size = total_size


class UnsupportedMediaType(VidstreamError):
    status_code = 400
    message = "Unsupported media type"


class UploadTooLarge(VidstreamError):
    status_code = 400
    message = "File exceeds the maximum allowed size"


class BackendUnavailable(VidstreamError):
    status_code = 500
    message = "Storage backend unavailable"


class StreamAborted(VidstreamError):
    """Backend failed after response headers were committed."""


class ClientDisconnected(VidstreamError):
    """Peer went away while the relay was writing."""
