from __future__ import annotations


class GatewayError(Exception):
    """Base error carrying the HTTP status and the message safe to return to callers."""

    status_code = 500
    public_message = "internal server error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message

    def to_payload(self) -> dict[str, str]:
        return {"error": self.public_message}


class ConfigError(ValueError):
    pass


class AuthError(GatewayError):
    pass


class Unauthenticated(AuthError):
    status_code = 401

    def __init__(self, public_message: str = "authentication required") -> None:
        super().__init__(public_message)
        self.public_message = public_message


class Forbidden(AuthError):
    status_code = 403
    public_message = "insufficient permissions"


class RateLimited(GatewayError):
    status_code = 429
    public_message = "too many requests"

    def __init__(self, retry_after: float) -> None:
        super().__init__(f"rate limit exceeded, retry in {retry_after:.0f}s")
        self.retry_after = max(0.0, retry_after)


class ArtifactError(GatewayError):
    """Failure reading an artifact. ``path`` is for logs only, never for responses."""

    def __init__(self, path: str, detail: str) -> None:
        super().__init__(detail)
        self.path = path
        self.artifact = None

    def to_payload(self) -> dict[str, str]:
        name = self.artifact or "artifact"
        return {"error": f"failed to read {name}"}


class MalformedArtifact(ArtifactError):
    def __init__(self, path: str, line_number: int | None, detail: str) -> None:
        where = f"on line {line_number}" if line_number is not None else "document"
        super().__init__(path, f"malformed JSON {where}: {detail}")
        self.line_number = line_number


class IOFailure(ArtifactError):
    pass


class ArtifactTimeout(ArtifactError):
    status_code = 504
