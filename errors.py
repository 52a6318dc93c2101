"""Error taxonomy shared by the registry clients, search and downloads."""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    INVALID_ARTIFACT = "INVALID_ARTIFACT"
    DATABASE_ERROR = "DATABASE_ERROR"


class RegistryError(Exception):
    """A failure attributable to one source (or one document)."""

    def __init__(self, kind: ErrorKind, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message
        self.source = source

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "type": self.kind.value, "message": self.message}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind.value}, {self.message!r}, source={self.source!r})"


class ValidationError(RegistryError):
    """Request-level input error. The only kind surfaced as a hard failure."""

    def __init__(self, message: str):
        super().__init__(ErrorKind.VALIDATION_ERROR, message)


def error_kind_for_status(status_code: int) -> ErrorKind:
    """Map an upstream HTTP status to an error kind."""
    if status_code in (401, 403):
        return ErrorKind.AUTH_ERROR
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    return ErrorKind.UPSTREAM_ERROR
