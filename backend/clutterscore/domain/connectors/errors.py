from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx


def is_retryable_status(status_code: int | None) -> bool:
    if status_code is None:
        return False
    return status_code >= 500 or status_code == 429


class ConnectorError(Exception):
    """A platform API call failed.

    `retryable` is true only for server-side failures and rate limiting, which is
    the signal job-level retries key off.
    """

    def __init__(
        self,
        code: str,
        message: str,
        *,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable
        self.status_code = status_code

    @classmethod
    def from_response(cls, platform: str, response: httpx.Response) -> "ConnectorError":
        status_code = response.status_code
        try:
            body = response.text[:300]
        except Exception:  # noqa: BLE001
            body = ""
        return cls(
            code=f"{platform.lower()}_http_{status_code}",
            message=f"{platform} API error ({status_code}): {body or response.reason_phrase}",
            retryable=is_retryable_status(status_code),
            status_code=status_code,
        )

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class TokenError(ConnectorError):
    def __init__(self, message: str, *, code: str = "token_error", status_code: int | None = None) -> None:
        super().__init__(code, message, retryable=False, status_code=status_code)


class OperationErrorKind(str, Enum):
    UNSUPPORTED = "unsupported"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass(frozen=True)
class OperationError:
    kind: OperationErrorKind
    message: str
    retryable: bool = False

    @classmethod
    def from_connector_error(cls, exc: ConnectorError) -> "OperationError":
        if exc.status_code == 404:
            kind = OperationErrorKind.NOT_FOUND
        elif exc.status_code in {401, 403}:
            kind = OperationErrorKind.PERMISSION_DENIED
        elif exc.status_code == 429:
            kind = OperationErrorKind.RATE_LIMITED
        else:
            kind = OperationErrorKind.FAILED
        return cls(kind=kind, message=exc.message, retryable=exc.retryable)


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one mutating connector call.

    `details` carries whatever pre-image the platform captured while mutating
    (original sharing, archive path, ...); `undo_type` overrides the default
    inverse for the action when the platform reversed it differently.
    """

    error: OperationError | None = None
    details: dict[str, Any] = field(default_factory=dict)
    undo_type: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def unsupported(self) -> bool:
        return self.error is not None and self.error.kind == OperationErrorKind.UNSUPPORTED

    @classmethod
    def success(cls, *, undo_type: str | None = None, **details: Any) -> "OperationResult":
        return cls(details=details, undo_type=undo_type)

    @classmethod
    def failure(
        cls, kind: OperationErrorKind, message: str, *, retryable: bool = False
    ) -> "OperationResult":
        return cls(error=OperationError(kind=kind, message=message, retryable=retryable))

    @classmethod
    def not_supported(cls, operation: str, platform: str) -> "OperationResult":
        return cls.failure(
            OperationErrorKind.UNSUPPORTED, f"{operation} is not supported for {platform}"
        )
