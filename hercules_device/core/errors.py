"""Error taxonomy shared by the capturer, the dispatch layer and the daemon."""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    UNSUPPORTED_OPERATION = "UNSUPPORTED_OPERATION"
    COMMAND_FAILED = "COMMAND_FAILED"
    INVALID_ARGS = "INVALID_ARGS"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"


class AppError(Exception):
    """
    An error with a stable machine-readable code.

    `details` carries diagnostic context (raw stderr/stdout, the `retryable` hint
    used by the retry predicate) and is sent back to clients as-is.
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = ErrorCode(code)
        self.message = message
        self.details = details

    @property
    def retryable(self) -> bool:
        return bool(self.details and self.details.get("retryable") is True)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return f"AppError({self.code.value}, {self.message!r})"


def as_app_error(err: BaseException) -> AppError:
    if isinstance(err, AppError):
        return err
    return AppError(ErrorCode.COMMAND_FAILED, str(err) or err.__class__.__name__, {"error_type": err.__class__.__name__})
