from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    CONFIG_ERROR = "CONFIG_ERROR"
    CONTEXT_INVALID = "CONTEXT_INVALID"
    EDITOR_FAILED = "EDITOR_FAILED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    UPSTREAM_FAILED = "UPSTREAM_FAILED"


class ArticleGenerationError(Exception):
    """Pipeline failure with a stable kind code and a readable message."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


class RetryExhaustedError(ArticleGenerationError):
    """Raised by with_retry once every attempt has failed; the last error is __cause__."""

    def __init__(self, context: str, attempts: int, last_error: BaseException):
        label = context or "operation"
        super().__init__(
            ErrorKind.UPSTREAM_FAILED,
            f"{label} failed after {attempts} attempt(s): {last_error}",
        )
        self.context = context
        self.attempts = attempts
        self.last_error = last_error


class OperationCancelled(ArticleGenerationError):
    """The run's cancellation token was observed. Kind is TIMEOUT when the deadline tripped it."""

    def __init__(self, reason: Optional[str] = None):
        kind = ErrorKind.TIMEOUT if reason == "timeout" else ErrorKind.CANCELLED
        message = "Article generation timed out" if kind is ErrorKind.TIMEOUT else "Article generation was cancelled"
        super().__init__(kind, message)
        self.reason = reason
