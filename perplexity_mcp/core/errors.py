"""
Error taxonomy and classified errors.

Every failure that crosses a component boundary is represented as an McpError.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .context import RequestContext


class ErrorCode(str, Enum):
    """Closed set of failure kinds reported to callers."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class McpError(Exception):
    """Classified error carrying a code, a message and the request context."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        context: Optional[RequestContext] = None,
        cause: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.context = context
        self.cause = cause
        self.details = dict(details or {})
        # Set by the error handler once the failure has been logged
        self._logged = False

    def to_dict(self) -> Dict[str, Any]:
        """Caller-facing representation, never includes a traceback."""
        data: Dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
        }
        if self.context is not None:
            data["request_id"] = self.context.request_id
        if self.details:
            data["details"] = dict(self.details)
        return data

    def __repr__(self) -> str:
        return f"McpError(code={self.code.value}, message={self.message!r})"


# Ordered (code, needles) table matched against lower-cased exception text
_MESSAGE_PATTERNS: List[Tuple[ErrorCode, List[str]]] = [
    (ErrorCode.UNAUTHORIZED, ["unauthorized", "unauthenticated", "invalid api key", "authentication"]),
    (ErrorCode.FORBIDDEN, ["forbidden", "permission denied"]),
    (ErrorCode.RATE_LIMITED, ["rate limit", "too many requests"]),
    (ErrorCode.TIMEOUT, ["timed out", "timeout"]),
    (ErrorCode.NOT_FOUND, ["not found", "no such"]),
]


def _contains_any(haystack: str, needles: List[str]) -> bool:
    return any(n in haystack for n in needles)


def classify_exception(
    exc: BaseException,
    default: Optional[ErrorCode] = None,
) -> ErrorCode:
    """Resolve the error code for a caught exception.

    Precedence:
    1. An McpError keeps its own code
    2. The caller-supplied default
    3. Exception type (TimeoutError)
    4. Text patterns in the exception message
    5. INTERNAL_ERROR

    Args:
        exc: The caught exception
        default: Code chosen by the guarded operation, if any

    Returns:
        The resolved ErrorCode (never None)
    """
    if isinstance(exc, McpError):
        return exc.code
    if default is not None:
        return default
    if isinstance(exc, TimeoutError):
        return ErrorCode.TIMEOUT

    text = str(exc).lower()
    for code, needles in _MESSAGE_PATTERNS:
        if _contains_any(text, needles):
            return code

    return ErrorCode.INTERNAL_ERROR


@dataclass(frozen=True)
class OperationResult:
    """Tagged result of a guarded operation: either a value or a classified error."""
    value: Any = None
    error: Optional[McpError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        """Return the value, or raise the classified error."""
        if self.error is not None:
            raise self.error
        return self.value

    @classmethod
    def success(cls, value: Any) -> "OperationResult":
        return cls(value=value)

    @classmethod
    def failure(cls, error: McpError) -> "OperationResult":
        return cls(error=error)
