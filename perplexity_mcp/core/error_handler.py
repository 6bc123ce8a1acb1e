"""
Guarded execution and error reporting.

Wraps a unit of work, classifies any failure exactly once, logs it with
sanitized context and hands a uniform McpError back to the caller.

State per guarded operation:
    RUNNING -> SUCCESS
    RUNNING -> FAILED(classified)
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, NoReturn, Optional, Union

from .context import RequestContext
from .errors import ErrorCode, McpError, OperationResult, classify_exception
from .sanitizer import Sanitizer

# Exit code used when a critical failure terminates the process
EXIT_CODE_FATAL = 2

logger = logging.getLogger(__name__)

GuardedFn = Callable[[], Union[Any, Awaitable[Any]]]


def exit_process(error: McpError) -> NoReturn:
    """Default escalation for critical failures: terminate the process."""
    logger.critical("Critical failure (%s), terminating", error.code.value)
    raise SystemExit(EXIT_CODE_FATAL) from error


class ErrorHandler:
    """Classifies, logs and propagates failures of guarded operations."""

    def __init__(
        self,
        sanitizer: Sanitizer,
        log: Optional[logging.Logger] = None,
        escalate: Optional[Callable[[McpError], Any]] = None,
    ):
        self.sanitizer = sanitizer
        self.log = log or logger
        self.escalate = escalate or exit_process

    def handle_error(
        self,
        error: BaseException,
        *,
        operation: str,
        context: Optional[RequestContext] = None,
        input: Any = None,
        error_code: Optional[ErrorCode] = None,
        critical: bool = False,
    ) -> McpError:
        """Classify a caught failure and log it once.

        An McpError that was already logged keeps its code and context and
        is not logged again; missing context fields may be filled in from
        the outer context.

        Args:
            error: The caught exception
            operation: Name of the guarded operation
            context: Request context of the operation
            input: Operation input, redacted before logging
            error_code: Default code for unclassified failures
            critical: Escalate after logging

        Returns:
            The classified McpError
        """
        if isinstance(error, McpError):
            classified = error
            if classified.context is None:
                classified.context = context
            elif context is not None:
                # Augment, never replace
                extra = {k: v for k, v in context.metadata.items() if k not in classified.context.metadata}
                if extra:
                    classified.context = classified.context.derive(**extra)
        else:
            code = classify_exception(error, error_code)
            classified = McpError(
                code,
                f"Error in {operation}: {error}" if str(error) else f"Error in {operation}: {type(error).__name__}",
                context=context,
                cause=error,
            )

        if not classified._logged:
            self._log_failure(classified, operation, input, critical)
            classified._logged = True

        if critical:
            self.escalate(classified)
        return classified

    def _log_failure(self, error: McpError, operation: str, input: Any, critical: bool) -> None:
        record: Dict[str, Any] = {
            "operation": operation,
            "code": error.code.value,
            "critical": critical,
        }
        if error.context is not None:
            record.update(error.context.to_dict())
            record["operation"] = operation
        if input is not None:
            record["input"] = input
        if error.details:
            record["details"] = error.details
        if error.cause is not None:
            record["cause"] = f"{type(error.cause).__name__}: {error.cause}"

        self.log.error(
            "%s failed: %s",
            operation,
            error.message,
            extra={"context": self.sanitizer.sanitize_for_logging(record)},
        )

    async def try_catch(
        self,
        fn: GuardedFn,
        *,
        operation: str,
        context: Optional[RequestContext] = None,
        input: Any = None,
        error_code: Optional[ErrorCode] = None,
        critical: bool = False,
    ) -> Any:
        """Run fn and return its result, or raise a classified McpError.

        fn may be a plain callable or return an awaitable. Cancellation is
        not a failure and propagates untouched.

        Raises:
            McpError: The classified failure
        """
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            classified = self.handle_error(
                e,
                operation=operation,
                context=context,
                input=input,
                error_code=error_code,
                critical=critical,
            )
            if classified is e:
                raise
            raise classified from e

    async def run(
        self,
        fn: GuardedFn,
        *,
        operation: str,
        context: Optional[RequestContext] = None,
        input: Any = None,
        error_code: Optional[ErrorCode] = None,
        critical: bool = False,
    ) -> OperationResult:
        """Like try_catch, but returns a tagged OperationResult instead of raising."""
        try:
            value = await self.try_catch(
                fn,
                operation=operation,
                context=context,
                input=input,
                error_code=error_code,
                critical=critical,
            )
        except McpError as e:
            return OperationResult.failure(e)
        return OperationResult.success(value)
