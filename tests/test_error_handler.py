"""
Unit tests for error classification and guarded execution.

Tests code resolution, single logging, critical escalation and cancellation.
"""

import asyncio
import logging
from unittest.mock import Mock

import pytest

from perplexity_mcp.core.context import RequestContext
from perplexity_mcp.core.error_handler import EXIT_CODE_FATAL, ErrorHandler
from perplexity_mcp.core.errors import ErrorCode, McpError, OperationResult, classify_exception
from perplexity_mcp.core.sanitizer import REDACTED, Sanitizer
from perplexity_mcp.core.token_counter import TokenUsage

HANDLER_LOGGER = "perplexity_mcp.core.error_handler"


def _error_records(caplog):
    return [r for r in caplog.records if r.name == HANDLER_LOGGER and r.levelno == logging.ERROR]


class TestClassifyException:
    """Test error code resolution."""

    def test_classified_error_keeps_code(self):
        """Verify an McpError's code wins over the default."""
        error = McpError(ErrorCode.NOT_FOUND, "missing")
        assert classify_exception(error, ErrorCode.INTERNAL_ERROR) == ErrorCode.NOT_FOUND

    def test_default_wins_over_patterns(self):
        """Verify the caller default is used for raw errors."""
        assert classify_exception(RuntimeError("not found"), ErrorCode.VALIDATION_ERROR) == ErrorCode.VALIDATION_ERROR

    def test_timeout_type(self):
        """Verify TimeoutError maps to TIMEOUT."""
        assert classify_exception(TimeoutError()) == ErrorCode.TIMEOUT

    @pytest.mark.parametrize("message,code", [
        ("Resource not found", ErrorCode.NOT_FOUND),
        ("401 Unauthorized", ErrorCode.UNAUTHORIZED),
        ("Too many requests", ErrorCode.RATE_LIMITED),
        ("request timed out", ErrorCode.TIMEOUT),
        ("permission denied", ErrorCode.FORBIDDEN),
        ("boom", ErrorCode.INTERNAL_ERROR),
    ])
    def test_message_patterns(self, message, code):
        """Verify text-based classification."""
        assert classify_exception(RuntimeError(message)) == code


class TestMcpError:
    """Test the classified error shape."""

    def test_to_dict(self):
        """Verify the caller-facing dict."""
        context = RequestContext(request_id="REQ_ABC123")
        error = McpError(ErrorCode.RATE_LIMITED, "slow down", context=context, details={"retry_after": 1.5})
        assert error.to_dict() == {
            "code": "RATE_LIMITED",
            "message": "slow down",
            "request_id": "REQ_ABC123",
            "details": {"retry_after": 1.5},
        }

    def test_operation_result(self):
        """Verify the tagged result type."""
        assert OperationResult.success(5).ok is True
        assert OperationResult.success(5).unwrap() == 5

        failure = OperationResult.failure(McpError(ErrorCode.TIMEOUT, "late"))
        assert failure.ok is False
        with pytest.raises(McpError):
            failure.unwrap()


class TestErrorHandler:
    """Test ErrorHandler guarded execution."""

    def setup_method(self):
        """Set up test environment."""
        self.escalate = Mock()
        self.handler = ErrorHandler(Sanitizer(), escalate=self.escalate)
        self.context = RequestContext(request_id="REQ_ABC123", operation="op", metadata={"tenant": "t1"})

    def test_success_returns_result_unchanged(self):
        """Verify sync and async callables pass their result through."""
        async def coro():
            return {"answer": 42}

        assert asyncio.run(self.handler.try_catch(lambda: "sync", operation="op")) == "sync"
        assert asyncio.run(self.handler.try_catch(coro, operation="op")) == {"answer": 42}

    def test_raw_failure_classified_with_default(self, caplog):
        """Verify raw exceptions get the caller default and are logged once."""
        def fail():
            raise RuntimeError("boom")

        with pytest.raises(McpError) as exc_info:
            asyncio.run(self.handler.try_catch(
                fail,
                operation="op",
                context=self.context,
                error_code=ErrorCode.EXTERNAL_SERVICE_ERROR,
            ))

        error = exc_info.value
        assert error.code == ErrorCode.EXTERNAL_SERVICE_ERROR
        assert error.context is self.context
        assert isinstance(error.cause, RuntimeError)
        assert "boom" in error.message
        assert len(_error_records(caplog)) == 1

    def test_raw_failure_without_default_is_internal(self):
        """Verify unclassified failures fall back to INTERNAL_ERROR."""
        def fail():
            raise RuntimeError("boom")

        with pytest.raises(McpError) as exc_info:
            asyncio.run(self.handler.try_catch(fail, operation="op"))
        assert exc_info.value.code == ErrorCode.INTERNAL_ERROR

    def test_logged_input_is_sanitized(self, caplog):
        """Verify raw input never reaches the log sink."""
        def fail():
            raise RuntimeError("boom")

        with pytest.raises(McpError):
            asyncio.run(self.handler.try_catch(
                fail,
                operation="login",
                context=self.context,
                input={"username": "u", "password": "hunter2"},
            ))

        record = _error_records(caplog)[0]
        assert record.context["input"] == {"username": "u", "password": REDACTED}
        assert record.context["request_id"] == "REQ_ABC123"
        assert "hunter2" not in str(record.context)

    def test_unhashable_redacted_input_still_classified(self, caplog):
        """Verify a set of dataclasses in the input is logged instead of breaking the boundary."""
        def fail():
            raise RuntimeError("boom")

        with pytest.raises(McpError) as exc_info:
            asyncio.run(self.handler.try_catch(
                fail,
                operation="op",
                context=self.context,
                input={"usage": {TokenUsage(input_tokens=1, output_tokens=2)}},
            ))

        assert exc_info.value.code == ErrorCode.INTERNAL_ERROR
        record = _error_records(caplog)[0]
        assert record.context["input"]["usage"][0]["output_tokens"] == 2

    def test_nested_failure_logged_once_with_innermost_code(self, caplog):
        """Verify nesting neither re-logs nor re-classifies."""
        def fail():
            raise ValueError("bad input")

        async def inner():
            return await self.handler.try_catch(
                fail, operation="inner", context=self.context, error_code=ErrorCode.VALIDATION_ERROR
            )

        async def outer():
            return await self.handler.try_catch(
                inner, operation="outer", context=self.context, error_code=ErrorCode.INTERNAL_ERROR
            )

        with pytest.raises(McpError) as exc_info:
            asyncio.run(outer())

        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR
        assert len(_error_records(caplog)) == 1

    def test_unlogged_mcp_error_is_logged_once(self, caplog):
        """Verify an McpError raised directly is logged by the first boundary."""
        def fail():
            raise McpError(ErrorCode.NOT_FOUND, "missing")

        with pytest.raises(McpError) as exc_info:
            asyncio.run(self.handler.try_catch(fail, operation="op", context=self.context))

        assert exc_info.value.code == ErrorCode.NOT_FOUND
        assert exc_info.value.context is self.context
        assert len(_error_records(caplog)) == 1

    def test_outer_context_augments_but_does_not_replace(self):
        """Verify outer boundaries only add missing context fields."""
        inner_context = RequestContext(request_id="REQ_INNER", metadata={"tenant": "inner"})
        error = McpError(ErrorCode.TIMEOUT, "late", context=inner_context)
        error._logged = True

        outer_context = RequestContext(request_id="REQ_OUTER", metadata={"tenant": "outer", "user": "u"})
        result = self.handler.handle_error(error, operation="outer", context=outer_context)

        assert result is error
        assert result.context.request_id == "REQ_INNER"
        assert result.context.metadata["tenant"] == "inner"
        assert result.context.metadata["user"] == "u"

    def test_critical_failure_escalates_after_logging(self, caplog):
        """Verify critical failures call the escalation hook."""
        def fail():
            raise RuntimeError("config corrupted")

        with pytest.raises(McpError):
            asyncio.run(self.handler.try_catch(fail, operation="boot", critical=True))

        assert len(_error_records(caplog)) == 1
        self.escalate.assert_called_once()
        assert self.escalate.call_args[0][0].code == ErrorCode.INTERNAL_ERROR

    def test_non_critical_failure_does_not_escalate(self):
        """Verify ordinary failures are returned to the caller."""
        def fail():
            raise RuntimeError("boom")

        with pytest.raises(McpError):
            asyncio.run(self.handler.try_catch(fail, operation="op"))
        self.escalate.assert_not_called()

    def test_default_escalation_exits(self):
        """Verify the default escalation terminates with the fatal exit code."""
        handler = ErrorHandler(Sanitizer())
        with pytest.raises(SystemExit) as exc_info:
            handler.handle_error(RuntimeError("fatal"), operation="boot", critical=True)
        assert exc_info.value.code == EXIT_CODE_FATAL

    def test_run_returns_tagged_result(self):
        """Verify run() never raises for ordinary failures."""
        def fail():
            raise RuntimeError("boom")

        ok = asyncio.run(self.handler.run(lambda: 1, operation="op"))
        failed = asyncio.run(self.handler.run(fail, operation="op", error_code=ErrorCode.TIMEOUT))

        assert ok.ok and ok.value == 1
        assert not failed.ok
        assert failed.error.code == ErrorCode.TIMEOUT

    def test_cancellation_is_not_classified(self, caplog):
        """Verify cancellation propagates untouched and is not logged."""
        async def cancelled():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(self.handler.try_catch(cancelled, operation="op"))
        assert _error_records(caplog) == []
