"""
Unit tests for the guarded Perplexity search operation.

The API client is mocked; every other component is real.
"""

import asyncio
import logging
from unittest.mock import AsyncMock, Mock

from perplexity_mcp.config.loader import RateLimitConfig, ServerConfig
from perplexity_mcp.core.errors import ErrorCode, McpError
from perplexity_mcp.core.token_counter import TokenUsage
from perplexity_mcp.sdk.perplexity_client import PerplexityResponse
from perplexity_mcp.services import build_services
from perplexity_mcp.tools.perplexity_search import (
    DEFAULT_SYSTEM_PROMPT,
    MAX_OUTPUT_TOKENS,
    PerplexitySearchTool,
    strip_thinking,
)

HANDLER_LOGGER = "perplexity_mcp.core.error_handler"


def _response(content="Paris is the capital of France.", model="sonar"):
    return PerplexityResponse(
        id="chat_1",
        model=model,
        content=content,
        usage=TokenUsage(input_tokens=1000, output_tokens=500),
        citations=["https://example.com/france"],
        related_questions=[],
    )


def _error_records(caplog):
    return [r for r in caplog.records if r.name == HANDLER_LOGGER and r.levelno == logging.ERROR]


class TestStripThinking:
    """Test reasoning block removal."""

    def test_removes_think_blocks(self):
        """Verify every <think> block is dropped."""
        content = "<think>step one\nstep two</think>\nAnswer <THINK>more</THINK>done"
        assert strip_thinking(content) == "Answer done"

    def test_plain_content_unchanged(self):
        """Verify content without reasoning is only trimmed."""
        assert strip_thinking("  Answer  ") == "Answer"


class TestPerplexitySearchTool:
    """Test the search pipeline end to end."""

    def setup_method(self):
        """Set up test environment."""
        self.client = Mock()
        self.client.chat = AsyncMock(return_value=_response())
        self.escalate = Mock()
        self.services = build_services(
            ServerConfig(), "pplx-test", client=self.client, escalate=self.escalate
        )
        self.tool = PerplexitySearchTool(self.services)

    def _search(self, query="What is the capital of France?", **kwargs):
        return asyncio.run(self.tool.search(query, **kwargs))

    def test_success_payload(self):
        """Verify a successful search returns the answer with cost."""
        result = self._search(search_mode="low")

        assert result.ok
        payload = result.value
        assert self.services.id_generator.is_valid(payload["request_id"], "request")
        assert payload["model"] == "sonar"
        assert payload["content"] == "Paris is the capital of France."
        assert payload["citations"] == ["https://example.com/france"]
        assert payload["usage"] == {"input_tokens": 1000, "output_tokens": 500, "total_tokens": 1500}
        # $0.0015 tokens + $0.005 low search fee
        assert payload["estimated_cost"] == 0.0065

    def test_client_receives_sanitized_arguments(self):
        """Verify markup is stripped from the query and options are passed through."""
        self._search(
            "<b>What</b> is new?",
            model="sonar-pro",
            search_mode="HIGH",
            search_recency_filter="week",
            search_domain_filter=["Example.com", "-spam.org"],
            return_related_questions=True,
        )

        self.client.chat.assert_awaited_once_with(
            messages=[
                {"role": "system", "content": DEFAULT_SYSTEM_PROMPT},
                {"role": "user", "content": "What is new?"},
            ],
            model="sonar-pro",
            search_mode="high",
            search_recency_filter="week",
            search_domain_filter=["example.com", "-spam.org"],
            return_related_questions=True,
            max_tokens=None,
        )

    def test_max_tokens_clamped(self):
        """Verify oversized max_tokens is clamped to the output limit."""
        self._search(max_tokens=100000)
        assert self.client.chat.call_args.kwargs["max_tokens"] == MAX_OUTPUT_TOKENS

    def test_max_tokens_beyond_float_range_clamped(self):
        """Verify an absurdly large max_tokens is clamped rather than failing."""
        result = self._search(max_tokens=10 ** 400)

        assert result.ok
        assert self.client.chat.call_args.kwargs["max_tokens"] == MAX_OUTPUT_TOKENS

    def test_thinking_stripped_by_default(self):
        """Verify reasoning is removed unless requested."""
        self.client.chat.return_value = _response("<think>hmm</think>\nAnswer", model="sonar-reasoning")

        assert self._search().value["content"] == "Answer"
        assert "<think>hmm</think>" in self._search(show_thinking=True).value["content"]

    def test_pipeline_order(self):
        """Verify permit, API call and cost estimate happen in that order."""
        calls = []
        limiter = self.services.rate_limiter
        real_acquire = limiter.acquire
        tracker = self.services.cost_tracker
        real_cost = tracker.calculate_perplexity_cost

        async def acquire():
            calls.append("acquire")
            await real_acquire()

        async def chat(**kwargs):
            calls.append("call")
            return _response()

        def cost(*args):
            calls.append("cost")
            return real_cost(*args)

        limiter.acquire = acquire
        self.client.chat.side_effect = chat
        tracker.calculate_perplexity_cost = cost

        assert self._search().ok
        assert calls == ["acquire", "call", "cost"]

    def test_validation_failure_skips_permit_and_call(self, caplog):
        """Verify invalid input never reaches the limiter or the API."""
        result = self._search("   ")

        assert not result.ok
        assert result.error.code == ErrorCode.VALIDATION_ERROR
        assert result.error.context.request_id.startswith("REQ_")
        self.client.chat.assert_not_awaited()
        assert self.services.rate_limiter.get_status()["remaining"] == 50
        assert len(_error_records(caplog)) == 1

    def test_invalid_options_rejected(self):
        """Verify unsupported option values are validation errors."""
        for kwargs in (
            {"search_mode": "extreme"},
            {"search_recency_filter": "decade"},
            {"search_domain_filter": ["not a domain"]},
            {"search_domain_filter": [f"d{i}.com" for i in range(11)]},
            {"max_tokens": "lots"},
        ):
            result = self._search(**kwargs)
            assert result.error.code == ErrorCode.VALIDATION_ERROR, kwargs
        self.client.chat.assert_not_awaited()

    def test_classified_client_error_keeps_code(self, caplog):
        """Verify a classified API failure reaches the caller unchanged."""
        self.client.chat.side_effect = McpError(ErrorCode.UNAUTHORIZED, "Perplexity API request failed: 401")

        result = self._search()

        assert result.error.code == ErrorCode.UNAUTHORIZED
        assert len(_error_records(caplog)) == 1
        self.escalate.assert_not_called()

    def test_raw_client_failure_is_external_service_error(self, caplog):
        """Verify an unexpected client exception is classified and logged once."""
        self.client.chat.side_effect = RuntimeError("connection reset")

        result = self._search()

        assert result.error.code == ErrorCode.EXTERNAL_SERVICE_ERROR
        assert isinstance(result.error.cause, RuntimeError)
        assert len(_error_records(caplog)) == 1

    def test_unknown_model_has_no_cost(self):
        """Verify missing pricing does not fail the search."""
        self.client.chat.return_value = _response(model="sonar-future")

        result = self._search(model="sonar-future")

        assert result.ok
        assert result.value["estimated_cost"] is None

    def test_rate_limit_exhaustion(self):
        """Verify a full window fails with RATE_LIMITED after the wait timeout."""
        config = ServerConfig(rate_limit=RateLimitConfig(max_requests=1, window_seconds=60.0, timeout_seconds=0.05))
        services = build_services(config, "pplx-test", client=self.client, escalate=self.escalate)
        tool = PerplexitySearchTool(services)

        async def scenario():
            first = await tool.search("first question")
            second = await tool.search("second question")
            return first, second

        first, second = asyncio.run(scenario())

        assert first.ok
        assert second.error.code == ErrorCode.RATE_LIMITED
        self.client.chat.assert_awaited_once()
