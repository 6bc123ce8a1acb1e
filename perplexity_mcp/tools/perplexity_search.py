"""
Guarded Perplexity search operation.

One invocation runs, strictly in order:
1. Create a request context
2. Sanitize and validate the input
3. Acquire a rate limit permit
4. Call the Perplexity API
5. Estimate the cost of the call

Any failure is classified once by the error handler and returned as a
failed OperationResult.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from ..core.context import RequestContext
from ..core.errors import ErrorCode, McpError, OperationResult
from ..sdk.perplexity_client import SEARCH_MODES, SEARCH_RECENCY_FILTERS
from ..services import Services

logger = logging.getLogger(__name__)

TOOL_NAME = "perplexity_search"
MAX_QUERY_LENGTH = 10000
MAX_DOMAIN_FILTERS = 10
MAX_OUTPUT_TOKENS = 8192
DEFAULT_SYSTEM_PROMPT = (
    "You are a search assistant. Answer the user's question accurately and "
    "concisely, using current web sources and citing them."
)

_THINK_BLOCK = re.compile(r"<think>.*?</think>\s*", re.DOTALL | re.IGNORECASE)
_DOMAIN = re.compile(r"^-?[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)+$")


def strip_thinking(content: str) -> str:
    """Remove <think>...</think> reasoning blocks from a model answer."""
    return _THINK_BLOCK.sub("", content).strip()


class PerplexitySearchTool:
    """Search-augmented question answering behind the resilience pipeline."""

    def __init__(self, services: Services):
        self.services = services

    async def search(
        self,
        query: str,
        *,
        model: Optional[str] = None,
        search_mode: Optional[str] = None,
        search_recency_filter: Optional[str] = None,
        search_domain_filter: Optional[List[str]] = None,
        return_related_questions: bool = False,
        max_tokens: Optional[int] = None,
        show_thinking: bool = False,
    ) -> OperationResult:
        """Answer a query with Perplexity.

        Args:
            query: The question to answer
            model: Perplexity model, defaults to the configured model
            search_mode: Search context size ("low", "medium", "high")
            search_recency_filter: "hour", "day", "week", "month" or "year"
            search_domain_filter: Domains to restrict to ("-domain" excludes)
            return_related_questions: Include follow-up questions
            max_tokens: Maximum answer length in tokens
            show_thinking: Keep <think> reasoning blocks in the answer

        Returns:
            OperationResult holding the response payload or the classified error
        """
        params: Dict[str, Any] = {
            "query": query,
            "model": model or self.services.config.api.default_model,
            "search_mode": search_mode,
            "search_recency_filter": search_recency_filter,
            "search_domain_filter": search_domain_filter,
            "return_related_questions": return_related_questions,
            "max_tokens": max_tokens,
            "show_thinking": show_thinking,
        }
        context = self.services.contexts.create_request_context(
            operation=TOOL_NAME,
            model=params["model"],
        )

        return await self.services.error_handler.run(
            lambda: self._execute(params, context),
            operation=TOOL_NAME,
            context=context,
            input=params,
        )

    def _validate(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Sanitize raw tool input into call arguments.

        Raises:
            McpError: VALIDATION_ERROR for any invalid field
        """
        sanitizer = self.services.sanitizer

        raw_query = params["query"]
        if not isinstance(raw_query, str):
            raise McpError(ErrorCode.VALIDATION_ERROR, "query must be a string")
        if len(raw_query) > MAX_QUERY_LENGTH:
            raise McpError(
                ErrorCode.VALIDATION_ERROR,
                f"query exceeds maximum length of {MAX_QUERY_LENGTH} characters",
            )
        query = sanitizer.sanitize_string(raw_query, "text").strip()
        if not query:
            raise McpError(ErrorCode.VALIDATION_ERROR, "query cannot be empty")

        model = sanitizer.sanitize_string(str(params["model"]), "attribute").strip()
        if not model:
            raise McpError(ErrorCode.VALIDATION_ERROR, "model cannot be empty")

        search_mode = params["search_mode"]
        if search_mode is not None:
            search_mode = str(search_mode).lower()
            if search_mode not in SEARCH_MODES:
                raise McpError(
                    ErrorCode.VALIDATION_ERROR,
                    f"search_mode must be one of: {list(SEARCH_MODES)}",
                )

        recency = params["search_recency_filter"]
        if recency is not None and recency not in SEARCH_RECENCY_FILTERS:
            raise McpError(
                ErrorCode.VALIDATION_ERROR,
                f"search_recency_filter must be one of: {list(SEARCH_RECENCY_FILTERS)}",
            )

        domains = None
        if params["search_domain_filter"]:
            raw_domains = params["search_domain_filter"]
            if isinstance(raw_domains, str) or len(raw_domains) > MAX_DOMAIN_FILTERS:
                raise McpError(
                    ErrorCode.VALIDATION_ERROR,
                    f"search_domain_filter must be a list of at most {MAX_DOMAIN_FILTERS} domains",
                )
            domains = []
            for raw in raw_domains:
                domain = str(raw).strip().lower()
                if not _DOMAIN.match(domain):
                    raise McpError(ErrorCode.VALIDATION_ERROR, f"Invalid domain filter: {raw!r}")
                domains.append(domain)

        max_tokens = None
        if params["max_tokens"] is not None:
            max_tokens = int(sanitizer.sanitize_number(params["max_tokens"], 1, MAX_OUTPUT_TOKENS))

        return {
            "messages": [
                {"role": "system", "content": DEFAULT_SYSTEM_PROMPT},
                {"role": "user", "content": query},
            ],
            "model": model,
            "search_mode": search_mode,
            "search_recency_filter": recency,
            "search_domain_filter": domains,
            "return_related_questions": bool(params["return_related_questions"]),
            "max_tokens": max_tokens,
        }

    async def _execute(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        services = self.services

        call_args = self._validate(params)

        await services.rate_limiter.acquire()

        call_context = context.derive(operation="perplexity_api_call")
        response = await services.error_handler.try_catch(
            lambda: services.client.chat(**call_args),
            operation="perplexity_api_call",
            context=call_context,
            input={"model": call_args["model"], "search_mode": call_args["search_mode"]},
            error_code=ErrorCode.EXTERNAL_SERVICE_ERROR,
        )

        estimated_cost = services.cost_tracker.calculate_perplexity_cost(
            response.model,
            response.usage,
            call_args["search_mode"],
            context,
        )

        content = response.content
        if not params["show_thinking"]:
            content = strip_thinking(content)

        logger.info(
            "%s completed",
            TOOL_NAME,
            extra={"context": services.sanitizer.sanitize_for_logging({
                **context.to_dict(),
                "model": response.model,
                "total_tokens": response.usage.total_tokens,
                "estimated_cost": estimated_cost,
            })},
        )

        return {
            "request_id": context.request_id,
            "model": response.model,
            "content": content,
            "citations": list(response.citations),
            "related_questions": list(response.related_questions),
            "usage": {
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
                "total_tokens": response.usage.total_tokens,
            },
            "estimated_cost": estimated_cost,
        }
