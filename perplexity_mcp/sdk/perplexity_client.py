"""
Perplexity API client.

Async wrapper over the OpenAI SDK pointed at Perplexity's chat completions
endpoint. SDK failures are translated into classified errors.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import openai
from openai import AsyncOpenAI

from ..config.loader import DEFAULT_BASE_URL, DEFAULT_MODEL
from ..core.errors import ErrorCode, McpError
from ..core.token_counter import TokenUsage

logger = logging.getLogger(__name__)

SEARCH_RECENCY_FILTERS = ("hour", "day", "week", "month", "year")
SEARCH_MODES = ("low", "medium", "high")


@dataclass(frozen=True)
class PerplexityResponse:
    """Normalized chat completion returned by the API."""
    id: str
    model: str
    content: str
    usage: TokenUsage
    citations: List[str] = field(default_factory=list)
    related_questions: List[str] = field(default_factory=list)


def _translate_error(error: Exception) -> McpError:
    """Map an OpenAI SDK exception onto the error taxonomy."""
    # APITimeoutError subclasses APIConnectionError, so it is checked first
    if isinstance(error, openai.APITimeoutError):
        code = ErrorCode.TIMEOUT
    elif isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        code = ErrorCode.UNAUTHORIZED
    elif isinstance(error, openai.RateLimitError):
        code = ErrorCode.RATE_LIMITED
    elif isinstance(error, openai.NotFoundError):
        code = ErrorCode.NOT_FOUND
    elif isinstance(error, (openai.BadRequestError, openai.UnprocessableEntityError)):
        code = ErrorCode.VALIDATION_ERROR
    else:
        code = ErrorCode.EXTERNAL_SERVICE_ERROR

    details: Dict[str, Any] = {}
    status_code = getattr(error, "status_code", None)
    if status_code is not None:
        details["status_code"] = status_code
    return McpError(code, f"Perplexity API request failed: {error}", cause=error, details=details)


def _usage_mapping(usage: Any) -> Mapping[str, Any]:
    if usage is None:
        return {}
    if isinstance(usage, Mapping):
        return usage
    return usage.model_dump()


class PerplexityClient:
    """Async Perplexity chat client.

    The client does no throttling or logging of failures; callers run it
    inside a guarded operation behind the rate limiter.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 60.0,
        default_model: str = DEFAULT_MODEL,
    ):
        """Initialize the client.

        Args:
            api_key: Perplexity API key (required)
            base_url: API base URL
            timeout: Per-request timeout in seconds
            default_model: Model used when a call does not name one

        Raises:
            ValueError: If api_key is missing/empty
        """
        if not api_key or not api_key.strip():
            raise ValueError("api_key is required and cannot be empty")

        self.base_url = base_url
        self.timeout = timeout
        self.default_model = default_model
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        search_mode: Optional[str] = None,
        search_recency_filter: Optional[str] = None,
        search_domain_filter: Optional[List[str]] = None,
        return_related_questions: bool = False,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> PerplexityResponse:
        """Create a search-augmented chat completion.

        Args:
            messages: Chat messages (required)
            model: Perplexity model, defaults to default_model
            search_mode: Search context size ("low", "medium", "high")
            search_recency_filter: Restrict sources by age
            search_domain_filter: Restrict or exclude ("-example.com") domains
            return_related_questions: Ask for follow-up questions
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature

        Returns:
            Normalized PerplexityResponse

        Raises:
            ValueError: If messages is empty
            McpError: Classified API failure
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        extra_body: Dict[str, Any] = {}
        if search_mode:
            extra_body["web_search_options"] = {"search_context_size": search_mode}
        if search_recency_filter:
            extra_body["search_recency_filter"] = search_recency_filter
        if search_domain_filter:
            extra_body["search_domain_filter"] = list(search_domain_filter)
        if return_related_questions:
            extra_body["return_related_questions"] = True

        params: Dict[str, Any] = {
            "model": model or self.default_model,
            "messages": messages,
        }
        if max_tokens is not None:
            params["max_tokens"] = max_tokens
        if temperature is not None:
            params["temperature"] = temperature
        if extra_body:
            params["extra_body"] = extra_body

        logger.debug("Calling Perplexity chat completions with model %s", params["model"])
        try:
            response = await self.client.chat.completions.create(**params)
        except openai.OpenAIError as e:
            raise _translate_error(e) from e

        if not response.choices:
            raise McpError(ErrorCode.EXTERNAL_SERVICE_ERROR, "Perplexity response contained no choices")
        if response.usage is None:
            raise McpError(ErrorCode.EXTERNAL_SERVICE_ERROR, "Perplexity response missing usage information")

        return PerplexityResponse(
            id=response.id,
            model=response.model or params["model"],
            content=response.choices[0].message.content or "",
            usage=TokenUsage.from_mapping(_usage_mapping(response.usage)),
            citations=list(getattr(response, "citations", None) or []),
            related_questions=list(getattr(response, "related_questions", None) or []),
        )

    async def close(self) -> None:
        await self.client.close()
