"""
Service wiring.

Builds every shared component once at startup and hands them around explicitly.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .config.loader import ServerConfig
from .core.context import ContextService
from .core.error_handler import ErrorHandler
from .core.errors import McpError
from .core.identifiers import IdGenerator
from .core.pricing import CostTracker
from .core.rate_limiter import RateLimiter
from .core.sanitizer import Sanitizer
from .sdk.perplexity_client import PerplexityClient


@dataclass
class Services:
    """Shared components, constructed once per process."""
    config: ServerConfig
    sanitizer: Sanitizer
    id_generator: IdGenerator
    contexts: ContextService
    error_handler: ErrorHandler
    rate_limiter: RateLimiter
    cost_tracker: CostTracker
    client: PerplexityClient


def build_services(
    config: ServerConfig,
    api_key: str,
    client: Optional[PerplexityClient] = None,
    escalate: Optional[Callable[[McpError], None]] = None,
    log: Optional[logging.Logger] = None,
) -> Services:
    """Construct all components from configuration.

    Args:
        config: Validated server configuration
        api_key: Perplexity API key
        client: Pre-built API client (tests)
        escalate: Override for the critical-failure hook (tests)
        log: Logger used by the error handler

    Returns:
        Wired Services container
    """
    sanitizer = Sanitizer(sensitive_fields=config.sensitive_fields)
    id_generator = IdGenerator(
        prefixes=config.identifiers.prefixes,
        default_length=config.identifiers.length,
    )
    if client is None:
        client = PerplexityClient(
            api_key=api_key,
            base_url=config.api.base_url,
            timeout=config.api.timeout_seconds,
            default_model=config.api.default_model,
        )

    return Services(
        config=config,
        sanitizer=sanitizer,
        id_generator=id_generator,
        contexts=ContextService(id_generator),
        error_handler=ErrorHandler(sanitizer, log=log, escalate=escalate),
        rate_limiter=RateLimiter(
            max_requests=config.rate_limit.max_requests,
            window_seconds=config.rate_limit.window_seconds,
            timeout=config.rate_limit.timeout_seconds,
        ),
        cost_tracker=CostTracker(config.pricing),
        client=client,
    )
