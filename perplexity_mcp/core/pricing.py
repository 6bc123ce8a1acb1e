"""
Pricing calculations and cost estimation.

Converts a completed call's model and token usage into an estimated cost.
"""

import logging
from dataclasses import dataclass, field
from decimal import ROUND_UP, Decimal
from typing import Any, Dict, Mapping, Optional, Union

from .context import RequestContext
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

# Estimated costs are presented with this many decimal places, rounded UP
COST_DECIMAL_PLACES = 4

_MILLION = Decimal("1000000")
_THOUSAND = Decimal("1000")
_QUANTUM = Decimal(1).scaleb(-COST_DECIMAL_PLACES)


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model, in USD."""
    input_per_mtok: Decimal  # Cost per 1M input tokens
    output_per_mtok: Decimal  # Cost per 1M output tokens
    # Flat fee per 1K requests, keyed by search mode (search context size)
    request_fees: Dict[str, Decimal] = field(default_factory=dict)
    citation_per_mtok: Decimal = Decimal("0")
    reasoning_per_mtok: Decimal = Decimal("0")
    search_query_per_1k: Decimal = Decimal("0")

    def search_mode_surcharge(self, search_mode: Optional[str]) -> Decimal:
        """Flat per-request surcharge for a search mode, zero if unpriced."""
        if not search_mode:
            return Decimal("0")
        fee = self.request_fees.get(search_mode.lower())
        if fee is None:
            return Decimal("0")
        return fee / _THOUSAND


@dataclass(frozen=True)
class PricingTable:
    """Read-only pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> Optional[ModelPricing]:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model, or None if it is not priced
        """
        return self.prices.get(model)

    def __contains__(self, model: str) -> bool:
        return model in self.prices


def _fees(low: str, medium: str, high: str) -> Dict[str, Decimal]:
    return {"low": Decimal(low), "medium": Decimal(medium), "high": Decimal(high)}


# Perplexity Sonar family, USD
DEFAULT_PRICING_TABLE = PricingTable({
    "sonar": ModelPricing(
        input_per_mtok=Decimal("1"),
        output_per_mtok=Decimal("1"),
        request_fees=_fees("5", "8", "12"),
    ),
    "sonar-pro": ModelPricing(
        input_per_mtok=Decimal("3"),
        output_per_mtok=Decimal("15"),
        request_fees=_fees("6", "10", "14"),
    ),
    "sonar-reasoning": ModelPricing(
        input_per_mtok=Decimal("1"),
        output_per_mtok=Decimal("5"),
        request_fees=_fees("5", "8", "12"),
    ),
    "sonar-reasoning-pro": ModelPricing(
        input_per_mtok=Decimal("2"),
        output_per_mtok=Decimal("8"),
        request_fees=_fees("6", "10", "14"),
    ),
    "sonar-deep-research": ModelPricing(
        input_per_mtok=Decimal("2"),
        output_per_mtok=Decimal("8"),
        citation_per_mtok=Decimal("2"),
        reasoning_per_mtok=Decimal("3"),
        search_query_per_1k=Decimal("5"),
    ),
    "r1-1776": ModelPricing(
        input_per_mtok=Decimal("2"),
        output_per_mtok=Decimal("8"),
    ),
})


def calculate_cost(pricing: ModelPricing, usage: TokenUsage, search_mode: Optional[str] = None) -> float:
    """Calculate total cost for model usage with conservative rounding.

    Args:
        pricing: Pricing of the model used
        usage: Token usage data
        search_mode: Search mode whose flat fee applies, if any

    Returns:
        Total cost rounded UP to COST_DECIMAL_PLACES
    """
    # Token costs: tokens / 1M * price per 1M
    total = (Decimal(usage.input_tokens) / _MILLION) * pricing.input_per_mtok
    total += (Decimal(usage.output_tokens) / _MILLION) * pricing.output_per_mtok
    total += (Decimal(usage.citation_tokens) / _MILLION) * pricing.citation_per_mtok
    total += (Decimal(usage.reasoning_tokens) / _MILLION) * pricing.reasoning_per_mtok

    # Search queries are billed per 1K
    total += (Decimal(usage.search_queries) / _THOUSAND) * pricing.search_query_per_1k

    total += pricing.search_mode_surcharge(search_mode)

    return float(total.quantize(_QUANTUM, rounding=ROUND_UP))


class CostTracker:
    """Best-effort cost estimation for completed API calls."""

    def __init__(self, pricing_table: PricingTable = DEFAULT_PRICING_TABLE,
                 log: Optional[logging.Logger] = None):
        self.pricing_table = pricing_table
        self.log = log or logger

    def calculate_perplexity_cost(
        self,
        model: str,
        usage: Union[TokenUsage, Mapping[str, Any]],
        search_mode: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Optional[float]:
        """Estimate the cost of a completed call.

        Never raises: estimation must not fail a successful API call.

        Args:
            model: Model identifier reported by the API
            usage: TokenUsage or a usage mapping from the response
            search_mode: Search mode of the request, for the flat fee
            context: Request context, used for log correlation

        Returns:
            Cost in USD rounded UP to COST_DECIMAL_PLACES, or None if the
            model is not priced or the usage could not be read
        """
        request_id = context.request_id if context is not None else None

        pricing = self.pricing_table.get_pricing(model)
        if pricing is None:
            self.log.warning(
                "No pricing for model %s, skipping cost estimate",
                model,
                extra={"context": {"request_id": request_id, "model": model}},
            )
            return None

        try:
            token_usage = usage if isinstance(usage, TokenUsage) else TokenUsage.from_mapping(usage)
            cost = calculate_cost(pricing, token_usage, search_mode)
        except (TypeError, ValueError, ArithmeticError, AttributeError) as e:
            self.log.warning(
                "Could not estimate cost for model %s: %s",
                model,
                e,
                extra={"context": {"request_id": request_id, "model": model}},
            )
            return None

        self.log.debug(
            "Estimated cost for %s: $%.4f",
            model,
            cost,
            extra={"context": {
                "request_id": request_id,
                "model": model,
                "input_tokens": token_usage.input_tokens,
                "output_tokens": token_usage.output_tokens,
                "search_mode": search_mode,
            }},
        )
        return cost
