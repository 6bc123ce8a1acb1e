"""
Token counting and usage tracking.

Normalizes the usage block of an API response for cost calculation.
"""

from dataclasses import dataclass
from typing import Any, Mapping


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts as reported by the API, without estimation.
    Citation/reasoning tokens and search queries are only reported by the
    deep research models.
    """
    input_tokens: int
    output_tokens: int
    citation_tokens: int = 0
    reasoning_tokens: int = 0
    search_queries: int = 0

    def __post_init__(self):
        """Validate token counts are non-negative."""
        for name in ("input_tokens", "output_tokens", "citation_tokens",
                     "reasoning_tokens", "search_queries"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TokenUsage":
        """Build usage from a response usage block.

        Accepts both input/output and OpenAI-style prompt/completion keys.
        """
        def _count(*keys: str) -> int:
            for key in keys:
                value = data.get(key)
                if value is not None:
                    return int(value)
            return 0

        return cls(
            input_tokens=_count("input_tokens", "prompt_tokens"),
            output_tokens=_count("output_tokens", "completion_tokens"),
            citation_tokens=_count("citation_tokens"),
            reasoning_tokens=_count("reasoning_tokens"),
            search_queries=_count("search_queries", "num_search_queries"),
        )
