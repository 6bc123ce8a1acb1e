"""
SDK for the Perplexity API.

Provides the async client used by the search tool.
"""

from .perplexity_client import PerplexityClient, PerplexityResponse

__all__ = ["PerplexityClient", "PerplexityResponse"]
