"""
MCP tools exposed by the server.

Each tool is a guarded operation built on the shared services.
"""

from .perplexity_search import PerplexitySearchTool, strip_thinking

__all__ = ["PerplexitySearchTool", "strip_thinking"]
