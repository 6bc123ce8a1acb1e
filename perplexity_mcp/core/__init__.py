"""
Core modules for the Perplexity MCP server.

This package contains the request resilience pipeline: sanitization,
identifiers, request contexts, error classification and handling, rate
limiting and cost estimation.
"""
