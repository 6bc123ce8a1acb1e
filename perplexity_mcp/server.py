"""
MCP server.

Registers the Perplexity tools with FastMCP. The server talks MCP over
stdio, so nothing here may print to stdout.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from .core.errors import OperationResult
from .services import Services
from .tools.perplexity_search import TOOL_NAME, PerplexitySearchTool

logger = logging.getLogger(__name__)

SERVER_NAME = "perplexity-mcp-server"


def tool_response(result: OperationResult) -> Dict[str, Any]:
    """Convert a guarded operation result into a tool response.

    Raises:
        ToolError: Carrying the classified error as JSON, never a traceback
    """
    if not result.ok:
        raise ToolError(json.dumps(result.error.to_dict()))
    return result.value


def create_server(services: Services) -> FastMCP:
    """Build the FastMCP server with all tools registered."""
    mcp = FastMCP(SERVER_NAME)
    search_tool = PerplexitySearchTool(services)

    @mcp.tool(name=TOOL_NAME)
    async def perplexity_search(
        query: str,
        model: Optional[str] = None,
        search_mode: Optional[str] = None,
        search_recency_filter: Optional[str] = None,
        search_domain_filter: Optional[List[str]] = None,
        return_related_questions: bool = False,
        max_tokens: Optional[int] = None,
        show_thinking: bool = False,
    ) -> Dict[str, Any]:
        """Answer a question using Perplexity's search-augmented models.

        Use this for questions that need current information from the web.
        The answer comes with the source URLs it was based on.

        Args:
            query: The question to answer.
            model: Perplexity model ("sonar", "sonar-pro", "sonar-reasoning",
                "sonar-reasoning-pro", "sonar-deep-research"). Defaults to
                the server's configured model.
            search_mode: Amount of search context: "low", "medium" or "high".
            search_recency_filter: Only use sources from the last "hour",
                "day", "week", "month" or "year".
            search_domain_filter: Up to 10 domains to search; prefix a
                domain with "-" to exclude it.
            return_related_questions: Also return suggested follow-up questions.
            max_tokens: Maximum answer length in tokens.
            show_thinking: Keep the model's <think> reasoning in the answer
                (reasoning models only).

        Returns:
            A dict with request_id, model, content, citations,
            related_questions, usage and estimated_cost (USD, may be null).
        """
        result = await search_tool.search(
            query,
            model=model,
            search_mode=search_mode,
            search_recency_filter=search_recency_filter,
            search_domain_filter=search_domain_filter,
            return_related_questions=return_related_questions,
            max_tokens=max_tokens,
            show_thinking=show_thinking,
        )
        return tool_response(result)

    logger.info("Registered tool %s on %s", TOOL_NAME, SERVER_NAME)
    return mcp
