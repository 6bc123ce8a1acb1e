"""
CLI interface for the Perplexity MCP server.

Starts the server and provides configuration and cost inspection commands.
"""

import os
import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from perplexity_mcp.config.loader import ENV_LOG_LEVEL, ServerConfig, get_api_key, load_server_config
from perplexity_mcp.core.error_handler import ErrorHandler
from perplexity_mcp.core.errors import ErrorCode
from perplexity_mcp.core.logger import configure_logging
from perplexity_mcp.core.pricing import COST_DECIMAL_PLACES, CostTracker
from perplexity_mcp.core.sanitizer import Sanitizer
from perplexity_mcp.core.token_counter import TokenUsage
from perplexity_mcp.server import create_server
from perplexity_mcp.services import build_services

app = typer.Typer()
console = Console()
# stdout belongs to the MCP transport while serving
err_console = Console(stderr=True)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Perplexity MCP server CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Perplexity MCP Server - Use --help to see available commands")


def _load_config_or_exit(config_path: Optional[str]) -> ServerConfig:
    try:
        return load_server_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def serve(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    )
):
    """Run the MCP server over stdio."""
    configure_logging(os.getenv(ENV_LOG_LEVEL) or "INFO")

    # Unusable configuration means the server cannot make progress at all
    bootstrap = ErrorHandler(Sanitizer())
    try:
        config = load_server_config(config_path)
        api_key = get_api_key()
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        bootstrap.handle_error(
            e,
            operation="load_configuration",
            input={"config_path": config_path},
            error_code=ErrorCode.CONFIGURATION_ERROR,
            critical=True,
        )
        return

    configure_logging(config.logging.level, config.logging.file)
    services = build_services(config, api_key)
    server = create_server(services)
    err_console.print("[green]✓[/] Perplexity MCP server starting on stdio")
    server.run()


@app.command("check-config")
def check_config(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    )
):
    """Validate the configuration and show the effective settings."""
    config = _load_config_or_exit(config_path)

    table = Table(title="Effective configuration")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("api.base_url", config.api.base_url)
    table.add_row("api.default_model", config.api.default_model)
    table.add_row("api.timeout_seconds", str(config.api.timeout_seconds))
    table.add_row("rate_limit.max_requests", str(config.rate_limit.max_requests))
    table.add_row("rate_limit.window_seconds", str(config.rate_limit.window_seconds))
    table.add_row("rate_limit.timeout_seconds", str(config.rate_limit.timeout_seconds))
    table.add_row("pricing.models", ", ".join(sorted(config.pricing.prices)))
    table.add_row("sanitizer.sensitive_fields", ", ".join(config.sensitive_fields))
    table.add_row("logging.level", config.logging.level)
    console.print(table)
    console.print("[green]✓[/] Configuration is valid")
    sys.exit(EXIT_CODE_PASS)


@app.command("estimate-cost")
def estimate_cost(
    model: str = typer.Argument(..., help="Perplexity model identifier"),
    input_tokens: int = typer.Option(0, "--input-tokens", "-i", min=0, help="Input (prompt) tokens"),
    output_tokens: int = typer.Option(0, "--output-tokens", "-o", min=0, help="Output (completion) tokens"),
    search_mode: Optional[str] = typer.Option(
        None,
        "--search-mode",
        "-s",
        help="Search context size (low, medium, high)"
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    )
):
    """Estimate the cost of a single call from its token counts."""
    config = _load_config_or_exit(config_path)
    tracker = CostTracker(config.pricing)

    usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
    cost = tracker.calculate_perplexity_cost(model, usage, search_mode)
    if cost is None:
        console.print(f"[red]No pricing available for model:[/] {model}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Perplexity Cost Estimate")
    table.add_column("Model")
    table.add_column("Input tokens", justify="right")
    table.add_column("Output tokens", justify="right")
    table.add_column("Search mode")
    table.add_column("Estimated cost", justify="right")
    table.add_row(
        model,
        f"{input_tokens:,}",
        f"{output_tokens:,}",
        search_mode or "-",
        _format_currency(cost),
    )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency with the estimator's precision."""
    return f"${amount:,.{COST_DECIMAL_PLACES}f}"


if __name__ == "__main__":
    app()
