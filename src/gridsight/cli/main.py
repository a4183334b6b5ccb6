"""Command-line interface for GridSight.

Commands:
- analyze: classify a set of local files and/or URLs in one request
- config show: print the effective configuration
- config set-key: store the Gemini API key in the system keyring

Example:
    $ gridsight analyze a.jpg b.jpg c.jpg -q "Which photos show pets?" --type classify
    $ gridsight analyze https://example.com/x.png photo.png -q "Sort by scene" --json
"""

from __future__ import annotations

import asyncio
import base64
import json
import sys
from pathlib import Path
from typing import Any

import click
import keyring
import keyring.errors
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from gridsight.ai.client import GeminiVisionClient
from gridsight.ai.usage_tracker import UsageTracker
from gridsight.config import (
    KEYRING_SERVICE,
    KEYRING_USERNAME,
    AppConfig,
    APIKeyNotFoundError,
    get_api_key,
    load_config,
)
from gridsight.core.models import ENGINE_VERSION, AnalysisType, QualityLevel
from gridsight.core.orchestrator import AtlasOrchestrator
from gridsight.errors import GridSightError, ModelError, ValidationError
from gridsight.utils.logging import setup_logging

console = Console()


# =============================================================================
# UI HELPERS
# =============================================================================


def print_header(text: str) -> None:
    """Print a styled header."""
    console.print()
    console.print(Panel(text, style="bold blue", expand=False))
    console.print()


def print_success(text: str) -> None:
    console.print(f"[bold green]✓[/bold green] {text}")


def print_warning(text: str) -> None:
    console.print(f"[bold yellow]⚠[/bold yellow] {text}")


def print_error(text: str) -> None:
    console.print(f"[bold red]✗[/bold red] {text}")


def print_results_table(response: dict[str, Any]) -> None:
    """Print per-image results as a table."""
    table = Table(title="Results")
    table.add_column("Image", style="cyan")
    table.add_column("Position")
    table.add_column("Classification", style="green")
    table.add_column("Confidence", justify="right")

    for result in response.get("results", []):
        confidence = result.get("confidence")
        classification = result["classification"]
        if result.get("failed"):
            classification = f"[red]failed: {result.get('error', 'unknown error')}[/red]"
        table.add_row(
            result["imageId"],
            result.get("position", "-"),
            classification,
            f"{confidence:.0%}" if confidence is not None else "-",
        )

    console.print(table)


def print_optimization(response: dict[str, Any]) -> None:
    optimization = response.get("optimization", {})
    metadata = response.get("metadata", {})

    table = Table(title="Optimization")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Strategy", str(metadata.get("strategy", "-")))
    table.add_row("Detail level", str(metadata.get("detailLevel", "-")))
    table.add_row("Atlas used", str(optimization.get("atlasUsed", False)))
    table.add_row("Cache hit", str(optimization.get("cacheHit", False)))
    table.add_row("Tokens saved", f"{optimization.get('tokenSavings', 0):,}")
    table.add_row("Cost saved", f"${optimization.get('costSavings', 0.0):.4f}")
    table.add_row("Processing time", f"{metadata.get('processingTimeMs', 0):.0f}ms")
    console.print(table)

    if metadata.get("degraded"):
        print_warning(f"Degraded: {metadata.get('fallbackReason')}")


# =============================================================================
# INPUT HELPERS
# =============================================================================


def build_image_refs(sources: tuple[str, ...]) -> list[dict[str, Any]]:
    """Turn CLI arguments into wire-format image refs.

    URLs are passed through; anything else is read as a local file and
    sent inline. The image id is the argument as given.

    Raises:
        click.BadParameter: If a local file cannot be read.
    """
    refs: list[dict[str, Any]] = []
    for source in sources:
        if source.startswith(("http://", "https://")):
            refs.append({"id": source, "url": source})
            continue

        path = Path(source)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise click.BadParameter(f"Cannot read {source}: {e.strerror}") from e
        refs.append(
            {
                "id": source,
                "inlineData": base64.b64encode(data).decode("ascii"),
                "metadata": {"filename": path.name},
            }
        )
    return refs


async def run_request(orchestrator: AtlasOrchestrator, payload: dict[str, Any]) -> dict[str, Any]:
    await orchestrator.start()
    try:
        return await orchestrator.process_request(payload)
    finally:
        await orchestrator.aclose()


# =============================================================================
# MAIN CLI GROUP
# =============================================================================


@click.group()
@click.version_option(version=ENGINE_VERSION, prog_name="GridSight")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug mode")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Config file")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool, config_path: Path | None) -> None:
    """GridSight - classify many images with one vision call.

    Up to nine images are merged into a labelled 3x3 grid and sent to the
    model together; answers are mapped back to each image.
    """
    config = load_config(config_path)
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    else:
        level = "WARNING" if config.log_level == "INFO" else config.log_level
    setup_logging(level=level)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["debug"] = debug


# =============================================================================
# ANALYZE COMMAND
# =============================================================================


@cli.command()
@click.argument("images", nargs=-1, required=True)
@click.option("--query", "-q", required=True, help="Question to ask about the images")
@click.option(
    "--type",
    "analysis_type",
    type=click.Choice([t.value for t in AnalysisType]),
    default=AnalysisType.SORT.value,
    show_default=True,
    help="Kind of analysis",
)
@click.option(
    "--quality",
    type=click.Choice([q.value for q in QualityLevel]),
    default=QualityLevel.BALANCED.value,
    show_default=True,
    help="Cost/quality trade-off",
)
@click.option("--force-atlas", is_flag=True, help="Use an atlas even for few images")
@click.option("--metrics", is_flag=True, help="Include quality metrics")
@click.option("--prompt", "custom_prompt", help="Additional instructions for the model")
@click.option("--user-id", default="cli", show_default=True, help="User id sent with the request")
@click.option("--json", "output_json", is_flag=True, help="Output the raw response as JSON")
@click.pass_context
def analyze(
    ctx: click.Context,
    images: tuple[str, ...],
    query: str,
    analysis_type: str,
    quality: str,
    force_atlas: bool,
    metrics: bool,
    custom_prompt: str | None,
    user_id: str,
    output_json: bool,
) -> None:
    """Analyze IMAGES (file paths or http(s) URLs).

    Example:
        gridsight analyze a.jpg b.jpg c.jpg -q "Which ones are outdoors?"
    """
    config: AppConfig = ctx.obj["config"]

    payload = {
        "images": build_image_refs(images),
        "query": query,
        "analysisType": analysis_type,
        "userId": user_id,
        "options": {
            "forceAtlas": force_atlas,
            "qualityLevel": quality,
            "includeMetrics": metrics,
            "customPrompt": custom_prompt,
        },
    }

    usage = UsageTracker()
    orchestrator = AtlasOrchestrator.from_config(
        config, GeminiVisionClient(config.model), usage_tracker=usage
    )

    if not output_json:
        print_header(f"Analyzing {len(images)} images")

    try:
        response = asyncio.run(run_request(orchestrator, payload))
    except ValidationError as e:
        field = f" ({e.field})" if e.field else ""
        print_error(f"Invalid request{field}: {e.message}")
        sys.exit(1)
    except ModelError as e:
        print_error(f"Model call failed after {e.attempts} attempts: {e.message}")
        sys.exit(1)
    except GridSightError as e:
        print_error(e.message)
        sys.exit(1)

    if output_json:
        click.echo(json.dumps(response, indent=2))
        return

    print_results_table(response)
    console.print(f"\n[bold]Summary:[/bold] {response.get('summary', '')}\n")
    print_optimization(response)

    summary = usage.get_summary()
    print_success(
        f"{summary.total_requests} model calls, {summary.total_tokens:,} tokens, "
        f"est. ${summary.total_estimated_cost_usd:.4f}"
    )


# =============================================================================
# CONFIG COMMANDS
# =============================================================================


@cli.group()
def config() -> None:
    """Manage configuration."""


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show the effective configuration."""
    cfg: AppConfig = ctx.obj["config"]

    try:
        get_api_key()
        key_status = "[CONFIGURED]"
    except APIKeyNotFoundError:
        key_status = "[red]not set[/red]"

    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("API Key", key_status)
    table.add_row("Model", cfg.model.model_name)
    table.add_row("Max retries", str(cfg.model.max_retries))
    table.add_row("Atlas threshold", str(cfg.atlas.threshold))
    table.add_row("Atlas canvas", f"{cfg.atlas.canvas_size}px ({cfg.atlas.format})")
    table.add_row("Atlas max size", f"{cfg.atlas.max_file_size:,} bytes")
    cache_state = "on" if cfg.cache.enabled else "off"
    table.add_row("Cache", f"{cache_state}, ttl {cfg.cache.default_ttl_seconds}s")
    table.add_row("Max images", str(cfg.max_images_per_request))
    table.add_row("Log level", cfg.log_level)

    console.print(table)


@config.command("set-key")
@click.option("--key", prompt=True, hide_input=True, help="Gemini API key")
def config_set_key(key: str) -> None:
    """Store the Gemini API key in the system keyring."""
    try:
        keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key.strip())
    except keyring.errors.KeyringError as e:
        print_error(f"Could not store key: {type(e).__name__}")
        sys.exit(1)
    print_success("API key stored in system keyring")


def main() -> None:
    """Entry point for the console script."""
    cli()


if __name__ == "__main__":
    main()
