# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Command Line Interface

Usage:
    deliberate serve              # Start API server
    deliberate ask "question"     # Run one orchestration
    deliberate check              # Show configuration
"""

import asyncio
from contextlib import aclosing

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

app = typer.Typer(name="deliberate", help="Deliberate - Dual-Stage Reasoning Orchestrator")
console = Console()


# ============================================================
# SERVER COMMANDS
# ============================================================


@app.command()
def serve(
    host: str = typer.Option(None, help="Host to bind to (default: settings)"),
    port: int = typer.Option(None, help="Port to bind to (default: settings)"),
    workers: int = typer.Option(None, help="Number of worker processes"),
    reload: bool = typer.Option(False, help="Enable auto-reload (development)"),
):
    """Start the API server."""
    import uvicorn

    from .core.settings import get_settings

    settings = get_settings()
    host = host or settings.host
    port = port or settings.port
    workers = workers or settings.workers

    console.print(f"[bold green]Starting Deliberate on {host}:{port}[/]")

    uvicorn.run(
        "deliberate.gateway.app:app",
        host=host,
        port=port,
        workers=workers if not reload else 1,
        reload=reload,
    )


# ============================================================
# ORCHESTRATION COMMANDS
# ============================================================


def _cost_table(cost: dict) -> Table:
    table = Table(title="Usage")
    table.add_column("Stage", style="cyan")
    table.add_column("Cost (USD)", justify="right")
    table.add_row("reasoning", cost.get("stage_a_cost") or "[dim]n/a[/]")
    table.add_row("synthesis", cost.get("stage_b_cost") or "[dim]n/a[/]")
    table.add_row("[bold]total[/]", f"[bold]{cost.get('total_cost')}[/]")
    return table


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="Question for the models"),
    system: str = typer.Option(None, help="System prompt"),
    stream: bool = typer.Option(False, help="Stream events as they arrive"),
    verbose: bool = typer.Option(False, help="Print raw upstream payloads"),
):
    """
    Run one reasoning + synthesis orchestration.

    Credentials come from REASONING_API_KEY and SYNTHESIS_API_KEY.

    Examples:
        deliberate ask "Why is the sky blue?"
        deliberate ask "Prove sqrt(2) is irrational" --stream
    """
    from deliberate_core import DeliberateError

    from .core.models import DeliveryMode, Message, OrchestrationRequest, Role
    from .core.multiplexer import OutgoingEventType
    from .core.orchestrator import DualStageOrchestrator
    from .core.settings import get_settings
    from .gateway.normalization import extract_credentials

    settings = get_settings()

    try:
        stage_a_credential, stage_b_credential = extract_credentials({}, settings)
    except DeliberateError as e:
        console.print(f"[red]{e.message}[/]")
        raise typer.Exit(1) from e

    messages = [Message(Role.USER, prompt)]
    if system:
        messages.insert(0, Message(Role.SYSTEM, system))

    request = OrchestrationRequest(
        messages=tuple(messages),
        stage_a_options=settings.reasoning.resolve_options(),
        stage_b_options=settings.synthesis.resolve_options(),
        stage_a_credential=stage_a_credential,
        stage_b_credential=stage_b_credential,
        delivery_mode=DeliveryMode.STREAMING if stream else DeliveryMode.BLOCKING,
        include_raw=verbose,
    )
    precision = settings.cost_precision

    async def _stream():
        async with DualStageOrchestrator.from_settings(settings) as orchestrator:
            async with aclosing(orchestrator.stream(request)) as events:
                async for event in events:
                    if event.type == OutgoingEventType.REASONING_DELTA:
                        console.print(event.content, style="dim", end="")
                    elif event.type == OutgoingEventType.CONTENT_DELTA:
                        console.print(event.content, end="")
                    elif event.type == OutgoingEventType.THINKING_COMPLETE:
                        console.rule("[bold]Answer[/]")
                    elif event.type == OutgoingEventType.ERROR:
                        console.print(f"\n[red]{event.error.kind}: {event.error.message}[/]")
                        raise typer.Exit(1)
                    elif event.type == OutgoingEventType.DONE:
                        console.print()
                        console.print(_cost_table(event.cost.to_dict(precision)))
                        if verbose and event.raw:
                            console.print_json(data=event.raw)

    async def _complete():
        async with DualStageOrchestrator.from_settings(settings) as orchestrator:
            try:
                result = await orchestrator.complete(request)
            except DeliberateError as e:
                console.print(f"[red]{e.kind}: {e.message}[/]")
                raise typer.Exit(1) from e

        if not result.thinking_block.is_empty:
            console.print(Panel(result.thinking_block.reasoning, title="Thinking", style="dim"))
        console.print(Panel(result.text, title="Answer"))
        console.print(_cost_table(result.usage.to_dict(precision)))
        if verbose:
            console.print_json(data=result.to_dict(include_raw=True, precision=precision)["raw"])

    asyncio.run(_stream() if stream else _complete())


# ============================================================
# UTILITY COMMANDS
# ============================================================


@app.command()
def version():
    """Show version information."""
    from . import __version__

    console.print(f"Deliberate v{__version__}")


@app.command()
def check():
    """Check configuration."""
    from .core.pricing import DEFAULT_PRICING_TABLE
    from .core.providers import ADAPTER_REGISTRY, PROVIDER_ALIASES
    from .core.settings import get_settings

    console.print("[bold]Checking configuration...[/]\n")

    settings = get_settings()

    checks = []

    for label, stage in (("Reasoning", settings.reasoning), ("Synthesis", settings.synthesis)):
        provider = PROVIDER_ALIASES.get(stage.provider, stage.provider)
        if provider in ADAPTER_REGISTRY:
            checks.append((f"{label} provider", "✓", f"{stage.provider} / {stage.model}"))
        else:
            checks.append((f"{label} provider", "✗", f"Unknown provider: {stage.provider}"))

        if stage.api_key:
            checks.append((f"{label} API key", "✓", "Key configured"))
        else:
            checks.append((f"{label} API key", "○", "Not configured (callers must send one)"))

        if DEFAULT_PRICING_TABLE.get(stage.model) is not None:
            checks.append((f"{label} pricing", "✓", "Model priced"))
        else:
            checks.append((f"{label} pricing", "⚠", "Unpriced model, provider default tier used"))

    checks.append(
        (
            "Stream buffer",
            "✓",
            f"{settings.streaming.buffer_size} events, "
            f"{settings.streaming.backpressure_timeout_seconds}s backpressure timeout",
        )
    )

    table = Table(title="Configuration Check")
    table.add_column("Component", style="cyan")
    table.add_column("Status")
    table.add_column("Details", style="dim")

    for name, status, details in checks:
        if status == "✓":
            status_style = "[green]✓[/]"
        elif status == "✗":
            status_style = "[red]✗[/]"
        elif status == "⚠":
            status_style = "[yellow]⚠[/]"
        else:
            status_style = "[dim]○[/]"

        table.add_row(name, status_style, details)

    console.print(table)


# ============================================================
# MAIN
# ============================================================


def main():
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
