"""chatrelay CLI: Typer + Rich terminal interface.

Commands: serve, models, ask, sessions.
"""

from __future__ import annotations

import asyncio
import logging

import httpx
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from chatrelay import __version__
from chatrelay.attachments import AttachmentLoader
from chatrelay.errors import RelayError
from chatrelay.keys import get_configured_keys, load_keys_env
from chatrelay.orchestrator import CompletionOrchestrator, preview_title
from chatrelay.providers.registry import load_gateway_settings, load_models
from chatrelay.schemas.chat import ChatMessagePayload, CompletionRequest, Role
from chatrelay.schemas.gateway import ModelChoice
from chatrelay.schemas.streaming import SpanKind

# Load API keys from ~/.chatrelay/keys.env and .env on startup
load_keys_env()

console = Console()

app = typer.Typer(
    name="chatrelay",
    help="Streaming chat gateway for Groq and OpenAI models.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── chatrelay serve ──────────────────────────────────────────────

@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind"),
    port: int = typer.Option(4000, "--port", "-p", help="Port to listen on"),
    log_level: str = typer.Option("info", "--log-level", help="Logging level"),
) -> None:
    """Start the HTTP gateway."""
    import uvicorn

    from chatrelay.server import create_app

    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )

    settings = load_gateway_settings()
    console.print(Panel(
        f"[bold]URL:[/bold] http://{host}:{port}\n"
        f"[bold]Database:[/bold] {settings.db_path}\n"
        f"[bold]Uploads:[/bold] {settings.upload_dir}\n"
        f"[bold]Default model:[/bold] {settings.default_model}",
        title=f"[bold blue]chatrelay {__version__}[/bold blue]",
        border_style="blue",
    ))

    uvicorn.run(create_app(settings), host=host, port=port, log_level=log_level.lower(), log_config=None)


# ── chatrelay models ─────────────────────────────────────────────

@app.command()
def models() -> None:
    """Show all registered models as a table."""
    registry = load_models()
    keys = get_configured_keys()
    default = load_gateway_settings().default_model

    table = Table(title="Registered Models", show_lines=True)
    table.add_column("Model", style="bold cyan")
    table.add_column("Display Name")
    table.add_column("Provider", style="dim")
    table.add_column("Attachments", justify="center")
    table.add_column("Key")

    for key, cfg in sorted(registry.items()):
        name = f"{key} (default)" if key == default.value else key
        key_status = (
            Text("set", style="green") if keys.get(cfg.api_key_env)
            else Text(f"{cfg.api_key_env} missing", style="red")
        )
        table.add_row(
            name,
            cfg.display_name,
            cfg.provider,
            "yes" if cfg.supports_attachments else "-",
            key_status,
        )

    console.print(table)
    console.print(f"\n[dim]{len(registry)} models registered[/dim]")


# ── chatrelay ask ────────────────────────────────────────────────

@app.command()
def ask(
    prompt: str = typer.Argument(..., help="Question to send"),
    model: str = typer.Option(None, "--model", "-m", help="Model identifier"),
    show_reasoning: bool = typer.Option(
        False, "--show-reasoning", help="Print the model's reasoning dimmed",
    ),
) -> None:
    """Stream one answer to the terminal. Nothing is stored."""
    settings = load_gateway_settings()
    choice = ModelChoice.from_client(model, settings.default_model)

    async def _ask() -> None:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(settings.request_timeout, connect=settings.connect_timeout),
        ) as client:
            orchestrator = CompletionOrchestrator(
                load_models(), client, AttachmentLoader(settings.upload_dir),
            )
            request = CompletionRequest(
                messages=(ChatMessagePayload(role=Role.USER, content=prompt),),
                model=choice,
            )
            stream = await orchestrator.open_stream(request)
            try:
                async for span in stream.spans():
                    if span.kind is SpanKind.REASONING:
                        if show_reasoning:
                            console.print(span.text, style="dim", end="")
                    else:
                        console.print(span.text, end="", markup=False, highlight=False)
            finally:
                await stream.aclose()
        console.print()

    try:
        asyncio.run(_ask())
    except RelayError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


# ── chatrelay sessions ───────────────────────────────────────────

@app.command()
def sessions(
    archived: bool = typer.Option(False, "--archived", help="Include archived sessions"),
) -> None:
    """List stored chat sessions."""
    from chatrelay.persistence.database import close_db, init_db
    from chatrelay.persistence.store import ChatStore

    settings = load_gateway_settings()

    async def _list():
        db = await init_db(settings.db_path)
        try:
            return await ChatStore(db).list_sessions(include_archived=archived)
        finally:
            await close_db(db)

    rows = asyncio.run(_list())

    if not rows:
        console.print("[dim]No sessions found.[/dim]")
        return

    table = Table(title=f"Sessions ({len(rows)} shown)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title", max_width=40)
    table.add_column("Messages", justify="right")
    table.add_column("Updated", style="dim")
    table.add_column("Status")

    for s in rows:
        status = Text("archived", style="yellow") if s.archived else Text("open", style="green")
        table.add_row(
            s.id[:8],
            preview_title(s.title, 40),
            str(len(s.messages)),
            s.updated_at.strftime("%Y-%m-%d %H:%M"),
            status,
        )

    console.print(table)


# ── Entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    app()
