"""
Essay Feedback CLI Application.

Provides a command-line interface for running feeds against essays
stored in a JSON export, previewing prompt expansion and checking
feed configuration.
"""

import logging
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from essayfeed.config import ConfigurationError, get_settings
from essayfeed.dispatch import OperationCancelled, get_provider_profile
from essayfeed.dispatch.providers import known_providers
from essayfeed.feedback import FeedbackOrchestrator, SegmentExtractor
from essayfeed.feeds import (
    FeedNotFoundError,
    FeedParseError,
    FeedParser,
    FeedRepository,
    FeedValidationError,
    FeedValidator,
)
from essayfeed.models import ExpansionContext, FeedResult, ProcessOptions
from essayfeed.sink import MessageSink
from essayfeed.storage import InMemoryCredentialVault, InMemoryEssayStore, StoreError
from essayfeed.templating import ContentResolver, TemplateEngine

app = typer.Typer(
    name="essayfeed",
    help="Run configurable LLM feedback feeds against essays",
    add_completion=False,
)

console = Console()


class ConsoleSink(MessageSink):
    """Prints orchestrator events as they arrive."""

    def __init__(self, console: Console):
        self._console = console

    def emit(self, event_type: str, payload: dict[str, Any], is_error: bool = False) -> None:
        if is_error:
            self._console.print(
                f"\n[red]{payload.get('title', 'Error')}:[/red] {payload.get('message', '')}"
            )
        elif event_type == "feed_start":
            self._console.print(
                Panel(
                    f"[bold]{payload['feed_title']}[/bold]\n"
                    f"Criteria: {payload['feedback_criteria']}",
                    title=f"Feed {payload['feed_id']}",
                )
            )
        elif event_type == "batch_processing":
            self._console.print(f"[dim]{payload['message']}[/dim]")
        elif event_type == "parallel_progress":
            self._console.print(
                f"[cyan]Prompt #{payload['index']} done[/cyan] "
                f"({payload['processed']}/{payload['total']}, {payload['progress']}%)"
            )
        elif event_type == "parallel_complete":
            self._console.print(
                f"[dim]{payload['successful']} succeeded, {payload['failed']} failed[/dim]"
            )
        elif event_type == "feed_complete":
            self._console.print("\n[green]✓ Feed complete[/green]")
        elif "index" not in payload and "content" in payload:
            # streamed delta or reused content
            self._console.print(payload["content"], end="", markup=False, highlight=False)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug logging"),
    ] = False,
) -> None:
    """Essay feedback orchestrator."""
    _configure_logging("DEBUG" if verbose else get_settings().log_level)


@app.command()
def run(
    feeds_file: Annotated[Path, typer.Argument(help="JSON file of feed records")],
    store_file: Annotated[Path, typer.Argument(help="JSON export of essays and feedback")],
    feed_id: Annotated[int, typer.Argument(help="Feed to run")],
    essay_uuid: Annotated[str, typer.Argument(help="UUID of the essay to process")],
    language: Annotated[
        Optional[str],
        typer.Option("--language", "-l", help="Prompt language (en or vi)"),
    ] = None,
    segment_order: Annotated[
        Optional[int],
        typer.Option("--segment-order", help="Pin segment-scoped feeds to one segment"),
    ] = None,
    refetch: Annotated[
        Optional[str],
        typer.Option("--refetch", help="'all' or a step type to regenerate"),
    ] = None,
    reuse: Annotated[
        bool,
        typer.Option("--reuse", help="Reuse stored output instead of calling the provider"),
    ] = False,
    save: Annotated[
        bool,
        typer.Option("--save", help="Write the updated store back to STORE_FILE"),
    ] = False,
) -> None:
    """
    Run a feed against an essay.

    Streamed output is printed as it arrives; pooled prompts report
    progress per variant.
    """
    try:
        settings = get_settings()
        repository = FeedRepository.from_json(feeds_file, FeedParser(settings), FeedValidator())
        store = InMemoryEssayStore.from_json(store_file)
        vault = InMemoryCredentialVault.from_settings(settings)

        options = ProcessOptions(
            language=language,
            segment_order=segment_order,
            refetch=refetch,
            reuse_existing=reuse,
        )
        orchestrator = FeedbackOrchestrator(store, vault, settings)
        result = orchestrator.run(
            repository.get(feed_id), essay_uuid, ConsoleSink(console), options
        )

        _display_result(result)

        if save:
            saved = store.dump_json(store_file)
            console.print(f"\n[green]Store saved to:[/green] {saved}")

    except (FileNotFoundError, ValueError, FeedParseError, FeedNotFoundError, StoreError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    except FeedValidationError as e:
        console.print(f"[red]Feed Validation Error:[/red] {e}")
        raise typer.Exit(1)
    except ConfigurationError as e:
        console.print(f"[red]Configuration Error:[/red] {e}")
        raise typer.Exit(1)
    except OperationCancelled as e:
        console.print(f"[yellow]Cancelled:[/yellow] {e}")
        raise typer.Exit(130)


@app.command()
def expand(
    feeds_file: Annotated[Path, typer.Argument(help="JSON file of feed records")],
    store_file: Annotated[Path, typer.Argument(help="JSON export of essays and feedback")],
    feed_id: Annotated[int, typer.Argument(help="Feed whose prompts to expand")],
    essay_uuid: Annotated[str, typer.Argument(help="UUID of the essay to expand against")],
    step: Annotated[
        Optional[str],
        typer.Option("--step", "-s", help="Only expand this step type"),
    ] = None,
    language: Annotated[
        str,
        typer.Option("--language", "-l", help="Prompt language (en or vi)"),
    ] = "en",
    segment_order: Annotated[
        Optional[int],
        typer.Option("--segment-order", help="Pin segment tags to one segment"),
    ] = None,
) -> None:
    """
    Show the prompt variants a feed would send, without calling any provider.
    """
    try:
        repository = FeedRepository.from_json(feeds_file)
        feed = repository.get(feed_id)
        engine = TemplateEngine(ContentResolver(InMemoryEssayStore.from_json(store_file)))
        ctx = ExpansionContext(essay_uuid=essay_uuid, segment_order=segment_order)

        steps = [s for s in feed.steps if step is None or s.step_type == step]
        if not steps:
            console.print(f"[yellow]Feed {feed_id} has no '{step}' step[/yellow]")
            raise typer.Exit(1)

        for feed_step in steps:
            result = engine.expand_structured(feed_step.config.prompt_for(language), ctx)
            mode = f"pooled, {len(result.prompts)} variants" if result.is_parallel else "streamed"
            console.print(f"\n[bold cyan]{feed_step.step_type}[/bold cyan] [dim]({mode})[/dim]")
            for i, prompt in enumerate(result.prompts):
                console.print(Panel(Text(prompt), title=f"Variant #{i}"))

    except (FileNotFoundError, ValueError, FeedParseError, FeedNotFoundError, StoreError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@app.command()
def segments(
    text_file: Annotated[Path, typer.Argument(help="Text file of paragraph-level feedback")],
) -> None:
    """
    Run segment extraction on a text file and show the result.
    """
    if not text_file.exists():
        console.print(f"[red]Error:[/red] File not found: {text_file}")
        raise typer.Exit(1)

    extracted = SegmentExtractor().extract_segments(text_file.read_text(encoding="utf-8"))
    if not extracted:
        console.print("[yellow]No segments found[/yellow]")
        return

    table = Table(title=f"Segments ({len(extracted)})")
    table.add_column("Order", justify="right")
    table.add_column("Type", style="cyan")
    table.add_column("Title")
    table.add_column("Content")

    for segment in extracted:
        table.add_row(str(segment.order), segment.type, segment.title, segment.content[:60])

    console.print(table)


@app.command()
def validate_feeds(
    feeds_file: Annotated[Path, typer.Argument(help="JSON file of feed records")],
) -> None:
    """
    Parse and validate every feed in a file.
    """
    try:
        repository = FeedRepository.from_json(feeds_file)
    except (FileNotFoundError, ValueError, FeedParseError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    validator = FeedValidator()
    table = Table(title="Feeds")
    table.add_column("ID", justify="right")
    table.add_column("Title", style="cyan")
    table.add_column("Applies To")
    table.add_column("Steps")
    table.add_column("Status")

    all_issues: list[str] = []
    for feed in repository:
        is_valid, issues = validator.validate(feed)
        all_issues.extend(f"Feed {feed.id}: {issue}" for issue in issues)
        table.add_row(
            str(feed.id),
            feed.title,
            feed.apply_to,
            ", ".join(feed.step_types),
            "✅" if is_valid else "⚠️",
        )

    console.print(table)

    if all_issues:
        console.print("\n[yellow]⚠ Validation issues found:[/yellow]")
        for issue in all_issues:
            console.print(f"  • {issue}")
        raise typer.Exit(1)

    console.print(f"\n[green]✓ {len(repository)} feeds are valid[/green]")


@app.command()
def health() -> None:
    """
    Show the effective configuration and which providers have credentials.
    """
    settings = get_settings()
    console.print("[bold]Essay Feed Health Check[/bold]\n")

    console.print("[dim]Checking configuration...[/dim]")
    console.print(f"  Default Provider: {settings.default_provider}")
    console.print(f"  Default Model: {settings.default_model}")
    console.print(f"  Pool Concurrency: {settings.pool_concurrency}")
    console.print(f"  Max Retries: {settings.max_retries}")
    console.print(f"  Request Timeout: {settings.request_timeout}s")

    table = Table(title="Providers")
    table.add_column("Provider", style="cyan")
    table.add_column("Base URL")
    table.add_column("Credential")

    missing = 0
    for name in known_providers():
        profile = get_provider_profile(name, settings)
        key_provider = profile.token_provider or profile.name
        configured = bool(settings.api_key_for(key_provider))
        missing += not configured
        table.add_row(
            name,
            profile.base_url,
            "[green]✓[/green]" if configured else f"[red]✗ {key_provider}[/red]",
        )

    console.print(table)

    if missing == len(known_providers()):
        console.print("\n[red]No provider credentials configured[/red]")
        raise typer.Exit(1)

    console.print("\n[green]Ready[/green]")


def _display_result(result: FeedResult) -> None:
    """Display a step summary table."""
    table = Table(title=f"Feed {result.feed_id} · {result.essay_uuid}")
    table.add_column("Step", style="cyan")
    table.add_column("Mode")
    table.add_column("Variants", justify="right")
    table.add_column("Stored")
    table.add_column("Output")

    for step in result.steps:
        table.add_row(
            step.step_type,
            step.mode,
            str(step.variants),
            "✅" if step.written else "—",
            step.content[:60].replace("\n", " "),
        )

    console.print()
    console.print(table)


if __name__ == "__main__":
    app()
