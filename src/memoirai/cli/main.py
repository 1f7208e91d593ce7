"""
Command Line Interface for Memoir AI.

Analyze a story file locally, chat with the writing assistant about it,
transcribe a voice note, browse stories by year and manage configuration.
"""

import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from memoirai import __version__
from memoirai.ai.assistant import ConversationalAssistant
from memoirai.ai.client import AIUnavailableError, get_client
from memoirai.ai.transcription import AudioPayload, TranscriptionOptions, TranscriptionService
from memoirai.analysis.connections import ConnectionDetector
from memoirai.analysis.engine import MemoryAnalysisEngine
from memoirai.chat.session import ChatSession
from memoirai.config import (
    APIKeyInvalidError,
    APIKeyManager,
    AppConfig,
    ConfigError,
    KeySource,
    get_config,
    load_config,
)
from memoirai.core.models import ConnectionData, ElementType, Story
from memoirai.core.result import USER_MESSAGES
from memoirai.core.timeline import TimelineIndex, extract_years
from memoirai.storage.connections import ConnectionRegistry
from memoirai.storage.context_store import ContextStore
from memoirai.storage.store import DocumentStore, InMemoryDocumentStore, JsonDocumentStore, StoreError
from memoirai.storage.stories import StoryRepository
from memoirai.utils.logging import LogContext, setup_logging

logger = logging.getLogger(__name__)

console = Console()

LOCAL_USER = "local"


# =============================================================================
# HELPER FUNCTIONS
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


def print_info_panel(title: str, content: str, border_style: str = "blue") -> None:
    console.print(Panel(content, title=title, border_style=border_style))


def open_store(config: AppConfig) -> DocumentStore:
    """Build the document store selected in configuration."""
    if config.storage.backend == "memory":
        return InMemoryDocumentStore()
    return JsonDocumentStore(config.paths.data_dir)


def story_id_for(path: Path) -> str:
    """Stable story id derived from the file location."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, path.resolve().as_uri()))


def print_elements_table(result) -> None:
    table = Table(title="Memory Elements")
    table.add_column("Type", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Context")

    for element_type in ElementType:
        for element in result.elements_of(element_type):
            table.add_row(element_type.value, element.value, element.context or "-")

    if table.row_count:
        console.print(table)
    else:
        print_warning("No memory elements found")


def print_people_table(people) -> None:
    table = Table(title="Probable Connections")
    table.add_column("Name", style="cyan")
    table.add_column("Relationship", style="green")
    for person in people:
        table.add_row(person.name, person.relationship or "-")
    console.print(table)


def print_error_and_exit(message: str, code: int = 1) -> None:
    print_error(message)
    sys.exit(code)


# =============================================================================
# MAIN CLI GROUP
# =============================================================================


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug mode")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Custom config file",
)
@click.version_option(__version__, prog_name="memoir")
@click.pass_context
def memoir(ctx, verbose, debug, config_path):
    """
    Memoir AI - Capture and develop your life stories.

    Analyze what a story establishes and what it leaves out, then talk it
    through with a writing companion that only builds on what you wrote.
    """
    config = load_config(config_path) if config_path else get_config()

    if debug or config.debug:
        level = "DEBUG"
    elif verbose or config.verbose:
        level = "INFO"
    else:
        level = "WARNING"
    log_file = config.paths.log_dir / "memoir.log" if debug or config.debug else None
    setup_logging(level=level, log_file=log_file)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# =============================================================================
# ANALYZE COMMAND
# =============================================================================


@memoir.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Print the analysis as JSON")
def analyze(file, as_json):
    """
    Analyze a story file without calling the AI service.

    Example:
        memoir analyze first_day_of_school.txt
    """
    content = file.read_text(encoding="utf-8")
    engine = MemoryAnalysisEngine()
    detector = ConnectionDetector()

    with LogContext("Analyzing story", logger=logger):
        result = engine.analyze(content)
        questions = engine.generate_follow_up_questions(result)
        greeting = engine.generate_greeting(content, result)
        people = detector.detect_with_relationships(content)

    if as_json:
        payload = {
            "analysis": result.model_dump(mode="json"),
            "questions": [q.model_dump(mode="json") for q in questions],
            "greeting": greeting,
            "connections": [person._asdict() for person in people],
            "years": extract_years(content),
        }
        click.echo(json.dumps(payload, indent=2))
        return

    print_header(f"Story Analysis: {file.name}")
    print_elements_table(result)

    console.print(f"\nConfidence: [bold]{result.metadata.confidence:.0%}[/bold]")
    missing = ", ".join(c.value for c in result.missing_contexts) or "none"
    console.print(f"Missing context: [yellow]{missing}[/yellow]")

    years = extract_years(content)
    if years:
        console.print(f"Years mentioned: {', '.join(str(y) for y in years)}")

    if questions:
        console.print("\n[bold]Follow-up questions:[/bold]")
        for question in questions:
            console.print(f"  • {question.text}")

    if people:
        console.print()
        print_people_table(people)

    print_info_panel("Greeting", greeting)


# =============================================================================
# CHAT COMMAND
# =============================================================================


async def _sync_story(stories: StoryRepository, story_id: str, path: Path, content: str, title, year):
    """Create or refresh the stored record for a story file."""
    story = await stories.get(story_id)
    if year is None:
        years = extract_years(content)
        year = years[0] if years else None
    if story is None:
        story = Story(
            id=story_id,
            user_id=LOCAL_USER,
            title=title or path.stem,
            content=content,
            year=year,
        )
        return await stories.create(story)
    changes = {"content": content}
    if title:
        changes["title"] = title
    if year is not None:
        changes["year"] = year
    return await stories.update(story_id, **changes)


async def _link_people(session: ChatSession, registry: ConnectionRegistry, story_id: str) -> None:
    people = session.detected_people
    if not people:
        print_warning("No people detected in this story yet")
        return
    for person in people:
        result = await registry.add_connection_to_story(
            LOCAL_USER, story_id, ConnectionData(name=person.name, relationship=person.relationship)
        )
        if result.ok:
            print_success(f"Linked {person.name}")
        else:
            print_error(f"{person.name}: {result.error.message}")


async def _review_revision(session: ChatSession, stories: StoryRepository, path: Path) -> None:
    result = await session.propose_revision()
    if not result.ok:
        print_error(result.error.message)
        return

    revision = result.value
    print_info_panel("Proposed revision", revision.proposed, border_style="magenta")
    for change in revision.changes:
        console.print(f"  • {change}")

    accepted = await asyncio.to_thread(Confirm.ask, "Apply this revision?", default=False)
    revision = revision.accept() if accepted else revision.reject()
    if not revision.is_accepted:
        console.print("Revision discarded.")
        return

    path.write_text(revision.proposed, encoding="utf-8")
    await stories.update(revision.story_id, content=revision.proposed)
    story = session.story
    await session.initialize(
        revision.story_id,
        revision.proposed,
        {"title": story.title, "year": story.year, "tags": story.tags},
    )
    print_success(f"Revision saved to {path}")


async def _chat_loop(config: AppConfig, path: Path, title, year) -> None:
    try:
        client = get_client(config)
    except AIUnavailableError as e:
        print_error_and_exit(USER_MESSAGES[e.code])

    store = open_store(config)
    engine = MemoryAnalysisEngine()
    stories = StoryRepository(store)
    registry = ConnectionRegistry(store, stories=stories)
    contexts = ContextStore(store, engine, ttl=config.context.cache_ttl_seconds)
    assistant = ConversationalAssistant(client, config=config, engine=engine)
    session = ChatSession(assistant, engine=engine, context_store=contexts, config=config)

    content = path.read_text(encoding="utf-8")
    story_id = story_id_for(path)
    try:
        story = await _sync_story(stories, story_id, path, content, title, year)
    except StoreError as e:
        print_error_and_exit(f"Could not open story store: {e.message}")

    await session.initialize(
        story_id, content, {"title": story.title, "year": story.year, "tags": story.tags}
    )
    print_header(f"💬 {story.title}")
    for message in session.messages:
        print_info_panel(config.chat.assistant_name, message.content, border_style="green")
    console.print("[dim]Commands: /revise, /people, /quit[/dim]\n")

    try:
        while True:
            text = (await asyncio.to_thread(console.input, "[bold cyan]You:[/bold cyan] ")).strip()
            if not text:
                continue
            if text in ("/quit", "/exit"):
                break
            if text == "/revise":
                await _review_revision(session, stories, path)
                continue
            if text == "/people":
                await _link_people(session, registry, story_id)
                continue

            with console.status("Thinking..."):
                result = await session.send_user_message(text)
            if result.ok:
                print_info_panel(config.chat.assistant_name, result.value.content, border_style="green")
                for reply in result.value.quick_replies:
                    console.print(f"  [dim]→ {reply.label}[/dim]")
            else:
                print_error(result.error.message)
    finally:
        await session.close()


@memoir.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--title", "-t", help="Story title (defaults to the file name)")
@click.option("--year", "-y", type=int, help="Year the story took place")
@click.pass_context
def chat(ctx, file, title, year):
    """
    Talk through a story with the writing assistant.

    Example:
        memoir chat first_day_of_school.txt --year 1985
    """
    config = ctx.obj["config"]
    try:
        asyncio.run(_chat_loop(config, file, title, year))
    except (KeyboardInterrupt, EOFError):
        console.print()
    print_success("Session ended")


# =============================================================================
# TRANSCRIBE COMMAND
# =============================================================================


@memoir.command()
@click.argument("audio", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--language", "-l", default="en", show_default=True, help="Spoken language")
@click.pass_context
def transcribe(ctx, audio, language):
    """
    Transcribe a voice note into text.

    Example:
        memoir transcribe note.webm --language en
    """
    config = ctx.obj["config"]
    try:
        client = get_client(config)
    except AIUnavailableError as e:
        print_error_and_exit(USER_MESSAGES[e.code])

    service = TranscriptionService(client)
    payload = AudioPayload.from_file(audio)

    with console.status("Transcribing..."):
        result = asyncio.run(service.transcribe(payload, TranscriptionOptions(language=language)))

    if not result.ok:
        print_error_and_exit(result.error.message)
    click.echo(result.value.text)


# =============================================================================
# STORIES COMMAND
# =============================================================================


@memoir.command()
@click.option("--limit", default=50, show_default=True, help="Maximum stories to list")
@click.pass_context
def stories(ctx, limit):
    """List stored stories grouped by year."""
    config = ctx.obj["config"]
    repository = StoryRepository(open_store(config))
    found = asyncio.run(repository.get_user_stories(LOCAL_USER, limit=limit))
    if not found:
        print_warning("No stories yet. Start one with: memoir chat FILE")
        return

    index = TimelineIndex(found)
    table = Table(title="Stories")
    table.add_column("Year", style="cyan")
    table.add_column("Title", style="green")
    table.add_column("Connections", justify="right")
    for year in index.years:
        for story in index.stories_in(year):
            table.add_row(str(year), story.title, str(len(story.connections)))
    for story in index.undated:
        table.add_row("-", story.title, str(len(story.connections)))
    console.print(table)


# =============================================================================
# CONFIG GROUP
# =============================================================================


@memoir.group("config")
def config_group():
    """Manage configuration settings."""
    pass


@config_group.command()
@click.pass_context
def show(ctx):
    """Display current configuration."""
    config = ctx.obj["config"]
    print_header("Current Configuration")

    manager = APIKeyManager(paths_config=config.paths)
    has_key = manager.get_key() is not None

    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("AI mode", config.ai.mode.value)
    table.add_row("Model", config.ai.model_name)
    table.add_row("Transcription model", config.ai.transcription_model)
    table.add_row("API Key", f"[CONFIGURED] ({manager.get_key_source().value})" if has_key else "[NOT SET]")
    table.add_row("Assistant", config.chat.assistant_name)
    table.add_row("Storage", config.storage.backend)
    table.add_row("Data directory", str(config.paths.data_dir))
    table.add_row("Context cache TTL", f"{config.context.cache_ttl_seconds:.0f}s")
    console.print(table)


@config_group.command("check-key")
@click.pass_context
def check_key(ctx):
    """Check whether an API key is configured (no network call)."""
    config = ctx.obj["config"]
    manager = APIKeyManager(paths_config=config.paths)
    if manager.get_key() is None:
        print_error_and_exit("No API key configured. Run: memoir config set-key")
    print_success(f"API key found in {manager.get_key_source().value}")


@config_group.command("set-key")
@click.option(
    "--backend",
    type=click.Choice(["keyring", "file"]),
    default="keyring",
    show_default=True,
    help="Where to store the key",
)
@click.pass_context
def set_key(ctx, backend):
    """Store the Gemini API key securely."""
    config = ctx.obj["config"]
    print_header("🔑 Set Gemini API Key")

    api_key = click.prompt("Enter your Gemini API key", hide_input=True)
    destination = KeySource.KEYRING if backend == "keyring" else KeySource.ENCRYPTED_FILE

    try:
        APIKeyManager(paths_config=config.paths).store_key(api_key, destination)
    except APIKeyInvalidError:
        print_error_and_exit("Invalid API key format")
    except ConfigError as e:
        print_error_and_exit(str(e))

    print_success("API key configured successfully")
    print_info_panel(
        "Next Steps",
        "Your Gemini API key is now configured.\n\n"
        "Start a conversation about a story:\n"
        "  memoir chat my_story.txt",
    )


def main():
    """Entry point for the console script."""
    memoir()


if __name__ == "__main__":
    main()
