"""
CLI commands for the voice chat client and its stored conversation.
"""

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Optional

import cyclopts
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from voicechat.exceptions import ConversationImportError

chat_app = cyclopts.App(name="chat", help="Chat with the relay by voice or text")
history_app = cyclopts.App(name="history", help="Manage the stored conversation")

HELP_TEXT = """\
Type a message and press Enter to send it.
  /listen     turn the microphone on (typed lines become voice turns)
  /stop       turn the microphone off
  /interrupt  stop the agent speaking (/interrupt listen to listen afterwards)
  /export     export the conversation (/export path [json|text])
  /import     import a conversation (/import path)
  /clear      forget the conversation
  /quit       exit"""


def _get_console() -> Console:
    """Get a Rich console for output."""
    return Console()


def _open_store(store_path: Optional[str]):
    from voicechat.voice.store import ConversationStore

    return ConversationStore.open(Path(store_path) if store_path else None)


def _write_export(store, path: Optional[str], fmt: str) -> str:
    content = store.export_text() if fmt == "text" else store.export_json()
    if path:
        Path(path).write_text(content)
    return content


# =============================================================================
# Interactive chat
# =============================================================================


async def _run_chat(client, console: Console) -> None:
    loop = asyncio.get_running_loop()

    while True:
        line = await loop.run_in_executor(None, input)
        line = line.strip()
        if not line:
            continue

        # Any input counts as a user gesture for deferred playback
        client.notify_user_interaction()

        if not line.startswith("/"):
            if client.capture.feed(line):
                continue
            # Runs in the background so /interrupt works while it is pending
            client.submit_message(line)
            continue

        command, _, arg = line[1:].partition(" ")
        arg = arg.strip()

        if command in ("quit", "exit"):
            break
        elif command == "help":
            console.print(HELP_TEXT)
        elif command == "listen":
            if not client.start_listening():
                console.print("[yellow]Agent is speaking; /interrupt first[/yellow]")
        elif command == "stop":
            client.stop_listening()
        elif command == "interrupt":
            await client.interrupt(listen_after=(arg == "listen"))
        elif command == "clear":
            await client.clear()
            console.print("[green]Conversation cleared[/green]")
        elif command == "export":
            path, _, fmt = arg.partition(" ")
            content = _write_export(client.store, path or None, fmt.strip() or "json")
            if path:
                console.print(f"[green]Exported to {path}[/green]")
            else:
                console.print(content, markup=False)
        elif command == "import":
            if not arg:
                console.print("[red]Usage: /import path[/red]")
                continue
            try:
                count = client.store.import_json(Path(arg).read_text())
            except (OSError, ConversationImportError) as e:
                console.print(f"[red]Import failed: {escape(str(e))}[/red]")
                continue
            console.print(f"[green]Imported {count} turns[/green]")
        else:
            console.print(f"[red]Unknown command: /{command}[/red]")


@chat_app.default
def chat(
    server_url: Annotated[
        Optional[str], cyclopts.Parameter(help="Chat endpoint URL")
    ] = None,
    store_path: Annotated[
        Optional[str], cyclopts.Parameter(help="Conversation file")
    ] = None,
    buffered: Annotated[
        bool, cyclopts.Parameter(help="Request base64 audio instead of a stream")
    ] = False,
    listen: Annotated[
        bool, cyclopts.Parameter(help="Start with the microphone on")
    ] = False,
    verbose: Annotated[bool, cyclopts.Parameter(help="Enable verbose logging")] = False,
):
    """
    Run the interactive chat client.

    Replies are played through ffplay as they stream in. While the
    microphone is on, typed lines stand in for finalized speech.

    Example:
        voicechat chat
        voicechat chat --server-url http://localhost:8000/api/chat --listen
    """
    log_level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger = logging.getLogger("voicechat.voice")

    from voicechat.voice.client import (
        ClientCallbacks,
        VoiceChatClient,
        VoiceChatSettings,
    )

    console = _get_console()

    settings = VoiceChatSettings.from_env()
    if server_url:
        settings.server_url = server_url
    if store_path:
        settings.store_path = store_path
    if buffered:
        settings.stream_audio = False

    def on_reply(text: str) -> None:
        console.print(f"[cyan]assistant:[/cyan] {escape(text)}")

    def on_mode_change(mode) -> None:
        console.print(f"[dim]({mode.name.lower()})[/dim]")

    callbacks = ClientCallbacks(
        on_status=lambda msg: console.print(f"[yellow]{escape(msg)}[/yellow]"),
        on_reply=on_reply,
        on_error=lambda msg: console.print(f"[red]Error: {escape(msg)}[/red]"),
        on_mode_change=on_mode_change,
    )

    async def run() -> None:
        client = VoiceChatClient(settings=settings, callbacks=callbacks)
        console.print(f"Connected to {settings.server_url}")
        console.print(f"Conversation: {len(client.store)} turns")
        console.print(HELP_TEXT)
        if listen:
            client.start_listening()
        try:
            await _run_chat(client, console)
        finally:
            await client.close()

    try:
        asyncio.run(run())
    except (KeyboardInterrupt, EOFError):
        console.print("\nChat stopped.")
    except Exception as e:
        logger.error(f"Chat client error: {e}")
        return 1


# =============================================================================
# Stored conversation
# =============================================================================


@history_app.command
def show(
    *,
    store_path: Annotated[
        Optional[str], cyclopts.Parameter(help="Conversation file")
    ] = None,
):
    """Show the stored conversation."""
    console = _get_console()
    store = _open_store(store_path)

    if not len(store):
        console.print("[yellow]No stored conversation[/yellow]")
        return

    table = Table(title="Conversation", show_header=True)
    table.add_column("Time", style="dim")
    table.add_column("Role", style="cyan")
    table.add_column("Content")
    for turn in store.turns:
        table.add_row(
            turn.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            turn.role.value,
            turn.content,
        )
    console.print(table)


@history_app.command
def export(
    path: Annotated[
        Optional[str], cyclopts.Parameter(help="Output file (stdout if omitted)")
    ] = None,
    *,
    format: Annotated[
        str, cyclopts.Parameter(help="Export format (json, text)")
    ] = "json",
    store_path: Annotated[
        Optional[str], cyclopts.Parameter(help="Conversation file")
    ] = None,
):
    """
    Export the stored conversation.

    Example:
        voicechat history export chat.json
        voicechat history export transcript.txt --format text
    """
    console = _get_console()
    if format not in ("json", "text"):
        console.print(f"[red]Invalid format: {format}. Use json or text[/red]")
        return 1

    store = _open_store(store_path)
    content = _write_export(store, path, format)
    if path:
        console.print(f"[green]Exported {len(store)} turns to {path}[/green]")
    else:
        print(content, end="")


@history_app.command(name="import")
def import_(
    path: Annotated[str, cyclopts.Parameter(help="Exported JSON file")],
    *,
    store_path: Annotated[
        Optional[str], cyclopts.Parameter(help="Conversation file")
    ] = None,
):
    """Replace the stored conversation with an exported one."""
    console = _get_console()
    store = _open_store(store_path)
    try:
        count = store.import_json(Path(path).read_text())
    except (OSError, ConversationImportError) as e:
        console.print(f"[red]Import failed: {escape(str(e))}[/red]")
        return 1
    console.print(f"[green]Imported {count} turns[/green]")


@history_app.command
def clear(
    *,
    store_path: Annotated[
        Optional[str], cyclopts.Parameter(help="Conversation file")
    ] = None,
):
    """Forget the stored conversation and its continuation token."""
    store = _open_store(store_path)
    store.clear()
    _get_console().print("[green]Conversation cleared[/green]")
