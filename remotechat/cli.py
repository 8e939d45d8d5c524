#!/usr/bin/env python3
"""remotechat CLI.

Usage:
    remotechat send --key general --persona <id> "Hello there"
    remotechat history --key general
    remotechat persona <id>
    remotechat attach --key general --persona <id> "https://.../chat?hist=abc123"
    remotechat reset --key general
    remotechat serve --port 8091
    remotechat status

Environment variables (alternative to args):
    REMOTECHAT_TOKENS       Comma-separated credentials
    REMOTECHAT_TOKEN[_N]    Numbered credentials (REMOTECHAT_TOKEN, REMOTECHAT_TOKEN_2, ...)
    REMOTECHAT_PERSONA_ID   Default persona
    REMOTECHAT_STORE_PATH   Conversation store file
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from .client import RemoteChatClient
from .config import ClientSettings, load_config
from .errors import ConfigurationError, ExhaustedError, RemoteChatError, TerminalError
from .models import Reply
from .store import JsonConversationStore

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("remotechat")

console = Console()

EXIT_OK = 0
EXIT_CONFIGURATION = 2
EXIT_TERMINAL = 3
EXIT_EXHAUSTED = 4


def exit_code_for(error: RemoteChatError) -> int:
    if isinstance(error, ConfigurationError):
        return EXIT_CONFIGURATION
    if isinstance(error, TerminalError):
        return EXIT_TERMINAL
    return EXIT_EXHAUSTED


def print_reply(reply: Reply) -> None:
    console.print(f"[bold cyan]{reply.author_label or 'Reply'}:[/bold cyan] {reply.text}")
    for i, alternate in enumerate(reply.alternate_texts, start=1):
        console.print(f"[dim]  alt {i}: {alternate}[/dim]")


def print_error(error: RemoteChatError) -> None:
    console.print(f"[red]{type(error).__name__}: {error}[/red]")
    if isinstance(error, ExhaustedError):
        for attempt in error.attempts:
            console.print(f"[yellow]  {attempt.describe()}[/yellow]")


class RemoteChatCLI:
    """Runs one CLI command against a RemoteChatClient."""

    def __init__(self, settings: ClientSettings, store_path: Optional[Path] = None):
        self.settings = settings
        self.store = JsonConversationStore(store_path)

    def _persona(self, persona: Optional[str]) -> str:
        return persona or self.settings.persona_id

    async def run(self, args: argparse.Namespace) -> int:
        async with RemoteChatClient(self.settings, store=self.store) as client:
            try:
                return await self._dispatch(client, args)
            except RemoteChatError as e:
                print_error(e)
                return exit_code_for(e)

    async def _dispatch(self, client: RemoteChatClient, args: argparse.Namespace) -> int:
        if args.command == "send":
            reply = await client.send(args.key, self._persona(args.persona), " ".join(args.text))
            print_reply(reply)
        elif args.command == "start":
            handle, greeting = await client.start(args.key, self._persona(args.persona))
            console.print(f"[green]Conversation {handle.external_id} started for {handle.conversation_key}[/green]")
            if greeting:
                print_reply(greeting)
        elif args.command == "history":
            replies = await client.fetch_history(args.key)
            for reply in replies[-args.limit:]:
                print_reply(reply)
        elif args.command == "persona":
            info = await client.fetch_persona(args.persona_id)
            table = Table(show_header=False)
            table.add_row("id", info.persona_id)
            table.add_row("name", info.name)
            table.add_row("title", info.title)
            table.add_row("greeting", info.greeting)
            console.print(table)
        elif args.command == "attach":
            handle = client.attach(args.key, self._persona(args.persona), args.link)
            console.print(f"[green]{handle.conversation_key} -> {handle.external_id}[/green]")
        elif args.command == "reset":
            client.reset(args.key)
            console.print(f"[green]Conversation for {args.key} reset[/green]")
        return EXIT_OK


def serve(settings: ClientSettings, store_path: Optional[Path], host: str, port: int) -> int:
    """Run the HTTP bridge until interrupted."""
    import uvicorn

    from .http_api import create_app
    from .runtime import forget_bridge, record_bridge

    client = RemoteChatClient(settings, store=JsonConversationStore(store_path))
    app = create_app(client)
    record_bridge(host, port)
    log.info(f"Bridge listening on http://{host}:{port}")
    try:
        uvicorn.run(app, host=host, port=port, log_level="warning")
    finally:
        forget_bridge()
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="remotechat",
        description="Resilient client for the remote conversation backend",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--store", type=Path, default=None, help="Conversation store file")
    sub = parser.add_subparsers(dest="command", required=True)

    send = sub.add_parser("send", help="Send a message and print the reply")
    send.add_argument("--key", required=True, help="Conversation key (e.g. channel id)")
    send.add_argument("--persona", default=None, help="Persona id (or REMOTECHAT_PERSONA_ID)")
    send.add_argument("text", nargs="+", help="Message text")

    start = sub.add_parser("start", help="Start a fresh conversation and print the greeting")
    start.add_argument("--key", required=True)
    start.add_argument("--persona", default=None)

    history = sub.add_parser("history", help="Print the conversation history")
    history.add_argument("--key", required=True)
    history.add_argument("--limit", type=int, default=20)

    persona = sub.add_parser("persona", help="Show persona details")
    persona.add_argument("persona_id")

    attach = sub.add_parser("attach", help="Bind a key to an existing conversation link or id")
    attach.add_argument("--key", required=True)
    attach.add_argument("--persona", default=None)
    attach.add_argument("link")

    reset = sub.add_parser("reset", help="Forget the conversation bound to a key")
    reset.add_argument("--key", required=True)

    serve_cmd = sub.add_parser("serve", help="Run the local HTTP bridge")
    serve_cmd.add_argument("--host", default=None)
    serve_cmd.add_argument("--port", type=int, default=None)

    sub.add_parser("status", help="Show whether a bridge is running")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point."""
    load_dotenv()
    args = build_parser().parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.command == "status":
        from .runtime import get_status
        status = get_status()
        console.print_json(data=status)
        return EXIT_OK if status.get("running") else 1

    try:
        settings = ClientSettings.from_env()
    except ConfigurationError as e:
        print_error(e)
        return EXIT_CONFIGURATION

    if not settings.tokens:
        log.error("No credentials. Set REMOTECHAT_TOKENS or REMOTECHAT_TOKEN")
        return EXIT_CONFIGURATION

    if args.command == "serve":
        config = load_config()
        host = args.host or config["HOST"]
        port = args.port or int(config["PORT"])
        return serve(settings, args.store, host, port)

    try:
        return asyncio.run(RemoteChatCLI(settings, args.store).run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
