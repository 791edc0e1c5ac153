"""
Main CLI entry point for cubechat.

Commands:
    cubechat ask "question"        stream one turn straight from the Cube API
    cubechat serve                 run the HTTP service
    cubechat history ID            print a conversation from a running service
"""

import argparse
import logging
import sys

from rich.console import Console
from rich.markup import escape

from cubechat import __version__

from .._exceptions import CubeChatError
from ..client import CubeChat
from ..config import CubeConfig
from ..reducer import MessageView
from ..reemitter import ChatService
from ..store import get_store
from ..upstream import CubeClient
from .display import create_display, render_history
from .util import configure_logging, graceful_main

logger = logging.getLogger(__name__)

DEFAULT_USER = "anonymous"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cubechat",
        description="cubechat - streaming chat over the Cube analytics API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="Increase log verbosity (-vv for debug)"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    ask = subparsers.add_parser("ask", help="Ask a question and stream the answer")
    ask.add_argument("question", help="Prompt to send")
    ask.add_argument("--user-id", default=DEFAULT_USER, help="External user id")
    ask.add_argument("--conversation-id", help="Continue an existing conversation")
    ask.add_argument(
        "--format",
        choices=["verbose", "compact", "json"],
        default="verbose",
        help="Output format (default: verbose)",
    )
    ask.add_argument(
        "--json", dest="format", action="store_const", const="json", help="Print raw NDJSON lines"
    )

    serve = subparsers.add_parser("serve", help="Run the HTTP service")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, help="Port (default: CUBECHAT_PORT or 4000)")

    history = subparsers.add_parser("history", help="Show a conversation from a running service")
    history.add_argument("conversation_id", help="Conversation id")
    history.add_argument("--user-id", default=DEFAULT_USER, help="Owner of the conversation")
    history.add_argument(
        "--base-url", default="http://localhost:4000", help="Service URL (default: %(default)s)"
    )

    return parser


def cmd_ask(args: argparse.Namespace) -> int:
    config = CubeConfig.from_env().require()
    service = ChatService(CubeClient(config), get_store(config.database_url))
    display = create_display(args.format)

    turn = service.start_turn(
        user_id=args.user_id, content=args.question, conversation_id=args.conversation_id
    )
    display.start(args.question)
    envelopes = turn.envelopes()
    try:
        for envelope in envelopes:
            display.on_envelope(envelope)
    finally:
        envelopes.close()
        display.finish()
    return 1 if turn.failed else 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from ..api import create_app

    config = CubeConfig.from_env(port=args.port)
    uvicorn.run(create_app(config=config), host=args.host, port=config.port)
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    with CubeChat(args.base_url) as client:
        messages = client.messages(args.conversation_id, args.user_id)
    render_history([MessageView.from_message(m) for m in messages])
    return 0


_COMMANDS = {
    "ask": cmd_ask,
    "serve": cmd_serve,
    "history": cmd_history,
}


def _real_main(argv: list[str]) -> int:
    """Real main CLI logic that handles command parsing and execution."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    configure_logging(args.verbose)
    try:
        return _COMMANDS[args.command](args)
    except CubeChatError as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        Console(stderr=True).print(f"[red]❌ {escape(e.message)}[/red]", highlight=False)
        return 1


def main() -> None:
    """Main CLI entry point with graceful interrupt handling."""
    code = graceful_main(_real_main, sys.argv[1:])
    raise SystemExit(code)


if __name__ == "__main__":
    main()
