"""
SAPNote — Entry Point

Usage:
    sapnote                      # MCP server on stdio
    sapnote --http               # MCP server on streamable HTTP
    sapnote --setup-claude       # Register with Claude Desktop
    sapnote login                # Authenticate and report the session expiry
    sapnote search <query>       # One-off search, rendered in the terminal
    sapnote get <note-id>        # One-off note lookup
    sapnote --verbose            # Debug logging on stderr
"""

import argparse
import asyncio
import sys
from datetime import datetime

from rich.console import Console
from rich.markdown import Markdown

from sapnote import __version__
from sapnote.errors import SapNoteError

console = Console()
err_console = Console(stderr=True)


def _suppress_shutdown_noise(loop: asyncio.AbstractEventLoop):
    """Suppress 'Future exception was never retrieved' from Playwright during shutdown."""
    original_handler = loop.get_exception_handler()

    def handler(loop, context):
        msg = context.get("message", "")
        exc = context.get("exception")
        if exc and "Connection closed while reading from the driver" in str(exc):
            return
        if "Future exception was never retrieved" in msg:
            if exc and "driver" in str(exc).lower():
                return
        if original_handler:
            original_handler(loop, context)
        else:
            loop.default_exception_handler(context)

    loop.set_exception_handler(handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sapnote",
        description="SAPNote — SAP Note search and retrieval for MCP hosts",
        epilog="Examples:\n"
               "  sapnote                          MCP server on stdio (Claude Desktop, Cursor)\n"
               "  sapnote --http --port 3002       MCP server on streamable HTTP\n"
               "  sapnote search 'OData error 500' Quick search from the terminal\n"
               "  sapnote get 2744792              Read one note\n",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"sapnote {__version__}")
    parser.add_argument("--http", action="store_true", help="Serve MCP over streamable HTTP instead of stdio")
    parser.add_argument("--host", help="HTTP bind host (default: HTTP_HOST or 127.0.0.1)")
    parser.add_argument("--port", type=int, help="HTTP port (default: HTTP_PORT or 3002)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging on stderr")
    parser.add_argument("--show-browser", action="store_true", help="Run the browser headful")
    parser.add_argument("--setup-claude", action="store_true", help="Register SAPNote with Claude Desktop")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("login", help="Authenticate with the client certificate")
    search_parser = subparsers.add_parser("search", help="Search SAP Notes")
    search_parser.add_argument("query", help="Search text or note number")
    search_parser.add_argument("--lang", default="EN", choices=["EN", "DE"], help="Result language")
    get_parser = subparsers.add_parser("get", help="Show one SAP Note")
    get_parser.add_argument("note_id", help="SAP Note number")
    get_parser.add_argument("--lang", default="EN", choices=["EN", "DE"], help="Note language")
    return parser


async def _run_command(args, config) -> int:
    from sapnote.mcp_tools import run_note_get, run_note_search
    from sapnote.service import NoteService

    service = NoteService(config)
    try:
        if args.command == "login":
            with console.status("Authenticating with client certificate..."):
                await service.ensure_authenticated()
            record = service.authenticator.session_record
            expires = datetime.fromtimestamp(record.expires_at / 1000) if record else None
            console.print(f"[green]✓ Authenticated[/green] ({len(record.cookies) if record else 0} cookies)")
            if expires:
                console.print(f"  Session valid until {expires:%Y-%m-%d %H:%M}")
            return 0

        if args.command == "search":
            with console.status(f"Searching for {args.query!r}..."):
                output = await run_note_search(service, args.query, args.lang)
        else:
            with console.status(f"Fetching SAP Note {args.note_id}..."):
                output = await run_note_get(service, args.note_id, args.lang)
        console.print(Markdown(output))
        return 1 if output.startswith("**Error") else 0
    finally:
        await service.shutdown()


async def async_main(argv=None) -> int:
    """Async main entry point."""
    _suppress_shutdown_noise(asyncio.get_running_loop())

    args = build_parser().parse_args(argv)

    if args.setup_claude:
        from sapnote.mcp_server import setup_claude_desktop
        setup_claude_desktop()
        return 0

    from sapnote.config import Config, ServerConfig
    from sapnote.logging_config import setup_logging

    raw = Config()
    logger = setup_logging(verbose=args.verbose, level=str(raw.get("LOG_LEVEL", "INFO")))

    try:
        config = ServerConfig.from_config(raw)
    except SapNoteError as e:
        err_console.print(f"[red]Configuration error:[/red] {e}")
        err_console.print("Set PFX_PATH and PFX_PASSPHRASE in ~/.sapnote/config.yaml, a .env file or the environment.")
        return 2
    if args.show_browser:
        config.headful = True

    if args.command:
        logger.info("SAPNote command", extra={"tool_name": args.command})
        return await _run_command(args, config)

    from sapnote.mcp_server import run_mcp_server

    transport = "http" if args.http else "stdio"
    if args.http:
        err_console.print(
            f"[green]SAPNote MCP server[/green] on http://{args.host or config.http_host}:{args.port or config.http_port}/mcp"
        )
    await run_mcp_server(transport, config=config, host=args.host, port=args.port)
    return 0


def main():
    """Sync entry point for console_scripts (pyproject.toml)."""
    try:
        code = asyncio.run(async_main())
    except KeyboardInterrupt:
        err_console.print("\nInterrupted. Goodbye!")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
