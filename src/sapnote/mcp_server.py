"""
SAPNote — MCP Server

Integration point for Claude Desktop, Cursor, VS Code Copilot and any other
MCP-compliant host.

Exposes:
    - 2 Tools (sap_note_search, sap_note_get)
    - 1 Resource template (sapnote://notes/{note_id})
    - 1 Prompt (research_sap_issue)

Transports:
    - stdio (default): for local MCP hosts
    - streamable-http: for remote clients, with GET /health and optional
      bearer-token protection (ACCESS_TOKEN)

Usage:
    sapnote               # stdio transport
    sapnote --http        # HTTP transport on HTTP_HOST:HTTP_PORT

The server is a thin skin: tools call into mcp_tools.py, which talks to a
NoteService created lazily on first use.
"""

from __future__ import annotations

import hmac
import json
import logging
import platform
import shutil
import sys
from pathlib import Path
from typing import Annotated, Any

import uvicorn
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from sapnote import __version__
from sapnote.config import ServerConfig, load_server_config
from sapnote.mcp_tools import format_error, run_note_get, run_note_search
from sapnote.service import NoteService

logger = logging.getLogger("sapnote.mcp")


# ═══════════════════════════════════════════════════════════════════════════
# Service holder
# ═══════════════════════════════════════════════════════════════════════════


class ServiceHolder:
    """Creates the NoteService on first use so a bad config surfaces per call."""

    def __init__(self, service: NoteService | None = None, config: ServerConfig | None = None):
        self._service = service
        self._config = config

    def get(self) -> NoteService:
        if self._service is None:
            config = self._config or load_server_config()
            logger.info("Creating note service", extra=config.describe())
            self._service = NoteService(config)
        return self._service

    async def shutdown(self) -> None:
        if self._service is not None:
            await self._service.shutdown()


# ═══════════════════════════════════════════════════════════════════════════
# Server
# ═══════════════════════════════════════════════════════════════════════════


def create_mcp_server(service: NoteService | None = None, config: ServerConfig | None = None) -> tuple[FastMCP, ServiceHolder]:
    """Create and configure the SAPNote MCP server.

    Returns:
        The FastMCP instance with tools, resource and prompt registered, and
        the holder owning the NoteService behind them.
    """
    holder = ServiceHolder(service, config)

    mcp = FastMCP(
        "sapnote",
        instructions=(
            "Search and read SAP Notes and Knowledge Base Articles from the SAP for Me portal. "
            "Use sap_note_search to find notes, then sap_note_get for the full text."
        ),
    )

    # ═════════════════════════════════════════════════════════════════════
    # Tool 1: sap_note_search
    # ═════════════════════════════════════════════════════════════════════

    @mcp.tool(annotations={
        "title": "Search SAP Notes",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    })
    async def sap_note_search(
        q: Annotated[str, "Query: free text, error message, transaction code, component or a note number (e.g. '2744792', 'OData gateway error 500')."],
        lang: Annotated[str, "Result language: 'EN' or 'DE'. Default: 'EN'."] = "EN",
    ) -> str:
        """Search SAP Notes / KB articles by free text or note ID.

        Returns matching notes with id, title, summary, component, release
        date, language and link. Follow up with `sap_note_get` for the full
        text of a note.
        """
        try:
            service = holder.get()
        except Exception as e:
            return format_error(e)
        return await run_note_search(service, q, lang)

    # ═════════════════════════════════════════════════════════════════════
    # Tool 2: sap_note_get
    # ═════════════════════════════════════════════════════════════════════

    @mcp.tool(annotations={
        "title": "Get SAP Note",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    })
    async def sap_note_get(
        id: Annotated[str, "SAP Note number, digits only (e.g. '2744792')."],
        lang: Annotated[str, "Note language: 'EN' or 'DE'. Default: 'EN'."] = "EN",
    ) -> str:
        """Fetch full metadata and content for a specific SAP Note by ID."""
        try:
            service = holder.get()
        except Exception as e:
            return format_error(e)
        return await run_note_get(service, id, lang)

    # ═════════════════════════════════════════════════════════════════════
    # Resource + Prompt
    # ═════════════════════════════════════════════════════════════════════

    @mcp.resource("sapnote://notes/{note_id}")
    async def note_resource(note_id: str) -> str:
        """Full text of one SAP Note, as Markdown."""
        try:
            service = holder.get()
        except Exception as e:
            return format_error(e)
        return await run_note_get(service, note_id)

    @mcp.prompt()
    def research_sap_issue(problem: str) -> str:
        """Research an SAP problem using SAP Notes."""
        return (
            f"Research this SAP issue using SAP Notes: {problem}\n\n"
            "1. Call sap_note_search with the key error text, transaction or component\n"
            "2. If nothing relevant comes back, retry with shorter or alternative keywords\n"
            "3. Call sap_note_get for the 1-3 most relevant notes\n"
            "4. Summarise the cause, the fix or correction instructions, and affected releases\n"
            "5. Cite every note you rely on by number and link"
        )

    # ═════════════════════════════════════════════════════════════════════
    # HTTP-only route
    # ═════════════════════════════════════════════════════════════════════

    @mcp.custom_route("/health", methods=["GET"])
    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "healthy", "server": "sapnote", "version": __version__})

    return mcp, holder


# ═══════════════════════════════════════════════════════════════════════════
# Bearer token middleware (HTTP transport)
# ═══════════════════════════════════════════════════════════════════════════


def _unauthorized(message: str, data: str | None = None) -> JSONResponse:
    error: dict[str, Any] = {"code": -32001, "message": message}
    if data:
        error["data"] = data
    return JSONResponse({"jsonrpc": "2.0", "error": error, "id": None}, status_code=401)


class BearerAuthMiddleware:
    """ASGI middleware requiring ``Authorization: Bearer <t>`` or ``bearer: <t>``.

    With no access token configured every request passes. Exempt paths
    (``/health``) always pass.
    """

    def __init__(self, app: Any, access_token: str | None, exempt_paths: tuple[str, ...] = ("/health",)):
        self.app = app
        self.access_token = access_token
        self.exempt_paths = exempt_paths

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or not self.access_token or scope.get("path") in self.exempt_paths:
            await self.app(scope, receive, send)
            return

        headers = {
            key.decode("latin-1").lower(): value.decode("latin-1")
            for key, value in scope.get("headers", [])
        }
        token = headers.get("bearer", "").strip() or None
        if token is None:
            scheme, _, credentials = headers.get("authorization", "").partition(" ")
            if scheme.lower() == "bearer" and credentials.strip():
                token = credentials.strip()

        if token is None:
            response = _unauthorized(
                "Unauthorized: Missing or invalid authorization",
                'Provide token in "Authorization: Bearer <token>" header or "bearer" header',
            )
        elif not hmac.compare_digest(token.encode(), self.access_token.encode()):
            response = _unauthorized("Unauthorized: Invalid access token")
        else:
            await self.app(scope, receive, send)
            return

        logger.warning("Rejected unauthenticated HTTP request", extra={"url": scope.get("path")})
        await response(scope, receive, send)


def create_http_app(mcp: FastMCP, access_token: str | None):
    """Streamable HTTP ASGI app, wrapped with bearer auth when configured."""
    if not access_token:
        logger.warning("ACCESS_TOKEN not set: HTTP transport runs without authentication")
    return BearerAuthMiddleware(mcp.streamable_http_app(), access_token)


# ═══════════════════════════════════════════════════════════════════════════
# Server Runner
# ═══════════════════════════════════════════════════════════════════════════


async def run_mcp_server(
    transport: str = "stdio",
    config: ServerConfig | None = None,
    host: str | None = None,
    port: int | None = None,
):
    """Start the MCP server with the specified transport.

    Args:
        transport: 'stdio' for local clients, 'http' for remote clients
        config: settings; loaded from the environment when omitted
        host, port: override HTTP_HOST / HTTP_PORT
    """
    config = config or load_server_config()
    mcp, holder = create_mcp_server(config=config)

    logger.info(f"SAPNote MCP server starting (transport={transport})", extra=config.describe())

    try:
        if transport == "http":
            app = create_http_app(mcp, config.access_token)
            server = uvicorn.Server(
                uvicorn.Config(
                    app,
                    host=host or config.http_host,
                    port=port or config.http_port,
                    log_level=config.log_level.lower(),
                )
            )
            await server.serve()
        else:
            await mcp.run_stdio_async()
    finally:
        await holder.shutdown()


# ═══════════════════════════════════════════════════════════════════════════
# Claude Desktop Auto-Setup
# ═══════════════════════════════════════════════════════════════════════════


def claude_desktop_config_path() -> Path | None:
    system = platform.system()
    if system == "Darwin":
        return Path.home() / "Library" / "Application Support" / "Claude" / "claude_desktop_config.json"
    if system == "Linux":
        return Path.home() / ".config" / "Claude" / "claude_desktop_config.json"
    if system == "Windows":
        return Path.home() / "AppData" / "Roaming" / "Claude" / "claude_desktop_config.json"
    return None


def setup_claude_desktop(config_path: Path | None = None) -> Path | None:
    """Add SAPNote to the Claude Desktop config. Idempotent.

    Certificate settings are not written; the server reads them from
    ~/.sapnote/config.yaml, a .env file or the environment.
    """
    config_path = config_path or claude_desktop_config_path()
    if config_path is None:
        print(f"Unsupported OS: {platform.system()}")
        print("Manually add SAPNote to your MCP client configuration.")
        return None

    desktop_config: dict = {}
    if config_path.exists():
        try:
            desktop_config = json.loads(config_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            desktop_config = {}

    command = _find_sapnote_executable()
    desktop_config.setdefault("mcpServers", {})
    if command == sys.executable:
        desktop_config["mcpServers"]["sapnote"] = {"command": command, "args": ["-m", "sapnote"]}
    else:
        desktop_config["mcpServers"]["sapnote"] = {"command": command, "args": []}

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(desktop_config, indent=2), encoding="utf-8")

    print("✅ SAPNote configured for Claude Desktop!")
    print(f"   Config: {config_path}")
    print(f"   Command: {command}")
    print()
    print("   Make sure PFX_PATH and PFX_PASSPHRASE are set in ~/.sapnote/config.yaml,")
    print("   then restart Claude Desktop to see the SAP Note tools.")
    return config_path


def _find_sapnote_executable() -> str:
    """Find the sapnote executable path."""
    which = shutil.which("sapnote")
    if which:
        return which

    candidates = [
        Path(sys.executable).parent / "sapnote",
        Path.home() / ".local" / "bin" / "sapnote",
    ]
    for candidate in candidates:
        if candidate.exists():
            return str(candidate)

    # Fallback: python module invocation
    return sys.executable
