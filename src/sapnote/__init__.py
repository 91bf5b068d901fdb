"""SAPNote — SAP Note and KBA retrieval for MCP hosts."""

__version__ = "1.0.0"
__description__ = "MCP server for searching and reading SAP Notes with certificate login."

# Export key components
from sapnote.config import load_config, load_server_config, Config, ServerConfig
from sapnote.errors import SapNoteError

__all__ = ["load_config", "load_server_config", "Config", "ServerConfig", "SapNoteError"]
