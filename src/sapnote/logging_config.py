"""
Structured Logging for SAPNote

JSON logging to file with rotation, optional console output on stderr.
stdout is reserved for the stdio MCP transport, so nothing here writes to it.

Secrets (certificate passphrase, session cookies, bearer tokens) are redacted
from structured fields and masked in messages.
"""

import logging
import logging.handlers
import json
import re
from pathlib import Path
import sys

REDACTED = "[REDACTED]"

# Structured extras copied into the JSON record when present
_EXTRA_FIELDS = (
    "tool_name",
    "note_id",
    "query",
    "strategy",
    "status",
    "duration_ms",
    "cookie_count",
    "browser_type",
    "headless",
    "url",
    "verbose",
)

_SENSITIVE_KEYS = ("passphrase", "password", "token", "access_token", "cookie", "authorization")

_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE)
_JWT_RE = re.compile(r"eyJ[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]+")


def redact_text(text: str) -> str:
    """Mask bearer tokens and JWTs inside free-form text."""
    text = _BEARER_RE.sub(r"\1" + REDACTED, text)
    return _JWT_RE.sub(REDACTED, text)


def _is_sensitive(key: str) -> bool:
    key = key.lower()
    return any(marker in key for marker in _SENSITIVE_KEYS)


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for machine parsing."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_text(record.getMessage()),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = redact_text(self.formatException(record.exc_info))

        # Add extra fields
        for field in _EXTRA_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        # Anything passed as extra={"...token": ...} never reaches the file
        for key, value in record.__dict__.items():
            if _is_sensitive(key) and key not in log_data:
                log_data[key] = REDACTED

        return json.dumps(log_data, default=str)


class RedactingFormatter(logging.Formatter):
    """Plain console formatter with the same masking as the JSON file."""

    def format(self, record: logging.LogRecord) -> str:
        return redact_text(super().format(record))


def setup_logging(verbose: bool = False, level: str = "INFO", log_dir: Path | None = None):
    """
    Setup structured logging for SAPNote.

    Args:
        verbose: If True, also log to stderr (for --verbose flag)
        level: Console level used with verbose
        log_dir: Override for ~/.sapnote/logs

    Returns:
        Logger instance
    """
    log_dir = log_dir or Path.home() / ".sapnote" / "logs"
    root_logger = logging.getLogger("sapnote")

    # Clear existing handlers
    root_logger.handlers.clear()
    root_logger.propagate = False

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except (OSError, PermissionError) as e:
        # If we can't create logs dir, log to stderr only
        root_logger.setLevel(logging.WARNING if not verbose else logging.INFO)

        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.WARNING)
        console_handler.setFormatter(RedactingFormatter("[%(levelname)s] %(message)s"))
        root_logger.addHandler(console_handler)

        if verbose:
            root_logger.warning(f"Could not create log directory: {e}")

        return root_logger

    log_file = log_dir / "sapnote.log"

    root_logger.setLevel(logging.DEBUG)

    # File handler with rotation (10MB max, keep last 5 files)
    try:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)
    except (OSError, PermissionError) as e:
        # Fall back to stderr only
        if verbose:
            print(f"Warning: Could not create log file: {e}", file=sys.stderr)

    # Console handler: warnings always, everything at `level` when verbose
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO) if verbose else logging.WARNING)
    console_handler.setFormatter(RedactingFormatter("[%(levelname)s] %(name)s: %(message)s"))
    root_logger.addHandler(console_handler)

    # Log startup
    root_logger.info("SAPNote logging initialized", extra={"verbose": verbose})

    return root_logger
