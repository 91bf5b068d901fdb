"""
SAPNote — Credential Store

Durable copy of the last successful vendor session:

    {"access_token": "<cookie string>", "cookies": [...], "expiresAt": <epoch ms>}

The record is always read and written whole. A missing or unreadable file is
not an error; it only means the next call logs in again.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from sapnote.models import SessionRecord

logger = logging.getLogger("sapnote.credential_store")


class CredentialStore:
    """JSON file holding one SessionRecord."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> SessionRecord | None:
        """Read the cached record, or None if there is no usable one."""
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return SessionRecord.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable credential cache {self.path}: {e}")
            return None

    def save(self, record: SessionRecord) -> None:
        """Replace the cached record atomically.

        Written to a temp file in the same directory, then renamed over the
        old one, so readers never observe a half-written record.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".token-cache-", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record.to_json_dict(), f, indent=2)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info("Session cached", extra={"cookie_count": len(record.cookies)})

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove credential cache {self.path}: {e}")
