"""
SAPNote — Error Taxonomy

Every failure the server reports carries a stable ``kind`` so the tool layer
can render it as ``**Error (<kind>):** <message>`` and decide on retries.

Fatal (misconfiguration, never retried):
    ConfigError, CertificateError, BrowserUnavailableError

Retryable by the caller:
    AuthTimeoutError, AuthenticationFailedError, TokenExtractionError,
    SearchFailedError, UpstreamTimeoutError

Special:
    SessionExpiredError — a previously valid vendor session was rejected.
    The cached session is invalidated and the caller re-authenticates
    before retrying exactly once.
"""

from __future__ import annotations


class SapNoteError(Exception):
    """Base class for all sapnote errors."""

    kind = "error"
    retryable = False

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.cause is not None and str(self.cause) not in self.message:
            return f"{self.message}: {self.cause}"
        return self.message


class ConfigError(SapNoteError):
    """Required configuration is missing or invalid."""

    kind = "config"


class InvalidInputError(SapNoteError):
    """Caller input rejected before any network call."""

    kind = "invalid_input"


# ═══════════════════════════════════════════════════════════════════════════
# Authentication
# ═══════════════════════════════════════════════════════════════════════════


class CertificateError(SapNoteError):
    """Client certificate missing, unreadable or empty."""

    kind = "certificate"

    def __init__(self, cert_path: str, reason: str, cause: BaseException | None = None):
        super().__init__(f"Failed to load certificate from {cert_path}: {reason}", cause)
        self.cert_path = cert_path


class BrowserUnavailableError(SapNoteError):
    """Browser engine or its executable cannot be resolved."""

    kind = "browser_unavailable"

    def __init__(self, browser_type: str, detail: str = "", cause: BaseException | None = None):
        message = f"Browser {browser_type} not available"
        if detail:
            message += f" ({detail})"
        message += ". Run: playwright install " + browser_type
        super().__init__(message, cause)
        self.browser_type = browser_type


class AuthTimeoutError(SapNoteError):
    """A bounded authentication step exceeded its deadline."""

    kind = "auth_timeout"
    retryable = True

    def __init__(self, step: str, timeout_s: float, cause: BaseException | None = None):
        super().__init__(f"Authentication timed out after {timeout_s:g}s ({step})", cause)
        self.step = step
        self.timeout_s = timeout_s


class AuthenticationFailedError(SapNoteError):
    """Catch-all for unexpected failures during login."""

    kind = "authentication_failed"
    retryable = True


class SessionExpiredError(SapNoteError):
    """The vendor rejected a session that was previously valid."""

    kind = "session_expired"
    retryable = True


# ═══════════════════════════════════════════════════════════════════════════
# Token derivation + retrieval
# ═══════════════════════════════════════════════════════════════════════════


class TokenExtractionError(SapNoteError):
    """No search bearer token could be derived from the session."""

    kind = "token_extraction"
    retryable = True


class SearchFailedError(SapNoteError):
    """The structured search API returned an error or was unreachable."""

    kind = "search_failed"
    retryable = True

    def __init__(self, message: str, status_code: int | None = None, cause: BaseException | None = None):
        super().__init__(message, cause)
        self.status_code = status_code


class UpstreamTimeoutError(SapNoteError):
    """An outbound request to the vendor exceeded its deadline."""

    kind = "upstream_timeout"
    retryable = True


def error_kind(exc: BaseException) -> str:
    """Taxonomy kind for any exception (``internal`` for foreign ones)."""
    if isinstance(exc, SapNoteError):
        return exc.kind
    return "internal"
