"""
Error types and error logging utilities for medctx.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class ContextError(Exception):
    """Base class for all medctx errors."""


class EmbeddingError(ContextError):
    """A provider could not produce an embedding."""


class DimensionMismatch(EmbeddingError):
    """A provider returned a vector of unexpected length."""

    def __init__(self, expected: int, actual: int, provider: str = ""):
        self.expected = expected
        self.actual = actual
        self.provider = provider
        source = f" from {provider}" if provider else ""
        super().__init__(
            f"Invalid embedding dimensions{source}: expected {expected}, got {actual}"
        )


class ProviderUnavailable(EmbeddingError):
    """The provider cannot serve requests right now (skipped, not surfaced)."""


class ProviderTimeout(EmbeddingError):
    """A provider call exceeded its time budget."""


class AllProvidersFailed(EmbeddingError):
    """Every candidate provider was unavailable or failed."""

    def __init__(self, errors: Optional[dict[str, BaseException]] = None):
        self.errors = dict(errors or {})
        if self.errors:
            detail = "; ".join(f"{name}: {exc}" for name, exc in self.errors.items())
            message = f"All embedding providers failed ({detail})"
        else:
            message = "All embedding providers failed (no provider available)"
        super().__init__(message)


class InvalidSearchInput(ContextError, ValueError):
    """Search terms were missing, empty, or not a list of strings."""


class DocumentNotFound(ContextError, KeyError):
    """An explicitly requested document is not in the store."""

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Document not found: {document_id}")

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return self.args[0]


def _error_log_path() -> Path:
    """Resolve error log path, respecting MEDCTX_CONFIG_DIR."""
    config_dir = os.environ.get("MEDCTX_CONFIG_DIR")
    if config_dir:
        return Path(config_dir) / "medctx-errors.log"
    return Path.home() / ".medctx" / "medctx-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log, don't crash over it
    return log_path
