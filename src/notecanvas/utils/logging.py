"""Logging setup for the notecanvas CLI.

Every record is stamped with the chat session token of the task that
emitted it, so interleaved tool-call logs from an invalidated session can be
told apart from the current one. Secrets registered with
:func:`register_secret` (the API key, typically) are masked before any
handler writes them.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

from ..ai.orchestration.model_types import SESSION_TOKEN

__all__ = ["SecretRedactingFilter", "SessionContextFilter", "register_secret", "setup_logging"]

_DEFAULT_LOG_DIR = Path.home() / ".notecanvas" / "logs"
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | session=%(session)s | %(message)s"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_MIN_SECRET_LENGTH = 6
_CONFIGURED = False
_LOG_PATH: Path | None = None


class SessionContextFilter(logging.Filter):
    """Adds ``record.session``: the active session token, or ``-`` outside a turn."""

    def filter(self, record: logging.LogRecord) -> bool:
        token = SESSION_TOKEN.get()
        record.session = "-" if token is None else str(token)
        return True


class SecretRedactingFilter(logging.Filter):
    """Masks registered secret values in the rendered message."""

    def __init__(self, mask: str = "********") -> None:
        super().__init__()
        self.mask = mask
        self._secrets: set[str] = set()

    def add(self, secret: str | None) -> None:
        # Short values would mask ordinary words.
        if secret and len(secret) >= _MIN_SECRET_LENGTH:
            self._secrets.add(secret)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in self._secrets:
            redacted = redacted.replace(secret, self.mask)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


_REDACTOR = SecretRedactingFilter()


def register_secret(secret: str | None) -> None:
    """Keep ``secret`` out of every log line written from now on."""

    _REDACTOR.add(secret)


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging with a rotating file and, optionally, stderr."""

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "notecanvas.log"

    handlers = _build_handlers(log_path, level, console=console, max_bytes=max_bytes, backup_count=backup_count)
    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def _build_handlers(
    log_path: Path,
    level: int,
    *,
    console: bool,
    max_bytes: int,
    backup_count: int,
) -> list[logging.Handler]:
    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        # stderr keeps streamed assistant text on stdout clean
        handlers.append(logging.StreamHandler())
    session_filter = SessionContextFilter()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(session_filter)
        handler.addFilter(_REDACTOR)
    return handlers


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("NOTECANVAS_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
