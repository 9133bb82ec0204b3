"""Logging configuration for the CLI and the tool-server stderr channel.

Application records go to ``mcpwire.log``.  Whatever tool-server processes
print on stderr is routed through ``mcpwire.servers.<name>`` loggers and, by
default, kept out of the main log in its own ``servers.log``.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Iterable

__all__ = ["SERVER_LOGGER_NAME", "setup_logging", "server_logger", "get_log_path", "get_server_log_path"]

SERVER_LOGGER_NAME = "mcpwire.servers"

_DEFAULT_LOG_DIR = Path.home() / ".mcpwire" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_SERVER_FORMAT = "%(asctime)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_CONFIGURED = False
_LOG_PATH: Path | None = None
_SERVER_LOG_PATH: Path | None = None


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    server_log: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging with a rotating file and an optional console handler.

    Args:
        level: Level for the root logger and its handlers.
        log_dir: Directory for the log files; ``MCPWIRE_LOG_DIR`` or
            ``~/.mcpwire/logs`` when omitted.
        console: Also log to stderr.
        server_log: Capture tool-server stderr in ``servers.log`` at DEBUG
            regardless of ``level``.  When ``False`` those lines propagate to
            the root handlers like any other record.
        max_bytes: Rotation threshold for each file.
        backup_count: Rotated files kept per log.
        force: Reconfigure even when logging was already set up.

    Returns:
        Path of the main log file.
    """

    global _CONFIGURED, _LOG_PATH, _SERVER_LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "mcpwire.log"
    formatter = logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT)

    handlers: list[logging.Handler] = [_rotating_handler(log_path, level, formatter, max_bytes, backup_count)]
    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(level)

    server_path = target_dir / "servers.log" if server_log else None
    _configure_server_channel(server_path, max_bytes, backup_count)

    _CONFIGURED = True
    _LOG_PATH = log_path
    _SERVER_LOG_PATH = server_path
    return log_path


def server_logger(server_names: Iterable[str] | str) -> logging.Logger:
    """Return the stderr logger for one server, or for a process shared by several."""

    if isinstance(server_names, str):
        label = server_names
    else:
        label = "+".join(sorted(server_names))
    # Dots would nest loggers per name segment.
    label = (label or "unknown").replace(".", "_")
    return logging.getLogger(f"{SERVER_LOGGER_NAME}.{label}")


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def get_server_log_path() -> Path | None:
    return _SERVER_LOG_PATH


def _rotating_handler(
    path: Path, level: int, formatter: logging.Formatter, max_bytes: int, backup_count: int
) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _configure_server_channel(path: Path | None, max_bytes: int, backup_count: int) -> None:
    channel = logging.getLogger(SERVER_LOGGER_NAME)
    for handler in list(channel.handlers):
        channel.removeHandler(handler)
        handler.close()
    if path is None:
        channel.setLevel(logging.NOTSET)
        channel.propagate = True
        return
    formatter = logging.Formatter(fmt=_SERVER_FORMAT, datefmt=_DATE_FORMAT)
    channel.addHandler(_rotating_handler(path, logging.DEBUG, formatter, max_bytes, backup_count))
    channel.setLevel(logging.DEBUG)
    channel.propagate = False


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("MCPWIRE_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
