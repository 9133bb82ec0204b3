"""Tests for the logging helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

import pytest

from mcpwire.utils import logging as logging_utils


@pytest.fixture
def restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    channel = logging.getLogger(logging_utils.SERVER_LOGGER_NAME)
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        yield
    finally:
        for handler in root.handlers:
            if handler not in saved_handlers:
                handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
        for handler in list(channel.handlers):
            channel.removeHandler(handler)
            handler.close()
        channel.setLevel(logging.NOTSET)
        channel.propagate = True


def _flush() -> None:
    for logger in (logging.getLogger(), logging.getLogger(logging_utils.SERVER_LOGGER_NAME)):
        for handler in logger.handlers:
            handler.flush()


def test_setup_logging_writes_rotating_file(tmp_path: Path, restore_logging: None) -> None:
    path = logging_utils.setup_logging(logging.DEBUG, log_dir=tmp_path, console=False, force=True)
    logging.getLogger("mcpwire.test").info("hello log file")
    _flush()

    assert path == tmp_path / "mcpwire.log"
    assert logging_utils.get_log_path() == path
    assert "hello log file" in path.read_text(encoding="utf-8")
    assert logging.getLogger("httpx").level == logging.WARNING


def test_server_stderr_goes_to_its_own_file(tmp_path: Path, restore_logging: None) -> None:
    path = logging_utils.setup_logging(logging.INFO, log_dir=tmp_path, console=False, force=True)

    logging_utils.server_logger(["fs", "fs2"]).debug("listening on stdio")
    _flush()

    server_path = logging_utils.get_server_log_path()
    assert server_path == tmp_path / "servers.log"
    server_text = server_path.read_text(encoding="utf-8")
    assert "mcpwire.servers.fs+fs2 | listening on stdio" in server_text
    assert "listening on stdio" not in path.read_text(encoding="utf-8")


def test_server_stderr_can_share_the_main_log(tmp_path: Path, restore_logging: None) -> None:
    path = logging_utils.setup_logging(
        logging.DEBUG, log_dir=tmp_path, console=False, server_log=False, force=True
    )

    logging_utils.server_logger("tasks.v2").debug("warming cache")
    _flush()

    assert logging_utils.get_server_log_path() is None
    assert "mcpwire.servers.tasks_v2 | warming cache" in path.read_text(encoding="utf-8")


def test_log_dir_defaults_to_environment(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("MCPWIRE_LOG_DIR", str(tmp_path / "env-logs"))

    assert logging_utils._resolve_log_dir(None) == tmp_path / "env-logs"
    assert logging_utils._resolve_log_dir(tmp_path / "explicit") == tmp_path / "explicit"
