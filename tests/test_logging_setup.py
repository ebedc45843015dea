# tests/test_logging_setup.py

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest

from malunita.logging_setup import _ConsoleNoiseFilter, setup_logging


def _record(name: str, level: int) -> logging.LogRecord:
    return logging.LogRecord(name, level, __file__, 1, "msg", None, None)


@pytest.fixture()
def restore_root_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)
    logging.captureWarnings(False)


def test_console_filter_keeps_sync_chatter_off_the_prompt() -> None:
    f = _ConsoleNoiseFilter()

    assert f.filter(_record("malunita.cli.commands", logging.INFO))
    assert not f.filter(_record("malunita.tasks.optimistic_store", logging.INFO))
    assert f.filter(_record("malunita.tasks.optimistic_store", logging.WARNING))
    assert f.filter(_record("malunita.tasks.offline_queue", logging.ERROR))
    assert not f.filter(_record("httpx", logging.WARNING))
    assert not f.filter(_record("py.warnings", logging.WARNING))
    assert f.filter(_record("openai", logging.ERROR))


def test_debug_console_shows_sync_lifecycle() -> None:
    f = _ConsoleNoiseFilter(console_level=logging.DEBUG)
    assert f.filter(_record("malunita.tasks.offline_queue", logging.DEBUG))


def test_file_log_gets_full_sync_lifecycle(tmp_path, restore_root_logging) -> None:
    log_file = setup_logging(log_dir=tmp_path)
    logging.getLogger("malunita.tasks.optimistic_store").debug("Optimistic create id=temp-1")
    for h in logging.getLogger().handlers:
        h.flush()

    assert log_file == tmp_path / "malunita.log"
    assert "Optimistic create id=temp-1" in log_file.read_text("utf-8")
    assert logging.getLogger("httpx").level == logging.WARNING
