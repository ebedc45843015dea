# src/malunita/logging_setup.py

from __future__ import annotations

import logging
import sys
from pathlib import Path

# Store, queue and remote lifecycle lines (confirmed / queued / refreshed).
SYNC_LOGGER_PREFIX = "malunita.tasks."

NOISY_LIBRARIES = ("httpx", "httpcore", "openai")


class _ConsoleNoiseFilter(logging.Filter):
    """
    Keep the capture prompt readable:
    - malunita logs pass
    - sync lifecycle logs (malunita.tasks.*) only at `sync_level`+, they still reach the file log;
      a DEBUG console shows them all
    - third-party noise and captured Python warnings only at ERROR+
    """

    def __init__(self, sync_level: int = logging.WARNING, console_level: int = logging.INFO) -> None:
        super().__init__()
        self.sync_level = logging.DEBUG if console_level <= logging.DEBUG else sync_level

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name

        if name.startswith(SYNC_LOGGER_PREFIX):
            return record.levelno >= self.sync_level

        if name.startswith("malunita."):
            return True

        # py.warnings falls through here as well.
        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    log_dir: str | Path = ".local/malunita",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    sync_console_level: int = logging.WARNING,
) -> Path:
    """
    Configure logging with:
    - Console handler: filtered for interactive capture (rollbacks and dropped
      mutations show up, routine confirmations don't)
    - File handler: full logs, including every store/queue transition

    Call this ONCE, very early (before first logger.info). Returns the log file path.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "malunita.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(console_level)
    ch.setFormatter(fmt)
    ch.addFilter(_ConsoleNoiseFilter(sync_level=sync_console_level, console_level=console_level))
    root.addHandler(ch)

    fh = logging.FileHandler(str(log_file), encoding="utf-8")
    fh.setLevel(file_level)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.captureWarnings(True)
    return log_file
