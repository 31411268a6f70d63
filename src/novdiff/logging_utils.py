from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s"


def resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return value


def setup_logging(log_path: Path | None = None, level: int | str = logging.INFO) -> logging.Logger:
    """Install a rich stderr handler plus an optional UTF-8 file handler.

    Console output goes to stderr so commands that print JSON to stdout stay
    machine-readable. The file handler records thread names, since background
    analyses run on worker threads.
    """
    handlers: list[logging.Handler] = [
        RichHandler(
            console=Console(stderr=True),
            rich_tracebacks=True,
            show_path=False,
            show_time=True,
            show_level=True,
        )
    ]
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(_FILE_FORMAT, "%Y-%m-%d %H:%M:%S"))
        handlers.append(fh)

    logging.basicConfig(level=resolve_level(level), handlers=handlers, format="%(message)s", force=True)
    return logging.getLogger("novdiff")
