"""Logging setup for supervisor runs."""

from __future__ import annotations

import logging
from pathlib import Path

from platformdirs import user_log_dir

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def default_log_path() -> Path:
    return Path(user_log_dir("resteep")) / "supervisor.log"


def configure_logging(log_file: Path | None = None, *, verbose: bool = False) -> Path:
    """Log to a file, and to stderr only for warnings unless verbose.

    The child owns the terminal most of the time, so routine supervisor
    messages stay out of it.
    """
    path = log_file or default_log_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(logging.INFO if verbose else logging.WARNING)
    file_handler = logging.FileHandler(path, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=[stream_handler, file_handler],
        force=True,
    )
    return path
