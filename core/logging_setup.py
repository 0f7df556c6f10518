"""
core/logging_setup.py

Root logging for the SecureID CLI: one console handler plus one file
handler under logs_dir, both with the same line format.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Third-party loggers that are chatty at DEBUG (HTTP connection pool).
QUIET_LOGGERS = ("urllib3",)


def setup_logging(
    logs_dir: Union[str, Path],
    level: Union[int, str] = logging.INFO,
    filename: str = "secureid.log",
) -> Path:
    """
    Replace the root handlers with console + file output.

    level may be an int or a level name straight from the config file
    ("DEBUG", "info", ...); unknown names fall back to INFO.
    Returns the path of the log file.
    """
    logs_path = Path(logs_dir)
    logs_path.mkdir(parents=True, exist_ok=True)
    log_file = logs_path / filename

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.setLevel(level)

    fmt = logging.Formatter(LOG_FORMAT)
    handlers = (logging.StreamHandler(), logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(fmt)
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    return log_file
