"""Process logging setup.

Lines look like:
    [2025-01-31 12:00:00.123] [WARNING] [middleware.py:97] STORE_UNAVAILABLE: ...

Output goes to stdout and, when a log file is given, to that file as well.
setup_logging() is idempotent: the second call is a no-op.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "[%(asctime)s.%(msecs)03d] [%(levelname)s] [%(filename)s:%(lineno)d] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers kept at WARNING
_SUPPRESSED_LOGGERS = (
    "httpx",
    "uvicorn.access",
)

_configured = False


def setup_logging(level: str = "INFO", log_file: str | Path | None = None) -> None:
    """Configure the root logger once."""
    global _configured
    if _configured:
        return
    _configured = True

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_file:
        path = Path(log_file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(path, encoding="utf-8"))
        except OSError:
            logging.getLogger(__name__).warning(
                "Cannot open log file %s, logging to stdout only", path, exc_info=True
            )

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in _SUPPRESSED_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
