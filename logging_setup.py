"""统一日志初始化（仅 stderr；stdio 传输占用 stdout）。"""

from __future__ import annotations

import logging
import os
import sys

_NOISY_LOGGERS = ("psycopg.pool", "httpx", "mcp.server.lowlevel.server")


def setup_global_logging(default_level: str = "") -> None:
    # Use the explicit call-site level first, then LOG_LEVEL.
    level_name = str(default_level or "").upper() or os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    # Restore logging if a previous test/runtime called logging.disable(...).
    logging.disable(logging.NOTSET)

    root = logging.getLogger()
    root.setLevel(level)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    has_stream = any(
        isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr for h in root.handlers
    )

    if not has_stream:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(formatter)
        stream.setLevel(level)
        root.addHandler(stream)
    else:
        for handler in root.handlers:
            handler.setLevel(level)

    if level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))
