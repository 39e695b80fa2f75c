"""Logging configuration using loguru.

Intercepts stdlib logging so that uvicorn, sqlalchemy, httpx and the
``execution`` modules (which log through ``logging.getLogger``) all flow
through loguru with a unified format.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from loguru import logger

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


class _InterceptHandler(logging.Handler):
    """Bridge stdlib logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk the call stack so loguru reports the real call-site
        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO", log_dir: str | Path | None = None) -> None:
    """Configure loguru as the sole logging sink.

    Call this once at process startup (before uvicorn starts).  When
    *log_dir* is given, a rotating ``godex.log`` file sink is added next to
    the stderr sink.
    """
    level = level.upper()

    logger.remove()
    logger.add(sys.stderr, level=level, format=_FORMAT)

    if log_dir is not None:
        path = Path(log_dir).expanduser()
        path.mkdir(parents=True, exist_ok=True)
        logger.add(
            path / "godex.log",
            level=level,
            format=_FORMAT,
            rotation="10 MB",
            retention=7,
            enqueue=True,
            colorize=False,
        )

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    for name in ("uvicorn.access", "httpx", "httpcore", "aiosqlite", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info("Logging initialised (level={}, log_dir={})", level, log_dir)
