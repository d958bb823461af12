# log_setup.py
# Description: Loguru sink configuration and stdlib logging interception.
#
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from loguru import logger


LOG_LEVEL_ENV_VAR = "VISIONGRABBER_LOG_LEVEL"
_LOG_FORMAT = (
    "<dim>{time:YYYY-MM-DD HH:mm:ss.SSS}</dim> | "
    "<level>{level: <8}</level> | "
    "<yellow>req={extra[request_id]}</yellow> | "
    "<blue>{name}</blue>:<magenta>{function}</magenta>:<cyan>{line}</cyan> - {message}"
)


class InterceptHandler(logging.Handler):
    """Route stdlib records (uvicorn, httpx) into loguru."""

    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _ensure_log_extra_fields(record: dict) -> bool:
    record["extra"].setdefault("request_id", "")
    return True


def configure_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> None:
    """Reset loguru to one stderr sink and an optional rotating file sink."""
    level = (level or os.getenv(LOG_LEVEL_ENV_VAR) or "INFO").upper()
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=_LOG_FORMAT,
        colorize=sys.stderr.isatty(),
        filter=_ensure_log_extra_fields,
    )
    if log_file is not None:
        logger.add(
            str(log_file),
            level="DEBUG",
            format=_LOG_FORMAT,
            filter=_ensure_log_extra_fields,
            rotation="5 MB",
            retention=3,
            enqueue=True,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "httpx"):
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
