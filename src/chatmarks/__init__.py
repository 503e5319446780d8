"""Chatmarks - text anchoring and overlap-aware highlighting for chat transcripts.

Captures a selection inside a conversation message as a multi-strategy
anchor, finds it again after the page re-rendered, and paints overlapping
highlights as flat, non-nested markers.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chatmarks.config import LoggingConfig

__version__ = "0.1.0"


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Configure logging to the console and, optionally, a rotating file.

    Library code only ever logs through module loggers; applications that
    embed chatmarks call this at startup. Calling it again replaces the
    handlers installed by the previous call.
    """
    if config is None:
        from chatmarks.config import get_settings

        config = get_settings().logging

    level = logging.getLevelName(config.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    package_logger = logging.getLogger("chatmarks")
    package_logger.setLevel(logging.DEBUG)

    # Reconfiguring replaces the previous handlers
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    # Console handler - less verbose
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    package_logger.addHandler(console_handler)

    if not config.file_logging:
        return

    config.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = config.log_dir / f"chatmarks.{os.getpid()}.log"

    # File handler - detailed logging with rotation (10MB, keep 5 backups)
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    package_logger.addHandler(file_handler)

    package_logger.info("Logging configured. Log file: %s", log_file.absolute())
