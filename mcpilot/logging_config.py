"""
Logging setup for applications embedding mcpilot.

Library modules only create ``logging.getLogger(__name__)`` loggers; call
``setup_logging`` once at startup to route the ``mcpilot`` tree to the
console (rich) and optionally to a rotating file.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

MAX_LOG_SIZE = 10 * 1024 * 1024  # 10 MB per file
BACKUP_COUNT = 5


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Optional[Union[Path, str]] = None,
    file_level: int = logging.DEBUG,
) -> logging.Logger:
    """
    Configure the ``mcpilot`` logger.

    Args:
        level: Console level.
        log_file: Optional path for a rotating debug log.
        file_level: Level for the file handler.

    Returns:
        The configured ``mcpilot`` logger.
    """
    root_logger = logging.getLogger("mcpilot")
    root_logger.setLevel(logging.DEBUG)
    root_logger.propagate = False

    # Re-initialization replaces earlier handlers.
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter("%(name)s: %(message)s", datefmt="[%X]"))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=MAX_LOG_SIZE,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s.%(msecs)03d | %(levelname)-8s | %(name)-32s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root_logger.addHandler(file_handler)
        root_logger.debug("Logging to %s", log_path.absolute())

    return root_logger
