# pyright: standard

"""restic-core: restic_core/__logger__.py
A common logger rendering through rich.
"""

import logging
import logging.handlers

from rich.console import Console
from rich.logging import RichHandler

# Initialize basic console and handler
cons = Console(stderr=True)
rich_handler = RichHandler(console=cons, show_path=False)
# Package root logger; modules log through logging.getLogger(__name__)
logger = logging.getLogger("restic_core")


def create_logger(level="INFO", log_file=None) -> None:
    """Helper function to setup logging for console and optional file output."""
    # pylint: disable=global-statement
    global cons, rich_handler

    cons = Console(stderr=True)
    rich_handler = RichHandler(console=cons, show_path=False)

    logger.handlers.clear()
    logger.propagate = False
    logger.setLevel(level)
    logger.addHandler(rich_handler)

    if log_file:
        file_handler = logging.handlers.WatchedFileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(file_handler)
