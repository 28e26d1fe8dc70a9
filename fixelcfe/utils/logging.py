"""Console and file logging for fixelcfe commands.

All modules log through ``logging.getLogger(__name__)``, i.e. below the
``fixelcfe`` logger configured here. Long-running steps are wrapped in
:func:`timer`, and loops over fixels or shuffles report through
:class:`ProgressLogger`.
"""

import logging
import sys
import textwrap
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Optional, Union

from colorama import Fore, Style, init

init(autoreset=True)

BANNER_WIDTH = 60

LEVEL_COLORS = {
    logging.DEBUG: Fore.BLUE,
    logging.INFO: Fore.GREEN,
    logging.WARNING: Fore.YELLOW,
    logging.ERROR: Fore.RED,
    logging.CRITICAL: Fore.RED + Style.BRIGHT,
}


class ColoredFormatter(logging.Formatter):
    """Prefix console messages with a level name colored by severity."""

    def format(self, record: logging.LogRecord) -> str:
        color = LEVEL_COLORS.get(record.levelno, "")
        message = super().format(record)
        return f"{color}{record.levelname}{Style.RESET_ALL} - {message}"


def setup_logging(verbose: bool = False,
                  log_file: Optional[Union[str, Path]] = None) -> logging.Logger:
    """Configure the ``fixelcfe`` logger for a command-line run.

    Messages go to stdout with colored levels and, if ``log_file`` is given,
    to that file with timestamps and module names. Calling this again
    replaces the previous handlers.

    Args:
        verbose: Log DEBUG messages as well as INFO and above.
        log_file: Optional log file path.

    Returns:
        The ``fixelcfe`` logger.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logger = logging.getLogger("fixelcfe")
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(ColoredFormatter("%(message)s"))
    logger.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


@contextmanager
def timer(logger: logging.Logger, message: str):
    """Log the start and the duration of a processing step.

    Example:
        >>> with timer(logger, "Normalising connectivity matrix"):
        ...     norm_matrix = normalise_matrix(init_matrix, 0.01)
        INFO - Normalising connectivity matrix...
        INFO - Normalising connectivity matrix: done in 2.34s
    """
    logger.info(f"{message}...")
    start = time.perf_counter()
    try:
        yield
    finally:
        logger.info(f"{message}: done in {time.perf_counter() - start:.2f}s")


class ProgressLogger:
    """Periodic progress messages for long loops.

    An INFO line is emitted each time the count crosses a multiple of
    ``every``; :meth:`done` logs the final count at DEBUG level.
    """

    def __init__(self, logger: logging.Logger, message: str,
                 total: Optional[int] = None, every: int = 1000):
        self.logger = logger
        self.message = message
        self.total = total
        self.every = max(1, int(every))
        self.count = 0

    def increment(self, n: int = 1) -> None:
        previous = self.count
        self.count += n
        if self.count // self.every == previous // self.every:
            return
        if self.total:
            self.logger.info(f"  {self.message}: {self.count}/{self.total}")
        else:
            self.logger.info(f"  {self.message}: {self.count}")

    def done(self) -> None:
        self.logger.debug(f"  {self.message}: finished ({self.count} items)")


def log_section(logger: logging.Logger, title: str) -> None:
    """Log a banner separating the steps of a pipeline."""
    logger.info("=" * BANNER_WIDTH)
    logger.info(title)
    logger.info("=" * BANNER_WIDTH)


def log_config(logger: logging.Logger, config: Dict[str, Any],
               title: str = "Configuration") -> None:
    """Log a (possibly nested) configuration dictionary, one parameter per line."""

    def log_items(items: Dict[str, Any], indent: str) -> None:
        for key, value in items.items():
            if isinstance(value, dict):
                logger.info(f"{indent}{key}:")
                log_items(value, indent + "  ")
            else:
                logger.info(f"{indent}{key}: {value}")

    log_section(logger, title)
    log_items(config, "")
    logger.info("=" * BANNER_WIDTH)


def log_warning_box(logger: logging.Logger, message: str) -> None:
    """Log a warning framed in a box, wrapping long messages."""
    inner = BANNER_WIDTH - 4
    logger.warning("┌" + "─" * (inner + 2) + "┐")
    for line in textwrap.wrap(message, inner) or [""]:
        logger.warning(f"│ {line:<{inner}} │")
    logger.warning("└" + "─" * (inner + 2) + "┘")
