import logging
import os

from rich.logging import RichHandler

ROOT_NAME = "market"


class CenteredFormatter(logging.Formatter):
    """Centers the short logger name in a column as wide as the longest one seen."""

    width = 12

    def format(self, record):
        name = record.name.removeprefix(f"{ROOT_NAME}.")
        CenteredFormatter.width = max(CenteredFormatter.width, len(name))
        record = logging.makeLogRecord(record.__dict__)
        record.name = name.center(CenteredFormatter.width)
        return super().format(record)


def _log_level() -> int:
    if os.getenv("DEBUG"):
        return logging.DEBUG
    name = os.getenv("MARKET_LOG_LEVEL", "INFO").upper()
    return logging.getLevelNamesMapping().get(name, logging.INFO)


def _configure_root() -> logging.Logger:
    root = logging.getLogger(ROOT_NAME)
    if root.handlers:
        return root

    level = _log_level()
    root.setLevel(level)
    root.propagate = False

    console = RichHandler(
        show_time=True,
        show_level=True,
        show_path=False,
        rich_tracebacks=True,
        log_time_format="[%X]",
    )
    console.setFormatter(CenteredFormatter("[%(name)s]  %(message)s"))
    root.addHandler(console)

    # the terminal UI owns the screen while it runs; a file keeps the full log
    log_file = os.getenv("MARKET_LOG_FILE")
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
        )
        root.addHandler(file_handler)

    root.debug(f"Logging at {logging.getLevelName(level)}")
    return root


def get_logger(name=None) -> logging.Logger:
    """
    Returns a logger below the shared "market" logger.

    The shared logger prints through rich's RichHandler and, when MARKET_LOG_FILE
    is set, also appends to that file. Level is DEBUG when the DEBUG env var is
    set, otherwise MARKET_LOG_LEVEL (default INFO).
    """
    root = _configure_root()
    if not name or name == ROOT_NAME:
        return root
    return root.getChild(name)
