import logging
from pathlib import Path
from typing import Optional


def init_logging(logfile: Optional[Path] = None, level: int = logging.INFO) -> None:
    """
    Initialize logging with a stream handler + optional file handler.
    All existing handlers are removed to avoid duplicates.
    """

    # Remove any pre-configured handlers (important for Typer)
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)

    handlers = [logging.StreamHandler()]

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile, mode="w"))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )


def verbosity_to_level(verbosity: int) -> int:
    """verbosity 0 keeps only warnings on the console; 1 and 2 show INFO."""
    return logging.WARNING if int(verbosity) <= 0 else logging.INFO


def log_verbose(logger: logging.Logger, verbosity: int, min_verbosity: int, msg: str, *args) -> None:
    """
    Log msg at INFO when verbosity >= min_verbosity.

    verbosity: 0 silent, 1 summary messages, 2 detailed messages.
    Warnings and errors never go through here.
    """
    if int(verbosity) >= int(min_verbosity):
        logger.info(msg, *args)
