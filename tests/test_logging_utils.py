# tests/test_logging_utils.py

import logging
import pytest

from scdelegate.logging_utils import init_logging, verbosity_to_level, log_verbose


def _get_handler_types():
    """Helper: return a list of handler class types currently installed."""
    return tuple(type(h) for h in logging.root.handlers)


@pytest.fixture
def reset_logging():
    """Ensure clean logging handlers before/after each test."""
    orig = logging.root.handlers[:]
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
    yield
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
    for h in orig:
        logging.root.addHandler(h)


def test_init_logging_stream_and_file(tmp_path, reset_logging):
    log_path = tmp_path / "log" / "de.log"
    init_logging(logfile=log_path, level=logging.INFO)

    assert _get_handler_types() == (logging.StreamHandler, logging.FileHandler)

    logging.getLogger("scdelegate.test").info("Running 3 comparison(s)")
    assert "Running 3 comparison(s)" in log_path.read_text()


def test_init_logging_replaces_handlers(reset_logging):
    logging.root.addHandler(logging.StreamHandler())
    init_logging(None)
    assert _get_handler_types() == (logging.StreamHandler,)


@pytest.mark.parametrize("verbosity,level", [(0, logging.WARNING), (1, logging.INFO), (2, logging.INFO)])
def test_verbosity_to_level(verbosity, level):
    assert verbosity_to_level(verbosity) == level


def test_verbosity_zero_still_logs_warnings(tmp_path, reset_logging):
    log_path = tmp_path / "quiet.log"
    init_logging(logfile=log_path, level=verbosity_to_level(0))

    logger = logging.getLogger("scdelegate.quiet")
    logger.info("info msg")
    logger.warning("warn msg")

    txt = log_path.read_text()
    assert "warn msg" in txt
    assert "info msg" not in txt


def test_log_verbose_gates_on_verbosity(caplog):
    logger = logging.getLogger("scdelegate.verbose")
    with caplog.at_level(logging.INFO):
        log_verbose(logger, 1, 1, "summary %d", 1)
        log_verbose(logger, 1, 2, "detail %d", 2)
        log_verbose(logger, 2, 2, "detail %d", 3)
        log_verbose(logger, 0, 1, "summary %d", 4)

    msgs = [r.getMessage() for r in caplog.records]
    assert msgs == ["summary 1", "detail 3"]
