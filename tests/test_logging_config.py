"""Tests for logging configuration."""

import logging

import pytest

from fromsource import logging_config
from fromsource.logging_config import configure_logging, verbosity_to_level


@pytest.fixture
def fresh_logger():
    logger = logging.getLogger("fromsource")
    saved_handlers, saved_level = list(logger.handlers), logger.level
    yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in saved_handlers:
        logger.addHandler(handler)
    logger.setLevel(saved_level)
    logging_config._CONFIGURED = False


def test_log_file_and_level_from_environment(tmp_path, monkeypatch, fresh_logger):
    log_file = tmp_path / "logs" / "fromsource.log"
    monkeypatch.setenv("FROMSOURCE_LOG_LEVEL", "info")
    monkeypatch.setenv("FROMSOURCE_LOG_FILE", str(log_file))
    configure_logging(force=True)

    logging.getLogger("fromsource.kernel.bootstrap").info("pkg==1.0: took 1.50s to build")
    logging.getLogger("fromsource.kernel.bootstrap").debug("hidden")
    for handler in fresh_logger.handlers:
        handler.flush()

    text = log_file.read_text(encoding="utf-8")
    assert "INFO fromsource.kernel.bootstrap: pkg==1.0: took 1.50s to build" in text
    assert "hidden" not in text


def test_explicit_level_wins(monkeypatch, fresh_logger):
    monkeypatch.setenv("FROMSOURCE_LOG_LEVEL", "error")
    monkeypatch.delenv("FROMSOURCE_LOG_FILE", raising=False)
    configure_logging(logging.DEBUG, force=True)
    assert fresh_logger.level == logging.DEBUG
    assert len(fresh_logger.handlers) == 1


def test_unknown_level_is_rejected(fresh_logger):
    with pytest.raises(ValueError):
        configure_logging("chatty", force=True)


def test_verbosity_mapping():
    assert verbosity_to_level(0) is None
    assert verbosity_to_level(1) == logging.INFO
    assert verbosity_to_level(3) == logging.DEBUG
    assert verbosity_to_level(2, quiet=True) == logging.ERROR
