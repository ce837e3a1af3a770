"""
Tests for package logging setup.
"""

import logging

from crowdstats.utils.log_utils import ROOT_LOGGER, get_logger, setup_logging


def test_module_loggers_live_under_package_logger():
    assert get_logger("crowdstats.engine.reports").name == "crowdstats.engine.reports"
    assert get_logger("scripts.refresh").name == "crowdstats.scripts.refresh"
    assert get_logger(ROOT_LOGGER).name == ROOT_LOGGER


def test_setup_is_idempotent():
    logger = setup_logging()
    handlers = list(logger.handlers)

    assert setup_logging(logging.DEBUG) is logger
    assert logger.handlers == handlers


def test_handler_attached_to_package_logger_only():
    package_handlers = setup_logging().handlers
    assert any(isinstance(h, logging.StreamHandler) for h in package_handlers)
    assert not set(package_handlers) & set(logging.getLogger().handlers)
