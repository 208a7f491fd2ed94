"""
Tests for logging setup
"""
import logging
import logging.handlers

from utils.logger import setup_logger


def test_file_and_console_handlers(tmp_path):
    log_file = tmp_path / 'logs' / 'engine.log'
    logger = setup_logger('signal_engine.test', level='debug', log_file=str(log_file))

    assert logger.level == logging.DEBUG
    assert any(isinstance(h, logging.handlers.RotatingFileHandler) for h in logger.handlers)
    assert any(type(h) is logging.StreamHandler for h in logger.handlers)

    logger.info('position opened')
    for handler in logger.handlers:
        handler.flush()

    assert 'position opened' in log_file.read_text()

    for handler in logger.handlers:
        handler.close()


def test_repeated_setup_replaces_handlers():
    setup_logger('signal_engine.repeat')
    logger = setup_logger('signal_engine.repeat', level='WARNING')

    assert len(logger.handlers) == 1
    assert logger.level == logging.WARNING
