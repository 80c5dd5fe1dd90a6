import logging

import pytest

from dicomweb_gateway.log import configure_logging


@pytest.fixture
def root_logger():
    logger = logging.getLogger()
    handlers = list(logger.handlers)
    level = logger.level
    yield logger
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)


@pytest.mark.parametrize('verbosity,level,http_level', [
    (0, logging.ERROR, logging.ERROR),
    (1, logging.WARNING, logging.ERROR),
    (2, logging.INFO, logging.WARNING),
    (3, logging.DEBUG, logging.INFO),
    (4, logging.DEBUG, logging.DEBUG),
    (7, logging.DEBUG, logging.DEBUG),
])
def test_configure_logging(root_logger, verbosity, level, http_level):
    logger = configure_logging(verbosity)
    assert logger.name == 'dicomweb_gateway'
    assert logger.level == level
    forward_logger = logging.getLogger('dicomweb_gateway.forward')
    assert forward_logger.getEffectiveLevel() == level
    assert logging.getLogger('dicomweb_gateway.transport').level == (
        http_level
    )
    assert logging.getLogger('urllib3').level == http_level
    assert any(h.name == 'stderr' for h in root_logger.handlers)


def test_configure_logging_to_file(root_logger, tmp_path):
    log_file = tmp_path.joinpath('gateway.log')
    configure_logging(2, log_file=str(log_file))
    assert any(h.name == 'file' for h in root_logger.handlers)
    logging.getLogger('dicomweb_gateway.stow').info('stored 1 instance')
    for handler in root_logger.handlers:
        handler.flush()
    assert 'stored 1 instance' in log_file.read_text()


def test_header_parsing_warnings_are_dropped(root_logger):
    configure_logging(1)
    logger = logging.getLogger('urllib3.connectionpool')
    record = logger.makeRecord(
        logger.name,
        logging.WARNING,
        __file__,
        1,
        'Failed to parse headers (url=%s)',
        ('http://archive.example',),
        None
    )
    assert not logger.filter(record)
