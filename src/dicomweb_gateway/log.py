"""Logging configuration of the command line program.

Messages of the transactions (store, forward, retrieve and WADO-URI) are
shown one verbosity level earlier than messages about individual HTTP
requests, which are only of interest when debugging a remote server.

"""
import sys
import logging
from typing import Optional

_PACKAGE_NAME = __name__.split('.')[0]

# Loggers that report individual HTTP requests and data chunks
_HTTP_LOGGER_NAMES = (f'{_PACKAGE_NAME}.transport', 'urllib3')

_LEVELS = (logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG)


class _HeaderParsingErrorFilter(logging.Filter):

    """Drops urllib3 warnings about unparsable headers of multipart
    responses (see https://github.com/urllib3/urllib3/issues/800).
    """

    def filter(self, record: logging.LogRecord) -> bool:
        return 'Failed to parse headers' not in record.getMessage()


def _map_logging_verbosity(verbosity: int) -> int:
    if verbosity < 0:
        return _LEVELS[0]
    return _LEVELS[min(verbosity, len(_LEVELS) - 1)]


def _create_formatter(verbosity: int) -> logging.Formatter:
    if verbosity > 3:
        fmt = (
            '%(asctime)s | %(levelname)-8s | %(name)-32s | '
            '%(lineno)-4s | %(message)s'
        )
    else:
        fmt = '%(asctime)s | %(levelname)-8s | %(name)-32s | %(message)s'
    return logging.Formatter(fmt=fmt, datefmt='%Y-%m-%d %H:%M:%S')


def configure_logging(
    verbosity: int,
    log_file: Optional[str] = None
) -> logging.Logger:
    """Configures logging of the gateway.

    Log messages are written to standard error, such that status documents
    and identifiers written to standard output can be captured separately,
    and optionally appended to a file.

    Verbosity maps to levels as follows:

    ========= ===================== =====================
    verbosity transactions          HTTP requests
    ========= ===================== =====================
    0         ERROR                 ERROR
    1         WARNING               ERROR
    2         INFO                  WARNING
    3         DEBUG                 INFO
    4         DEBUG (line numbers)  DEBUG (line numbers)
    ========= ===================== =====================

    Parameters
    ----------
    verbosity: int
        Logging verbosity
    log_file: Union[str, None], optional
        Path to a file to which log messages should be appended

    Returns
    -------
    logging.Logger
        Package logger

    """
    formatter = _create_formatter(verbosity)
    handlers = [logging.StreamHandler(stream=sys.stderr)]
    handlers[0].name = 'stderr'
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file))
        handlers[-1].name = 'file'

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.ERROR)
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    pkg_logger = logging.getLogger(_PACKAGE_NAME)
    pkg_logger.setLevel(_map_logging_verbosity(verbosity))

    http_level = _map_logging_verbosity(
        verbosity if verbosity > 3 else verbosity - 1
    )
    for name in _HTTP_LOGGER_NAMES:
        logging.getLogger(name).setLevel(http_level)
    logging.getLogger('urllib3.connectionpool').addFilter(
        _HeaderParsingErrorFilter()
    )

    return pkg_logger
