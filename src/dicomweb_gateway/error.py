'''Custom error classes'''


class GatewayError(Exception):
    '''Base exception class for errors raised by the gateway.

    Attributes
    ----------
    status_code: int
        HTTP status code that corresponds to the error

    '''
    status_code = 500


class BadFileFormatError(GatewayError, ValueError):
    '''Exception class for malformed request bodies or selectors.'''
    status_code = 400


class MalformedMultipartError(BadFileFormatError):
    '''Exception class for malformed multipart message bodies.'''
    pass


class UnsupportedMediaTypeError(GatewayError, ValueError):
    '''Exception class for unexpected top-level or part media types.'''
    status_code = 415


class UnknownResourceError(GatewayError, LookupError):
    '''Exception class for resources that could not be found.'''
    status_code = 404


class NetworkProtocolError(GatewayError, IOError):
    '''Exception class for remote peers that violate the DICOMweb contract.'''
    status_code = 502


class InternalError(GatewayError, RuntimeError):
    '''Exception class for inconsistent locally-controlled data.'''
    pass


class NotEnoughMemoryError(GatewayError, MemoryError):
    '''Exception class for resource exhaustion.'''
    pass


class RepositoryError(GatewayError, IOError):
    '''Exception class for data rejected or not served by the repository.'''
    pass
