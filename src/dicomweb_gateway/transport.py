"""Transport for calling remote DICOMweb servers over HTTP."""
import dataclasses
import logging
import os
from http import HTTPStatus
from typing import Dict, Iterator, Mapping, Optional, Tuple

import requests
import retrying
from requests.structures import CaseInsensitiveDict

from dicomweb_gateway.uri import join_url

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class RemoteServer:

    """Remote DICOMweb server.

    Attributes
    ----------
    url: str
        Base URL of the DICOMweb service
    headers: Dict[str, str]
        Header fields that should be included in every request message,
        e.g., authentication tokens
    username: Union[str, None]
        Username for HTTP basic authentication
    password: Union[str, None]
        Password for HTTP basic authentication
    ca_bundle: Union[str, None]
        Path to CA bundle file
    cert: Union[str, None]
        Path to client certificate file

    """

    url: str
    headers: Dict[str, str] = dataclasses.field(default_factory=dict)
    username: Optional[str] = None
    password: Optional[str] = None
    ca_bundle: Optional[str] = None
    cert: Optional[str] = None


def _resolve_file(path: str, description: str) -> str:
    path = os.path.expanduser(os.path.expandvars(path))
    if not os.path.exists(path):
        raise OSError(f'{description} file does not exist: {path}')
    return path


def create_session(server: RemoteServer) -> requests.Session:
    """Creates a session for requests to a remote server.

    The session is authorized by HTTP basic authentication if the server
    has a username and verified with the server's CA bundle and client
    certificate, if any.

    Parameters
    ----------
    server: dicomweb_gateway.transport.RemoteServer
        Remote DICOMweb server

    Returns
    -------
    requests.Session
        session for the server

    Raises
    ------
    OSError
        When the CA bundle or certificate file does not exist

    """
    logger.debug(f'initialize HTTP session for "{server.url}"')
    session = requests.Session()
    if server.username is not None:
        logger.debug(f'authorize HTTP session as user "{server.username}"')
        session.auth = (server.username, server.password or '')
    if server.ca_bundle is not None:
        session.verify = _resolve_file(server.ca_bundle, 'CA bundle')
        logger.debug(f'use CA bundle file: {session.verify}')
    if server.cert is not None:
        session.cert = _resolve_file(server.cert, 'Certificate')
        logger.debug(f'use certificate file: {session.cert}')
    return session


def get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Look up a header field by its case-insensitive name."""
    name = name.strip().lower()
    for key, value in headers.items():
        if key.strip().lower() == name:
            return value
    return None


class DICOMwebTransport:

    """Issues HTTP requests to remote DICOMweb servers.

    A session is created for each server (with the server's credentials and
    certificates) unless a session is passed to the constructor, in which case
    that session is used for all servers.

    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        chunk_size: int = 10**6
    ) -> None:
        """Instantiate transport.

        Parameters
        ----------
        session: Union[requests.Session, None], optional
            Session that should be used for all requests
        chunk_size: int, optional
            Maximum number of bytes that should be transferred per data chunk
            when posting large messages using chunked transfer encoding

        """
        self._session = session
        self._sessions: Dict[Tuple, requests.Session] = {}
        self._chunk_size = chunk_size
        self.set_http_retry_params()

    def set_http_retry_params(
        self,
        retry: bool = True,
        max_attempts: int = 5,
        wait_exponential_multiplier: int = 1000,
        retriable_error_codes: Tuple[HTTPStatus, ...] = (
            HTTPStatus.TOO_MANY_REQUESTS,
            HTTPStatus.REQUEST_TIMEOUT,
            HTTPStatus.SERVICE_UNAVAILABLE,
            HTTPStatus.GATEWAY_TIMEOUT,
        )
    ) -> None:
        """Set parameters for HTTP retrying logic.

        Requests are only retried if the server responds with one of the
        `retriable_error_codes`, i.e., if it did not process the request.

        Parameters
        ----------
        retry: bool, optional
            Whether HTTP retrying should be performed, if it is set to
            ``False``, the rest of the parameters are ignored.
        max_attempts: int, optional
            The maximum number of request attempts.
        wait_exponential_multiplier: float, optional
            Exponential multiplier applied to delay between attempts in ms.
        retriable_error_codes: tuple, optional
            Tuple of HTTP error codes to retry if raised.

        """
        self._http_retry = retry
        if retry:
            self._max_attempts = max_attempts
            self._wait_exponential_multiplier = wait_exponential_multiplier
            self._http_retrable_errors = retriable_error_codes
        else:
            self._max_attempts = 1
            self._wait_exponential_multiplier = 1
            self._http_retrable_errors = ()

    def _is_retriable_http_error(
        self,
        response: requests.models.Response
    ) -> bool:
        return response.status_code in self._http_retrable_errors

    def _get_session(self, server: RemoteServer) -> requests.Session:
        if self._session is not None:
            return self._session
        key = (
            server.url,
            server.username,
            server.password,
            server.ca_bundle,
            server.cert,
        )
        if key not in self._sessions:
            self._sessions[key] = create_session(server)
        return self._sessions[key]

    def _http_get(
        self,
        session: requests.Session,
        url: str,
        headers: Dict[str, str]
    ) -> requests.models.Response:
        @retrying.retry(
            retry_on_result=self._is_retriable_http_error,
            wait_exponential_multiplier=self._wait_exponential_multiplier,
            stop_max_attempt_number=self._max_attempts
        )
        def _invoke_get_request(
            url: str,
            headers: Dict[str, str]
        ) -> requests.models.Response:
            logger.debug(f'GET: {url} {headers}')
            return session.get(url=url, headers=headers)

        return _invoke_get_request(url, headers)

    def _http_post(
        self,
        session: requests.Session,
        url: str,
        data: bytes,
        headers: Dict[str, str]
    ) -> requests.models.Response:
        def serve_data_chunks(data: bytes) -> Iterator[bytes]:
            for i, offset in enumerate(range(0, len(data), self._chunk_size)):
                logger.debug(f'serve data chunk #{i}')
                end = offset + self._chunk_size
                yield data[offset:end]

        @retrying.retry(
            retry_on_result=self._is_retriable_http_error,
            wait_exponential_multiplier=self._wait_exponential_multiplier,
            stop_max_attempt_number=self._max_attempts
        )
        def _invoke_post_request(
            url: str,
            headers: Dict[str, str]
        ) -> requests.models.Response:
            logger.debug(f'POST: {url} {headers}')
            if len(data) > self._chunk_size:
                logger.info('send data using chunked transfer encoding')
                chunked_headers = dict(headers)
                chunked_headers['Transfer-Encoding'] = 'chunked'
                chunked_headers['Cache-Control'] = 'no-cache'
                chunked_headers['Connection'] = 'Keep-Alive'
                return session.post(
                    url,
                    data=serve_data_chunks(data),
                    headers=chunked_headers
                )
            return session.post(url, data=data, headers=headers)

        return _invoke_post_request(url, headers)

    def call(
        self,
        server: RemoteServer,
        method: str,
        headers: Mapping[str, str],
        uri: str,
        body: bytes = b''
    ) -> Tuple[Mapping[str, str], bytes]:
        """Call a remote DICOMweb server.

        Parameters
        ----------
        server: dicomweb_gateway.transport.RemoteServer
            Remote server
        method: str
            HTTP method (``"GET"`` or ``"POST"``)
        headers: Mapping[str, str]
            Request message header fields, which take precedence over the
            header fields of `server`
        uri: str
            URI relative to the base URL of `server` (including the query
            string)
        body: bytes, optional
            Request message payload

        Returns
        -------
        Mapping[str, str]
            Response message header fields
        bytes
            Response message payload

        Raises
        ------
        requests.HTTPError
            When the server responds with an error status code
        retrying.RetryError
            When the server still responds with a retriable error status code
            after the maximum number of attempts

        """
        url = join_url(server.url, uri)
        request_headers = CaseInsensitiveDict(server.headers)
        request_headers.update(headers)
        session = self._get_session(server)
        method = method.upper()
        if method == 'GET':
            response = self._http_get(session, url, request_headers)
        elif method == 'POST':
            response = self._http_post(session, url, body, request_headers)
        else:
            raise ValueError(f'HTTP method "{method}" is not supported.')
        logger.debug(f'request status code: {response.status_code}')
        response.raise_for_status()
        return response.headers, response.content
