"""Client side of the Store (STOW-RS) transaction.

Instances of the repository are forwarded to a remote DICOMweb server in
batches. A batch is posted as soon as it reaches the configured maximum
number of instances or the configured maximum size, and once more at the end
for the remaining instances. Every acknowledgment of the remote server must
reference all instances of the batch, otherwise the whole operation is
aborted.

"""
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from requests.structures import CaseInsensitiveDict

from dicomweb_gateway.config import GatewayConfiguration
from dicomweb_gateway.error import (
    BadFileFormatError,
    InternalError,
    NetworkProtocolError,
    RepositoryError,
    UnknownResourceError,
)
from dicomweb_gateway.multipart import (
    APPLICATION_DICOM,
    build_content_type,
    encode_closing_delimiter,
    encode_part_header,
    generate_boundary,
)
from dicomweb_gateway.repository import Repository
from dicomweb_gateway.status import DICOM_JSON
from dicomweb_gateway.transport import DICOMwebTransport, RemoteServer
from dicomweb_gateway.uri import build_query_string

logger = logging.getLogger(__name__)

# Levels are probed in this order, the first match wins
_RESOLUTION_LEVELS = ('instances', 'series', 'studies', 'patients')

_REFERENCED_SOP_SEQUENCE = '00081199'
_FAILED_SOP_SEQUENCE = '00081198'
_OTHER_FAILURES_SEQUENCE = '0008119A'


def _get_instance_identifiers(listing: Any, path: str) -> List[str]:
    if not isinstance(listing, list):
        raise InternalError(
            f'Repository returned an invalid instance listing for "{path}".'
        )
    identifiers = []
    for instance in listing:
        if (
            not isinstance(instance, dict) or
            not isinstance(instance.get('ID'), str)
        ):
            raise InternalError(
                f'Repository returned an instance without "ID" for "{path}".'
            )
        identifiers.append(instance['ID'])
    return identifiers


def resolve_resources(
    repository: Repository,
    resources: Sequence[str]
) -> List[str]:
    """Resolve references to repository resources into instances.

    Parameters
    ----------
    repository: dicomweb_gateway.repository.Repository
        Repository that holds the resources
    resources: Sequence[str]
        Identifiers of instances, series, studies or patients

    Returns
    -------
    List[str]
        Identifiers of instances in resolution order

    Raises
    ------
    dicomweb_gateway.error.UnknownResourceError
        When an identifier does not match any resource
    dicomweb_gateway.error.InternalError
        When the repository returns an invalid listing

    """
    instances = []
    for resource in resources:
        for level in _RESOLUTION_LEVELS:
            if repository.get(f'/{level}/{resource}') is not None:
                break
        else:
            raise UnknownResourceError(
                f'Inexistent resource: "{resource}"'
            )
        if level == 'instances':
            instances.append(resource)
        else:
            path = f'/{level}/{resource}/instances'
            instances.extend(
                _get_instance_identifiers(repository.get(path), path)
            )
    return instances


class BatchAccumulator:

    """Multipart message body of a batch of instances that is being built.

    Attributes
    ----------
    boundary: str
        Boundary token that delimits the parts
    instance_count: int
        Number of instances in the batch

    """

    def __init__(self, boundary: Optional[str] = None) -> None:
        """
        Parameters
        ----------
        boundary: Union[str, None], optional
            Boundary token (a fresh token is generated by default)

        """
        if boundary is None:
            boundary = generate_boundary()
        self.boundary = boundary
        self.instance_count = 0
        self._buffer = bytearray()

    @property
    def pending_bytes(self) -> int:
        """int: number of bytes of the framed parts"""
        return len(self._buffer)

    @property
    def content_type(self) -> str:
        """str: value of the Content-Type header field of the batch"""
        return build_content_type(self.boundary, APPLICATION_DICOM)

    def add(self, data: bytes) -> None:
        """Append an instance to the batch."""
        self._buffer += encode_part_header(
            self.boundary,
            APPLICATION_DICOM,
            len(data)
        )
        self._buffer += data
        self.instance_count += 1

    def close(self) -> bytes:
        """Get the complete message body of the batch."""
        return bytes(self._buffer) + encode_closing_delimiter(self.boundary)

    def reset(self) -> None:
        """Remove all instances from the batch."""
        self._buffer = bytearray()
        self.instance_count = 0


def _get_sequence_size(
    answer: Mapping[str, Any],
    tag: str,
    mandatory: bool
) -> int:
    value = None
    for key in (tag.upper(), tag.lower()):
        if key in answer:
            value = answer[key]
            break
    else:
        if mandatory:
            logger.error(
                'STOW-RS acknowledgment does not contain the mandatory tag '
                f'{tag.upper()}'
            )
            raise NetworkProtocolError(
                f'STOW-RS acknowledgment lacks tag {tag.upper()}.'
            )
        return 0
    if not isinstance(value, dict):
        raise NetworkProtocolError(
            f'Cannot parse tag {tag.upper()} of STOW-RS acknowledgment.'
        )
    # Empty sequences are encoded without "Value"
    items = value.get('Value', [])
    if not isinstance(items, list):
        raise NetworkProtocolError(
            f'Cannot parse tag {tag.upper()} of STOW-RS acknowledgment.'
        )
    return len(items)


def check_acknowledgment(content: bytes, instance_count: int) -> None:
    """Check the acknowledgment of a batch by the remote server.

    Parameters
    ----------
    content: bytes
        Payload of the response message in DICOM JSON format
    instance_count: int
        Number of instances that were sent in the batch

    Raises
    ------
    dicomweb_gateway.error.NetworkProtocolError
        When the acknowledgment cannot be parsed, does not reference all
        instances or reports failures

    """
    try:
        answer = json.loads(content)
    except ValueError as error:
        raise NetworkProtocolError(
            f'Cannot parse STOW-RS acknowledgment: {error}'
        )
    if not isinstance(answer, dict):
        raise NetworkProtocolError(
            'STOW-RS acknowledgment is not a JSON object.'
        )

    size = _get_sequence_size(answer, _REFERENCED_SOP_SEQUENCE, True)
    if size != instance_count:
        logger.error(
            f'remote server was only able to receive {size} instances '
            f'out of {instance_count}'
        )
        raise NetworkProtocolError(
            f'STOW-RS acknowledgment references {size} instead of '
            f'{instance_count} instances.'
        )
    for tag, name in (
        (_FAILED_SOP_SEQUENCE, 'Failed SOP Sequence'),
        (_OTHER_FAILURES_SEQUENCE, 'Other Failures Sequence'),
    ):
        size = _get_sequence_size(answer, tag, False)
        if size != 0:
            logger.error(
                f'STOW-RS acknowledgment contains {size} items in its '
                f'{name} ({tag})'
            )
            raise NetworkProtocolError(
                f'STOW-RS acknowledgment reports {size} failures in {name}.'
            )


class StoreForwarder:

    """Forwards instances of the repository to a remote DICOMweb server."""

    def __init__(
        self,
        repository: Repository,
        transport: DICOMwebTransport,
        max_instances: int = 10,
        max_size: int = 10 * 1024 * 1024
    ) -> None:
        """
        Parameters
        ----------
        repository: dicomweb_gateway.repository.Repository
            Repository that holds the instances
        transport: dicomweb_gateway.transport.DICOMwebTransport
            Transport for calling the remote server
        max_instances: int, optional
            Maximum number of instances per batch (``0`` means no limit)
        max_size: int, optional
            Maximum number of bytes per batch (``0`` means no limit)

        """
        self._repository = repository
        self._transport = transport
        self._max_instances = max_instances
        self._max_size = max_size

    @classmethod
    def from_configuration(
        cls,
        repository: Repository,
        transport: DICOMwebTransport,
        configuration: GatewayConfiguration
    ) -> 'StoreForwarder':
        """Create a forwarder with the batch limits of a configuration."""
        return cls(
            repository,
            transport,
            max_instances=configuration.stow_max_instances,
            max_size=configuration.stow_max_size_bytes
        )

    def should_flush(
        self,
        accumulator: BatchAccumulator,
        force: bool = False
    ) -> bool:
        """Determine whether a batch should be sent.

        Parameters
        ----------
        accumulator: dicomweb_gateway.forward.BatchAccumulator
            Batch
        force: bool, optional
            Whether a non-empty batch should be sent regardless of the limits

        Returns
        -------
        bool
            Whether the batch should be sent

        """
        if accumulator.instance_count == 0:
            return False
        return (
            force or
            (
                self._max_instances != 0 and
                accumulator.instance_count >= self._max_instances
            ) or
            (
                self._max_size != 0 and
                accumulator.pending_bytes >= self._max_size
            )
        )

    def _flush(
        self,
        accumulator: BatchAccumulator,
        server: RemoteServer,
        headers: Mapping[str, str],
        uri: str
    ) -> None:
        logger.info(
            f'send batch of {accumulator.instance_count} instances '
            f'({accumulator.pending_bytes} bytes) to "{server.url}"'
        )
        request_headers = CaseInsensitiveDict(headers)
        request_headers['Accept'] = DICOM_JSON
        request_headers['Content-Type'] = accumulator.content_type
        _, content = self._transport.call(
            server,
            'POST',
            request_headers,
            uri,
            accumulator.close()
        )
        check_acknowledgment(content, accumulator.instance_count)
        accumulator.reset()

    def forward(
        self,
        instances: Sequence[str],
        server: RemoteServer,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> int:
        """Forward instances to a remote server.

        Parameters
        ----------
        instances: Sequence[str]
            Identifiers of instances in the repository
        server: dicomweb_gateway.transport.RemoteServer
            Remote server
        headers: Union[Mapping[str, str], None], optional
            Additional header fields of the request messages (the
            Accept and Content-Type fields are always set by the forwarder)
        params: Union[Dict[str, Any], None], optional
            Query parameters of the request messages

        Returns
        -------
        int
            Number of request messages that were sent

        Raises
        ------
        dicomweb_gateway.error.NetworkProtocolError
            When the remote server does not acknowledge all instances of a
            batch
        dicomweb_gateway.error.RepositoryError
            When the file of an instance cannot be read

        Note
        ----
        Batches that were acknowledged before an error occurred remain
        stored on the remote server.

        """
        if headers is None:
            headers = {}
        uri = 'studies' + build_query_string(params)
        logger.info(
            f'forward {len(instances)} instances to "{server.url}"'
        )
        accumulator = BatchAccumulator()
        flush_count = 0
        for identifier in instances:
            data = self._repository.get(f'/instances/{identifier}/file')
            if data is None:
                raise RepositoryError(
                    f'File of instance "{identifier}" is not available.'
                )
            accumulator.add(data)
            if self.should_flush(accumulator):
                self._flush(accumulator, server, headers, uri)
                flush_count += 1
        if self.should_flush(accumulator, force=True):
            self._flush(accumulator, server, headers, uri)
            flush_count += 1
        logger.info(
            f'forwarded {len(instances)} instances in {flush_count} '
            'STOW-RS requests'
        )
        return flush_count


def _parse_string_map(request: Mapping[str, Any], key: str) -> Dict[str, str]:
    value = request.get(key, {})
    if not isinstance(value, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        raise BadFileFormatError(
            f'The field "{key}" must be a JSON object of strings.'
        )
    return dict(value)


def parse_forward_request(
    body: bytes
) -> Tuple[List[str], Dict[str, str], Dict[str, str]]:
    """Parse the JSON body of a forward request.

    The body has the form ``{"Resources": [...], "HttpHeaders": {...},
    "Arguments": {...}}`` where the latter two fields are optional.

    Parameters
    ----------
    body: bytes
        Payload of the request message

    Returns
    -------
    List[str]
        Identifiers of the resources that should be forwarded
    Dict[str, str]
        Additional HTTP header fields
    Dict[str, str]
        Query parameters

    Raises
    ------
    dicomweb_gateway.error.BadFileFormatError
        When the body is malformed
    dicomweb_gateway.error.UnknownResourceError
        When a resource identifier is empty

    """
    try:
        request = json.loads(body)
    except ValueError as error:
        raise BadFileFormatError(f'Cannot parse forward request: {error}')
    if (
        not isinstance(request, dict) or
        not isinstance(request.get('Resources'), list)
    ):
        raise BadFileFormatError(
            'A forward request must be a JSON object with a "Resources" '
            'array.'
        )
    resources = []
    for resource in request['Resources']:
        if not isinstance(resource, str):
            raise BadFileFormatError(
                'Resources of a forward request must be strings.'
            )
        if not resource:
            raise UnknownResourceError('Empty resource identifier.')
        resources.append(resource)
    return (
        resources,
        _parse_string_map(request, 'HttpHeaders'),
        _parse_string_map(request, 'Arguments'),
    )


def handle_forward_request(
    repository: Repository,
    transport: DICOMwebTransport,
    configuration: GatewayConfiguration,
    server_name: str,
    body: bytes
) -> Dict[str, Any]:
    """Handle a JSON forward request.

    Parameters
    ----------
    repository: dicomweb_gateway.repository.Repository
        Repository that holds the resources
    transport: dicomweb_gateway.transport.DICOMwebTransport
        Transport for calling the remote server
    configuration: dicomweb_gateway.config.GatewayConfiguration
        Configuration with the batch limits and the remote servers
    server_name: str
        Name of the remote server
    body: bytes
        Payload of the request message (see :func:`parse_forward_request`)

    Returns
    -------
    Dict[str, Any]
        Empty answer

    """
    server = configuration.get_server(server_name)
    resources, headers, params = parse_forward_request(body)
    instances = resolve_resources(repository, resources)
    forwarder = StoreForwarder.from_configuration(
        repository,
        transport,
        configuration
    )
    forwarder.forward(instances, server, headers, params)
    return {}
