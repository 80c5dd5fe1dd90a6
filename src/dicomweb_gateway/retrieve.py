"""Client side of the Retrieve (WADO-RS) transaction."""
import dataclasses
import json
import logging
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
)

from requests.structures import CaseInsensitiveDict

from dicomweb_gateway.error import (
    BadFileFormatError,
    GatewayError,
    NetworkProtocolError,
)
from dicomweb_gateway.multipart import (
    APPLICATION_DICOM,
    MULTIPART_RELATED,
    decode_multipart_message,
    parse_content_type,
)
from dicomweb_gateway.repository import Repository
from dicomweb_gateway.transport import (
    DICOMwebTransport,
    RemoteServer,
    get_header,
)
from dicomweb_gateway.uri import build_query_string, build_resource_path

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class RetrieveSelector:

    """Study, series or instance that should be retrieved.

    Attributes
    ----------
    study_instance_uid: str
        Study Instance UID
    series_instance_uid: Union[str, None]
        Series Instance UID
    sop_instance_uid: Union[str, None]
        SOP Instance UID (requires `series_instance_uid`)

    """

    study_instance_uid: str
    series_instance_uid: Optional[str] = None
    sop_instance_uid: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.study_instance_uid:
            raise BadFileFormatError(
                'Study Instance UID is required for retrieval.'
            )
        if self.sop_instance_uid and not self.series_instance_uid:
            raise BadFileFormatError(
                'Series Instance UID is required for retrieval of an '
                'instance.'
            )

    @property
    def path(self) -> str:
        """str: relative path of the resource"""
        return build_resource_path(
            self.study_instance_uid,
            self.series_instance_uid,
            self.sop_instance_uid
        )


def _check_response_content_type(content_type: Optional[str]) -> str:
    if content_type is None:
        raise NetworkProtocolError(
            'WADO-RS response does not have a content type.'
        )
    try:
        _, parameters = parse_content_type(content_type)
    except GatewayError:
        raise NetworkProtocolError(
            f'WADO-RS response has unexpected content type "{content_type}".'
        )
    media_type = parameters.get('type', '').lower()
    if media_type != APPLICATION_DICOM:
        raise NetworkProtocolError(
            f'WADO-RS response contains parts of type "{media_type}" '
            f'instead of "{APPLICATION_DICOM}".'
        )
    boundary = parameters.get('boundary', '')
    if not boundary:
        raise NetworkProtocolError(
            'WADO-RS response does not specify a multipart boundary.'
        )
    return boundary


def retrieve_instances(
    repository: Repository,
    transport: DICOMwebTransport,
    server: RemoteServer,
    selector: RetrieveSelector,
    headers: Optional[Mapping[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    instances: Optional[Set[str]] = None
) -> Set[str]:
    """Retrieve instances from a remote server and store them.

    Parameters
    ----------
    repository: dicomweb_gateway.repository.Repository
        Repository in which retrieved instances should be stored
    transport: dicomweb_gateway.transport.DICOMwebTransport
        Transport for calling the remote server
    server: dicomweb_gateway.transport.RemoteServer
        Remote server
    selector: dicomweb_gateway.retrieve.RetrieveSelector
        Study, series or instance that should be retrieved
    headers: Union[Mapping[str, str], None], optional
        Additional header fields of the request message
    params: Union[Dict[str, Any], None], optional
        Query parameters of the request message
    instances: Union[Set[str], None], optional
        Identifiers of previously retrieved instances, to which the
        identifiers of the stored instances are added

    Returns
    -------
    Set[str]
        Identifiers that the repository assigned to the retrieved instances

    Raises
    ------
    dicomweb_gateway.error.NetworkProtocolError
        When the response message is not a multipart message of DICOM files
    dicomweb_gateway.error.RepositoryError
        When the repository rejects an instance

    """
    if instances is None:
        instances = set()
    request_headers = CaseInsensitiveDict(headers or {})
    request_headers.setdefault(
        'Accept',
        f'{MULTIPART_RELATED}; type="{APPLICATION_DICOM}"'
    )
    uri = selector.path + build_query_string(params)
    response_headers, content = transport.call(
        server,
        'GET',
        request_headers,
        uri
    )
    boundary = _check_response_content_type(
        get_header(response_headers, 'Content-Type')
    )
    try:
        items = decode_multipart_message(content, boundary)
    except BadFileFormatError as error:
        raise NetworkProtocolError(
            f'Cannot decode WADO-RS response: {error}'
        )
    for item in items:
        if item.media_type != APPLICATION_DICOM:
            raise NetworkProtocolError(
                f'WADO-RS response contains a part of type '
                f'"{item.content_type}" instead of "{APPLICATION_DICOM}".'
            )
    logger.info(
        f'retrieved {len(items)} instances of {selector.path} '
        f'from "{server.url}"'
    )
    for item in items:
        instances.add(repository.post('/instances', item.body))
    return instances


def _get_optional_string(resource: Mapping[str, Any], key: str) -> str:
    value = resource.get(key, '')
    if not isinstance(value, str):
        raise BadFileFormatError(f'The field "{key}" must be a string.')
    return value.strip()


def parse_retrieve_request(
    body: bytes
) -> Tuple[List[RetrieveSelector], Dict[str, str], Dict[str, str]]:
    """Parse the JSON body of a retrieve request.

    The body has the form ``{"Resources": [{"Study": ..., "Series": ...,
    "Instance": ...}, ...], "HttpHeaders": {...}, "Arguments": {...}}``
    where all fields except "Resources" and "Study" are optional.

    Parameters
    ----------
    body: bytes
        Payload of the request message

    Returns
    -------
    List[dicomweb_gateway.retrieve.RetrieveSelector]
        Resources that should be retrieved
    Dict[str, str]
        Additional HTTP header fields
    Dict[str, str]
        Query parameters

    Raises
    ------
    dicomweb_gateway.error.BadFileFormatError
        When the body is malformed

    """
    try:
        request = json.loads(body)
    except ValueError as error:
        raise BadFileFormatError(f'Cannot parse retrieve request: {error}')
    if (
        not isinstance(request, dict) or
        not isinstance(request.get('Resources'), list)
    ):
        raise BadFileFormatError(
            'A retrieve request must be a JSON object with a "Resources" '
            'array.'
        )
    selectors = []
    for resource in request['Resources']:
        if not isinstance(resource, dict):
            raise BadFileFormatError(
                'Resources of a retrieve request must be JSON objects.'
            )
        selectors.append(
            RetrieveSelector(
                _get_optional_string(resource, 'Study'),
                _get_optional_string(resource, 'Series') or None,
                _get_optional_string(resource, 'Instance') or None
            )
        )
    maps = []
    for key in ('HttpHeaders', 'Arguments'):
        value = request.get(key, {})
        if not isinstance(value, dict) or not all(
            isinstance(v, str) for v in value.values()
        ):
            raise BadFileFormatError(
                f'The field "{key}" must be a JSON object of strings.'
            )
        maps.append(dict(value))
    return selectors, maps[0], maps[1]


def retrieve_resources(
    repository: Repository,
    transport: DICOMwebTransport,
    server: RemoteServer,
    selectors: Iterable[RetrieveSelector],
    headers: Optional[Mapping[str, str]] = None,
    params: Optional[Dict[str, Any]] = None
) -> Set[str]:
    """Retrieve several resources from a remote server.

    Returns
    -------
    Set[str]
        Identifiers of all stored instances

    """
    instances: Set[str] = set()
    for selector in selectors:
        retrieve_instances(
            repository,
            transport,
            server,
            selector,
            headers=headers,
            params=params,
            instances=instances
        )
    return instances


def handle_retrieve_request(
    repository: Repository,
    transport: DICOMwebTransport,
    server: RemoteServer,
    body: bytes
) -> Dict[str, Any]:
    """Handle a JSON retrieve request.

    Parameters
    ----------
    repository: dicomweb_gateway.repository.Repository
        Repository in which retrieved instances should be stored
    transport: dicomweb_gateway.transport.DICOMwebTransport
        Transport for calling the remote server
    server: dicomweb_gateway.transport.RemoteServer
        Remote server
    body: bytes
        Payload of the request message (see :func:`parse_retrieve_request`)

    Returns
    -------
    Dict[str, Any]
        Answer of the form ``{"Instances": [...]}`` with the sorted
        identifiers of the stored instances

    """
    selectors, headers, params = parse_retrieve_request(body)
    instances = retrieve_resources(
        repository,
        transport,
        server,
        selectors,
        headers=headers,
        params=params
    )
    return {'Instances': sorted(instances)}
