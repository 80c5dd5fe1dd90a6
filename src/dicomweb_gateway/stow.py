"""Server side of the Store (STOW-RS) transaction.

Receives a multipart request message, stores the contained instances in the
repository and answers with a status document that reports the outcome for
each instance in request order.

"""
import dataclasses
import logging
from http import HTTPStatus
from typing import List, Optional, Sequence, Tuple

from dicomweb_gateway.config import DEFAULT_BASE_URL
from dicomweb_gateway.error import RepositoryError, UnsupportedMediaTypeError
from dicomweb_gateway.multipart import (
    APPLICATION_DICOM,
    MultipartItem,
    decode_multipart_message,
    parse_content_type,
)
from dicomweb_gateway.repository import (
    InstanceIdentity,
    Repository,
    read_instance_identity,
)
from dicomweb_gateway.status import (
    StatusDocument,
    StoreOutcome,
    build_status_document,
    is_xml_expected,
    serialize_status_document,
)
from dicomweb_gateway.uri import build_resource_url

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class StoreResponse:

    """Response message of a store request.

    Attributes
    ----------
    status_code: int
        HTTP status code
    content_type: str
        Media type of `body`
    body: bytes
        Serialized status document

    """

    status_code: int
    content_type: str
    body: bytes


def get_boundary(content_type: Optional[str]) -> str:
    """Get the boundary of a store request message.

    Parameters
    ----------
    content_type: Union[str, None]
        Value of the Content-Type header field of the request message

    Returns
    -------
    str
        Boundary token

    Raises
    ------
    dicomweb_gateway.error.UnsupportedMediaTypeError
        When the header field is missing, when the media type is not
        "multipart/related", when the "type" or "boundary" parameters are
        missing or when the type is not "application/dicom"

    """
    if content_type is None:
        raise UnsupportedMediaTypeError(
            'No content type in the header of the STOW-RS request.'
        )
    _, parameters = parse_content_type(content_type)
    if 'type' not in parameters or 'boundary' not in parameters:
        raise UnsupportedMediaTypeError(
            'Content type of the STOW-RS request lacks the "type" or '
            '"boundary" parameter.'
        )
    if parameters['type'].lower() != APPLICATION_DICOM:
        raise UnsupportedMediaTypeError(
            f'STOW-RS only supports "{APPLICATION_DICOM}" parts, '
            f'not "{parameters["type"]}".'
        )
    return parameters['boundary']


def _read_items(
    items: Sequence[MultipartItem]
) -> List[Tuple[MultipartItem, InstanceIdentity]]:
    for i, item in enumerate(items):
        logger.debug(
            f'detected multipart item #{i} with content type '
            f'"{item.content_type}" of size {item.size}'
        )
    for item in items:
        if item.media_type and item.media_type != APPLICATION_DICOM:
            raise UnsupportedMediaTypeError(
                'The STOW-RS request contains a part that is not '
                f'"{APPLICATION_DICOM}" (it is "{item.content_type}").'
            )
    return [(item, read_instance_identity(item.body)) for item in items]


def ingest_instances(
    repository: Repository,
    items: Sequence[MultipartItem],
    base_url: str = DEFAULT_BASE_URL,
    expected_study_instance_uid: Optional[str] = None
) -> StatusDocument:
    """Store the instances contained in the parts of a store request.

    Parameters
    ----------
    repository: dicomweb_gateway.repository.Repository
        Repository in which instances should be stored
    items: Sequence[dicomweb_gateway.multipart.MultipartItem]
        Parts of the request message
    base_url: str, optional
        Public base URL of the DICOMweb service
    expected_study_instance_uid: Union[str, None], optional
        Study Instance UID to which the request is restricted; instances of
        other studies are discarded

    Returns
    -------
    dicomweb_gateway.status.StatusDocument
        Outcome for each instance in request order

    Raises
    ------
    dicomweb_gateway.error.UnsupportedMediaTypeError
        When a part is neither untyped nor "application/dicom"
    dicomweb_gateway.error.BadFileFormatError
        When a part cannot be parsed as DICOM file

    Note
    ----
    All parts are validated before the first instance gets stored. Instances
    that the repository rejects are reported in the failed SOP sequence and
    do not fail the request.

    """
    outcomes = []
    study_instance_uid = None
    for item, identity in _read_items(items):
        if (
            expected_study_instance_uid and
            identity.study_instance_uid != expected_study_instance_uid
        ):
            logger.info(
                'STOW-RS request restricted to study '
                f'"{expected_study_instance_uid}": ignoring instance '
                f'"{identity.sop_instance_uid}" of study '
                f'"{identity.study_instance_uid}"'
            )
            outcomes.append(
                StoreOutcome.filtered(
                    identity.sop_class_uid,
                    identity.sop_instance_uid
                )
            )
            continue

        try:
            repository.post('/instances', item.body)
        except RepositoryError as error:
            logger.error(
                f'failed to store instance "{identity.sop_instance_uid}" '
                f'received through STOW-RS request: {error}'
            )
            outcomes.append(
                StoreOutcome.failed(
                    identity.sop_class_uid,
                    identity.sop_instance_uid
                )
            )
            continue

        if study_instance_uid is None:
            study_instance_uid = identity.study_instance_uid
        retrieve_url = build_resource_url(
            base_url,
            identity.study_instance_uid,
            identity.series_instance_uid,
            identity.sop_instance_uid
        )
        outcomes.append(
            StoreOutcome.stored(
                identity.sop_class_uid,
                identity.sop_instance_uid,
                retrieve_url
            )
        )
    return build_status_document(outcomes, base_url, study_instance_uid)


def handle_store_request(
    repository: Repository,
    body: bytes,
    content_type: Optional[str],
    accept: Optional[str] = None,
    base_url: str = DEFAULT_BASE_URL,
    expected_study_instance_uid: Optional[str] = None
) -> StoreResponse:
    """Handle a store request message.

    Parameters
    ----------
    repository: dicomweb_gateway.repository.Repository
        Repository in which instances should be stored
    body: bytes
        Payload of the request message
    content_type: Union[str, None]
        Value of the Content-Type header field of the request message
    accept: Union[str, None], optional
        Value of the Accept header field of the request message, which
        determines whether the status document is serialized in DICOM JSON
        (default) or DICOM XML format
    base_url: str, optional
        Public base URL of the DICOMweb service
    expected_study_instance_uid: Union[str, None], optional
        Study Instance UID to which the request is restricted
        (``POST studies/{study}``)

    Returns
    -------
    dicomweb_gateway.stow.StoreResponse
        Response message

    Raises
    ------
    dicomweb_gateway.error.UnsupportedMediaTypeError
        When the request message or one of its parts has an unsupported
        media type
    dicomweb_gateway.error.BadFileFormatError
        When the payload cannot be decoded

    """
    if expected_study_instance_uid:
        logger.info(
            'STOW-RS request restricted to study '
            f'"{expected_study_instance_uid}"'
        )
    else:
        logger.info('STOW-RS request without study')
    xml = is_xml_expected(accept)
    boundary = get_boundary(content_type)
    items = decode_multipart_message(body, boundary)
    document = ingest_instances(
        repository,
        items,
        base_url=base_url,
        expected_study_instance_uid=expected_study_instance_uid
    )
    payload, media_type = serialize_status_document(document, xml=xml)
    return StoreResponse(HTTPStatus.OK, media_type, payload)
