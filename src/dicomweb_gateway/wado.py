"""Legacy Web Access to DICOM Objects by URI (WADO-URI).

Only the retrieval of DICOM files is supported. Requests for rendered
previews (``contentType=image/jpeg`` or ``image/png``) are rejected.

"""
import logging
from typing import Mapping, Tuple

from dicomweb_gateway.error import (
    BadFileFormatError,
    RepositoryError,
    UnknownResourceError,
    UnsupportedMediaTypeError,
)
from dicomweb_gateway.multipart import APPLICATION_DICOM
from dicomweb_gateway.repository import Repository

logger = logging.getLogger(__name__)

# Rendered JPEG images are the default of the protocol
_DEFAULT_CONTENT_TYPE = 'image/jpeg'


def _check_parent(
    repository: Repository,
    instance: str,
    level: str,
    attribute: str,
    uid: str
) -> None:
    lookup_level = 'studies' if level == 'study' else 'series'
    if repository.get(f'/lookup/{lookup_level}/{uid}') is None:
        raise UnknownResourceError(f'No such {attribute}: "{uid}"')
    parent = repository.get(f'/instances/{instance}/{level}')
    if (
        parent is None or
        parent.get('MainDicomTags', {}).get(attribute) != uid
    ):
        raise UnknownResourceError(
            f'Instance "{instance}" does not belong to {level} "{uid}".'
        )


def locate_instance(
    repository: Repository,
    params: Mapping[str, str]
) -> Tuple[str, str]:
    """Locate the instance that is requested by a WADO-URI request.

    Parameters
    ----------
    repository: dicomweb_gateway.repository.Repository
        Repository that holds the instance
    params: Mapping[str, str]
        Query parameters of the request message (``requestType``,
        ``studyUID``, ``seriesUID``, ``objectUID`` and ``contentType``)

    Returns
    -------
    str
        Identifier of the instance in the repository
    str
        Requested content type

    Raises
    ------
    dicomweb_gateway.error.BadFileFormatError
        When the request type is not "WADO" or no object UID is given
    dicomweb_gateway.error.UnknownResourceError
        When the instance does not exist or does not belong to the given
        series or study

    """
    request_type = params.get('requestType', '')
    if request_type != 'WADO':
        raise BadFileFormatError(
            f'Invalid WADO-URI request type: "{request_type}"'
        )
    object_uid = params.get('objectUID', '')
    if not object_uid:
        raise BadFileFormatError('No SOP Instance UID provided.')
    instance = repository.get(f'/lookup/instances/{object_uid}')
    if instance is None:
        raise UnknownResourceError(
            f'No such SOP Instance UID: "{object_uid}"'
        )
    series_uid = params.get('seriesUID', '')
    if series_uid:
        _check_parent(
            repository,
            instance,
            'series',
            'SeriesInstanceUID',
            series_uid
        )
    study_uid = params.get('studyUID', '')
    if study_uid:
        _check_parent(
            repository,
            instance,
            'study',
            'StudyInstanceUID',
            study_uid
        )
    return instance, params.get('contentType', _DEFAULT_CONTENT_TYPE)


def retrieve_instance(
    repository: Repository,
    params: Mapping[str, str]
) -> bytes:
    """Answer a WADO-URI request.

    Parameters
    ----------
    repository: dicomweb_gateway.repository.Repository
        Repository that holds the instance
    params: Mapping[str, str]
        Query parameters of the request message

    Returns
    -------
    bytes
        DICOM Part10 file of the requested instance

    Raises
    ------
    dicomweb_gateway.error.UnsupportedMediaTypeError
        When a content type other than "application/dicom" is requested

    """
    instance, content_type = locate_instance(repository, params)
    if content_type != APPLICATION_DICOM:
        raise UnsupportedMediaTypeError(
            f'Unsupported WADO-URI content type: "{content_type}"'
        )
    logger.info(f'answer WADO-URI request for instance "{instance}"')
    data = repository.get(f'/instances/{instance}/file')
    if data is None:
        raise RepositoryError(
            f'Unable to retrieve DICOM file of instance "{instance}".'
        )
    return data
