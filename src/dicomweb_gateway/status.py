"""Status documents of the Store (STOW-RS) transaction.

The per-instance outcomes of a store request are collected as plain records
and converted into the tag-keyed DICOM response module (see `Store
Instances Response Module <http://dicom.nema.org/medical/dicom/current/output/chtml/part18/sect_10.5.3.html>`_)
only when the response message gets serialized.

"""  # noqa: E501
import dataclasses
import enum
import json
import logging
from typing import Dict, Optional, Sequence, Tuple
from xml.etree.ElementTree import Element, SubElement, tostring

from pydicom.dataset import Dataset

from dicomweb_gateway.error import InternalError
from dicomweb_gateway.uri import build_resource_url

logger = logging.getLogger(__name__)

DICOM_JSON = 'application/dicom+json'
DICOM_XML = 'application/dicom+xml'
NATIVE_DICOM_MODEL_NAMESPACE = (
    'http://dicom.nema.org/PS3.19/models/NativeDICOM'
)

_JSON_MEDIA_TYPES = {'application/dicom+json', 'application/json', '*/*'}
_XML_MEDIA_TYPES = {'application/dicom+xml', 'application/xml', 'text/xml'}


class OutcomeKind(enum.Enum):
    """Result of processing an individual part of a store request."""
    STORED = 'stored'
    FILTERED = 'filtered'
    FAILED = 'failed'


class ReasonCode(enum.IntEnum):
    """Warning and failure reasons (see DICOM Part 18 Annex I.2)."""
    PROCESSING_FAILURE = 0x0110
    ELEMENTS_DISCARDED = 0xB006


@dataclasses.dataclass(frozen=True)
class StoreOutcome:

    """Outcome of processing an individual instance of a store request.

    Attributes
    ----------
    referenced_sop_class_uid: str
        SOP Class UID of the instance
    referenced_sop_instance_uid: str
        SOP Instance UID of the instance
    kind: dicomweb_gateway.status.OutcomeKind
        Whether the instance was stored, filtered or failed to be stored
    retrieve_url: Union[str, None]
        URL at which a stored instance can be retrieved
    reason: Union[dicomweb_gateway.status.ReasonCode, None]
        Warning reason of a filtered instance or failure reason of a failed
        instance

    """

    referenced_sop_class_uid: str
    referenced_sop_instance_uid: str
    kind: OutcomeKind
    retrieve_url: Optional[str] = None
    reason: Optional[ReasonCode] = None

    def __post_init__(self) -> None:
        if self.kind == OutcomeKind.STORED:
            if self.retrieve_url is None or self.reason is not None:
                raise InternalError(
                    'Stored instances require a retrieve URL and no reason.'
                )
        elif self.reason is None:
            raise InternalError(
                f'Outcome "{self.kind.value}" requires a reason code.'
            )
        elif self.kind == OutcomeKind.FAILED and self.retrieve_url is not None:
            raise InternalError('Failed instances have no retrieve URL.')

    @classmethod
    def stored(
        cls,
        sop_class_uid: str,
        sop_instance_uid: str,
        retrieve_url: str
    ) -> 'StoreOutcome':
        return cls(
            sop_class_uid,
            sop_instance_uid,
            OutcomeKind.STORED,
            retrieve_url=retrieve_url
        )

    @classmethod
    def filtered(
        cls,
        sop_class_uid: str,
        sop_instance_uid: str
    ) -> 'StoreOutcome':
        return cls(
            sop_class_uid,
            sop_instance_uid,
            OutcomeKind.FILTERED,
            reason=ReasonCode.ELEMENTS_DISCARDED
        )

    @classmethod
    def failed(
        cls,
        sop_class_uid: str,
        sop_instance_uid: str
    ) -> 'StoreOutcome':
        return cls(
            sop_class_uid,
            sop_instance_uid,
            OutcomeKind.FAILED,
            reason=ReasonCode.PROCESSING_FAILURE
        )


@dataclasses.dataclass(frozen=True)
class StatusDocument:

    """Representation-agnostic response of a store request.

    Attributes
    ----------
    retrieve_url: Union[str, None]
        URL at which the study can be retrieved
    referenced_sop_sequence: Tuple[dicomweb_gateway.status.StoreOutcome]
        Stored and filtered instances in request order
    failed_sop_sequence: Tuple[dicomweb_gateway.status.StoreOutcome]
        Instances that could not be stored in request order

    """

    retrieve_url: Optional[str]
    referenced_sop_sequence: Tuple[StoreOutcome, ...]
    failed_sop_sequence: Tuple[StoreOutcome, ...]


def build_status_document(
    outcomes: Sequence[StoreOutcome],
    retrieve_base_url: str,
    study_instance_uid: Optional[str] = None
) -> StatusDocument:
    """Build the status document of a store request.

    Parameters
    ----------
    outcomes: Sequence[dicomweb_gateway.status.StoreOutcome]
        Outcomes of all processed instances in request order
    retrieve_base_url: str
        Base URL of the DICOMweb service
    study_instance_uid: Union[str, None], optional
        Study Instance UID of the first instance that was accepted for
        storage; no study-level retrieve URL is recorded if ``None``

    Returns
    -------
    dicomweb_gateway.status.StatusDocument
        Status document

    """
    retrieve_url = None
    if study_instance_uid is not None:
        retrieve_url = build_resource_url(
            retrieve_base_url,
            study_instance_uid
        )
    referenced = tuple(
        outcome for outcome in outcomes
        if outcome.kind != OutcomeKind.FAILED
    )
    failed = tuple(
        outcome for outcome in outcomes
        if outcome.kind == OutcomeKind.FAILED
    )
    return StatusDocument(retrieve_url, referenced, failed)


# Mapping of record fields to data element tags and value representations
_OUTCOME_ATTRIBUTES: Dict[str, Tuple[int, str]] = {
    'referenced_sop_class_uid': (0x00081150, 'UI'),
    'referenced_sop_instance_uid': (0x00081155, 'UI'),
    'retrieve_url': (0x00081190, 'UR'),
}
_REASON_ATTRIBUTES: Dict[OutcomeKind, Tuple[int, str]] = {
    OutcomeKind.FILTERED: (0x00081196, 'US'),
    OutcomeKind.FAILED: (0x00081197, 'US'),
}
_RETRIEVE_URL_TAG = 0x00081190
_FAILED_SOP_SEQUENCE_TAG = 0x00081198
_REFERENCED_SOP_SEQUENCE_TAG = 0x00081199


def _encode_outcome(outcome: StoreOutcome) -> Dataset:
    item = Dataset()
    for field, (tag, vr) in _OUTCOME_ATTRIBUTES.items():
        value = getattr(outcome, field)
        if value is not None:
            item.add_new(tag, vr, value)
    if outcome.reason is not None:
        tag, vr = _REASON_ATTRIBUTES[outcome.kind]
        item.add_new(tag, vr, int(outcome.reason))
    return item


def encode_status_document(document: StatusDocument) -> Dataset:
    """Encode a status document as DICOM data set.

    Parameters
    ----------
    document: dicomweb_gateway.status.StatusDocument
        Status document

    Returns
    -------
    pydicom.dataset.Dataset
        Data set with Retrieve URL, Failed SOP Sequence and Referenced SOP
        Sequence attributes

    """
    dataset = Dataset()
    if document.retrieve_url is not None:
        dataset.add_new(_RETRIEVE_URL_TAG, 'UR', document.retrieve_url)
    dataset.add_new(
        _FAILED_SOP_SEQUENCE_TAG,
        'SQ',
        [_encode_outcome(outcome) for outcome in document.failed_sop_sequence]
    )
    dataset.add_new(
        _REFERENCED_SOP_SEQUENCE_TAG,
        'SQ',
        [
            _encode_outcome(outcome)
            for outcome in document.referenced_sop_sequence
        ]
    )
    return dataset


def _dump_xml_dataset(dataset: Dataset, parent: Element) -> None:
    for element in dataset:
        attribute = SubElement(
            parent,
            'DicomAttribute',
            tag=f'{element.tag:08X}',
            vr=element.VR,
            keyword=element.keyword
        )
        if element.VR == 'SQ':
            for number, item in enumerate(element.value, 1):
                child = SubElement(attribute, 'Item', number=str(number))
                _dump_xml_dataset(item, child)
        elif not element.is_empty:
            values = element.value if element.VM > 1 else [element.value]
            for number, value in enumerate(values, 1):
                SubElement(attribute, 'Value', number=str(number)).text = str(
                    value
                )


def dump_xml_dataset(dataset: Dataset) -> Element:
    """Dump a DICOM data set in DICOM XML format (Native DICOM Model).

    Parameters
    ----------
    dataset: pydicom.dataset.Dataset
        data set

    Returns
    -------
    xml.etree.ElementTree.Element
        root element of the element tree

    """
    root = Element('NativeDicomModel', xmlns=NATIVE_DICOM_MODEL_NAMESPACE)
    _dump_xml_dataset(dataset, root)
    return root


def is_xml_expected(accept: Optional[str]) -> bool:
    """Determine whether the client requested a response in XML format.

    Parameters
    ----------
    accept: Union[str, None]
        Value of the Accept header field of the request message

    Returns
    -------
    bool
        ``True`` for DICOM XML, ``False`` for DICOM JSON

    """
    if accept is None:
        return False
    media_type = accept.strip().lower()
    if media_type in _XML_MEDIA_TYPES:
        return True
    if media_type not in _JSON_MEDIA_TYPES:
        logger.error(
            f'unsupported return media type "{accept}", '
            'will return DICOM JSON'
        )
    return False


def serialize_status_document(
    document: StatusDocument,
    xml: bool = False
) -> Tuple[bytes, str]:
    """Serialize a status document.

    Parameters
    ----------
    document: dicomweb_gateway.status.StatusDocument
        Status document
    xml: bool, optional
        Whether the document should be serialized in DICOM XML rather than in
        DICOM JSON format

    Returns
    -------
    bytes
        Serialized document
    str
        Media type of the serialized document

    """
    dataset = encode_status_document(document)
    if xml:
        root = dump_xml_dataset(dataset)
        content = tostring(root, encoding='utf-8', xml_declaration=True)
        return content, DICOM_XML
    return json.dumps(dataset.to_json_dict()).encode('utf-8'), DICOM_JSON
