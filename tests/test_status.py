import json
import xml.etree.ElementTree as ET

import pytest

from dicomweb_gateway.error import InternalError
from dicomweb_gateway.status import (
    DICOM_JSON,
    DICOM_XML,
    NATIVE_DICOM_MODEL_NAMESPACE,
    OutcomeKind,
    ReasonCode,
    StoreOutcome,
    build_status_document,
    encode_status_document,
    is_xml_expected,
    serialize_status_document,
)

_BASE_URL = 'http://gateway.example/dicom-web/'
_CT = '1.2.840.10008.5.1.4.1.1.2'


@pytest.fixture
def outcomes():
    return [
        StoreOutcome.stored(
            _CT, '1.2.3.1',
            f'{_BASE_URL}studies/1.2.3/series/1.2.3.0/instances/1.2.3.1'
        ),
        StoreOutcome.failed(_CT, '1.2.3.2'),
        StoreOutcome.filtered(_CT, '9.9.9.1'),
    ]


def test_outcome_consistency():
    with pytest.raises(InternalError):
        StoreOutcome('1', '2', OutcomeKind.STORED)
    with pytest.raises(InternalError):
        StoreOutcome('1', '2', OutcomeKind.FAILED)
    with pytest.raises(InternalError):
        StoreOutcome(
            '1', '2', OutcomeKind.FAILED,
            retrieve_url='http://x',
            reason=ReasonCode.PROCESSING_FAILURE
        )
    with pytest.raises(InternalError):
        StoreOutcome(
            '1', '2', OutcomeKind.STORED,
            retrieve_url='http://x',
            reason=ReasonCode.PROCESSING_FAILURE
        )


def test_outcome_reason_codes(outcomes):
    stored, failed, filtered = outcomes
    assert stored.reason is None
    assert failed.reason == ReasonCode.PROCESSING_FAILURE == 0x0110
    assert filtered.reason == ReasonCode.ELEMENTS_DISCARDED == 0xB006
    assert filtered.retrieve_url is None


def test_build_status_document(outcomes):
    document = build_status_document(outcomes, _BASE_URL, '1.2.3')
    assert document.retrieve_url == f'{_BASE_URL}studies/1.2.3'
    assert document.referenced_sop_sequence == (outcomes[0], outcomes[2])
    assert document.failed_sop_sequence == (outcomes[1], )


def test_build_status_document_without_study():
    document = build_status_document([], _BASE_URL)
    assert document.retrieve_url is None
    assert document.referenced_sop_sequence == ()
    assert document.failed_sop_sequence == ()


def test_encode_status_document(outcomes):
    document = build_status_document(outcomes, _BASE_URL, '1.2.3')
    dataset = encode_status_document(document)
    assert dataset.RetrieveURL == f'{_BASE_URL}studies/1.2.3'
    assert len(dataset.ReferencedSOPSequence) == 2
    assert len(dataset.FailedSOPSequence) == 1
    stored_item = dataset.ReferencedSOPSequence[0]
    assert stored_item.ReferencedSOPClassUID == _CT
    assert stored_item.ReferencedSOPInstanceUID == '1.2.3.1'
    assert stored_item.RetrieveURL == outcomes[0].retrieve_url
    assert 'WarningReason' not in stored_item
    filtered_item = dataset.ReferencedSOPSequence[1]
    assert filtered_item.WarningReason == 0xB006
    assert 'RetrieveURL' not in filtered_item
    failed_item = dataset.FailedSOPSequence[0]
    assert failed_item.FailureReason == 0x0110
    assert failed_item.ReferencedSOPInstanceUID == '1.2.3.2'


def test_serialize_json(outcomes):
    document = build_status_document(outcomes, _BASE_URL, '1.2.3')
    content, media_type = serialize_status_document(document)
    assert media_type == DICOM_JSON
    parsed = json.loads(content)
    assert parsed['00081190']['Value'] == [f'{_BASE_URL}studies/1.2.3']
    referenced = parsed['00081199']['Value']
    assert len(referenced) == 2
    assert referenced[0]['00081155']['Value'] == ['1.2.3.1']
    assert referenced[1]['00081196']['Value'] == [0xB006]
    failed = parsed['00081198']['Value']
    assert failed[0]['00081197']['Value'] == [0x0110]


def test_serialize_json_empty_sequences_are_present():
    document = build_status_document([], _BASE_URL)
    content, _ = serialize_status_document(document)
    parsed = json.loads(content)
    assert '00081190' not in parsed
    assert parsed['00081198']['vr'] == 'SQ'
    assert parsed['00081199']['vr'] == 'SQ'
    assert parsed['00081198'].get('Value', []) == []


def test_serialize_xml(outcomes):
    document = build_status_document(outcomes, _BASE_URL, '1.2.3')
    content, media_type = serialize_status_document(document, xml=True)
    assert media_type == DICOM_XML
    root = ET.fromstring(content)
    ns = {'ns': NATIVE_DICOM_MODEL_NAMESPACE}
    assert root.tag == f'{{{NATIVE_DICOM_MODEL_NAMESPACE}}}NativeDicomModel'
    attributes = {
        element.get('tag'): element
        for element in root.findall('ns:DicomAttribute', ns)
    }
    assert set(attributes) == {'00081190', '00081198', '00081199'}
    retrieve_url = attributes['00081190']
    assert retrieve_url.get('vr') == 'UR'
    assert retrieve_url.get('keyword') == 'RetrieveURL'
    assert retrieve_url.find('ns:Value', ns).text == (
        f'{_BASE_URL}studies/1.2.3'
    )
    items = attributes['00081199'].findall('ns:Item', ns)
    assert [item.get('number') for item in items] == ['1', '2']
    failed_items = attributes['00081198'].findall('ns:Item', ns)
    assert len(failed_items) == 1
    reason = [
        element for element in failed_items[0].findall('ns:DicomAttribute', ns)
        if element.get('tag') == '00081197'
    ][0]
    assert reason.find('ns:Value', ns).text == str(0x0110)


@pytest.mark.parametrize('accept,expected', [
    (None, False),
    ('application/dicom+json', False),
    ('application/json', False),
    ('*/*', False),
    ('application/dicom+xml', True),
    ('application/xml', True),
    ('text/xml', True),
    ('Application/DICOM+XML', True),
    ('image/png', False),
])
def test_is_xml_expected(accept, expected):
    assert is_xml_expected(accept) is expected


def test_is_xml_expected_logs_unsupported(caplog):
    with caplog.at_level('ERROR', logger='dicomweb_gateway'):
        assert is_xml_expected('image/png') is False
    assert 'unsupported return media type' in caplog.text
