import pytest
from pydicom.uid import generate_uid

from dicomweb_gateway.error import (
    BadFileFormatError,
    UnknownResourceError,
    UnsupportedMediaTypeError,
)
from dicomweb_gateway.wado import locate_instance, retrieve_instance


@pytest.fixture
def stored_instance(repository, instance_factory, study_instance_uid):
    series_instance_uid = generate_uid()
    sop_instance_uid = generate_uid()
    data = instance_factory(
        study_instance_uid,
        series_instance_uid,
        sop_instance_uid
    )
    identifier = repository.post('/instances', data)
    return {
        'id': identifier,
        'data': data,
        'study': study_instance_uid,
        'series': series_instance_uid,
        'instance': sop_instance_uid,
    }


def test_retrieve_instance(repository, stored_instance):
    data = retrieve_instance(repository, {
        'requestType': 'WADO',
        'studyUID': stored_instance['study'],
        'seriesUID': stored_instance['series'],
        'objectUID': stored_instance['instance'],
        'contentType': 'application/dicom',
    })
    assert data == stored_instance['data']


def test_locate_instance_default_content_type(repository, stored_instance):
    identifier, content_type = locate_instance(repository, {
        'requestType': 'WADO',
        'objectUID': stored_instance['instance'],
    })
    assert identifier == stored_instance['id']
    assert content_type == 'image/jpeg'


@pytest.mark.parametrize('content_type', [None, 'image/png', 'image/jpeg'])
def test_retrieve_rendered_content_type(
    repository,
    stored_instance,
    content_type
):
    params = {
        'requestType': 'WADO',
        'objectUID': stored_instance['instance'],
    }
    if content_type is not None:
        params['contentType'] = content_type
    with pytest.raises(UnsupportedMediaTypeError):
        retrieve_instance(repository, params)


@pytest.mark.parametrize('params', [
    {'objectUID': '1.2.3'},
    {'requestType': 'wado', 'objectUID': '1.2.3'},
    {'requestType': 'WADO'},
])
def test_locate_invalid_request(repository, params):
    with pytest.raises(BadFileFormatError):
        locate_instance(repository, params)


def test_locate_unknown_instance(repository):
    with pytest.raises(UnknownResourceError):
        locate_instance(repository, {
            'requestType': 'WADO',
            'objectUID': '1.2.3',
        })


def test_locate_unknown_series(repository, stored_instance):
    with pytest.raises(UnknownResourceError):
        locate_instance(repository, {
            'requestType': 'WADO',
            'seriesUID': '1.2.3',
            'objectUID': stored_instance['instance'],
        })


def test_locate_instance_of_other_study(
    repository,
    stored_instance,
    instance_factory
):
    other_study_instance_uid = generate_uid()
    repository.post('/instances', instance_factory(other_study_instance_uid))
    with pytest.raises(UnknownResourceError):
        locate_instance(repository, {
            'requestType': 'WADO',
            'studyUID': other_study_instance_uid,
            'objectUID': stored_instance['instance'],
        })
