import pytest

from dicomweb_gateway.uri import (
    build_query_string,
    build_resource_path,
    build_resource_url,
    join_url,
)

_STUDY_UID = '1.2.3'
_SERIES_UID = '4.5.6'
_INSTANCE_UID = '7.8.9'

_BASE_URL = 'https://lalalala.com/dicom-web'
_STUDY_URI = f'{_BASE_URL}/studies/{_STUDY_UID}'
_SERIES_URI = f'{_STUDY_URI}/series/{_SERIES_UID}'
_INSTANCE_URI = f'{_SERIES_URI}/instances/{_INSTANCE_UID}'


@pytest.mark.parametrize('params,expected', [
    (None, ''),
    ({}, ''),
    ({'limit': 10}, '?limit=10'),
    ({'key': ['value1', 'value2']}, '?key=value1&key=value2'),
    ({'PatientName': 'Doe^John'}, '?PatientName=Doe%5EJohn'),
])
def test_build_query_string(params, expected):
    assert build_query_string(params) == expected


def test_build_resource_path():
    assert build_resource_path(_STUDY_UID) == f'studies/{_STUDY_UID}'
    assert build_resource_path(_STUDY_UID, _SERIES_UID) == (
        f'studies/{_STUDY_UID}/series/{_SERIES_UID}'
    )
    assert build_resource_path(_STUDY_UID, None, _INSTANCE_UID) == (
        f'studies/{_STUDY_UID}'
    )


@pytest.mark.parametrize('base_url', [_BASE_URL, f'{_BASE_URL}/'])
def test_build_resource_url(base_url):
    assert build_resource_url(base_url, _STUDY_UID) == _STUDY_URI
    assert build_resource_url(base_url, _STUDY_UID, _SERIES_UID) == (
        _SERIES_URI
    )
    assert build_resource_url(
        base_url,
        _STUDY_UID,
        _SERIES_UID,
        _INSTANCE_UID
    ) == _INSTANCE_URI


def test_join_url():
    assert join_url('http://a/', '/studies') == 'http://a/studies'
    assert join_url('http://a', 'studies') == 'http://a/studies'
