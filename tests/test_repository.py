import pytest
from pydicom.uid import generate_uid

from dicomweb_gateway.error import BadFileFormatError, RepositoryError
from dicomweb_gateway.repository import (
    InstanceIdentity,
    LocalRepository,
    Repository,
    read_instance_identity,
)

SECONDARY_CAPTURE_IMAGE_STORAGE = '1.2.840.10008.5.1.4.1.1.7'


def test_protocol(repository):
    assert isinstance(repository, Repository)


def test_unsupported_url_scheme():
    with pytest.raises(ValueError):
        LocalRepository('https://archive.example/dicom-web')


def test_read_instance_identity(instance_factory):
    study, series, sop = generate_uid(), generate_uid(), generate_uid()
    data = instance_factory(
        study,
        series,
        sop,
        sop_class_uid=SECONDARY_CAPTURE_IMAGE_STORAGE
    )
    identity = read_instance_identity(memoryview(data))
    assert identity == InstanceIdentity(
        study,
        series,
        sop,
        SECONDARY_CAPTURE_IMAGE_STORAGE
    )


def test_read_instance_identity_invalid():
    with pytest.raises(BadFileFormatError):
        read_instance_identity(b'not a DICOM file')


def test_post_and_get(repository, instance_factory, tmp_path):
    study, series, sop = generate_uid(), generate_uid(), generate_uid()
    data = instance_factory(study, series, sop, patient_id='P-42')
    identifier = repository.post('/instances', data)

    instance = repository.get(f'/instances/{identifier}')
    assert instance['ID'] == identifier
    assert instance['Type'] == 'Instance'
    assert instance['FileSize'] == len(data)
    assert instance['MainDicomTags']['SOPInstanceUID'] == sop
    assert repository.get(f'/instances/{identifier}/file') == data
    assert tmp_path.joinpath(
        'studies', study, 'series', series, 'instances', sop
    ).exists()

    series_id = instance['ParentSeries']
    assert repository.get(f'/lookup/series/{series}') == series_id
    parent_series = repository.get(f'/instances/{identifier}/series')
    assert parent_series['MainDicomTags']['SeriesInstanceUID'] == series
    parent_study = repository.get(f'/instances/{identifier}/study')
    assert parent_study['MainDicomTags']['StudyInstanceUID'] == study
    assert parent_study['PatientMainDicomTags']['PatientID'] == 'P-42'

    patient = repository.get(f'/patients/{parent_study["ParentPatient"]}')
    assert patient['Type'] == 'Patient'
    assert patient['MainDicomTags']['PatientID'] == 'P-42'
    assert repository.get('/lookup/patients/P-42') == patient['ID']


def test_post_twice_returns_same_identifier(repository, instance_factory):
    data = instance_factory(generate_uid())
    first = repository.post('/instances', data)
    second = repository.post('/instances', data)
    assert first == second
    study = repository.get(f'/instances/{first}/study')
    assert len(repository.get(f'/studies/{study["ID"]}/instances')) == 1


def test_child_instances(repository, instance_factory, study_instance_uid):
    series = generate_uid()
    identifiers = [
        repository.post(
            '/instances',
            instance_factory(study_instance_uid, series)
        )
        for _ in range(2)
    ]
    identifiers.append(
        repository.post('/instances', instance_factory(study_instance_uid))
    )
    study_id = repository.get(f'/lookup/studies/{study_instance_uid}')
    series_id = repository.get(f'/lookup/series/{series}')
    listing = repository.get(f'/studies/{study_id}/instances')
    assert [i['ID'] for i in listing] == identifiers
    listing = repository.get(f'/series/{series_id}/instances')
    assert [i['ID'] for i in listing] == identifiers[:2]


@pytest.mark.parametrize('path', [
    '/instances/unknown',
    '/series/unknown/instances',
    '/instances/unknown/file',
    '/lookup/studies/1.2.3',
    '/studies/unknown/file',
    '/unsupported',
])
def test_get_missing(repository, path):
    assert repository.get(path) is None


def test_post_invalid_data(repository):
    with pytest.raises(RepositoryError):
        repository.post('/instances', b'not a DICOM file')


def test_post_invalid_path(repository, instance_factory):
    with pytest.raises(RepositoryError):
        repository.post('/studies', instance_factory(generate_uid()))


def test_post_read_only(repository_ro, instance_factory):
    with pytest.raises(RepositoryError):
        repository_ro.post('/instances', instance_factory(generate_uid()))


def test_persistent_database(tmp_path, instance_factory):
    url = f'file://{tmp_path}'
    identifier = LocalRepository(url).post(
        '/instances',
        instance_factory(generate_uid())
    )
    assert tmp_path.joinpath('.dicomweb-gateway.db').exists()
    assert LocalRepository(url).get(f'/instances/{identifier}') is not None
    recreated = LocalRepository(url, recreate_db=True)
    assert recreated.get(f'/instances/{identifier}') is None
