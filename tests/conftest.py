import logging
from io import BytesIO

import pytest
from pydicom import config as pydicom_config
from pydicom.dataset import Dataset, FileMetaDataset
from pydicom.filewriter import dcmwrite
from pydicom.uid import ExplicitVRLittleEndian, generate_uid

from dicomweb_gateway.cli import _get_parser
from dicomweb_gateway.config import GatewayConfiguration
from dicomweb_gateway.repository import LocalRepository
from dicomweb_gateway.transport import DICOMwebTransport, RemoteServer


pydicom_config.settings.reading_validation_mode = pydicom_config.WARN
pydicom_config.settings.writing_validation_mode = pydicom_config.WARN

CT_IMAGE_STORAGE = '1.2.840.10008.5.1.4.1.1.2'


def create_instance(
    study_instance_uid,
    series_instance_uid=None,
    sop_instance_uid=None,
    sop_class_uid=CT_IMAGE_STORAGE,
    patient_id='P-001'
):
    '''Encodes a minimal DICOM Part10 file.'''
    if series_instance_uid is None:
        series_instance_uid = generate_uid()
    if sop_instance_uid is None:
        sop_instance_uid = generate_uid()
    dataset = Dataset()
    dataset.PatientID = patient_id
    dataset.PatientName = 'Doe^John'
    dataset.StudyInstanceUID = study_instance_uid
    dataset.SeriesInstanceUID = series_instance_uid
    dataset.SOPInstanceUID = sop_instance_uid
    dataset.SOPClassUID = sop_class_uid
    dataset.Modality = 'CT'
    dataset.InstanceNumber = 1
    dataset.file_meta = FileMetaDataset()
    dataset.file_meta.MediaStorageSOPClassUID = sop_class_uid
    dataset.file_meta.MediaStorageSOPInstanceUID = sop_instance_uid
    dataset.file_meta.TransferSyntaxUID = ExplicitVRLittleEndian
    with BytesIO() as fp:
        dcmwrite(fp, dataset, enforce_file_format=True)
        return fp.getvalue()


@pytest.fixture(autouse=True)
def _restore_root_logger_handlers():
    '''Removes handlers that tests (e.g., via `main()`) add to the root logger.'''
    logger = logging.getLogger()
    handlers = list(logger.handlers)
    level = logger.level
    yield
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)


@pytest.fixture
def parser():
    '''Instance of `argparse.Argparser`.'''
    return _get_parser()


@pytest.fixture
def study_instance_uid():
    return generate_uid()


@pytest.fixture
def instance_factory():
    '''Function that creates the content of DICOM Part10 files.'''
    return create_instance


@pytest.fixture
def repository(tmp_path):
    '''Instance of `dicomweb_gateway.repository.LocalRepository`.'''
    return LocalRepository(f'file://{tmp_path}', in_memory=True)


@pytest.fixture
def repository_ro(tmp_path):
    '''Read-only instance of `dicomweb_gateway.repository.LocalRepository`.'''
    return LocalRepository(f'file://{tmp_path}', in_memory=True, readonly=True)


@pytest.fixture
def configuration():
    '''Instance of `dicomweb_gateway.config.GatewayConfiguration`.'''
    return GatewayConfiguration(base_url='http://gateway.example/dicom-web')


@pytest.fixture
def server(httpserver):
    '''Remote DICOMweb server backed by the local HTTP test server.'''
    return RemoteServer(httpserver.url, headers={'X-Token': 'topsecret'})


@pytest.fixture
def transport():
    '''Instance of `dicomweb_gateway.transport.DICOMwebTransport`.'''
    transport = DICOMwebTransport()
    transport.set_http_retry_params(retry=False)
    return transport
