"""Local repository of DICOM Part10 files.

The gateway core only depends on the :class:`Repository` protocol, which
addresses resources through REST-like paths. :class:`LocalRepository`
implements the protocol on top of a directory of DICOM Part10 files that is
indexed in a sqlite database.

"""
import dataclasses
import hashlib
import logging
import re
import sqlite3
from io import BytesIO
from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)
from urllib.parse import urlparse

from pydicom.dataset import Dataset
from pydicom.filereader import dcmread
from pydicom.tag import Tag

from dicomweb_gateway.error import BadFileFormatError, RepositoryError

logger = logging.getLogger(__name__)


@runtime_checkable
class Repository(Protocol):

    """Protocol for repositories of DICOM instances."""

    def get(self, path: str) -> Any:
        """Get a resource.

        Parameters
        ----------
        path: str
            Path of the resource, e.g., ``"/series/{id}/instances"``

        Returns
        -------
        Any
            Representation of the resource or ``None`` if the resource does
            not exist

        """
        pass

    def post(self, path: str, data: bytes) -> str:
        """Post data to a resource.

        Parameters
        ----------
        path: str
            Path of the resource, e.g., ``"/instances"``
        data: bytes
            Content of a DICOM Part10 file

        Returns
        -------
        str
            Identifier that the repository assigned to the created resource

        Raises
        ------
        dicomweb_gateway.error.RepositoryError
            When the repository rejects the data

        """
        pass


@dataclasses.dataclass(frozen=True)
class InstanceIdentity:

    """Identifying attributes of a DICOM instance."""

    study_instance_uid: str
    series_instance_uid: str
    sop_instance_uid: str
    sop_class_uid: str


_IDENTITY_TAGS = [
    Tag('StudyInstanceUID'),
    Tag('SeriesInstanceUID'),
    Tag('SOPInstanceUID'),
    Tag('SOPClassUID'),
]


def read_instance_identity(data: Union[bytes, memoryview]) -> InstanceIdentity:
    """Read the identifying attributes from the header of a DICOM file.

    Parameters
    ----------
    data: Union[bytes, memoryview]
        Content of a DICOM Part10 file

    Returns
    -------
    dicomweb_gateway.repository.InstanceIdentity
        UIDs of the instance (empty strings for missing attributes)

    Raises
    ------
    dicomweb_gateway.error.BadFileFormatError
        When `data` cannot be parsed as DICOM file

    """
    try:
        dataset = dcmread(
            BytesIO(data),
            stop_before_pixels=True,
            specific_tags=_IDENTITY_TAGS
        )
    except Exception as error:
        raise BadFileFormatError(f'Cannot parse DICOM file: {error}')
    return InstanceIdentity(
        study_instance_uid=str(dataset.get('StudyInstanceUID', '')),
        series_instance_uid=str(dataset.get('SeriesInstanceUID', '')),
        sop_instance_uid=str(dataset.get('SOPInstanceUID', '')),
        sop_class_uid=str(dataset.get('SOPClassUID', '')),
    )


def _make_identifier(*uids: str) -> str:
    """Derive a resource identifier from the UIDs of its hierarchy."""
    digest = hashlib.sha1('|'.join(uids).encode('utf-8')).hexdigest()
    return '-'.join(digest[i:i + 8] for i in range(0, len(digest), 8))


_RESOURCE_PATH = re.compile(
    r'^/(?P<level>patients|studies|series|instances)/(?P<id>[^/]+)'
    r'(?:/(?P<child>instances|file|series|study))?$'
)
_LOOKUP_PATH = re.compile(
    r'^/lookup/(?P<level>patients|studies|series|instances)/(?P<uid>[^/]+)$'
)


class LocalRepository:

    """Repository of DICOM Part10 files stored in a local directory.

    Files are stored at
    ``studies/{study}/series/{series}/instances/{instance}`` relative to the
    base directory. Storing an instance a second time overwrites the file and
    returns the same identifier.

    Attributes
    ----------
    base_dir: pathlib.Path
        Directory where files are stored

    """

    def __init__(
        self,
        url: str,
        in_memory: bool = False,
        db_dir: Optional[Union[Path, str]] = None,
        recreate_db: bool = False,
        readonly: bool = False
    ) -> None:
        """Instantiate repository.

        Parameters
        ----------
        url: str
            Unique resource locator of directory where data is stored
            (must have ``file`` scheme)
        in_memory: bool, optional
            Whether the database should only be stored in memory
        db_dir: Union[pathlib.Path, str, None], optional
            Path to directory where database files should be stored (defaults
            to `base_dir`)
        recreate_db: bool, optional
            Whether existing database tables should be dropped
        readonly: bool, optional
            Whether data should be considered read-only. Attempts to store
            data will be rejected.

        """
        components = urlparse(url)
        if components.scheme != 'file':
            raise ValueError(
                f'URL scheme "{components.scheme}" is not supported.'
            )
        self.base_dir = Path(components.path)
        if in_memory:
            self._db_file_identifier = ':memory:'
        else:
            if db_dir is None:
                db_dir = self.base_dir
            db_dir = Path(db_dir)
            db_dir.mkdir(parents=True, exist_ok=True)
            self._db_file_identifier = str(
                db_dir.joinpath('.dicomweb-gateway.db')
            )
        self._readonly = readonly
        self._db_connection_handle: Optional[sqlite3.Connection] = None
        if recreate_db:
            self._drop_db()
        self._create_db()

    @property
    def _connection(self) -> sqlite3.Connection:
        """sqlite3.Connection: database connection"""
        if self._db_connection_handle is None:
            self._db_connection_handle = sqlite3.connect(
                self._db_file_identifier
            )
            self._db_connection_handle.row_factory = sqlite3.Row
        return self._db_connection_handle

    def _create_db(self) -> None:
        """Creating database tables and indices."""
        with self._connection as connection:
            cursor = connection.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS studies (
                    _id TEXT NOT NULL,
                    _patient_id TEXT NOT NULL,
                    StudyInstanceUID TEXT NOT NULL,
                    PatientID TEXT,
                    PatientName TEXT,
                    StudyDate TEXT,
                    AccessionNumber TEXT,
                    PRIMARY KEY (_id)
                )
            ''')
            cursor.execute('''
                CREATE INDEX IF NOT EXISTS study_index_patient
                ON studies (_patient_id)
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS series (
                    _id TEXT NOT NULL,
                    _study_id TEXT NOT NULL,
                    SeriesInstanceUID TEXT NOT NULL,
                    Modality TEXT,
                    SeriesNumber TEXT,
                    PRIMARY KEY (_id)
                    FOREIGN KEY (_study_id) REFERENCES studies(_id)
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS instances (
                    _id TEXT NOT NULL,
                    _series_id TEXT NOT NULL,
                    SOPInstanceUID TEXT NOT NULL,
                    SOPClassUID TEXT NOT NULL,
                    InstanceNumber TEXT,
                    _file_path TEXT NOT NULL,
                    _file_size INTEGER NOT NULL,
                    PRIMARY KEY (_id)
                    FOREIGN KEY (_series_id) REFERENCES series(_id)
                )
            ''')
            cursor.execute('''
                CREATE INDEX IF NOT EXISTS instance_index_sop_instance_uid
                ON instances (SOPInstanceUID)
            ''')
            cursor.close()

    def _drop_db(self) -> None:
        """Drop database tables and indices."""
        with self._connection as connection:
            cursor = connection.cursor()
            cursor.execute('DROP TABLE IF EXISTS instances')
            cursor.execute('DROP TABLE IF EXISTS series')
            cursor.execute('DROP TABLE IF EXISTS studies')
            cursor.close()

    def _fetchall(self, query: str, params: Dict[str, str]) -> List[Any]:
        cursor = self._connection.execute(query, params)
        results = cursor.fetchall()
        cursor.close()
        return results

    @staticmethod
    def _format_patient(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            'ID': row['_patient_id'],
            'Type': 'Patient',
            'MainDicomTags': {
                'PatientID': row['PatientID'],
                'PatientName': row['PatientName'],
            },
        }

    @staticmethod
    def _format_study(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            'ID': row['_id'],
            'Type': 'Study',
            'ParentPatient': row['_patient_id'],
            'MainDicomTags': {
                'StudyInstanceUID': row['StudyInstanceUID'],
                'StudyDate': row['StudyDate'],
                'AccessionNumber': row['AccessionNumber'],
            },
            'PatientMainDicomTags': {
                'PatientID': row['PatientID'],
                'PatientName': row['PatientName'],
            },
        }

    @staticmethod
    def _format_series(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            'ID': row['_id'],
            'Type': 'Series',
            'ParentStudy': row['_study_id'],
            'MainDicomTags': {
                'SeriesInstanceUID': row['SeriesInstanceUID'],
                'Modality': row['Modality'],
                'SeriesNumber': row['SeriesNumber'],
            },
        }

    @staticmethod
    def _format_instance(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            'ID': row['_id'],
            'Type': 'Instance',
            'ParentSeries': row['_series_id'],
            'FileSize': row['_file_size'],
            'MainDicomTags': {
                'SOPInstanceUID': row['SOPInstanceUID'],
                'SOPClassUID': row['SOPClassUID'],
                'InstanceNumber': row['InstanceNumber'],
            },
        }

    def _get_resource(self, level: str, identifier: str) -> Optional[dict]:
        params = {'id': identifier}
        if level == 'patients':
            rows = self._fetchall(
                'SELECT * FROM studies WHERE _patient_id = :id LIMIT 1',
                params
            )
            formatter = self._format_patient
        elif level == 'studies':
            rows = self._fetchall(
                'SELECT * FROM studies WHERE _id = :id',
                params
            )
            formatter = self._format_study
        elif level == 'series':
            rows = self._fetchall(
                'SELECT * FROM series WHERE _id = :id',
                params
            )
            formatter = self._format_series
        else:
            rows = self._fetchall(
                'SELECT * FROM instances WHERE _id = :id',
                params
            )
            formatter = self._format_instance
        if len(rows) == 0:
            return None
        return formatter(rows[0])

    def _get_child_instances(
        self,
        level: str,
        identifier: str
    ) -> Optional[List[dict]]:
        if self._get_resource(level, identifier) is None:
            return None
        query_expressions = ['SELECT instances.* FROM instances']
        if level == 'instances':
            query_expressions.append('WHERE instances._id = :id')
        else:
            query_expressions.append(
                'JOIN series ON instances._series_id = series._id'
            )
            if level == 'series':
                query_expressions.append('WHERE series._id = :id')
            else:
                query_expressions.append(
                    'JOIN studies ON series._study_id = studies._id'
                )
                if level == 'studies':
                    query_expressions.append('WHERE studies._id = :id')
                else:
                    query_expressions.append(
                        'WHERE studies._patient_id = :id'
                    )
        query_expressions.append('ORDER BY instances.rowid')
        rows = self._fetchall(' '.join(query_expressions), {'id': identifier})
        return [self._format_instance(row) for row in rows]

    def _get_file(self, identifier: str) -> Optional[bytes]:
        rows = self._fetchall(
            'SELECT _file_path FROM instances WHERE _id = :id',
            {'id': identifier}
        )
        if len(rows) == 0:
            return None
        file_path = self.base_dir.joinpath(rows[0]['_file_path'])
        try:
            with open(file_path, 'rb') as fp:
                return fp.read()
        except OSError as error:
            raise RepositoryError(
                f'Could not read file of instance "{identifier}": {error}'
            )

    def _get_parent(self, identifier: str, level: str) -> Optional[dict]:
        instance = self._get_resource('instances', identifier)
        if instance is None:
            return None
        series = self._get_resource('series', instance['ParentSeries'])
        if series is None or level == 'series':
            return series
        return self._get_resource('studies', series['ParentStudy'])

    def _lookup(self, level: str, uid: str) -> Optional[str]:
        if level == 'patients':
            query = (
                'SELECT _patient_id AS _id FROM studies '
                'WHERE PatientID = :uid'
            )
        elif level == 'studies':
            query = 'SELECT _id FROM studies WHERE StudyInstanceUID = :uid'
        elif level == 'series':
            query = 'SELECT _id FROM series WHERE SeriesInstanceUID = :uid'
        else:
            query = 'SELECT _id FROM instances WHERE SOPInstanceUID = :uid'
        rows = self._fetchall(query, {'uid': uid})
        if len(rows) == 0:
            return None
        return rows[0]['_id']

    def get(self, path: str) -> Any:
        """Get a resource.

        Parameters
        ----------
        path: str
            Path of the resource (see module documentation)

        Returns
        -------
        Any
            Resource representation, instance listing, file content or
            identifier, or ``None`` if the resource does not exist

        """
        logger.debug(f'GET repository resource {path}')
        match = _LOOKUP_PATH.match(path)
        if match is not None:
            return self._lookup(match.group('level'), match.group('uid'))
        match = _RESOURCE_PATH.match(path)
        if match is None:
            return None
        level = match.group('level')
        identifier = match.group('id')
        child = match.group('child')
        if child is None:
            return self._get_resource(level, identifier)
        if child == 'instances':
            return self._get_child_instances(level, identifier)
        if level != 'instances':
            return None
        if child == 'file':
            return self._get_file(identifier)
        return self._get_parent(identifier, child)

    def post(self, path: str, data: Union[bytes, memoryview]) -> str:
        """Store a DICOM Part10 file.

        Parameters
        ----------
        path: str
            Must be ``"/instances"``
        data: Union[bytes, memoryview]
            Content of the file

        Returns
        -------
        str
            Identifier of the stored instance

        Raises
        ------
        dicomweb_gateway.error.RepositoryError
            When the repository is read-only, when `data` is not a DICOM file
            or lacks identifying attributes or when it cannot be written

        """
        if path != '/instances':
            raise RepositoryError(f'Cannot post data to "{path}".')
        if self._readonly:
            raise RepositoryError('Storage of instances is not allowed.')
        data = bytes(data)
        try:
            dataset = dcmread(BytesIO(data), stop_before_pixels=True)
        except Exception as error:
            raise RepositoryError(f'Cannot parse DICOM file: {error}')
        try:
            study_instance_uid = str(dataset.StudyInstanceUID)
            series_instance_uid = str(dataset.SeriesInstanceUID)
            sop_instance_uid = str(dataset.SOPInstanceUID)
            sop_class_uid = str(dataset.SOPClassUID)
        except AttributeError as error:
            raise RepositoryError(f'Incomplete DICOM file: {error}')
        logger.info(
            f'store instance "{sop_instance_uid}" '
            f'of series "{series_instance_uid}" '
            f'of study "{study_instance_uid}"'
        )
        return self._insert(
            dataset,
            data,
            study_instance_uid,
            series_instance_uid,
            sop_instance_uid,
            sop_class_uid
        )

    def _insert(
        self,
        dataset: Dataset,
        data: bytes,
        study_instance_uid: str,
        series_instance_uid: str,
        sop_instance_uid: str,
        sop_class_uid: str
    ) -> str:
        patient_id = str(dataset.get('PatientID', ''))
        uids = [patient_id, study_instance_uid]
        patient_identifier = _make_identifier(patient_id)
        study_identifier = _make_identifier(*uids)
        uids.append(series_instance_uid)
        series_identifier = _make_identifier(*uids)
        uids.append(sop_instance_uid)
        instance_identifier = _make_identifier(*uids)

        rel_file_path = '/'.join([
            'studies',
            study_instance_uid,
            'series',
            series_instance_uid,
            'instances',
            sop_instance_uid
        ])
        file_path = self.base_dir.joinpath(rel_file_path)
        try:
            file_path.parent.mkdir(exist_ok=True, parents=True)
            with open(file_path, 'wb') as fp:
                fp.write(data)
        except OSError as error:
            raise RepositoryError(
                f'Could not write file of instance "{sop_instance_uid}": '
                f'{error}'
            )

        with self._connection as connection:
            connection.execute(
                'INSERT OR REPLACE INTO studies VALUES '
                '(?, ?, ?, ?, ?, ?, ?)',
                (
                    study_identifier,
                    patient_identifier,
                    study_instance_uid,
                    patient_id,
                    str(dataset.get('PatientName', '')),
                    str(dataset.get('StudyDate', '')),
                    str(dataset.get('AccessionNumber', '')),
                )
            )
            connection.execute(
                'INSERT OR REPLACE INTO series VALUES (?, ?, ?, ?, ?)',
                (
                    series_identifier,
                    study_identifier,
                    series_instance_uid,
                    str(dataset.get('Modality', '')),
                    str(dataset.get('SeriesNumber', '')),
                )
            )
            connection.execute(
                'INSERT OR REPLACE INTO instances VALUES '
                '(?, ?, ?, ?, ?, ?, ?)',
                (
                    instance_identifier,
                    series_identifier,
                    sop_instance_uid,
                    sop_class_uid,
                    str(dataset.get('InstanceNumber', '')),
                    rel_file_path,
                    len(data),
                )
            )
        return instance_identifier
