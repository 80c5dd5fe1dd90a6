"""Configuration of the gateway."""
import dataclasses
import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Union

from dicomweb_gateway.error import BadFileFormatError, UnknownResourceError
from dicomweb_gateway.transport import RemoteServer

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = 'http://localhost:8042/dicom-web/'


@dataclasses.dataclass
class GatewayConfiguration:

    """Request-independent settings of the gateway.

    Attributes
    ----------
    base_url: str
        Public base URL of the DICOMweb service, which is used to build the
        retrieve URLs of stored instances
    stow_max_instances: int
        Maximum number of instances that are sent to a remote server per
        STOW-RS request (``0`` means no limit)
    stow_max_size: int
        Maximum size in MiB of the instances that are sent to a remote server
        per STOW-RS request (``0`` means no limit)
    servers: Dict[str, dicomweb_gateway.transport.RemoteServer]
        Remote DICOMweb servers by name

    """

    base_url: str = DEFAULT_BASE_URL
    stow_max_instances: int = 10
    stow_max_size: int = 10
    servers: Dict[str, RemoteServer] = dataclasses.field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.base_url.endswith('/'):
            self.base_url += '/'
        if self.stow_max_instances < 0:
            raise ValueError(
                'Maximum number of instances must not be negative.'
            )
        if self.stow_max_size < 0:
            raise ValueError('Maximum size must not be negative.')

    @property
    def stow_max_size_bytes(self) -> int:
        """int: maximum size in bytes of a STOW-RS request"""
        return self.stow_max_size * 1024 * 1024

    def get_server(self, name: str) -> RemoteServer:
        """Get a remote server by name.

        Parameters
        ----------
        name: str
            Name of the server

        Returns
        -------
        dicomweb_gateway.transport.RemoteServer
            Remote server

        Raises
        ------
        dicomweb_gateway.error.UnknownResourceError
            When no server with the given name is configured

        """
        try:
            return self.servers[name]
        except KeyError:
            raise UnknownResourceError(
                f'Inexistent DICOMweb server: "{name}"'
            )


def _parse_string_map(value: Any, name: str) -> Dict[str, str]:
    if not isinstance(value, dict) or not all(
        isinstance(v, str) for v in value.values()
    ):
        raise BadFileFormatError(
            f'The field "{name}" must be a JSON object of strings.'
        )
    return dict(value)


def _parse_server(name: str, value: Any) -> RemoteServer:
    if isinstance(value, list):
        if len(value) not in (1, 3) or not all(
            isinstance(v, str) for v in value
        ):
            raise BadFileFormatError(
                f'DICOMweb server "{name}" must be specified as [url] or '
                '[url, username, password].'
            )
        if len(value) == 3:
            return RemoteServer(value[0], username=value[1], password=value[2])
        return RemoteServer(value[0])
    if isinstance(value, dict):
        url = value.get('Url')
        if not isinstance(url, str):
            raise BadFileFormatError(
                f'DICOMweb server "{name}" lacks a "Url" string.'
            )
        for key in ('Username', 'Password', 'CaBundle', 'CertificateFile'):
            if key in value and not isinstance(value[key], str):
                raise BadFileFormatError(
                    f'The field "{key}" of DICOMweb server "{name}" must be '
                    'a string.'
                )
        return RemoteServer(
            url,
            headers=_parse_string_map(
                value.get('HttpHeaders', {}),
                'HttpHeaders'
            ),
            username=value.get('Username'),
            password=value.get('Password'),
            ca_bundle=value.get('CaBundle'),
            cert=value.get('CertificateFile'),
        )
    raise BadFileFormatError(f'Cannot parse DICOMweb server "{name}".')


def _parse_unsigned_integer(
    section: Mapping[str, Any],
    key: str,
    default: int
) -> int:
    value = section.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise BadFileFormatError(
            f'The field "{key}" must be an unsigned integer.'
        )
    return value


def parse_configuration(content: Mapping[str, Any]) -> GatewayConfiguration:
    """Parse the configuration of the gateway.

    Parameters
    ----------
    content: Mapping[str, Any]
        Decoded JSON configuration, the relevant settings are expected in the
        optional ``"DicomWeb"`` section

    Returns
    -------
    dicomweb_gateway.config.GatewayConfiguration
        Configuration

    Raises
    ------
    dicomweb_gateway.error.BadFileFormatError
        When the configuration is malformed

    """
    section = content.get('DicomWeb', {})
    if not isinstance(section, dict):
        raise BadFileFormatError('The "DicomWeb" section must be an object.')
    base_url = section.get('BaseUrl', DEFAULT_BASE_URL)
    if not isinstance(base_url, str):
        raise BadFileFormatError('The field "BaseUrl" must be a string.')
    servers = section.get('Servers', {})
    if not isinstance(servers, dict):
        raise BadFileFormatError('The field "Servers" must be an object.')
    return GatewayConfiguration(
        base_url=base_url,
        stow_max_instances=_parse_unsigned_integer(
            section,
            'StowMaxInstances',
            10
        ),
        stow_max_size=_parse_unsigned_integer(section, 'StowMaxSize', 10),
        servers={
            name: _parse_server(name, value)
            for name, value in servers.items()
        },
    )


def load_configuration(path: Union[Path, str]) -> GatewayConfiguration:
    """Load the configuration of the gateway from a JSON file.

    Parameters
    ----------
    path: Union[pathlib.Path, str]
        Path to the configuration file

    Returns
    -------
    dicomweb_gateway.config.GatewayConfiguration
        Configuration

    """
    logger.debug(f'load configuration from file "{path}"')
    with open(path, 'r') as fp:
        try:
            content = json.load(fp)
        except json.JSONDecodeError as error:
            raise BadFileFormatError(
                f'Cannot parse configuration file "{path}": {error}'
            )
    if not isinstance(content, dict):
        raise BadFileFormatError(
            f'Configuration file "{path}" must contain a JSON object.'
        )
    return parse_configuration(content)
