import json

import pytest

from dicomweb_gateway.config import (
    DEFAULT_BASE_URL,
    GatewayConfiguration,
    load_configuration,
    parse_configuration,
)
from dicomweb_gateway.error import BadFileFormatError, UnknownResourceError
from dicomweb_gateway.transport import RemoteServer


def test_defaults():
    configuration = GatewayConfiguration()
    assert configuration.base_url == DEFAULT_BASE_URL
    assert configuration.stow_max_instances == 10
    assert configuration.stow_max_size == 10
    assert configuration.stow_max_size_bytes == 10 * 1024 * 1024
    assert configuration.servers == {}


def test_base_url_trailing_slash():
    configuration = GatewayConfiguration(base_url='http://host/dicom-web')
    assert configuration.base_url == 'http://host/dicom-web/'


def test_negative_thresholds():
    with pytest.raises(ValueError):
        GatewayConfiguration(stow_max_instances=-1)
    with pytest.raises(ValueError):
        GatewayConfiguration(stow_max_size=-1)


def test_get_server():
    server = RemoteServer('http://archive.example')
    configuration = GatewayConfiguration(servers={'archive': server})
    assert configuration.get_server('archive') is server
    with pytest.raises(UnknownResourceError):
        configuration.get_server('unknown')


def test_parse_configuration():
    configuration = parse_configuration({
        'DicomWeb': {
            'BaseUrl': 'https://gateway.example/dicom-web/',
            'StowMaxInstances': 0,
            'StowMaxSize': 25,
            'Servers': {
                'simple': ['http://simple.example/'],
                'basic': ['http://basic.example/', 'alice', 'secret'],
                'full': {
                    'Url': 'https://full.example/',
                    'Username': 'bob',
                    'Password': 'secret',
                    'HttpHeaders': {'X-Token': 'abc'},
                    'CaBundle': '/etc/ssl/ca.pem',
                },
            },
        },
    })
    assert configuration.base_url == 'https://gateway.example/dicom-web/'
    assert configuration.stow_max_instances == 0
    assert configuration.stow_max_size_bytes == 25 * 1024 * 1024
    assert configuration.servers['simple'] == RemoteServer(
        'http://simple.example/'
    )
    assert configuration.servers['basic'].username == 'alice'
    assert configuration.servers['basic'].password == 'secret'
    full = configuration.servers['full']
    assert full.headers == {'X-Token': 'abc'}
    assert full.ca_bundle == '/etc/ssl/ca.pem'
    assert full.cert is None


def test_parse_configuration_without_section():
    assert parse_configuration({}) == GatewayConfiguration()


@pytest.mark.parametrize('section', [
    [],
    {'BaseUrl': 1},
    {'StowMaxInstances': -1},
    {'StowMaxInstances': True},
    {'StowMaxSize': '10'},
    {'Servers': []},
    {'Servers': {'a': ['http://a', 'user']}},
    {'Servers': {'a': {'Username': 'user'}}},
    {'Servers': {'a': {'Url': 'http://a', 'HttpHeaders': {'b': 1}}}},
    {'Servers': {'a': {'Url': 'http://a', 'Password': 1}}},
    {'Servers': {'a': 'http://a'}},
])
def test_parse_configuration_malformed(section):
    with pytest.raises(BadFileFormatError):
        parse_configuration({'DicomWeb': section})


def test_load_configuration(tmp_path):
    path = tmp_path.joinpath('config.json')
    with open(path, 'w') as fp:
        json.dump({'DicomWeb': {'StowMaxInstances': 3}}, fp)
    configuration = load_configuration(path)
    assert configuration.stow_max_instances == 3


@pytest.mark.parametrize('content', ['{', '[]'])
def test_load_configuration_malformed(tmp_path, content):
    path = tmp_path.joinpath('config.json')
    path.write_text(content)
    with pytest.raises(BadFileFormatError):
        load_configuration(str(path))
