from dicomweb_gateway.config import GatewayConfiguration, load_configuration
from dicomweb_gateway.forward import (
    BatchAccumulator,
    StoreForwarder,
    handle_forward_request,
    resolve_resources,
)
from dicomweb_gateway.repository import LocalRepository, Repository
from dicomweb_gateway.retrieve import (
    RetrieveSelector,
    handle_retrieve_request,
    retrieve_instances,
)
from dicomweb_gateway.stow import StoreResponse, handle_store_request
from dicomweb_gateway.transport import DICOMwebTransport, RemoteServer
from dicomweb_gateway.wado import locate_instance, retrieve_instance

__version__ = '0.1.0'

__all__ = [
    'BatchAccumulator',
    'DICOMwebTransport',
    'GatewayConfiguration',
    'LocalRepository',
    'RemoteServer',
    'Repository',
    'RetrieveSelector',
    'StoreForwarder',
    'StoreResponse',
    'handle_forward_request',
    'handle_retrieve_request',
    'handle_store_request',
    'load_configuration',
    'locate_instance',
    'resolve_resources',
    'retrieve_instance',
    'retrieve_instances',
]
