'''Command Line Interface (CLI)'''
import os
import sys
import logging
import argparse
import traceback
import getpass

from dicomweb_gateway.config import GatewayConfiguration, load_configuration
from dicomweb_gateway.forward import StoreForwarder, resolve_resources
from dicomweb_gateway.log import configure_logging
from dicomweb_gateway.repository import LocalRepository
from dicomweb_gateway.retrieve import RetrieveSelector, retrieve_instances
from dicomweb_gateway.stow import handle_store_request
from dicomweb_gateway.transport import DICOMwebTransport, RemoteServer
from dicomweb_gateway.wado import retrieve_instance


logger = logging.getLogger(__name__)


def _get_parser():
    '''Builds the object for parsing command line arguments.

    Returns
    -------
    argparse.ArgumentParser

    '''
    parser = argparse.ArgumentParser(
        description='Gateway between a local DICOM repository and DICOMweb.',
        prog='dicomweb_gateway'
    )
    parser.add_argument(
        '-v', '--verbosity', dest='logging_verbosity', default=0,
        action='count',
        help=(
            'logging verbosity that maps to a logging level '
            '(default: error, -v: warning, -vv: info, -vvv: debug, '
            '-vvvv: debug + traceback); '
            'all log messages are written to standard error'
        )
    )
    parser.add_argument(
        '--log-file', dest='log_file', metavar='PATH',
        help='path to file to which log messages are appended as well'
    )
    parser.add_argument(
        '--config', dest='config_file', metavar='PATH',
        help='path to JSON configuration file'
    )
    parser.add_argument(
        '--repository', dest='repository_dir', metavar='PATH',
        default=os.getcwd(),
        help=(
            'directory of the local repository '
            '(default: current working directory)'
        )
    )

    abstract_server_parser = argparse.ArgumentParser(add_help=False)
    server_group = abstract_server_parser.add_mutually_exclusive_group(
        required=True
    )
    server_group.add_argument(
        '--server', dest='server_name', metavar='NAME',
        help='name of a DICOMweb server of the configuration'
    )
    server_group.add_argument(
        '--url', dest='url', metavar='URL',
        help='uniform resource locator of the DICOMweb service'
    )
    abstract_server_parser.add_argument(
        '-u', '--user', dest='username', metavar='NAME',
        help='username for authentication with the DICOMweb service'
    )
    abstract_server_parser.add_argument(
        '-p', '--password', dest='password', metavar='PASSWORD',
        help='password for authentication with the DICOMweb service'
    )

    subparsers = parser.add_subparsers(dest='method', help='services')
    subparsers.required = True

    # STOW server
    store_parser = subparsers.add_parser(
        'store',
        description=(
            'STOW-RS: store the instances of a multipart request message '
            'in the repository and print the status document.'
        )
    )
    store_parser.add_argument(
        '--content-type', dest='content_type', metavar='TYPE', required=True,
        help='value of the Content-Type header field of the request message'
    )
    store_parser.add_argument(
        '--accept', dest='accept', metavar='TYPE',
        help='media type of the status document (default: DICOM JSON)'
    )
    store_parser.add_argument(
        '--study', metavar='UID', dest='study_instance_uid',
        help='unique study identifier to which the request is restricted'
    )
    store_parser.add_argument(
        metavar='PATH', dest='file',
        help='path to file with the payload of the request message'
    )
    store_parser.set_defaults(func=_store_instances)

    # STOW client
    forward_parser = subparsers.add_parser(
        'forward',
        description=(
            'STOW-RS: forward instances, series, studies or patients of the '
            'repository to a DICOMweb server.'
        ),
        parents=[abstract_server_parser]
    )
    forward_parser.add_argument(
        metavar='ID', dest='resources', nargs='+',
        help='identifier of a resource in the repository'
    )
    forward_parser.set_defaults(func=_forward_resources)

    # WADO client
    retrieve_parser = subparsers.add_parser(
        'retrieve',
        description=(
            'WADO-RS: retrieve instances from a DICOMweb server and store '
            'them in the repository.'
        ),
        parents=[abstract_server_parser]
    )
    retrieve_parser.add_argument(
        '--study', metavar='UID', dest='study_instance_uid', required=True,
        help='unique study identifier (StudyInstanceUID)'
    )
    retrieve_parser.add_argument(
        '--series', metavar='UID', dest='series_instance_uid',
        help='unique series identifier (SeriesInstanceUID)'
    )
    retrieve_parser.add_argument(
        '--instance', metavar='UID', dest='sop_instance_uid',
        help='unique instance identifier (SOPInstanceUID)'
    )
    retrieve_parser.set_defaults(func=_retrieve_instances)

    # WADO-URI server
    wado_parser = subparsers.add_parser(
        'wado',
        description=(
            'WADO-URI: write an instance of the repository to a file.'
        )
    )
    wado_parser.add_argument(
        '--object', metavar='UID', dest='sop_instance_uid', required=True,
        help='unique instance identifier (objectUID)'
    )
    wado_parser.add_argument(
        '--study', metavar='UID', dest='study_instance_uid',
        help='unique study identifier (studyUID)'
    )
    wado_parser.add_argument(
        '--series', metavar='UID', dest='series_instance_uid',
        help='unique series identifier (seriesUID)'
    )
    wado_parser.add_argument(
        '--content-type', dest='content_type', metavar='TYPE',
        default='application/dicom',
        help='requested media type (default: application/dicom)'
    )
    wado_parser.add_argument(
        '-o', '--output', metavar='PATH', dest='output_file', required=True,
        help='path to file to which the instance should be written'
    )
    wado_parser.set_defaults(func=_retrieve_file)

    return parser


def _get_configuration(args):
    if args.config_file is None:
        return GatewayConfiguration()
    return load_configuration(args.config_file)


def _get_repository(args):
    path = os.path.abspath(args.repository_dir)
    return LocalRepository(f'file://{path}')


def _get_server(args, configuration):
    if args.server_name is not None:
        return configuration.get_server(args.server_name)
    return RemoteServer(
        args.url,
        username=args.username,
        password=args.password
    )


def _store_instances(args):
    '''Reads a STOW-RS request message payload from a file and stores the
    contained instances.
    '''
    configuration = _get_configuration(args)
    repository = _get_repository(args)
    with open(args.file, 'rb') as fp:
        body = fp.read()
    response = handle_store_request(
        repository,
        body,
        args.content_type,
        accept=args.accept,
        base_url=configuration.base_url,
        expected_study_instance_uid=args.study_instance_uid
    )
    print(response.body.decode('utf-8'))


def _forward_resources(args):
    '''Forwards resources of the repository via STOW-RS.'''
    configuration = _get_configuration(args)
    repository = _get_repository(args)
    server = _get_server(args, configuration)
    instances = resolve_resources(repository, args.resources)
    forwarder = StoreForwarder.from_configuration(
        repository,
        DICOMwebTransport(),
        configuration
    )
    forwarder.forward(instances, server)


def _retrieve_instances(args):
    '''Retrieves instances via WADO-RS and prints their identifiers.'''
    configuration = _get_configuration(args)
    repository = _get_repository(args)
    server = _get_server(args, configuration)
    selector = RetrieveSelector(
        args.study_instance_uid,
        args.series_instance_uid,
        args.sop_instance_uid
    )
    instances = retrieve_instances(
        repository,
        DICOMwebTransport(),
        server,
        selector
    )
    for identifier in sorted(instances):
        print(identifier)


def _retrieve_file(args):
    '''Writes an instance of the repository to a file as requested via
    WADO-URI.
    '''
    repository = _get_repository(args)
    params = {
        'requestType': 'WADO',
        'objectUID': args.sop_instance_uid,
        'contentType': args.content_type,
    }
    if args.study_instance_uid is not None:
        params['studyUID'] = args.study_instance_uid
    if args.series_instance_uid is not None:
        params['seriesUID'] = args.series_instance_uid
    data = retrieve_instance(repository, params)
    with open(args.output_file, 'wb') as fp:
        fp.write(data)


def main(args=None):
    '''Main entry point for the ``dicomweb_gateway`` command line program.

    Parameters
    ----------
    args: Union[argparse.Namespace, None], optional
        parsed command line arguments (parsed from ``sys.argv`` by default)

    '''
    if args is None:
        parser = _get_parser()
        args = parser.parse_args()

    if getattr(args, 'username', None):
        if not args.password:
            message = 'Enter password for user "{0}": '.format(args.username)
            args.password = getpass.getpass(message)

    configure_logging(args.logging_verbosity, args.log_file)
    try:
        args.func(args)
        sys.exit(0)
    except Exception as err:
        logger.error(str(err))
        if args.logging_verbosity > 3:
            tb = traceback.format_exc()
            logger.error(tb)
        sys.exit(1)


if __name__ == '__main__':

    main()
