"""Encoding and decoding of "multipart/related" message bodies.

Message framing follows `RFC 2046 <https://tools.ietf.org/html/rfc2046>`_
and `RFC 2387 <https://tools.ietf.org/html/rfc2387>`_ with CRLF line
endings, as required for binary DICOM parts.

"""
import logging
import uuid
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from dicomweb_gateway.error import (
    MalformedMultipartError,
    NotEnoughMemoryError,
    UnsupportedMediaTypeError,
)

logger = logging.getLogger(__name__)

MULTIPART_RELATED = 'multipart/related'
APPLICATION_DICOM = 'application/dicom'


class MultipartItem(NamedTuple):

    """Individual part of a decoded multipart message.

    Attributes
    ----------
    content_type: str
        Value of the Content-Type header field of the part as it appears in
        the message (empty string if the part has no Content-Type header)
    body: memoryview
        Content of the part (a view on the decoded message body)
    size: int
        Number of bytes of the content

    """

    content_type: str
    body: memoryview
    size: int

    @property
    def media_type(self) -> str:
        """str: Lower-cased media type of the part without parameters"""
        if not self.content_type:
            return ''
        media_type, _ = parse_media_type(self.content_type)
        return media_type


def generate_boundary() -> str:
    """Generate a fresh boundary token.

    Returns
    -------
    str
        Random UUID that is used as boundary

    Raises
    ------
    dicomweb_gateway.error.NotEnoughMemoryError
        When the token could not be allocated

    """
    try:
        return str(uuid.uuid4())
    except MemoryError:
        raise NotEnoughMemoryError('failed to generate multipart boundary')


def build_content_type(
    boundary: str,
    media_type: str = APPLICATION_DICOM
) -> str:
    """Build the value of the Content-Type header field of a message.

    Parameters
    ----------
    boundary: str
        Boundary token
    media_type: str, optional
        Media type of the individual parts

    Returns
    -------
    str
        Header field value

    """
    return f'{MULTIPART_RELATED}; type={media_type}; boundary={boundary}'


def encode_part_header(boundary: str, content_type: str, size: int) -> bytes:
    """Encode the delimiter and header fields that precede a part."""
    return (
        f'\r\n--{boundary}\r\n'
        f'Content-Type: {content_type}\r\n'
        f'Content-Length: {size}\r\n'
        '\r\n'
    ).encode('utf-8')


def encode_closing_delimiter(boundary: str) -> bytes:
    """Encode the delimiter that terminates a message."""
    return f'\r\n--{boundary}--\r\n'.encode('utf-8')


def encode_multipart_message(
    parts: Sequence[Tuple[str, bytes]],
    boundary: Optional[str] = None
) -> Tuple[bytes, str]:
    """Encode the payload of a multipart message.

    Parameters
    ----------
    parts: Sequence[Tuple[str, bytes]]
        Media type and content of each part
    boundary: Union[str, None], optional
        Boundary token (a fresh token is generated by default)

    Returns
    -------
    bytes
        Message body
    str
        Boundary token used to delimit the parts

    """
    if boundary is None:
        boundary = generate_boundary()
    body = bytearray()
    for content_type, data in parts:
        body += encode_part_header(boundary, content_type, len(data))
        body += data
    body += encode_closing_delimiter(boundary)
    return bytes(body), boundary


def _strip_quotes(value: str) -> str:
    # Parameter values may be quoted strings
    # (see https://tools.ietf.org/html/rfc7231#section-3.1.1.1)
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return value[1:-1]
    return value


def parse_media_type(content_type: str) -> Tuple[str, Dict[str, str]]:
    """Split a Content-Type header field value into media type and parameters.

    Parameters
    ----------
    content_type: str
        Header field value, e.g.
        ``'multipart/related; type="application/dicom"; boundary=XYZ'``

    Returns
    -------
    str
        Lower-cased media type
    Dict[str, str]
        Parameters with lower-cased names and unquoted values

    """
    media_type, *ct_info = [ct.strip() for ct in content_type.split(';')]
    parameters = {}
    for item in ct_info:
        name, sep, value = item.partition('=')
        if not sep:
            continue
        parameters[name.strip().lower()] = _strip_quotes(value.strip())
    return media_type.lower(), parameters


def parse_content_type(content_type: str) -> Tuple[str, Dict[str, str]]:
    """Parse the Content-Type header field value of a multipart message.

    Parameters
    ----------
    content_type: str
        Header field value

    Returns
    -------
    str
        Lower-cased media type (``"multipart/related"``)
    Dict[str, str]
        Parameters with lower-cased names and unquoted values

    Raises
    ------
    dicomweb_gateway.error.UnsupportedMediaTypeError
        When the media type is not "multipart/related"

    """
    media_type, parameters = parse_media_type(content_type)
    if media_type != MULTIPART_RELATED:
        raise UnsupportedMediaTypeError(
            f'Unexpected media type: "{media_type}". '
            f'Expected "{MULTIPART_RELATED}".'
        )
    return media_type, parameters


def _parse_part_headers(block: bytes) -> Dict[str, str]:
    headers = {}
    for line in block.split(b'\r\n'):
        name, sep, value = line.partition(b':')
        if not sep:
            continue
        key = name.decode('latin-1').strip().lower()
        headers[key] = value.decode('latin-1').strip()
    return headers


def decode_multipart_message(
    body: bytes,
    boundary: str
) -> List[MultipartItem]:
    """Decode a multipart message body into its parts.

    Parameters
    ----------
    body: bytes
        Message body
    boundary: str
        Boundary token as specified in the Content-Type header field

    Returns
    -------
    List[dicomweb_gateway.multipart.MultipartItem]
        Message parts in the order in which they appear in `body`

    Raises
    ------
    dicomweb_gateway.error.MalformedMultipartError
        When `boundary` is empty, when `body` does not contain the boundary
        or when a part is not followed by a delimiter

    """
    if not boundary:
        raise MalformedMultipartError('Multipart boundary must not be empty.')
    view = memoryview(body)
    marker = b''.join((b'--', boundary.encode('utf-8')))
    delimiter = b''.join((b'\r\n', marker))

    if body.startswith(marker):
        position = 0
    else:
        position = body.find(delimiter)
        if position < 0:
            raise MalformedMultipartError(
                f'Boundary "{boundary}" not found in multipart message.'
            )
        position += 2

    items = []
    while True:
        position += len(marker)
        if body.startswith(b'--', position):
            break
        end_of_line = body.find(b'\r\n', position)
        if end_of_line < 0:
            raise MalformedMultipartError(
                f'Incomplete delimiter line of part #{len(items)}.'
            )
        end_of_headers = body.find(b'\r\n\r\n', end_of_line)
        if end_of_headers < 0:
            raise MalformedMultipartError(
                f'Header fields of part #{len(items)} are not CRLF CRLF '
                'terminated.'
            )
        headers = _parse_part_headers(body[end_of_line + 2:end_of_headers])
        start = end_of_headers + 4

        content_length = headers.get('content-length', '')
        if content_length.isdigit():
            end = start + int(content_length)
            if not body.startswith(delimiter, end):
                raise MalformedMultipartError(
                    f'Part #{len(items)} is not followed by a delimiter.'
                )
        else:
            end = body.find(delimiter, start)
            if end < 0:
                raise MalformedMultipartError(
                    f'Part #{len(items)} is not followed by a delimiter.'
                )

        content_type = headers.get('content-type', '')
        logger.debug(
            f'decoded part #{len(items)} with content type '
            f'"{content_type}" of size {end - start}'
        )
        items.append(MultipartItem(content_type, view[start:end], end - start))
        position = end + 2

    return items
