"""Utilities for DICOMweb URI manipulation."""
from typing import Any, Dict, Optional
from urllib.parse import quote_plus


def build_query_string(params: Optional[Dict[str, Any]] = None) -> str:
    """Build query string for a request message.

    Parameters
    ----------
    params: Union[Dict[str, Any], None], optional
        Query parameters as mapping of key-value pairs;
        in case a key should be included more than once with different
        values, values need to be provided in form of an iterable (e.g.,
        ``{"key": ["value1", "value2"]}`` will result in
        ``"?key=value1&key=value2"``)

    Returns
    -------
    str
        Query string

    """
    if params is None:
        return ''
    components = []
    for key, value in params.items():
        if isinstance(value, (list, tuple, set)):
            for v in value:
                components.append('='.join([key, quote_plus(str(v))]))
        else:
            components.append('='.join([key, quote_plus(str(value))]))
    if len(components) > 0:
        return '?{}'.format('&'.join(components))
    return ''


def build_resource_path(
    study_instance_uid: str,
    series_instance_uid: Optional[str] = None,
    sop_instance_uid: Optional[str] = None
) -> str:
    """Build the relative path of a study, series or instance resource.

    Parameters
    ----------
    study_instance_uid: str
        Study Instance UID
    series_instance_uid: Union[str, None], optional
        Series Instance UID
    sop_instance_uid: Union[str, None], optional
        SOP Instance UID (ignored unless `series_instance_uid` is given)

    Returns
    -------
    str
        Path of the form
        ``studies/{study}[/series/{series}[/instances/{instance}]]``

    """
    path = f'studies/{study_instance_uid}'
    if series_instance_uid:
        path += f'/series/{series_instance_uid}'
        if sop_instance_uid:
            path += f'/instances/{sop_instance_uid}'
    return path


def join_url(base_url: str, path: str) -> str:
    """Join a base URL and a relative path with exactly one slash."""
    return '/'.join([base_url.rstrip('/'), path.lstrip('/')])


def build_resource_url(
    base_url: str,
    study_instance_uid: str,
    series_instance_uid: Optional[str] = None,
    sop_instance_uid: Optional[str] = None
) -> str:
    """Build the absolute URL of a study, series or instance resource.

    Parameters
    ----------
    base_url: str
        Base URL of the DICOMweb service
    study_instance_uid: str
        Study Instance UID
    series_instance_uid: Union[str, None], optional
        Series Instance UID
    sop_instance_uid: Union[str, None], optional
        SOP Instance UID

    Returns
    -------
    str
        Resource URL

    """
    path = build_resource_path(
        study_instance_uid,
        series_instance_uid,
        sop_instance_uid
    )
    return join_url(base_url, path)
