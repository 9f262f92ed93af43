"""Shareable URLs for stored files.

Links are plain bearer URLs: anyone holding one can fetch the file. They carry
no secret, so a link is only as hard to guess as the name the uploader chose.
"""

from typing import Union
from urllib.parse import quote

from .storage import StoredFile

UPLOADS_URL_PREFIX = "/uploads/"


def _file_name(file: Union[StoredFile, str]) -> str:
    return file.name if isinstance(file, StoredFile) else str(file)


def file_path_link(file: Union[StoredFile, str]) -> str:
    """Return the host-relative path under which *file* is served."""

    return f"{UPLOADS_URL_PREFIX}{quote(_file_name(file), safe='')}"


def direct_link(request_host: str, file: Union[StoredFile, str], scheme: str = "http") -> str:
    """Return the absolute URL of *file* as seen through *request_host*.

    The result depends only on the arguments, so the same host and file always
    produce the same link.
    """

    host = (request_host or "").strip().rstrip("/")
    scheme = (scheme or "http").strip().lower()
    return f"{scheme}://{host}{file_path_link(file)}"
