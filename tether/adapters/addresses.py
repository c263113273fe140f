"""Connection address helpers.

Addresses look like ``scheme://host:port[/path][?secret=TOKEN]``. The
bearer token lives in the address itself, so it survives reconnects
untouched; these helpers derive sibling request/response URLs from the
persistent-connection address without disturbing the query string.
"""
from __future__ import annotations

import re

from yarl import URL

_SECRET_RE = re.compile(r"([?&])secret=[^&]+")

_HTTP_SCHEMES = {"ws": "http", "wss": "https"}

UPLOAD_PATH = "/upload"
RETRIGGER_PATH = "/hmr-retrigger"


def mask_secret(address: str) -> str:
    """Hide the bearer token for logging."""
    return _SECRET_RE.sub(r"\1secret=***", address)


def to_http_url(address: str) -> str:
    """Swap the persistent-connection scheme for its request/response twin."""
    url = URL(address)
    scheme = _HTTP_SCHEMES.get(url.scheme)
    if scheme is None:
        return address
    return str(url.with_scheme(scheme))


def sibling_url(address: str, path: str) -> str:
    """Return the request/response URL for *path* on the same host/port.

    The path is appended to any existing path, before the query string,
    so ``ws://h:1/?secret=x`` + ``/upload`` gives ``http://h:1/upload?secret=x``.
    """
    url = URL(to_http_url(address))
    # with_path drops the query, so carry it over explicitly.
    joined = url.with_path(url.path.rstrip("/") + path)
    if url.raw_query_string:
        joined = joined.with_query(url.raw_query_string)
    return str(joined)


def upload_url(address: str) -> str:
    return sibling_url(address, UPLOAD_PATH)


def retrigger_url(address: str) -> str:
    return sibling_url(address, RETRIGGER_PATH)
