"""
Request validation and upstream fetch for the huggingface.co passthrough proxy.

Nothing in here raises for expected failures: validation and the fetch step
return either a value or a ProxyError, and the Flask view turns the error into
a plain-text response.
"""
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Iterator, List, Optional, Tuple, Union
from urllib.parse import urlsplit

import requests
from werkzeug.wsgi import ClosingIterator

ALLOWED_HOST_SUFFIX = "huggingface.co"

# schemes whose URLs must name a host
SPECIAL_SCHEMES = frozenset({"http", "https", "ws", "wss", "ftp"})
FORBIDDEN_HOST_CHARS = frozenset("#%/:<>?@[\\]^|")

# ---- headers ---- #
FORWARDED_HEADERS = frozenset({
    "range",
    "user-agent",
    "accept",
    "accept-language",
    "accept-encoding",
    "content-type",
})

CORS_HEADERS = MappingProxyType({
    "access-control-allow-origin": "*",
    "access-control-allow-headers": "*",
    "access-control-allow-methods": "GET, HEAD, OPTIONS",
    "access-control-expose-headers": "content-length, accept-ranges, content-type",
})

# WSGI servers refuse these, and the body is re-framed on the way out anyway
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})


class ErrorKind(Enum):
    MISSING_TARGET = "missing_target"
    INVALID_TARGET_URL = "invalid_target_url"
    FORBIDDEN_HOST = "forbidden_host"
    UPSTREAM_FAILURE = "upstream_failure"
    BAD_PARAMETER = "bad_parameter"


# Malformed targets share the upstream-failure status.
ERROR_STATUS = {
    ErrorKind.MISSING_TARGET: 400,
    ErrorKind.INVALID_TARGET_URL: 502,
    ErrorKind.FORBIDDEN_HOST: 403,
    ErrorKind.UPSTREAM_FAILURE: 502,
    ErrorKind.BAD_PARAMETER: 400,
}


@dataclass(frozen=True)
class ProxyError:
    kind: ErrorKind
    message: str

    @property
    def status(self) -> int:
        return ERROR_STATUS[self.kind]


@dataclass(frozen=True)
class UpstreamResponse:
    status: int
    headers: List[Tuple[str, str]]
    body: Optional[Iterator[bytes]]


def pick_headers(headers) -> dict:
    """Keep only the inbound headers the upstream is allowed to see."""
    return {k: v for k, v in headers.items() if k.lower() in FORWARDED_HEADERS}


def outbound_method(method: str) -> str:
    # everything except HEAD goes out as a GET, bodies are never forwarded
    return "HEAD" if method == "HEAD" else "GET"


def _normalize_special(raw: str, parts):
    # "https:/host/x" and "https:host/x" name a host for special schemes
    if parts.scheme in SPECIAL_SCHEMES and not parts.netloc:
        rest = raw.split(":", 1)[1].lstrip("/\\")
        if rest:
            return f"{parts.scheme}://{rest}"
    return raw


def _valid_host(parts) -> bool:
    if parts.scheme not in SPECIAL_SCHEMES:
        return True
    host = parts.hostname or ""
    if not host:
        return False
    if parts.netloc.rpartition("@")[2].startswith("["):
        return True
    return not any(c in FORBIDDEN_HOST_CHARS or c.isspace() for c in host)


def resolve_target(raw: Optional[str]) -> Union[str, ProxyError]:
    """
    Validate the ``u`` query value.

    Returns the target URL when it is absolute and its host ends with
    ALLOWED_HOST_SUFFIX. The suffix test is a plain string match, so
    ``notehuggingface.co`` passes as well. Web schemes must carry a usable
    host; ``https:/huggingface.co/x`` is read as ``https://huggingface.co/x``.
    """
    if not raw:
        return ProxyError(ErrorKind.MISSING_TARGET, "Missing ?u=...")

    try:
        parts = urlsplit(raw)
        target = _normalize_special(raw, parts)
        if target != raw:
            parts = urlsplit(target)
        host = parts.hostname or ""
        # touching .port validates it ("https://huggingface.co:x" raises here)
        parts.port
    except ValueError as e:
        return ProxyError(ErrorKind.INVALID_TARGET_URL, f"Proxy error: Invalid URL: {e}")

    if not parts.scheme or not _valid_host(parts):
        return ProxyError(ErrorKind.INVALID_TARGET_URL, f"Proxy error: Invalid URL: {raw}")

    if not host.endswith(ALLOWED_HOST_SUFFIX):
        return ProxyError(ErrorKind.FORBIDDEN_HOST, f"Only {ALLOWED_HOST_SUFFIX} allowed")

    return target


def _relay_body(upstream: requests.Response, chunk_size: int) -> Iterator[bytes]:
    # raw bytes, so content-encoding and content-length still describe them
    for chunk in upstream.raw.stream(chunk_size, decode_content=False):
        if chunk:
            yield chunk


def fetch_upstream(method: str, url: str, headers: dict,
                   chunk_size: int = 65536) -> Union[UpstreamResponse, ProxyError]:
    """
    Issue the single outbound request for one inbound request.

    Redirects are followed by requests. Only transport errors are turned into
    a ProxyError; the upstream status, whatever it is, is passed back as-is.
    """
    try:
        upstream = requests.request(
            method=method,
            url=url,
            headers=headers,
            allow_redirects=True,
            stream=True,
        )
    except requests.RequestException as e:
        return ProxyError(ErrorKind.UPSTREAM_FAILURE, f"Proxy error: {e}")

    resp_headers = [
        (k, v) for k, v in upstream.headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS
    ]

    if method == "HEAD":
        upstream.close()
        body = None
    else:
        # closes upstream even if the server drops the body before reading it
        body = ClosingIterator(_relay_body(upstream, chunk_size), upstream.close)

    return UpstreamResponse(upstream.status_code, resp_headers, body)
