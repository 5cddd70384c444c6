import ipaddress
import json
import socket
import string
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Tuple
from urllib.parse import urlsplit

import httpx

from apiproxy.errors import BadRequest, UpstreamError

_client: Optional[httpx.AsyncClient] = None

# Best-effort SSRF guard. Metadata IPs, private ranges and DNS rebinding are not covered.
ALLOWED_SCHEME = "https"
BLOCKED_HOSTS = ("localhost", "127.0.0.1", "::1")
BLOCKED_HOST_SUFFIX = ".local"
# Characters a URL parser refuses inside a host name
FORBIDDEN_HOST_CHARS = frozenset("\t\n\r #%/:<>?@[\\]^|\x7f")

DEFAULT_CONTENT_TYPE = "application/json; charset=utf-8"
EMPTY_JSON_BODY = "{}"
UPSTREAM_FAILURE_MESSAGE = "Proxy request failed"


@dataclass
class ProxyRequest:
    """Inbound request as seen by the forwarder. body is the parsed JSON (None when absent)."""
    method: str
    base: Optional[str] = None
    path: Optional[str] = None
    authorization: Optional[str] = None
    body: Any = None


@dataclass
class OutboundRequest:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None

    @property
    def target_host(self) -> str:
        return httpx.URL(self.url).host


@dataclass
class UpstreamResponse:
    status_code: int
    content_type: Optional[str] = None
    content: bytes = b""


@dataclass
class ProxyResponse:
    status_code: int
    content_type: str
    content: bytes


class Transport(Protocol):
    """Capability to perform one outbound HTTP call."""

    async def send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[str],
    ) -> UpstreamResponse: ...


class HttpxTransport:
    """Transport backed by a shared httpx.AsyncClient."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[str],
    ) -> UpstreamResponse:
        response = await self._client.request(method, url, headers=headers, content=body)
        return UpstreamResponse(
            status_code=response.status_code,
            content_type=response.headers.get("content-type"),
            content=response.content,
        )


def get_client() -> httpx.AsyncClient:
    global _client
    if _client is None:
        # No explicit timeout: httpx defaults govern the outbound call.
        _client = httpx.AsyncClient(follow_redirects=True)
    return _client


async def close_client() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


def _normalize_host(host: str) -> Optional[str]:
    """
    Lower-case host as a URL parser would see it, or None when it is not a valid host.
    Numeric IPv4 spellings (127.1, 0x7f000001, 2130706433) collapse to dotted quad.
    """
    host = host.lower()
    if ":" in host:
        if "%" in host:
            return None
        try:
            ipaddress.IPv6Address(host)
        except ValueError:
            return None
        return host
    if any(ch in FORBIDDEN_HOST_CHARS or ord(ch) < 0x20 for ch in host):
        return None
    labels = host[:-1].split(".") if host.endswith(".") else host.split(".")
    last = labels[-1]
    if last.isdigit() or (last.startswith("0x") and all(c in string.hexdigits for c in last[2:])):
        try:
            return str(ipaddress.IPv4Address(socket.inet_aton(".".join(labels))))
        except OSError:
            return None
    return host


def is_allowed_base(base: str) -> bool:
    """Return False for unparsable, non-https, loopback or .local targets."""
    try:
        parsed = urlsplit(base)
        host = parsed.hostname
        parsed.port  # ValueError when out of range or not numeric
    except ValueError:
        return False
    if parsed.scheme.lower() != ALLOWED_SCHEME or not host:
        return False
    host = _normalize_host(host)
    if host is None:
        return False
    if host in BLOCKED_HOSTS:
        return False
    if host.endswith(BLOCKED_HOST_SUFFIX):
        return False
    return True


def validate_query(base: Optional[str], path: Optional[str]) -> Tuple[str, str]:
    if not base or not path:
        raise BadRequest("Missing base or path")
    if not is_allowed_base(base):
        raise BadRequest("Invalid base URL")
    if not path.startswith("/"):
        raise BadRequest("path must start with /")
    return base, path


def build_target_url(base: str, path: str) -> str:
    """
    Strip one trailing slash from base and append path verbatim.
    httpx.InvalidURL is not caught here; it reaches the hosting runtime.
    """
    if base.endswith("/"):
        base = base[:-1]
    return str(httpx.URL(base + path))


def build_headers(method: str, authorization: Optional[str]) -> Dict[str, str]:
    """Only Authorization is forwarded from the inbound request."""
    headers: Dict[str, str] = {}
    if authorization:
        headers["Authorization"] = authorization
    if method == "POST":
        headers["Content-Type"] = "application/json"
    return headers


def _is_empty_body(body: Any) -> bool:
    # null, false, 0 and "" all count as no body; {} and [] do not
    if body is None or body is False:
        return True
    return isinstance(body, (int, float, str)) and not body


def build_body(method: str, body: Any) -> Optional[str]:
    if method != "POST":
        return None
    if _is_empty_body(body):
        return EMPTY_JSON_BODY
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False)


def prepare(request: ProxyRequest) -> OutboundRequest:
    """Validate the inbound request and project it onto the outbound call."""
    base, path = validate_query(request.base, request.path)
    return OutboundRequest(
        method=request.method,
        url=build_target_url(base, path),
        headers=build_headers(request.method, request.authorization),
        body=build_body(request.method, request.body),
    )


async def dispatch(transport: Transport, outbound: OutboundRequest) -> UpstreamResponse:
    """Issue the outbound call once. Any failure becomes UpstreamError (502)."""
    try:
        return await transport.send(
            outbound.method,
            outbound.url,
            outbound.headers,
            outbound.body,
        )
    except Exception as exc:
        raise UpstreamError(str(exc) or UPSTREAM_FAILURE_MESSAGE, cause=exc) from exc


def relay(upstream: UpstreamResponse) -> ProxyResponse:
    return ProxyResponse(
        status_code=upstream.status_code,
        content_type=upstream.content_type or DEFAULT_CONTENT_TYPE,
        content=upstream.content,
    )


async def forward(request: ProxyRequest, transport: Transport) -> ProxyResponse:
    """Validate, dispatch and relay one request. Raises ProxyError subclasses on failure."""
    outbound = prepare(request)
    upstream = await dispatch(transport, outbound)
    return relay(upstream)
