"""
CONNECT Messages
================
Hosts, the CONNECT request and the proxy's response as seen by the
negotiation loop.
"""

from __future__ import annotations

import http.client
import logging
import urllib.parse
from dataclasses import dataclass, field
from typing import List, Optional

from requests.structures import CaseInsensitiveDict

from proxytunnel import __app_name__, __version__
from proxytunnel.core.errors import InvalidArgumentError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 80
DEFAULT_USER_AGENT = f"{__app_name__}/{__version__}"

PROXY_AUTHORIZATION = "Proxy-Authorization"
PROXY_AUTHENTICATE = "Proxy-Authenticate"


# ── Hosts ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class HttpHost:
    """scheme://hostname:port of either the proxy or the tunnel target."""
    hostname: str
    port: int = -1
    scheme: str = "http"

    @classmethod
    def parse(cls, value: str) -> "HttpHost":
        """Parse ``host``, ``host:port`` or ``scheme://host:port``.

        IPv6 literals must be bracketed (``[::1]:3128``).
        """
        if not value or not value.strip():
            raise InvalidArgumentError("Host must not be empty")
        value = value.strip()
        if "://" not in value:
            value = f"//{value}"
        try:
            parts = urllib.parse.urlsplit(value)
            port = parts.port
        except ValueError as e:
            raise InvalidArgumentError(f"Malformed host {value!r}: {e}") from e
        if not parts.hostname:
            raise InvalidArgumentError(f"Malformed host {value!r}: no hostname")
        return cls(
            hostname=parts.hostname,
            port=port if port is not None else -1,
            scheme=parts.scheme or "http",
        )

    def with_default_port(self, default: int = DEFAULT_PORT) -> "HttpHost":
        if self.port is None or self.port <= 0:
            return HttpHost(self.hostname, default, self.scheme)
        return self

    def to_host_string(self) -> str:
        host = self.hostname
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        if self.port is None or self.port <= 0:
            return host
        return f"{host}:{self.port}"

    def __str__(self) -> str:
        return f"{self.scheme}://{self.to_host_string()}"


# Aliases matching the two roles a host plays during a negotiation.
ProxyTarget = HttpHost
TargetHost = HttpHost


def check_host(host: Optional[HttpHost], name: str) -> HttpHost:
    if host is None:
        raise InvalidArgumentError(f"{name} may not be null")
    if not isinstance(host, HttpHost):
        raise InvalidArgumentError(f"{name} must be an HttpHost, got {type(host).__name__}")
    if not host.hostname:
        raise InvalidArgumentError(f"{name} has no hostname")
    return host


# ── Request ──────────────────────────────────────────────────────────────────

@dataclass
class ConnectRequest:
    """A CONNECT request in authority form (``CONNECT host:port HTTP/1.1``)."""
    target: str
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    method: str = "CONNECT"
    protocol: str = "HTTP/1.1"

    @property
    def request_line(self) -> str:
        return f"{self.method} {self.target} {self.protocol}"

    def set_header(self, name: str, value: str) -> None:
        self.headers[name] = value

    def remove_header(self, name: str) -> None:
        self.headers.pop(name, None)

    def has_header(self, name: str) -> bool:
        return name in self.headers

    def to_bytes(self, encoding: str = "iso-8859-1") -> bytes:
        lines = [self.request_line]
        lines.extend(f"{k}: {v}" for k, v in self.headers.items())
        return ("\r\n".join(lines) + "\r\n\r\n").encode(encoding)


def _wire_hostname(hostname: str) -> str:
    """ASCII form of ``hostname`` for the request line (IDNA for unicode names)."""
    if any(ord(ch) < 0x21 or ord(ch) == 0x7f for ch in hostname):
        raise InvalidArgumentError(f"Hostname {hostname!r} contains whitespace or control characters")
    if hostname.isascii():
        return hostname
    try:
        return hostname.encode("idna").decode("ascii")
    except UnicodeError as e:
        raise InvalidArgumentError(f"Hostname {hostname!r} is not a valid IDN: {e}") from e


def build_connect_request(
    target: Optional[HttpHost],
    user_agent: str = DEFAULT_USER_AGENT,
) -> ConnectRequest:
    """Build the CONNECT request for ``target``, defaulting its port to 80."""
    host = check_host(target, "Target host").with_default_port()
    host = HttpHost(_wire_hostname(host.hostname), host.port, host.scheme)
    authority = host.to_host_string()
    request = ConnectRequest(target=authority)
    request.set_header("Host", authority)
    if user_agent:
        request.set_header("User-Agent", user_agent)
    request.set_header("Proxy-Connection", "Keep-Alive")
    return request


# ── Response ─────────────────────────────────────────────────────────────────

class Response:
    """The proxy's answer to one CONNECT attempt.

    The body stays on the wire until ``drain()`` or ``buffer()`` is called.
    A successful CONNECT response is never read past its headers: whatever
    follows belongs to the tunnel.
    """

    def __init__(self, raw: http.client.HTTPResponse, header_encoding: str = "iso-8859-1"):
        self._raw = raw
        self.status: int = raw.status
        self.reason: str = raw.reason
        self.version: int = raw.version
        self.headers: http.client.HTTPMessage = raw.headers
        self.header_encoding = header_encoding
        self._content: Optional[bytes] = None
        self._consumed = False

    @property
    def status_line(self) -> str:
        version = "HTTP/1.0" if self.version == 10 else "HTTP/1.1"
        return f"{version} {self.status} {self.reason}".rstrip()

    @property
    def raw(self) -> http.client.HTTPResponse:
        return self._raw

    @property
    def is_consumed(self) -> bool:
        return self._consumed

    @property
    def content(self) -> Optional[bytes]:
        """Buffered body, or None if the body was never buffered."""
        return self._content

    def text(self, encoding: str = "utf-8") -> str:
        return (self._content or b"").decode(encoding, errors="replace")

    def get_header(self, name: str) -> Optional[str]:
        values = self.get_all(name)
        return values[0] if values else None

    def get_all(self, name: str) -> List[str]:
        """All values of header ``name``, re-decoded with the configured charset."""
        values = self.headers.get_all(name) or []
        if self.header_encoding.lower() in ("iso-8859-1", "latin-1", "latin1"):
            return list(values)
        decoded = []
        for v in values:
            try:
                decoded.append(v.encode("iso-8859-1").decode(self.header_encoding))
            except (UnicodeEncodeError, UnicodeDecodeError):
                decoded.append(v)
        return decoded

    def release(self) -> None:
        """Stop reading without consuming the body.

        Used on success: whatever follows the header block belongs to the
        tunnel, and the buffered reader must let go of the socket.
        """
        if not self._consumed:
            self._raw.close()
            self._consumed = True

    def drain(self) -> None:
        """Read and discard the body so the connection can carry another request."""
        if self._consumed:
            return
        self._raw.read()
        self._raw.close()
        self._consumed = True

    def buffer(self) -> bytes:
        """Read the whole body into memory."""
        if not self._consumed:
            self._content = self._raw.read()
            self._raw.close()
            self._consumed = True
            logger.debug(f"Buffered {len(self._content)} byte response body")
        return self._content or b""

    def __repr__(self) -> str:
        return f"<Response [{self.status_line}]>"
