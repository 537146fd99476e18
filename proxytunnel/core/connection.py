"""
Proxy Connection Lifecycle
==========================
A lazily opened TCP connection to the upstream proxy, carrying one
request/response at a time, plus the policy deciding whether it may carry
another one after a challenge.
"""

from __future__ import annotations

import http.client
import logging
import socket
from typing import Callable, Optional

from proxytunnel.core.errors import ConnectivityError, UnexpectedResponseError
from proxytunnel.core.messages import ConnectRequest, HttpHost, Response

logger = logging.getLogger(__name__)

DEFAULT_PROXY_PORT = 8080


class ProxyConnection:
    """Connection to one proxy, owned by exactly one negotiation.

    Args:
        proxy: Proxy address. A missing port falls back to 8080.
        connect_timeout: Seconds allowed for the TCP connect.
        request_timeout: Read/write timeout while negotiating.
        max_header_size: Upper bound on the response header block, in bytes.
        header_encoding: Charset used to encode request headers.
    """

    def __init__(
        self,
        proxy: HttpHost,
        connect_timeout: Optional[float] = 30.0,
        request_timeout: Optional[float] = 30.0,
        max_header_size: int = 65536,
        header_encoding: str = "iso-8859-1",
    ):
        self.proxy = proxy.with_default_port(DEFAULT_PROXY_PORT)
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.max_header_size = max_header_size
        self.header_encoding = header_encoding
        self._sock: Optional[socket.socket] = None
        self._response: Optional[Response] = None
        self._in_flight = False
        self.connect_count = 0

    # ── Lifecycle ────────────────────────────────────────────────────────

    @property
    def is_open(self) -> bool:
        return self._sock is not None

    @property
    def socket(self) -> Optional[socket.socket]:
        return self._sock

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def bind(self, sock: socket.socket) -> None:
        """Adopt an already connected socket."""
        if self._sock is not None:
            raise RuntimeError("Connection is already bound")
        if self.request_timeout is not None:
            sock.settimeout(self.request_timeout)
        self._sock = sock
        self._in_flight = False

    def ensure_open(self) -> None:
        """Connect to the proxy unless a usable socket is already bound."""
        if self._sock is not None:
            return
        address = (self.proxy.hostname, self.proxy.port)
        try:
            sock = socket.create_connection(address, timeout=self.connect_timeout)
        except OSError as e:
            raise ConnectivityError(f"Cannot connect to proxy {self.proxy.to_host_string()}: {e}") from e
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            logger.debug("TCP_NODELAY not supported on proxy socket")
        self.connect_count += 1
        logger.debug(f"Connected to proxy {self.proxy.to_host_string()}")
        self.bind(sock)

    def close(self) -> None:
        """Close the socket. Safe to call more than once."""
        sock, self._sock = self._sock, None
        self._in_flight = False
        response, self._response = self._response, None
        if response is not None:
            response.release()
        if sock is None:
            return
        try:
            sock.close()
        except OSError as e:
            logger.debug(f"Error closing proxy socket: {e}")
        else:
            logger.debug(f"Closed connection to {self.proxy.to_host_string()}")

    def set_timeout(self, timeout: Optional[float]) -> None:
        if self._sock is not None:
            self._sock.settimeout(timeout)

    # ── Exchange ─────────────────────────────────────────────────────────

    def send_request(self, request: ConnectRequest) -> None:
        if self._sock is None:
            raise ConnectivityError("Connection is not open")
        if self._in_flight:
            raise RuntimeError("A request is already in flight on this connection")
        data = request.to_bytes(self.header_encoding)
        try:
            self._sock.sendall(data)
        except OSError as e:
            self.close()
            raise ConnectivityError(f"Error writing CONNECT request: {e}") from e
        self._in_flight = True
        logger.debug(f">> {request.request_line}")

    def receive_response(self) -> Response:
        if self._sock is None:
            raise ConnectivityError("Connection is not open")
        if not self._in_flight:
            raise RuntimeError("No request in flight on this connection")

        raw = http.client.HTTPResponse(self._sock, method="CONNECT")
        try:
            raw.begin()
        except http.client.HTTPException as e:
            self.close()
            if isinstance(e, http.client.RemoteDisconnected):
                raise ConnectivityError(f"Proxy closed the connection: {e}") from e
            raise UnexpectedResponseError(f"Malformed response to CONNECT request: {e!r}") from e
        except OSError as e:
            self.close()
            raise ConnectivityError(f"Error reading CONNECT response: {e}") from e
        finally:
            self._in_flight = False

        header_size = sum(len(k) + len(v) + 4 for k, v in raw.headers.items())
        if header_size > self.max_header_size:
            self.close()
            raise UnexpectedResponseError(
                f"Response headers exceed {self.max_header_size} bytes ({header_size})"
            )

        response = Response(raw, header_encoding=self.header_encoding)
        self._response = response
        logger.debug(f"<< {response.status_line}")
        return response

    def execute(self, request: ConnectRequest) -> Response:
        """Send ``request`` and read the response headers."""
        self.send_request(request)
        return self.receive_response()

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"<ProxyConnection {self.proxy.to_host_string()} {state}>"


# ── Reuse strategy ───────────────────────────────────────────────────────────

ReuseStrategy = Callable[[ConnectRequest, Response], bool]

_BODYLESS_STATUSES = (204, 304)


class ConnectionReuseStrategy:
    """Decides whether the proxy connection survives a challenge response.

    The connection is dropped when the proxy asked to close it, when an
    HTTP/1.0 response did not ask for keep-alive, or when the body length
    cannot be determined without reading to EOF.
    """

    def __call__(self, request: ConnectRequest, response: Response) -> bool:
        return self.keep_alive(request, response)

    def keep_alive(self, request: ConnectRequest, response: Response) -> bool:
        tokens = self._connection_tokens(response)
        if "close" in tokens:
            return False

        if response.version < 11 and "keep-alive" not in tokens:
            return False

        if response.status in _BODYLESS_STATUSES or 100 <= response.status < 200:
            return True

        transfer_encoding = response.get_all("Transfer-Encoding")
        if transfer_encoding:
            codings = [c.strip().lower() for v in transfer_encoding for c in v.split(",")]
            return bool(codings) and codings[-1] == "chunked"

        lengths = response.get_all("Content-Length")
        if not lengths:
            return False
        values = {v.strip() for v in lengths}
        if len(values) != 1:
            return False
        value = values.pop()
        return value.isdigit()

    @staticmethod
    def _connection_tokens(response: Response) -> set:
        tokens = set()
        for name in ("Connection", "Proxy-Connection"):
            for value in response.get_all(name):
                tokens.update(t.strip().lower() for t in value.split(",") if t.strip())
        return tokens
