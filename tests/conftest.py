"""Shared fixtures: a scripted upstream proxy running on a local socket."""

import http.client
import io
import socket
import threading
from typing import Callable, Iterable, List, Optional, Tuple

import pytest

from proxytunnel.core.messages import HttpHost, Response


def http_response(
    status: int,
    reason: str,
    headers: Iterable[Tuple[str, str]] = (),
    body: bytes = b"",
    version: str = "HTTP/1.1",
    content_length: bool = True,
) -> bytes:
    """Render a raw HTTP response."""
    lines = [f"{version} {status} {reason}"]
    lines.extend(f"{k}: {v}" for k, v in headers)
    if content_length:
        lines.append(f"Content-Length: {len(body)}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + body


OK = http_response(200, "Connection established", content_length=False)


class _FakeSocket:
    def __init__(self, data: bytes):
        self._data = data

    def makefile(self, mode, *args, **kwargs):
        return io.BytesIO(self._data)


def parse_response(data: bytes, header_encoding: str = "iso-8859-1") -> Response:
    """Parse raw bytes into a Response without a network."""
    raw = http.client.HTTPResponse(_FakeSocket(data), method="CONNECT")
    raw.begin()
    return Response(raw, header_encoding=header_encoding)


def challenge(*schemes: str, body: bytes = b"auth required", extra=()) -> bytes:
    headers = [("Proxy-Authenticate", s) for s in schemes]
    headers.extend(extra)
    return http_response(407, "Proxy Authentication Required", headers, body)


class ScriptedProxy:
    """Answers each CONNECT with the next scripted response.

    Connections stay open after a response unless the response asks for
    close or carries no length, mirroring what a real proxy does.
    """

    def __init__(
        self,
        responses: List[bytes],
        default: Optional[bytes] = None,
        responder: Optional[Callable[[str], Optional[bytes]]] = None,
    ):
        self.responses = list(responses)
        self.default = default
        self.responder = responder
        self.requests: List[str] = []
        self.connections = 0
        self._lock = threading.Lock()
        self._server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server.bind(("127.0.0.1", 0))
        self._server.listen(16)
        self.port = self._server.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    @property
    def host(self) -> HttpHost:
        return HttpHost("127.0.0.1", self.port)

    def header(self, index: int, name: str) -> Optional[str]:
        """Value of header ``name`` in the ``index``-th request received."""
        for line in self.requests[index].split("\r\n")[1:]:
            key, _, value = line.partition(":")
            if key.strip().lower() == name.lower():
                return value.strip()
        return None

    def _next_response(self, head: str) -> Optional[bytes]:
        if self.responder is not None:
            return self.responder(head)
        with self._lock:
            if self.responses:
                return self.responses.pop(0)
            return self.default

    def _serve(self) -> None:
        while True:
            try:
                conn, _ = self._server.accept()
            except OSError:
                return
            with self._lock:
                self.connections += 1
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn: socket.socket) -> None:
        buf = b""
        with conn:
            while True:
                while b"\r\n\r\n" not in buf:
                    try:
                        chunk = conn.recv(4096)
                    except OSError:
                        return
                    if not chunk:
                        return
                    buf += chunk
                head, buf = buf.split(b"\r\n\r\n", 1)
                text = head.decode("latin-1")
                with self._lock:
                    self.requests.append(text)
                response = self._next_response(text)
                if response is None:
                    return
                conn.sendall(response)

                head_lower = response.split(b"\r\n\r\n", 1)[0].lower()
                parts = head_lower.split(b" ", 2)
                if len(parts) < 2 or not parts[1].isdigit():
                    return
                status = int(parts[1])
                if b"connection: close" in head_lower:
                    return
                if not 200 <= status < 300 and b"content-length" not in head_lower \
                        and b"transfer-encoding" not in head_lower:
                    return

    def close(self) -> None:
        try:
            self._server.close()
        except OSError:
            pass


@pytest.fixture
def scripted_proxy():
    """Factory fixture: ``scripted_proxy([resp1, resp2, ...])``."""
    proxies: List[ScriptedProxy] = []

    def make(responses: List[bytes], default: Optional[bytes] = None, responder=None) -> ScriptedProxy:
        proxy = ScriptedProxy(responses, default=default, responder=responder)
        proxies.append(proxy)
        return proxy

    yield make
    for p in proxies:
        p.close()


@pytest.fixture
def closed_port() -> int:
    """A local port with nothing listening on it."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port
