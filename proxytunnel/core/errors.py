"""
Tunnel Errors
=============
Failure classes surfaced by a single ``ProxyClient.tunnel`` call.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from proxytunnel.core.messages import Response


class TunnelError(Exception):
    """Base class for every tunnel negotiation failure."""


class InvalidArgumentError(TunnelError, ValueError):
    """Proxy or target host missing or malformed. Raised before any I/O."""


class ConnectivityError(TunnelError, OSError):
    """Socket connect/read/write failure talking to the proxy."""


class UnexpectedResponseError(TunnelError):
    """The proxy answered CONNECT with something that is not usable HTTP."""

    def __init__(self, message: str, response: Optional["Response"] = None):
        super().__init__(message)
        self.response = response


class TunnelRefusedError(TunnelError):
    """The proxy settled on a non-2xx status for the CONNECT request.

    The response body is buffered, so ``response.content`` stays readable
    after the connection has been closed.
    """

    def __init__(self, message: str, response: "Response"):
        super().__init__(message)
        self.response = response

    @property
    def status(self) -> int:
        return self.response.status

    @property
    def reason(self) -> str:
        return self.response.reason


class AuthExhaustedError(TunnelRefusedError):
    """Refusal caused by a challenge none of the registered schemes could answer."""


class AuthenticationError(TunnelError):
    """A scheme handler could not produce a response to a challenge."""
