"""
proxytunnel Core Module
"""

from proxytunnel.core.auth import DEFAULT_SCHEME_REGISTRY, SCHEME_PREFERENCE, AuthSchemeName
from proxytunnel.core.credentials import AuthScope, BasicCredentialsProvider, Credentials
from proxytunnel.core.errors import (
    AuthExhaustedError,
    ConnectivityError,
    InvalidArgumentError,
    TunnelError,
    TunnelRefusedError,
    UnexpectedResponseError,
)
from proxytunnel.core.messages import HttpHost
from proxytunnel.core.tunnel import ProxyClient, Tunnel, open_tunnel

__all__ = [
    "DEFAULT_SCHEME_REGISTRY",
    "SCHEME_PREFERENCE",
    "AuthSchemeName",
    "AuthScope",
    "BasicCredentialsProvider",
    "Credentials",
    "AuthExhaustedError",
    "ConnectivityError",
    "InvalidArgumentError",
    "TunnelError",
    "TunnelRefusedError",
    "UnexpectedResponseError",
    "HttpHost",
    "ProxyClient",
    "Tunnel",
    "open_tunnel",
]
