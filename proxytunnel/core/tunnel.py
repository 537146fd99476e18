"""
CONNECT Tunnel Negotiation
==========================
Opens a raw tunnel to a target host through an HTTP forward proxy,
answering proxy authentication challenges until the proxy either accepts
or definitively refuses the CONNECT request.

Usage::

    client = ProxyClient(credentials_provider=provider)
    with client.tunnel(HttpHost("proxy.corp", 3128), HttpHost("example.com", 443)) as t:
        relay(t.socket)

A ``Tunnel`` owns its socket: the caller closes it when the relay ends.
Failures raise a ``TunnelError`` subclass and leave nothing open.
"""

from __future__ import annotations

import http.client
import logging
import socket
from typing import Callable, Mapping, Optional

from proxytunnel.config import TunnelConfig
from proxytunnel.core.auth import (
    DEFAULT_SCHEME_REGISTRY,
    AuthSchemeFactory,
    AuthSchemeName,
    build_registry,
)
from proxytunnel.core.challenge import PROXY_AUTH_REQUIRED, AuthExchange, AuthState, ChallengeHandler
from proxytunnel.core.connection import (
    DEFAULT_PROXY_PORT,
    ConnectionReuseStrategy,
    ProxyConnection,
    ReuseStrategy,
)
from proxytunnel.core.credentials import (
    AuthScope,
    BasicCredentialsProvider,
    Credentials,
    CredentialsProvider,
)
from proxytunnel.core.errors import (
    AuthExhaustedError,
    ConnectivityError,
    TunnelRefusedError,
    UnexpectedResponseError,
)
from proxytunnel.core.messages import (
    DEFAULT_USER_AGENT,
    PROXY_AUTHORIZATION,
    HttpHost,
    Response,
    build_connect_request,
    check_host,
)

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[HttpHost], ProxyConnection]


class Tunnel:
    """An established CONNECT tunnel: the open proxy connection and the
    proxy's final handshake response."""

    def __init__(
        self,
        connection: ProxyConnection,
        response: Response,
        scheme: Optional[AuthSchemeName] = None,
        round_trips: int = 1,
    ):
        self.connection = connection
        self.response = response
        self.scheme = scheme
        self.round_trips = round_trips

    @property
    def socket(self) -> Optional[socket.socket]:
        return self.connection.socket

    @property
    def is_open(self) -> bool:
        return self.connection.is_open

    def close(self) -> None:
        self.connection.close()

    def __enter__(self) -> "Tunnel":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<Tunnel via {self.connection.proxy.to_host_string()} [{self.response.status_line}]>"


class ProxyClient:
    """Establishes tunnels through an HTTP proxy.

    A client holds only read-only collaborators, so one instance can serve
    concurrent ``tunnel`` calls from many threads. Each call owns its own
    connection and auth exchange.

    Args:
        config: Timeouts, header limits and charset. Defaults apply when omitted.
        credentials_provider: Source of proxy credentials. Without one, only
            schemes that can use the ambient login (NTLM, Negotiate, Kerberos)
            can answer a challenge.
        registry: Scheme registry; defaults to every supported scheme.
        reuse_strategy: ``keep_alive(request, response) -> bool``.
        connection_factory: Builds the connection for a proxy address.
    """

    def __init__(
        self,
        config: Optional[TunnelConfig] = None,
        credentials_provider: Optional[CredentialsProvider] = None,
        registry: Optional[Mapping[AuthSchemeName, AuthSchemeFactory]] = None,
        reuse_strategy: Optional[ReuseStrategy] = None,
        connection_factory: Optional[ConnectionFactory] = None,
    ):
        self.config = config or TunnelConfig()
        conn_cfg = self.config.connection
        self.user_agent = conn_cfg.user_agent or DEFAULT_USER_AGENT
        self.challenge_handler = ChallengeHandler(
            registry=registry if registry is not None else DEFAULT_SCHEME_REGISTRY,
            credentials_provider=credentials_provider,
            charset=conn_cfg.header_encoding,
        )
        self.reuse_strategy = reuse_strategy or ConnectionReuseStrategy()
        self.connection_factory = connection_factory or self._default_connection

    @classmethod
    def from_config(cls, config: TunnelConfig, **kwargs) -> "ProxyClient":
        """Client whose credentials and enabled schemes come from ``config``."""
        kwargs.setdefault("credentials_provider", credentials_from_config(config))
        kwargs.setdefault("registry", build_registry(config.auth.schemes))
        return cls(config=config, **kwargs)

    def _default_connection(self, proxy: HttpHost) -> ProxyConnection:
        cfg = self.config.connection
        return ProxyConnection(
            proxy,
            connect_timeout=cfg.connect_timeout,
            request_timeout=cfg.request_timeout,
            max_header_size=cfg.max_header_size,
            header_encoding=cfg.header_encoding,
        )

    def tunnel(self, proxy: HttpHost, target: HttpHost) -> Tunnel:
        """Negotiate a CONNECT tunnel to ``target`` through ``proxy``.

        Raises:
            InvalidArgumentError: ``proxy`` or ``target`` missing or malformed.
            ConnectivityError: Socket failure talking to the proxy.
            UnexpectedResponseError: Informational or malformed response.
            AuthExhaustedError: The proxy kept challenging and no scheme could answer.
            TunnelRefusedError: The proxy settled on a non-2xx status.
        """
        proxy = check_host(proxy, "Proxy host").with_default_port(DEFAULT_PROXY_PORT)
        connect = build_connect_request(target, user_agent=self.user_agent)
        conn = self.connection_factory(proxy)
        exchange = AuthExchange()
        handler = self.challenge_handler
        round_trips = 0

        try:
            while True:
                conn.ensure_open()
                handler.add_auth_response(connect, exchange)

                response = conn.execute(connect)
                round_trips += 1

                if response.status < 200:
                    raise UnexpectedResponseError(
                        f"Unexpected response to CONNECT request: {response.status_line}", response
                    )

                if not handler.is_challenged(proxy, response, exchange):
                    break

                # An unanswerable challenge is the final response; keep its body.
                if not handler.update_state(proxy, response, exchange, connect):
                    break

                if self.reuse_strategy(connect, response):
                    response.drain()
                else:
                    conn.close()
                connect.remove_header(PROXY_AUTHORIZATION)
        except (OSError, http.client.HTTPException) as e:
            conn.close()
            if isinstance(e, ConnectivityError):
                raise
            raise ConnectivityError(f"I/O error negotiating tunnel via {proxy}: {e}") from e
        except BaseException:
            conn.close()
            raise

        status = response.status
        if status > 299:
            try:
                response.buffer()
            except (OSError, http.client.HTTPException) as e:
                logger.debug(f"Could not buffer refusal body from {proxy}: {e}")
            finally:
                conn.close()
            message = f"CONNECT refused by proxy: {response.status_line}"
            # A 407 left standing means no offered scheme could answer it.
            if exchange.state == AuthState.EXHAUSTED or status == PROXY_AUTH_REQUIRED:
                logger.warning(f"{proxy}: authentication exhausted for {connect.target}")
                raise AuthExhaustedError(message, response)
            logger.warning(f"{proxy}: {message} for {connect.target}")
            raise TunnelRefusedError(message, response)

        response.release()
        conn.set_timeout(self.config.connection.socket_timeout)
        logger.info(
            f"Tunnel to {connect.target} via {proxy.to_host_string()} established "
            f"after {round_trips} round trip(s)"
        )
        return Tunnel(conn, response, scheme=exchange.scheme_name, round_trips=round_trips)


def credentials_from_config(config: TunnelConfig) -> Optional[CredentialsProvider]:
    """Credentials provider holding the configured username/password, if any."""
    auth = config.auth
    if not auth.username:
        return None
    provider = BasicCredentialsProvider()
    provider.set_credentials(
        AuthScope(),
        Credentials(auth.username, auth.password, auth.domain or None),
    )
    return provider


def open_tunnel(proxy: HttpHost, target: HttpHost, **kwargs) -> Tunnel:
    """One-shot convenience around ``ProxyClient(**kwargs).tunnel``."""
    return ProxyClient(**kwargs).tunnel(proxy, target)
