"""
Proxy Challenge Handling
========================
Per-negotiation auth exchange state and the handler that detects
``407 Proxy Authentication Required`` challenges and answers them.

State machine::

    UNCHALLENGED ──► CHALLENGED ──► CHALLENGED   (multi-step continuation,
                                                  or fallback to next scheme)
                                ──► RESOLVED     (proxy stopped challenging)
                                ──► EXHAUSTED    (nothing left to try)

Every scheme consumes at most ``MAX_HANDSHAKE_ROUNDS`` challenges and each
advertised scheme is tried at most once, so a negotiation always ends.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Mapping, Optional, Set

from proxytunnel.core.auth import (
    DEFAULT_SCHEME_REGISTRY,
    AuthChallenge,
    AuthScheme,
    AuthSchemeFactory,
    AuthSchemeName,
    parse_challenges,
    preference_rank,
)
from proxytunnel.core.credentials import AuthScope, Credentials, CredentialsProvider
from proxytunnel.core.errors import AuthenticationError
from proxytunnel.core.messages import (
    PROXY_AUTHENTICATE,
    PROXY_AUTHORIZATION,
    ConnectRequest,
    HttpHost,
    Response,
)

logger = logging.getLogger(__name__)

PROXY_AUTH_REQUIRED = 407
MAX_HANDSHAKE_ROUNDS = 5


class AuthState(str, Enum):
    UNCHALLENGED = "unchallenged"
    CHALLENGED = "challenged"
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"


@dataclass
class AuthExchange:
    """Auth progress of one negotiation. Never shared between negotiations."""
    state: AuthState = AuthState.UNCHALLENGED
    scheme: Optional[AuthScheme] = None
    credentials: Optional[Credentials] = None
    pending: Optional[str] = None
    tried: Set[AuthSchemeName] = field(default_factory=set)
    rounds: int = 0

    @property
    def scheme_name(self) -> Optional[AuthSchemeName]:
        return self.scheme.name if self.scheme is not None else None

    def select(self, scheme: AuthScheme, credentials: Optional[Credentials], header: str) -> None:
        self.scheme = scheme
        self.credentials = credentials
        self.pending = header
        self.rounds = 1
        self.tried.add(scheme.name)
        self.state = AuthState.CHALLENGED

    def exhaust(self) -> None:
        self.pending = None
        self.state = AuthState.EXHAUSTED


class ChallengeHandler:
    """Detects proxy challenges and drives the selected scheme's handshake."""

    def __init__(
        self,
        registry: Optional[Mapping[AuthSchemeName, AuthSchemeFactory]] = None,
        credentials_provider: Optional[CredentialsProvider] = None,
        charset: str = "iso-8859-1",
    ):
        self.registry = registry if registry is not None else DEFAULT_SCHEME_REGISTRY
        self.credentials_provider = credentials_provider
        self.charset = charset

    # ── Detection ────────────────────────────────────────────────────────

    def parse(self, response: Response) -> List[AuthChallenge]:
        return parse_challenges(response.get_all(PROXY_AUTHENTICATE))

    def select_schemes(self, challenges: List[AuthChallenge]) -> List[AuthChallenge]:
        """Registered schemes the proxy offered, strongest first, one per scheme."""
        offered = {}
        for ch in challenges:
            name = ch.name
            if name is not None and name in self.registry and name not in offered:
                offered[name] = ch
        return [offered[n] for n in sorted(offered, key=preference_rank)]

    def is_challenged(self, proxy: HttpHost, response: Response, exchange: AuthExchange) -> bool:
        """True iff ``response`` is a 407 advertising at least one registered scheme."""
        if response.status == PROXY_AUTH_REQUIRED:
            if self.select_schemes(self.parse(response)):
                return True
            logger.debug(f"{proxy} sent 407 without a supported scheme")
            return False

        if exchange.state == AuthState.CHALLENGED:
            logger.debug(f"{exchange.scheme_name.value} authentication with {proxy} succeeded")
            exchange.state = AuthState.RESOLVED
            exchange.pending = None
        return False

    # ── Exchange progress ────────────────────────────────────────────────

    def update_state(
        self,
        proxy: HttpHost,
        response: Response,
        exchange: AuthExchange,
        request: ConnectRequest,
    ) -> bool:
        """Advance ``exchange`` with a challenge. Returns whether to retry."""
        if exchange.state in (AuthState.EXHAUSTED, AuthState.RESOLVED):
            return False

        offered = self.select_schemes(self.parse(response))

        if exchange.state == AuthState.CHALLENGED and exchange.scheme is not None:
            if self._continue(proxy, offered, exchange, request):
                return True
            logger.debug(f"{proxy} rejected {exchange.scheme_name.value} authentication")

        for challenge in offered:
            if challenge.name in exchange.tried:
                continue
            if self._start(proxy, challenge, exchange, request):
                return True

        logger.debug(f"No usable authentication scheme left for {proxy}")
        exchange.exhaust()
        return False

    def _continue(
        self,
        proxy: HttpHost,
        offered: List[AuthChallenge],
        exchange: AuthExchange,
        request: ConnectRequest,
    ) -> bool:
        scheme = exchange.scheme
        challenge = next((c for c in offered if c.name == scheme.name), None)
        if challenge is None or not scheme.can_continue(challenge):
            return False
        if exchange.rounds >= MAX_HANDSHAKE_ROUNDS:
            logger.warning(
                f"{scheme.name.value} handshake with {proxy} exceeded {MAX_HANDSHAKE_ROUNDS} rounds"
            )
            return False
        try:
            scheme.process_challenge(challenge)
            exchange.pending = scheme.generate_response(proxy, request, exchange.credentials)
        except AuthenticationError as e:
            logger.debug(f"{scheme.name.value} continuation failed: {e}")
            return False
        exchange.rounds += 1
        return True

    def _start(
        self,
        proxy: HttpHost,
        challenge: AuthChallenge,
        exchange: AuthExchange,
        request: ConnectRequest,
    ) -> bool:
        name = challenge.name
        exchange.tried.add(name)
        scheme = self.registry[name](self.charset)
        try:
            scheme.process_challenge(challenge)
            credentials = self._lookup(proxy, scheme)
            if credentials is None and scheme.requires_credentials:
                logger.debug(f"No credentials for {name.value} at {proxy}, skipping")
                return False
            header = scheme.generate_response(proxy, request, credentials)
        except AuthenticationError as e:
            logger.debug(f"{name.value} unusable for {proxy}: {e}")
            return False
        logger.debug(f"Answering {proxy} challenge with {name.value}")
        exchange.select(scheme, credentials, header)
        return True

    def _lookup(self, proxy: HttpHost, scheme: AuthScheme) -> Optional[Credentials]:
        if self.credentials_provider is None:
            return None
        scope = AuthScope(proxy.hostname, proxy.port, scheme.realm, scheme.name.value)
        return self.credentials_provider.get_credentials(scope)

    # ── Request decoration ───────────────────────────────────────────────

    def add_auth_response(self, request: ConnectRequest, exchange: AuthExchange) -> None:
        """Write the pending ``Proxy-Authorization`` value, replacing any previous one."""
        if exchange.state != AuthState.CHALLENGED or not exchange.pending:
            return
        request.set_header(PROXY_AUTHORIZATION, exchange.pending)
