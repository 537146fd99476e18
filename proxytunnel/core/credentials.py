"""
Proxy Credentials
=================
Credential lookup keyed by proxy scope. Where the secrets come from (config
file, environment, keyring, a UI prompt) is the caller's business; the
negotiation only asks a provider for the credentials matching a scope.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthScope:
    """Where a set of credentials applies. ``None`` fields match anything."""
    host: Optional[str] = None
    port: Optional[int] = None
    realm: Optional[str] = None
    scheme: Optional[str] = None

    def match(self, other: "AuthScope") -> int:
        """Score how well ``other`` (a concrete request) matches this scope.

        Returns -1 on mismatch, higher is more specific.
        """
        score = 0
        if self.scheme is not None:
            if other.scheme is None or self.scheme.lower() != other.scheme.lower():
                return -1
            score += 1
        if self.realm is not None:
            if other.realm is None or self.realm != other.realm:
                return -1
            score += 2
        if self.port is not None:
            if self.port != other.port:
                return -1
            score += 4
        if self.host is not None:
            if other.host is None or self.host.lower() != other.host.lower():
                return -1
            score += 8
        return score

    def __str__(self) -> str:
        host = self.host or "<any host>"
        port = self.port if self.port is not None else "<any port>"
        realm = f" realm={self.realm!r}" if self.realm else ""
        scheme = f" [{self.scheme}]" if self.scheme else ""
        return f"{host}:{port}{realm}{scheme}"


@dataclass(frozen=True)
class Credentials:
    username: str
    password: Optional[str] = None
    domain: Optional[str] = None

    @property
    def principal(self) -> str:
        """``DOMAIN\\user`` when a domain is set, plain username otherwise."""
        if self.domain:
            return f"{self.domain}\\{self.username}"
        return self.username

    def __repr__(self) -> str:
        secret = "***" if self.password else None
        return f"Credentials(username={self.username!r}, password={secret!r}, domain={self.domain!r})"


class CredentialsProvider:
    """Looks up credentials for a proxy scope."""

    def get_credentials(self, scope: AuthScope) -> Optional[Credentials]:
        raise NotImplementedError


class BasicCredentialsProvider(CredentialsProvider):
    """In-memory provider; the most specific matching scope wins."""

    def __init__(self):
        self._entries: Dict[AuthScope, Credentials] = {}
        self._lock = threading.Lock()

    def set_credentials(self, scope: AuthScope, credentials: Optional[Credentials]) -> None:
        with self._lock:
            if credentials is None:
                self._entries.pop(scope, None)
            else:
                self._entries[scope] = credentials

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_credentials(self, scope: AuthScope) -> Optional[Credentials]:
        with self._lock:
            entries = list(self._entries.items())

        best: Optional[Credentials] = None
        best_score = -1
        for candidate, creds in entries:
            score = candidate.match(scope)
            if score > best_score:
                best, best_score = creds, score
        if best is None:
            logger.debug(f"No credentials for scope {scope}")
        return best

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
