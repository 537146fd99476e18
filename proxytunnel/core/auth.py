"""
Proxy Authentication Schemes
============================
The closed set of schemes a proxy may ask for, a parser for
``Proxy-Authenticate`` challenges, and one stateful handler per scheme.

Supported schemes, strongest first:
  • Kerberos   – raw Kerberos via GSSAPI/SSPI
  • Negotiate  – SPNEGO (Kerberos with NTLM fallback)
  • Digest     – RFC 7616 (MD5, SHA, SHA-256, SHA-512, *-sess variants)
  • NTLM       – connection-bound three-leg handshake
  • Basic      – RFC 7617

GSS-backed schemes use ``pyspnego``; without explicit credentials they
authenticate as the logged-on user (ticket cache or SSPI).
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import spnego

from proxytunnel.core.credentials import Credentials
from proxytunnel.core.errors import AuthenticationError
from proxytunnel.core.messages import ConnectRequest, HttpHost

logger = logging.getLogger(__name__)


# ── Scheme names ─────────────────────────────────────────────────────────────

class AuthSchemeName(str, Enum):
    BASIC = "Basic"
    DIGEST = "Digest"
    NTLM = "NTLM"
    SPNEGO = "Negotiate"
    KERBEROS = "Kerberos"

    @classmethod
    def from_str(cls, name: str) -> Optional["AuthSchemeName"]:
        """Case-insensitive lookup; None for schemes we do not speak."""
        lowered = (name or "").strip().lower()
        for member in cls:
            if member.value.lower() == lowered:
                return member
        if lowered == "spnego":
            return cls.SPNEGO
        return None


# Strongest first. A weaker scheme is only tried once every stronger one
# the proxy offered has failed.
SCHEME_PREFERENCE: Tuple[AuthSchemeName, ...] = (
    AuthSchemeName.KERBEROS,
    AuthSchemeName.SPNEGO,
    AuthSchemeName.DIGEST,
    AuthSchemeName.NTLM,
    AuthSchemeName.BASIC,
)


def preference_rank(name: AuthSchemeName) -> int:
    return SCHEME_PREFERENCE.index(name)


# ── Challenge parsing ────────────────────────────────────────────────────────

@dataclass
class AuthChallenge:
    """One challenge from a ``Proxy-Authenticate`` header."""
    scheme: str
    token68: Optional[str] = None
    params: Dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> Optional[AuthSchemeName]:
        return AuthSchemeName.from_str(self.scheme)

    def __str__(self) -> str:
        if self.token68:
            return f"{self.scheme} {self.token68[:16]}..."
        params = ", ".join(f"{k}={v!r}" for k, v in self.params.items())
        return f"{self.scheme} {params}".strip()


_TOKEN = r"[!#$%&'*+.^_`|~0-9A-Za-z-]+"
_TOKEN68_RE = re.compile(r"^[A-Za-z0-9\-._~+/]+=*$")
_SCHEME_RE = re.compile(rf"^({_TOKEN})(?:\s+(.*))?$", re.S)
_PARAM_RE = re.compile(rf'^({_TOKEN})\s*=\s*("(?:[^"\\]|\\.)*"|[^\s,]*)$', re.S)


def _split_commas(value: str) -> List[str]:
    """Split on commas that are not inside a quoted-string."""
    pieces: List[str] = []
    buf: List[str] = []
    quoted = escaped = False
    for ch in value:
        if escaped:
            buf.append(ch)
            escaped = False
        elif ch == "\\" and quoted:
            buf.append(ch)
            escaped = True
        elif ch == '"':
            buf.append(ch)
            quoted = not quoted
        elif ch == "," and not quoted:
            pieces.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
    pieces.append("".join(buf))
    return pieces


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    return value


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def parse_challenges(values: Iterable[str]) -> List[AuthChallenge]:
    """Parse ``Proxy-Authenticate`` header values into challenges.

    A single header may carry several challenges
    (``Negotiate, NTLM, Basic realm="corp"``) and a challenge may spread its
    parameters over several comma-separated pieces.
    """
    challenges: List[AuthChallenge] = []
    for value in values:
        current: Optional[AuthChallenge] = None
        for piece in _split_commas(value or ""):
            piece = piece.strip()
            if not piece:
                continue

            param = _PARAM_RE.match(piece)
            if param:
                if current is None:
                    logger.debug(f"Ignoring auth-param outside a challenge: {piece!r}")
                    continue
                current.params[param.group(1).lower()] = _unquote(param.group(2))
                continue

            scheme = _SCHEME_RE.match(piece)
            if not scheme:
                logger.debug(f"Unparseable challenge fragment: {piece!r}")
                continue
            current = AuthChallenge(scheme=scheme.group(1))
            challenges.append(current)
            rest = (scheme.group(2) or "").strip()
            if not rest:
                continue
            if _TOKEN68_RE.match(rest):
                current.token68 = rest
                continue
            first = _PARAM_RE.match(rest)
            if first:
                current.params[first.group(1).lower()] = _unquote(first.group(2))
            else:
                logger.debug(f"Unparseable challenge parameters: {rest!r}")
    return challenges


# ── Scheme handlers ──────────────────────────────────────────────────────────

class AuthScheme:
    """Stateful handler for one scheme within one negotiation.

    ``process_challenge`` absorbs a challenge, ``generate_response`` turns the
    current state into a ``Proxy-Authorization`` value. Handlers raise
    ``AuthenticationError`` when they cannot answer.
    """

    name: AuthSchemeName
    requires_credentials = True

    def __init__(self, charset: str = "iso-8859-1"):
        self.charset = charset
        self.realm: Optional[str] = None
        self._complete = False

    @property
    def is_complete(self) -> bool:
        return self._complete

    def process_challenge(self, challenge: AuthChallenge) -> None:
        self.realm = challenge.params.get("realm", self.realm)

    def can_continue(self, challenge: AuthChallenge) -> bool:
        """Whether a re-challenge continues this handshake rather than rejecting it."""
        return False

    def generate_response(
        self,
        proxy: HttpHost,
        request: ConnectRequest,
        credentials: Optional[Credentials],
    ) -> str:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} realm={self.realm!r} complete={self.is_complete}>"


class BasicScheme(AuthScheme):
    name = AuthSchemeName.BASIC

    def process_challenge(self, challenge: AuthChallenge) -> None:
        super().process_challenge(challenge)
        if challenge.params.get("charset", "").lower() == "utf-8":
            self.charset = "utf-8"

    def generate_response(self, proxy, request, credentials):
        if credentials is None or credentials.password is None:
            raise AuthenticationError("Basic authentication requires a username and password")
        username = credentials.principal
        if ":" in username:
            raise AuthenticationError("Basic authentication username may not contain ':'")
        try:
            raw = f"{username}:{credentials.password}".encode(self.charset)
        except UnicodeEncodeError as e:
            raise AuthenticationError(f"Credentials not representable in {self.charset}") from e
        self._complete = True
        return f"Basic {base64.b64encode(raw).decode('ascii')}"


_DIGEST_HASHES: Dict[str, Callable] = {
    "MD5": hashlib.md5,
    "SHA": hashlib.sha1,
    "SHA-256": hashlib.sha256,
    "SHA-512": hashlib.sha512,
}


def _new_cnonce() -> str:
    return os.urandom(8).hex()


def _is_stale(challenge: AuthChallenge) -> bool:
    return challenge.params.get("stale", "").lower() == "true"


class DigestScheme(AuthScheme):
    name = AuthSchemeName.DIGEST

    cnonce_factory: Callable[[], str] = staticmethod(_new_cnonce)

    def __init__(self, charset: str = "iso-8859-1"):
        super().__init__(charset)
        self.params: Dict[str, str] = {}
        self._nonce_count = 0
        self._last_nonce: Optional[str] = None
        self._stale_retried = False

    def process_challenge(self, challenge: AuthChallenge) -> None:
        super().process_challenge(challenge)
        if self._last_nonce is not None and _is_stale(challenge):
            self._stale_retried = True
        self.params = dict(challenge.params)
        if challenge.params.get("charset", "").lower() == "utf-8":
            self.charset = "utf-8"
        self._complete = False

    def can_continue(self, challenge: AuthChallenge) -> bool:
        # A stale nonce is the only re-challenge that is not a rejection.
        return _is_stale(challenge) and not self._stale_retried

    def _hash(self, algorithm: str) -> Callable[[str], str]:
        base = algorithm[:-5] if algorithm.endswith("-SESS") else algorithm
        func = _DIGEST_HASHES.get(base)
        if func is None:
            raise AuthenticationError(f"Unsupported digest algorithm: {algorithm}")
        return lambda s: func(s.encode(self.charset)).hexdigest()

    def generate_response(self, proxy, request, credentials):
        if credentials is None or credentials.password is None:
            raise AuthenticationError("Digest authentication requires a username and password")
        nonce = self.params.get("nonce")
        if not nonce:
            raise AuthenticationError("Digest challenge carries no nonce")

        realm = self.params.get("realm", "")
        algorithm = self.params.get("algorithm", "MD5").upper()
        H = self._hash(algorithm)

        qop_options = [q.strip().lower() for q in self.params.get("qop", "").split(",") if q.strip()]
        if qop_options and "auth" not in qop_options:
            raise AuthenticationError(f"Unsupported digest qop: {self.params.get('qop')}")
        qop = "auth" if qop_options else None

        if nonce == self._last_nonce:
            self._nonce_count += 1
        else:
            self._nonce_count = 1
            self._last_nonce = nonce
        nc = f"{self._nonce_count:08x}"
        cnonce = self.cnonce_factory()

        username = credentials.principal
        uri = request.target
        a1 = f"{username}:{realm}:{credentials.password}"
        if algorithm.endswith("-SESS"):
            a1 = f"{H(a1)}:{nonce}:{cnonce}"
        a2 = f"{request.method}:{uri}"

        if qop:
            digest = H(f"{H(a1)}:{nonce}:{nc}:{cnonce}:{qop}:{H(a2)}")
        else:
            digest = H(f"{H(a1)}:{nonce}:{H(a2)}")

        parts = [
            f"username={_quote(username)}",
            f"realm={_quote(realm)}",
            f"nonce={_quote(nonce)}",
            f"uri={_quote(uri)}",
            f'response="{digest}"',
        ]
        if "algorithm" in self.params:
            parts.append(f"algorithm={self.params['algorithm']}")
        if "opaque" in self.params:
            parts.append(f"opaque={_quote(self.params['opaque'])}")
        if qop:
            parts.extend([f"qop={qop}", f"nc={nc}", f"cnonce={_quote(cnonce)}"])

        self._complete = True
        return "Digest " + ", ".join(parts)


class GSSSchemeBase(AuthScheme):
    """Token-exchange schemes driven by a pyspnego client context."""

    protocol = "negotiate"
    header_prefix = "Negotiate"
    service = "HTTP"
    requires_credentials = False

    def __init__(self, charset: str = "iso-8859-1"):
        super().__init__(charset)
        self._context = None
        self._input_token: Optional[bytes] = None

    @property
    def is_complete(self) -> bool:
        return self._context is not None and bool(self._context.complete)

    def process_challenge(self, challenge: AuthChallenge) -> None:
        super().process_challenge(challenge)
        self._input_token = None
        if challenge.token68:
            try:
                self._input_token = base64.b64decode(challenge.token68)
            except ValueError as e:
                raise AuthenticationError(f"Malformed {self.name.value} token") from e

    def can_continue(self, challenge: AuthChallenge) -> bool:
        return self._context is not None and not self.is_complete and bool(challenge.token68)

    def _username(self, credentials: Credentials) -> str:
        return credentials.principal

    def _create_context(self, proxy: HttpHost, credentials: Optional[Credentials]):
        username = password = None
        if credentials is not None:
            username = self._username(credentials)
            password = credentials.password
        return spnego.client(
            username=username,
            password=password,
            hostname=proxy.hostname,
            service=self.service,
            protocol=self.protocol,
        )

    def generate_response(self, proxy, request, credentials):
        try:
            if self._context is None:
                self._context = self._create_context(proxy, credentials)
            token = self._context.step(self._input_token)
        except Exception as e:
            raise AuthenticationError(f"{self.name.value} token generation failed: {e}") from e
        if not token:
            raise AuthenticationError(f"{self.name.value} produced no token")
        return f"{self.header_prefix} {base64.b64encode(token).decode('ascii')}"


class NTLMScheme(GSSSchemeBase):
    name = AuthSchemeName.NTLM
    protocol = "ntlm"
    header_prefix = "NTLM"


class SPNegoScheme(GSSSchemeBase):
    name = AuthSchemeName.SPNEGO
    protocol = "negotiate"


class KerberosScheme(GSSSchemeBase):
    name = AuthSchemeName.KERBEROS
    protocol = "kerberos"

    def _username(self, credentials: Credentials) -> str:
        if credentials.domain:
            return f"{credentials.username}@{credentials.domain.upper()}"
        return credentials.username


# ── Registry ─────────────────────────────────────────────────────────────────

AuthSchemeFactory = Callable[[str], AuthScheme]

_SCHEME_CLASSES: Dict[AuthSchemeName, AuthSchemeFactory] = {
    AuthSchemeName.BASIC: BasicScheme,
    AuthSchemeName.DIGEST: DigestScheme,
    AuthSchemeName.NTLM: NTLMScheme,
    AuthSchemeName.SPNEGO: SPNegoScheme,
    AuthSchemeName.KERBEROS: KerberosScheme,
}


def build_registry(
    schemes: Optional[Iterable] = None,
) -> Mapping[AuthSchemeName, AuthSchemeFactory]:
    """Build a read-only scheme registry, optionally limited to ``schemes``."""
    if schemes is None:
        selected = list(SCHEME_PREFERENCE)
    else:
        selected = []
        for s in schemes:
            name = s if isinstance(s, AuthSchemeName) else AuthSchemeName.from_str(str(s))
            if name is None:
                raise ValueError(f"Unknown authentication scheme: {s}")
            selected.append(name)
    return MappingProxyType({name: _SCHEME_CLASSES[name] for name in selected})


DEFAULT_SCHEME_REGISTRY = build_registry()
