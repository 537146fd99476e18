"""Tests for challenge parsing and the per-scheme handlers."""

import base64
from unittest.mock import MagicMock, patch

import pytest

from proxytunnel.core.auth import (
    DEFAULT_SCHEME_REGISTRY,
    SCHEME_PREFERENCE,
    AuthChallenge,
    AuthSchemeName,
    BasicScheme,
    DigestScheme,
    KerberosScheme,
    NTLMScheme,
    SPNegoScheme,
    build_registry,
    parse_challenges,
    preference_rank,
)
from proxytunnel.core.credentials import Credentials
from proxytunnel.core.errors import AuthenticationError
from proxytunnel.core.messages import ConnectRequest, HttpHost, build_connect_request

PROXY = HttpHost("proxy.corp", 3128)


def _one(header: str) -> AuthChallenge:
    challenges = parse_challenges([header])
    assert len(challenges) == 1
    return challenges[0]


# ── Parsing ──────────────────────────────────────────────────────────────────


class TestParseChallenges:
    def test_basic_with_realm(self):
        ch = _one('Basic realm="corp proxy"')
        assert ch.name == AuthSchemeName.BASIC
        assert ch.params == {"realm": "corp proxy"}
        assert ch.token68 is None

    def test_bare_scheme(self):
        ch = _one("Negotiate")
        assert ch.name == AuthSchemeName.SPNEGO
        assert ch.token68 is None
        assert ch.params == {}

    def test_token68(self):
        ch = _one("NTLM TlRMTVNTUAACAAAA==")
        assert ch.name == AuthSchemeName.NTLM
        assert ch.token68 == "TlRMTVNTUAACAAAA=="

    def test_several_challenges_in_one_header(self):
        challenges = parse_challenges(['Negotiate, NTLM, Basic realm="corp"'])
        assert [c.scheme for c in challenges] == ["Negotiate", "NTLM", "Basic"]
        assert challenges[2].params["realm"] == "corp"

    def test_digest_params_span_commas(self):
        ch = _one('Digest realm="r", qop="auth, auth-int", nonce="abc", stale=FALSE')
        assert ch.name == AuthSchemeName.DIGEST
        assert ch.params == {"realm": "r", "qop": "auth, auth-int", "nonce": "abc", "stale": "FALSE"}

    def test_param_names_lowercased(self):
        ch = _one('Basic Realm="x", CharSet="UTF-8"')
        assert ch.params == {"realm": "x", "charset": "UTF-8"}

    def test_escaped_quotes(self):
        ch = _one(r'Basic realm="say \"hi\", ok"')
        assert ch.params["realm"] == 'say "hi", ok'

    def test_multiple_headers(self):
        challenges = parse_challenges(["Kerberos", 'Digest realm="r", nonce="n"'])
        assert [c.name for c in challenges] == [AuthSchemeName.KERBEROS, AuthSchemeName.DIGEST]

    def test_unknown_scheme_kept_without_name(self):
        ch = _one('Bearer realm="api"')
        assert ch.scheme == "Bearer"
        assert ch.name is None

    def test_empty_values(self):
        assert parse_challenges([]) == []
        assert parse_challenges(["", " , "]) == []


class TestSchemeNames:
    @pytest.mark.parametrize("raw,expected", [
        ("basic", AuthSchemeName.BASIC),
        ("DIGEST", AuthSchemeName.DIGEST),
        ("ntlm", AuthSchemeName.NTLM),
        ("negotiate", AuthSchemeName.SPNEGO),
        ("SPNEGO", AuthSchemeName.SPNEGO),
        ("Kerberos", AuthSchemeName.KERBEROS),
    ])
    def test_case_insensitive(self, raw, expected):
        assert AuthSchemeName.from_str(raw) == expected

    def test_unknown(self):
        assert AuthSchemeName.from_str("Bearer") is None
        assert AuthSchemeName.from_str("") is None

    def test_preference_order(self):
        assert SCHEME_PREFERENCE == (
            AuthSchemeName.KERBEROS,
            AuthSchemeName.SPNEGO,
            AuthSchemeName.DIGEST,
            AuthSchemeName.NTLM,
            AuthSchemeName.BASIC,
        )
        assert preference_rank(AuthSchemeName.DIGEST) < preference_rank(AuthSchemeName.BASIC)


# ── Registry ─────────────────────────────────────────────────────────────────


class TestRegistry:
    def test_default_has_every_scheme(self):
        assert set(DEFAULT_SCHEME_REGISTRY) == set(AuthSchemeName)

    def test_read_only(self):
        with pytest.raises(TypeError):
            DEFAULT_SCHEME_REGISTRY[AuthSchemeName.BASIC] = DigestScheme

    def test_subset_by_name(self):
        registry = build_registry(["basic", "Negotiate"])
        assert set(registry) == {AuthSchemeName.BASIC, AuthSchemeName.SPNEGO}
        assert registry[AuthSchemeName.BASIC] is BasicScheme

    def test_empty(self):
        assert len(build_registry([])) == 0

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="Bearer"):
            build_registry(["Basic", "Bearer"])


# ── Basic ────────────────────────────────────────────────────────────────────


class TestBasicScheme:
    def _respond(self, credentials, header='Basic realm="corp"', charset="iso-8859-1"):
        scheme = BasicScheme(charset)
        scheme.process_challenge(_one(header))
        return scheme, scheme.generate_response(PROXY, build_connect_request(HttpHost("h", 443)), credentials)

    def test_encoding(self):
        scheme, value = self._respond(Credentials("Aladdin", "open sesame"))
        assert value == "Basic QWxhZGRpbjpvcGVuIHNlc2FtZQ=="
        assert scheme.realm == "corp"
        assert scheme.is_complete

    def test_domain_prefix(self):
        _, value = self._respond(Credentials("alice", "pw", "CORP"))
        assert base64.b64decode(value.split()[1]) == b"CORP\\alice:pw"

    def test_latin1_default(self):
        _, value = self._respond(Credentials("josé", "pw"))
        assert base64.b64decode(value.split()[1]) == "josé:pw".encode("latin-1")

    def test_utf8_charset_param(self):
        _, value = self._respond(Credentials("josé", "pw"), header='Basic realm="r", charset="UTF-8"')
        assert base64.b64decode(value.split()[1]) == "josé:pw".encode("utf-8")

    def test_unencodable(self):
        with pytest.raises(AuthenticationError):
            self._respond(Credentials("中文", "pw"))

    def test_requires_password(self):
        with pytest.raises(AuthenticationError):
            self._respond(Credentials("alice"))
        with pytest.raises(AuthenticationError):
            self._respond(None)

    def test_colon_in_username(self):
        with pytest.raises(AuthenticationError):
            self._respond(Credentials("a:b", "pw"))

    def test_empty_password_allowed(self):
        _, value = self._respond(Credentials("alice", ""))
        assert base64.b64decode(value.split()[1]) == b"alice:"

    def test_never_continues(self):
        scheme, _ = self._respond(Credentials("alice", "pw"))
        assert not scheme.can_continue(_one('Basic realm="corp"'))


# ── Digest ───────────────────────────────────────────────────────────────────


def _digest(header, cnonce):
    scheme = DigestScheme()
    scheme.cnonce_factory = lambda: cnonce
    scheme.process_challenge(_one(header))
    return scheme


def _fields(value):
    assert value.startswith("Digest ")
    out = {}
    for piece in value[len("Digest "):].split(", "):
        k, _, v = piece.partition("=")
        out[k] = v.strip('"')
    return out


GET_INDEX = ConnectRequest(target="/dir/index.html", method="GET")


class TestDigestScheme:
    def test_rfc2617_vector(self):
        scheme = _digest(
            'Digest realm="testrealm@host.com", qop="auth,auth-int", '
            'nonce="dcd98b7102dd2f0e8b11d0f600bfb0c093", opaque="5ccc069c403ebaf9f0171e9517f40e41"',
            "0a4f113b",
        )
        fields = _fields(scheme.generate_response(PROXY, GET_INDEX, Credentials("Mufasa", "Circle Of Life")))
        assert fields["response"] == "6629fae49393a05397450978507c4ef1"
        assert fields["nc"] == "00000001"
        assert fields["qop"] == "auth"
        assert fields["uri"] == "/dir/index.html"
        assert fields["opaque"] == "5ccc069c403ebaf9f0171e9517f40e41"

    @pytest.mark.parametrize("algorithm,expected", [
        ("MD5", "8ca523f5e9506fed4657c9700eebdbec"),
        ("SHA-256", "753927fa0e85d155564e2e272a28d1802ca10daf4496794697cf8db5856cb6c1"),
    ])
    def test_rfc7616_vectors(self, algorithm, expected):
        scheme = _digest(
            f'Digest realm="http-auth@example.org", qop="auth, auth-int", algorithm={algorithm}, '
            'nonce="7ypf/xlj9XXwfDPEoM4URrv/xwf94BcCAzFZH4GiTo0v", '
            'opaque="FQhe/qaU925kfnzjCev0ciny7QMkPqMAFRtzCUYo5tdS"',
            "f2/wE4q74E6zIJEtWaHKaf5wv/H5QzzpXusqGemxURZJ",
        )
        fields = _fields(scheme.generate_response(PROXY, GET_INDEX, Credentials("Mufasa", "Circle of Life")))
        assert fields["response"] == expected
        assert fields["algorithm"] == algorithm

    def test_connect_uri_is_authority(self):
        scheme = _digest('Digest realm="r", nonce="n", qop="auth"', "c")
        request = build_connect_request(HttpHost("example.com", 443))
        fields = _fields(scheme.generate_response(PROXY, request, Credentials("u", "p")))
        assert fields["uri"] == "example.com:443"

    def test_nonce_count_increments_for_same_nonce(self):
        scheme = _digest('Digest realm="r", nonce="n", qop="auth"', "c")
        creds = Credentials("u", "p")
        assert _fields(scheme.generate_response(PROXY, GET_INDEX, creds))["nc"] == "00000001"
        assert _fields(scheme.generate_response(PROXY, GET_INDEX, creds))["nc"] == "00000002"
        scheme.process_challenge(_one('Digest realm="r", nonce="fresh", qop="auth"'))
        assert _fields(scheme.generate_response(PROXY, GET_INDEX, creds))["nc"] == "00000001"

    def test_no_qop_legacy_form(self):
        scheme = _digest('Digest realm="r", nonce="n"', "c")
        fields = _fields(scheme.generate_response(PROXY, GET_INDEX, Credentials("u", "p")))
        assert "qop" not in fields
        assert "nc" not in fields
        assert "cnonce" not in fields

    def test_sess_variant_differs(self):
        creds = Credentials("u", "p")
        plain = _digest('Digest realm="r", nonce="n", qop="auth", algorithm=MD5', "c")
        sess = _digest('Digest realm="r", nonce="n", qop="auth", algorithm=MD5-sess', "c")
        assert (_fields(plain.generate_response(PROXY, GET_INDEX, creds))["response"]
                != _fields(sess.generate_response(PROXY, GET_INDEX, creds))["response"])

    def test_auth_int_only_unsupported(self):
        scheme = _digest('Digest realm="r", nonce="n", qop="auth-int"', "c")
        with pytest.raises(AuthenticationError):
            scheme.generate_response(PROXY, GET_INDEX, Credentials("u", "p"))

    def test_unknown_algorithm(self):
        scheme = _digest('Digest realm="r", nonce="n", algorithm=TOKEN-X', "c")
        with pytest.raises(AuthenticationError, match="algorithm"):
            scheme.generate_response(PROXY, GET_INDEX, Credentials("u", "p"))

    def test_missing_nonce(self):
        scheme = _digest('Digest realm="r"', "c")
        with pytest.raises(AuthenticationError, match="nonce"):
            scheme.generate_response(PROXY, GET_INDEX, Credentials("u", "p"))

    def test_requires_credentials(self):
        scheme = _digest('Digest realm="r", nonce="n"', "c")
        with pytest.raises(AuthenticationError):
            scheme.generate_response(PROXY, GET_INDEX, None)

    def test_stale_retried_once(self):
        scheme = _digest('Digest realm="r", nonce="n"', "c")
        scheme.generate_response(PROXY, GET_INDEX, Credentials("u", "p"))
        stale = _one('Digest realm="r", nonce="n2", stale=true')
        assert scheme.can_continue(stale)
        assert scheme.can_continue(stale)

        scheme.process_challenge(stale)
        assert not scheme.can_continue(_one('Digest realm="r", nonce="n3", stale=true'))

    def test_initial_stale_flag_does_not_use_retry(self):
        scheme = _digest('Digest realm="r", nonce="n", stale=true', "c")
        scheme.generate_response(PROXY, GET_INDEX, Credentials("u", "p"))
        assert scheme.can_continue(_one('Digest realm="r", nonce="n2", stale=true'))

    def test_domain_username_escaped(self):
        scheme = _digest('Digest realm="r", nonce="n", qop="auth"', "c")
        value = scheme.generate_response(PROXY, GET_INDEX, Credentials("alice", "pw", "CORP"))
        assert 'username="CORP\\\\alice"' in value
        parsed = _one(value)
        assert parsed.params["username"] == "CORP\\alice"

    def test_quotes_and_backslashes_round_trip(self):
        scheme = _digest(r'Digest realm="a \"b\" \\c", nonce="n\"1", opaque="o\\p"', "c")
        parsed = _one(scheme.generate_response(PROXY, GET_INDEX, Credentials("u", "p")))
        assert parsed.params["realm"] == 'a "b" \\c'
        assert parsed.params["nonce"] == 'n"1'
        assert parsed.params["opaque"] == "o\\p"

    def test_rechallenge_without_stale_is_rejection(self):
        scheme = _digest('Digest realm="r", nonce="n"', "c")
        assert not scheme.can_continue(_one('Digest realm="r", nonce="n2"'))

    def test_default_cnonce_is_random(self):
        scheme = DigestScheme()
        scheme.process_challenge(_one('Digest realm="r", nonce="n", qop="auth"'))
        creds = Credentials("u", "p")
        first = _fields(scheme.generate_response(PROXY, GET_INDEX, creds))["cnonce"]
        second = _fields(scheme.generate_response(PROXY, GET_INDEX, creds))["cnonce"]
        assert first != second
        assert len(first) == 16


# ── GSS-backed schemes ───────────────────────────────────────────────────────


def _context(*tokens, complete_after=None):
    ctx = MagicMock()
    ctx.complete = False
    outputs = list(tokens)

    def step(token=None):
        out = outputs.pop(0)
        if not outputs:
            ctx.complete = True if complete_after is None else complete_after
        return out

    ctx.step.side_effect = step
    return ctx


class TestGSSSchemes:
    @patch("proxytunnel.core.auth.spnego.client")
    def test_ntlm_initial_token(self, mock_client):
        mock_client.return_value = _context(b"type1", b"type3")
        scheme = NTLMScheme()
        scheme.process_challenge(_one("NTLM"))
        value = scheme.generate_response(PROXY, None, Credentials("alice", "pw", "CORP"))

        assert value == "NTLM " + base64.b64encode(b"type1").decode()
        mock_client.assert_called_once_with(
            username="CORP\\alice",
            password="pw",
            hostname="proxy.corp",
            service="HTTP",
            protocol="ntlm",
        )
        assert not scheme.is_complete

    @patch("proxytunnel.core.auth.spnego.client")
    def test_ntlm_continuation(self, mock_client):
        ctx = _context(b"type1", b"type3")
        mock_client.return_value = ctx
        scheme = NTLMScheme()
        scheme.process_challenge(_one("NTLM"))
        scheme.generate_response(PROXY, None, None)

        type2 = _one("NTLM " + base64.b64encode(b"type2").decode())
        assert scheme.can_continue(type2)
        scheme.process_challenge(type2)
        value = scheme.generate_response(PROXY, None, None)

        assert value == "NTLM " + base64.b64encode(b"type3").decode()
        assert ctx.step.call_args_list[1].args == (b"type2",)
        assert scheme.is_complete
        assert mock_client.call_count == 1

    @patch("proxytunnel.core.auth.spnego.client")
    def test_bare_rechallenge_is_rejection(self, mock_client):
        mock_client.return_value = _context(b"type1", b"type3")
        scheme = NTLMScheme()
        scheme.process_challenge(_one("NTLM"))
        scheme.generate_response(PROXY, None, None)
        assert not scheme.can_continue(_one("NTLM"))

    @patch("proxytunnel.core.auth.spnego.client")
    def test_negotiate_ambient_identity(self, mock_client):
        mock_client.return_value = _context(b"spnego")
        scheme = SPNegoScheme()
        scheme.process_challenge(_one("Negotiate"))
        value = scheme.generate_response(PROXY, None, None)

        assert value.startswith("Negotiate ")
        kwargs = mock_client.call_args.kwargs
        assert kwargs["username"] is None
        assert kwargs["password"] is None
        assert kwargs["protocol"] == "negotiate"

    @patch("proxytunnel.core.auth.spnego.client")
    def test_kerberos_principal(self, mock_client):
        mock_client.return_value = _context(b"krb")
        scheme = KerberosScheme()
        scheme.process_challenge(_one("Kerberos"))
        value = scheme.generate_response(PROXY, None, Credentials("alice", "pw", "corp.example"))

        assert value == "Negotiate " + base64.b64encode(b"krb").decode()
        assert mock_client.call_args.kwargs["username"] == "alice@CORP.EXAMPLE"
        assert mock_client.call_args.kwargs["protocol"] == "kerberos"

    @patch("proxytunnel.core.auth.spnego.client")
    def test_library_failure_becomes_auth_error(self, mock_client):
        mock_client.side_effect = RuntimeError("no credentials cache")
        scheme = SPNegoScheme()
        scheme.process_challenge(_one("Negotiate"))
        with pytest.raises(AuthenticationError, match="no credentials cache"):
            scheme.generate_response(PROXY, None, None)

    @patch("proxytunnel.core.auth.spnego.client")
    def test_empty_token_is_auth_error(self, mock_client):
        ctx = MagicMock()
        ctx.step.return_value = None
        mock_client.return_value = ctx
        scheme = NTLMScheme()
        scheme.process_challenge(_one("NTLM"))
        with pytest.raises(AuthenticationError):
            scheme.generate_response(PROXY, None, None)

    def test_malformed_token(self):
        scheme = NTLMScheme()
        with pytest.raises(AuthenticationError):
            scheme.process_challenge(AuthChallenge("NTLM", token68="abc"))

    def test_credential_requirements(self):
        assert not NTLMScheme.requires_credentials
        assert BasicScheme.requires_credentials
        assert DigestScheme.requires_credentials
