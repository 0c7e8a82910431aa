"""
Tests for oauth_client.py — PKCE helpers and token endpoint error handling.
"""

import asyncio
import re
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from fakes import FakeHTTPSession, FakeResponse

from pdpj_auth.auth.base_auth import Credentials, SoftFailure
from pdpj_auth.auth.oauth_client import (
    TokenEndpointClient,
    build_authorization_url,
    code_challenge_s256,
    generate_pkce_pair,
    generate_state,
)
from pdpj_auth.run_config import ServiceConfig

B64URL = re.compile(r"^[A-Za-z0-9_-]+$")
CREDS = Credentials("12345678900", "secret")


class TestPkce:

    def test_rfc7636_vector(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert code_challenge_s256(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_pair_shape(self):
        pair = generate_pkce_pair()
        assert len(pair.verifier) == 43          # 32 bytes, unpadded
        assert B64URL.match(pair.verifier)
        assert "=" not in pair.challenge
        assert pair.challenge == code_challenge_s256(pair.verifier)

    def test_pairs_are_random(self):
        assert generate_pkce_pair().verifier != generate_pkce_pair().verifier
        assert generate_state() != generate_state()

    def test_too_little_entropy_rejected(self):
        with pytest.raises(ValueError):
            generate_pkce_pair(num_bytes=16)

    def test_authorization_url(self):
        config = ServiceConfig()
        url = build_authorization_url(config, "challenge123", "state456")
        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        assert url.startswith(
            "https://sso.cloud.pje.jus.br/auth/realms/pje/protocol/openid-connect/auth?"
        )
        assert params == {
            "response_type": "code",
            "client_id": "portalexterno-frontend",
            "redirect_uri": "https://portaldeservicos.pdpj.jus.br",
            "scope": "openid",
            "code_challenge": "challenge123",
            "code_challenge_method": "S256",
            "state": "state456",
        }


class TestTokenEndpointClient:

    def _client(self, responses):
        http = FakeHTTPSession(responses)
        return TokenEndpointClient(ServiceConfig(), session=http), http

    def test_password_grant_success(self):
        client, http = self._client({"password": FakeResponse(200, {"access_token": "tok"})})
        assert client.password_grant(CREDS) == "tok"

        post = http.posts[0]
        assert post["url"].endswith("/protocol/openid-connect/token")
        assert post["data"] == {
            "grant_type": "password",
            "client_id": "portalexterno-frontend",
            "username": "12345678900",
            "password": "secret",
            "scope": "openid",
        }
        assert post["timeout"] == 30.0

    def test_provider_error_is_soft(self):
        client, _ = self._client({"password": FakeResponse(400, {
            "error": "unauthorized_client",
            "error_description": "Client not allowed for direct access grants",
        })})
        with pytest.raises(SoftFailure) as exc:
            client.password_grant(CREDS)
        assert "HTTP 400" in str(exc.value)
        assert "direct access grants" in str(exc.value)

    def test_non_json_error_uses_reason(self):
        client, _ = self._client({"password": FakeResponse(502, None, reason="Bad Gateway")})
        with pytest.raises(SoftFailure) as exc:
            client.password_grant(CREDS)
        assert "Bad Gateway" in str(exc.value)

    def test_missing_access_token(self):
        client, _ = self._client({"password": FakeResponse(200, {"token_type": "Bearer"})})
        with pytest.raises(SoftFailure) as exc:
            client.password_grant(CREDS)
        assert "no access_token" in str(exc.value)

    def test_transport_error(self):
        client, _ = self._client({"password": requests.ConnectionError("refused")})
        with pytest.raises(SoftFailure) as exc:
            client.password_grant(CREDS)
        assert "ConnectionError" in str(exc.value)

    def test_password_never_in_error(self):
        client, _ = self._client({"password": FakeResponse(401, {"error": "invalid_grant"})})
        with pytest.raises(SoftFailure) as exc:
            client.password_grant(CREDS)
        assert "secret" not in str(exc.value)

    def test_code_exchange_async(self):
        client, http = self._client({
            "authorization_code": FakeResponse(200, {"access_token": "abc.def.ghi"}),
        })
        token = asyncio.run(client.aexchange_code("the-code", "the-verifier"))
        assert token == "abc.def.ghi"
        data = http.posts[0]["data"]
        assert data["code"] == "the-code"
        assert data["code_verifier"] == "the-verifier"
        assert data["redirect_uri"] == "https://portaldeservicos.pdpj.jus.br"

    def test_password_grant_async_runs_off_loop(self):
        client, http = self._client({"password": FakeResponse(200, {"access_token": "tok"})})

        async def scenario():
            return await client.apassword_grant(CREDS)

        assert asyncio.run(scenario()) == "tok"
        assert http.posts[0]["data"]["grant_type"] == "password"
