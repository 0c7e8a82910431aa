"""
OAuth2 Token Endpoint Client
============================
Talks to the Keycloak realm that backs the PDPJ portal.

Handles:
    - Resource-owner password grant (often disabled per client — expected)
    - Authorization-code exchange with a PKCE verifier
    - PKCE verifier / challenge / state generation

All provider-side failures surface as ``SoftFailure`` so the acquisition
chain can fall through to the next strategy.  The blocking ``requests``
calls run in the default executor from the async wrappers.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests

from ..run_config import ServiceConfig
from ..utils import b64url
from ..errors import SoftFailure
from .base_auth import Credentials

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# PKCE helpers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PkcePair:
    verifier: str
    challenge: str


def code_challenge_s256(verifier: str) -> str:
    """SHA-256 the verifier and base64url it (no padding)."""
    return b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_pkce_pair(num_bytes: int = 32) -> PkcePair:
    """New random verifier (>= 32 bytes of entropy) and its S256 challenge."""
    if num_bytes < 32:
        raise ValueError("PKCE verifier needs at least 32 random bytes")
    verifier = b64url(secrets.token_bytes(num_bytes))
    return PkcePair(verifier=verifier, challenge=code_challenge_s256(verifier))


def generate_state() -> str:
    return b64url(secrets.token_bytes(16))


def build_authorization_url(config: ServiceConfig, challenge: str, state: str) -> str:
    """Authorization endpoint URL for the code + PKCE flow."""
    params = {
        "response_type": "code",
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "scope": config.scope,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
        "state": state,
    }
    return f"{config.authorization_endpoint}?{urlencode(params)}"


# ---------------------------------------------------------------------------
# Token endpoint client
# ---------------------------------------------------------------------------

class TokenEndpointClient:
    """Form-encoded POSTs to ``<realm>/protocol/openid-connect/token``.

    Usage::

        client = TokenEndpointClient(config)
        token = await client.apassword_grant(Credentials("123", "secret"))
    """

    def __init__(self, config: ServiceConfig, session: Optional[requests.Session] = None):
        self.config = config
        self._session = session or requests.Session()

    # ── Grants ────────────────────────────────────────────────────

    def password_grant(self, creds: Credentials) -> str:
        data = {
            "grant_type": "password",
            "client_id": self.config.client_id,
            "username": creds.username,
            "password": creds.password,
            "scope": self.config.scope,
        }
        logger.info(f"[OAUTH] Password grant for {creds.masked_username}")
        return self._post_for_token(data, "password grant")

    def exchange_code(self, code: str, verifier: str) -> str:
        data = {
            "grant_type": "authorization_code",
            "client_id": self.config.client_id,
            "code": code,
            "redirect_uri": self.config.redirect_uri,
            "code_verifier": verifier,
        }
        logger.info("[OAUTH] Exchanging authorization code")
        return self._post_for_token(data, "code exchange")

    async def apassword_grant(self, creds: Credentials) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.password_grant, creds)

    async def aexchange_code(self, code: str, verifier: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.exchange_code, code, verifier)

    def close(self) -> None:
        self._session.close()

    # ── Internal ──────────────────────────────────────────────────

    def _post_for_token(self, data: Dict[str, str], label: str) -> str:
        try:
            resp = self._session.post(
                self.config.token_endpoint,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.config.http_timeout_s,
            )
        except requests.RequestException as exc:
            raise SoftFailure(f"{label}: transport error ({exc.__class__.__name__})") from exc

        payload = self._json_or_empty(resp)

        if resp.status_code >= 400:
            detail = payload.get("error_description") or payload.get("error") or resp.reason
            raise SoftFailure(f"{label}: HTTP {resp.status_code} ({detail})")

        token = payload.get("access_token")
        if not isinstance(token, str) or not token:
            raise SoftFailure(f"{label}: response carried no access_token")

        logger.info(f"[OAUTH] {label} succeeded")
        return token

    @staticmethod
    def _json_or_empty(resp: requests.Response) -> Dict[str, Any]:
        try:
            payload = resp.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}
