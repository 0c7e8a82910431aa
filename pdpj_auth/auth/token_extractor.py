"""
Token Extractor
===============
Finds the access token left behind by a browser login.

Sources are tried in a fixed priority order and the first non-empty hit
wins; values from different sources are never merged:

    1. ``Authorization: Bearer`` header of any request seen by ``TokenCapture``
    2. ``access_token`` in a JSON response body (URL contains token/auth)
    3. localStorage keys  (``STORAGE_KEYS`` order)
    4. sessionStorage keys (same order)
    5. Cookies whose name contains one of ``COOKIE_MARKERS``
    6. ``window.keycloak.token``

``TokenCapture`` must be attached to the page BEFORE the login navigation
starts.  Each capture slot is last-write-wins: the provider token is stable
once the login has completed, so a later write carries the same value.

Security:
    - Token values are never logged; only the source and length are.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence, Set, Tuple

from playwright.async_api import Page

from ..run_config import ServiceConfig
from ..utils import describe_token
from .base_auth import TokenSource

logger = logging.getLogger(__name__)


STORAGE_KEYS: Tuple[str, ...] = (
    "access_token",
    "accessToken",
    "token",
    "authToken",
    "auth_token",
    "keycloak-token",
    "kc-token",
)

COOKIE_MARKERS: Tuple[str, ...] = ("token", "auth", "jwt", "session", "kc_", "keycloak")

# Response URLs worth reading a JSON body from
_RESPONSE_URL_MARKERS: Tuple[str, ...] = ("token", "auth")

_STORAGE_JS = """([area, keys]) => {
    let store;
    try { store = window[area]; } catch (e) { return null; }
    if (!store) return null;
    for (const key of keys) {
        const value = store.getItem(key);
        if (value) return [key, value];
    }
    return null;
}"""

_PROVIDER_GLOBAL_JS = """() => {
    const kc = window.keycloak;
    return (kc && typeof kc.token === 'string' && kc.token) ? kc.token : null;
}"""


def _bearer_value(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    value = value.strip()
    return value or None


# ---------------------------------------------------------------------------
# Network capture mailbox
# ---------------------------------------------------------------------------

class TokenCapture:
    """Single-slot mailboxes written by page network events.

    Usage::

        capture = TokenCapture()
        capture.attach(page)          # before page.goto(...)
        ...                           # drive the login
        await capture.drain()
        capture.header_token, capture.response_token
    """

    def __init__(self, response_url_markers: Sequence[str] = _RESPONSE_URL_MARKERS):
        self.header_token: Optional[str] = None
        self.response_token: Optional[str] = None
        self._response_url_markers = tuple(m.lower() for m in response_url_markers)
        self._pending: Set[asyncio.Task] = set()
        self._pages: List[Page] = []

    def attach(self, page: Page) -> None:
        page.on("request", self._on_request)
        page.on("response", self._on_response)
        self._pages.append(page)

    def detach(self) -> None:
        for page in self._pages:
            try:
                page.remove_listener("request", self._on_request)
                page.remove_listener("response", self._on_response)
            except Exception as e:
                logger.debug(f"[TOKEN] Listener removal failed: {e}")
        self._pages.clear()

    async def drain(self, timeout_s: float = 2.0) -> None:
        """Wait (bounded) for response bodies still being read."""
        if not self._pending:
            return
        await asyncio.wait(set(self._pending), timeout=timeout_s)

    # ── Event handlers ────────────────────────────────────────────

    def _on_request(self, request) -> None:
        try:
            header = request.headers.get("authorization")
        except Exception:
            return
        token = _bearer_value(header)
        if token:
            if self.header_token is None:
                logger.info(f"[TOKEN] Bearer header captured: {describe_token(token)}")
            self.header_token = token

    def _on_response(self, response) -> None:
        url = (response.url or "").lower()
        if not any(marker in url for marker in self._response_url_markers):
            return
        task = asyncio.ensure_future(self._read_body(response))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _read_body(self, response) -> None:
        try:
            payload = await response.json()
        except Exception:
            # Not JSON, or the body is gone after a redirect
            return
        if not isinstance(payload, dict):
            return
        token = payload.get("access_token")
        if isinstance(token, str) and token.strip():
            logger.info(f"[TOKEN] access_token seen in response body: {describe_token(token)}")
            self.response_token = token.strip()


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExtractedToken:
    value: str = field(repr=False)
    source: TokenSource
    detail: str = ""


Lookup = Callable[[Page, Optional[TokenCapture]], Awaitable[Optional[Tuple[str, str]]]]


class TokenExtractor:
    """Ordered, named token lookups against a logged-in page."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        storage_keys: Sequence[str] = STORAGE_KEYS,
        cookie_markers: Sequence[str] = COOKIE_MARKERS,
    ):
        self.config = config or ServiceConfig()
        self.storage_keys = list(storage_keys)
        self.cookie_markers = [m.lower() for m in cookie_markers]

    def lookups(self) -> List[Tuple[TokenSource, Lookup]]:
        return [
            (TokenSource.INTERCEPTED_HEADER, self._from_header),
            (TokenSource.INTERCEPTED_RESPONSE_BODY, self._from_response_body),
            (TokenSource.LOCAL_STORAGE, self._from_local_storage),
            (TokenSource.SESSION_STORAGE, self._from_session_storage),
            (TokenSource.COOKIE, self._from_cookies),
            (TokenSource.PROVIDER_GLOBAL, self._from_provider_global),
        ]

    async def extract(
        self, page: Page, capture: Optional[TokenCapture] = None
    ) -> Optional[ExtractedToken]:
        """Return the first token found, or ``None`` if every source is empty.

        A lookup that raises (page navigated away, storage blocked) counts
        as a miss for that source only.
        """
        for source, lookup in self.lookups():
            try:
                hit = await lookup(page, capture)
            except Exception as e:
                logger.debug(f"[TOKEN] {source.value} lookup failed: {e}")
                continue
            if hit:
                value, detail = hit
                logger.info(
                    f"[TOKEN] Token from {source.value}"
                    f"{f' ({detail})' if detail else ''}: {describe_token(value)}"
                )
                return ExtractedToken(value=value, source=source, detail=detail)

        logger.info("[TOKEN] No source surfaced a token")
        return None

    async def extract_with_retry(
        self,
        page: Page,
        capture: Optional[TokenCapture] = None,
        fallback_url: Optional[str] = None,
        settle_s: float = 5.0,
    ) -> Optional[ExtractedToken]:
        """``extract()``; if empty, visit *fallback_url* and try once more.

        Opening an authenticated page makes the front-end issue API calls
        (and store its token), which the second pass can then pick up.
        """
        if capture is not None:
            await capture.drain()
        found = await self.extract(page, capture)
        if found or not fallback_url:
            return found

        logger.info(f"[TOKEN] Visiting authenticated area to surface a token: {fallback_url}")
        try:
            await page.goto(
                fallback_url,
                wait_until="networkidle",
                timeout=self.config.timeout_ms,
            )
        except Exception as e:
            logger.warning(f"[TOKEN] Fallback navigation failed: {e}")
        await asyncio.sleep(settle_s)

        if capture is not None:
            await capture.drain()
        return await self.extract(page, capture)

    # ── Named lookups ─────────────────────────────────────────────

    async def _from_header(self, page, capture):
        if capture is not None and capture.header_token:
            return capture.header_token, "authorization header"
        return None

    async def _from_response_body(self, page, capture):
        if capture is not None and capture.response_token:
            return capture.response_token, "access_token field"
        return None

    async def _from_local_storage(self, page, capture):
        return await self._from_storage(page, "localStorage")

    async def _from_session_storage(self, page, capture):
        return await self._from_storage(page, "sessionStorage")

    async def _from_storage(self, page, area: str):
        hit = await page.evaluate(_STORAGE_JS, [area, self.storage_keys])
        if not hit:
            return None
        key, value = hit[0], hit[1]
        if not isinstance(value, str) or not value.strip():
            return None
        return value.strip(), f"key {key}"

    async def _from_cookies(self, page, capture):
        cookies = await page.context.cookies()
        for cookie in cookies:
            name = cookie.get("name", "")
            value = cookie.get("value", "")
            if not value:
                continue
            if any(marker in name.lower() for marker in self.cookie_markers):
                return value, f"cookie {name}"
        return None

    async def _from_provider_global(self, page, capture):
        token = await page.evaluate(_PROVIDER_GLOBAL_JS)
        if isinstance(token, str) and token.strip():
            return token.strip(), "window.keycloak.token"
        return None
