"""
Login Automator
===============
Playwright-driven login through the PJe form and, when the portal hands
off to the SSO provider, through the provider's extra pages.

Handles:
    - PJe / Keycloak username + password forms (``j_username``, ``username``)
    - Submit through ``robust_click`` with an Enter-key last resort
    - Multi-hop SSO hand-off (``sso.cloud.pje.jus.br``) with extra required
      fields filled by pluggable ``HopFieldFiller`` heuristics
    - Obstruction detection: CAPTCHA, provider error text, required fields
      still empty; each raises its own error

Obstructions are detected and reported, never bypassed.

Security:
    - Passwords are never logged or printed.
    - Usernames only appear masked.
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence

from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeout

from ..interaction_policy import find_first, robust_click, safe_fill
from ..run_config import ServiceConfig
from ..utils import url_contains_any
from .base_auth import (
    AutomationError,
    CaptchaDetected,
    Credentials,
    LoginFieldRequirement,
    LoginRejected,
    RequiredFieldsMissing,
)

logger = logging.getLogger(__name__)

STILL_ON_LOGIN_MESSAGE = "Login did not succeed - still on the login page"


# ---------------------------------------------------------------------------
# Selector banks (tried in order)
# ---------------------------------------------------------------------------

_USERNAME_SELECTORS: List[str] = [
    'input[name="j_username"]',        # PJe (Seam)
    'input[id="j_username"]',
    'input[name="username"]',          # Keycloak
    'input[id="username"]',
    'input[name="login"]',
    'input[type="text"]',
]

_PASSWORD_SELECTORS: List[str] = [
    'input[name="j_password"]',
    'input[id="j_password"]',
    'input[name="password"]',
    'input[id="password"]',
    'input[type="password"]',
]

_SUBMIT_SELECTORS: List[str] = [
    '#kc-login',                       # Keycloak
    'button[type="submit"]',
    'input[type="submit"]',
    'button:has-text("Entrar")',
    'button:has-text("Login")',
    'input[value="Entrar"]',
    '#btnEntrar',
    'button.btn-primary',
]

_HANDOFF_SUBMIT_SELECTORS: List[str] = [
    'button[type="submit"]',
    'input[type="submit"]',
    'button.confirm',
    'button.btn-primary',
]

_ERROR_SELECTORS: List[str] = [
    '.ui-messages-error', '.ui-messages-warn',   # PJe (RichFaces / PrimeFaces)
    '#input-error', '.kc-feedback-text',         # Keycloak
    '.alert-error', '.alert-danger',
    '.validation-message', '.field-error',
    '.error', '.alert',
    '[class*="error"]', '[id*="error"]',
]

_CAPTCHA_SELECTORS: List[str] = [
    '.captcha', '[id*="captcha"]', '[class*="captcha"]',
    '.recaptcha', '.g-recaptcha', '.h-captcha',
    'iframe[src*="recaptcha"]', 'iframe[src*="hcaptcha"]',
    'img[src*="captcha"]',
    '[data-sitekey]',
    'canvas',
]

_LIST_INPUTS_JS = """els => els.map(el => ({
    name: el.name || '',
    id: el.id || '',
    type: el.type || '',
    placeholder: el.placeholder || '',
}))"""

_REQUIRED_EMPTY_JS = """() => Array.from(document.querySelectorAll('input, select, textarea'))
    .filter(el => el.required && !(el.value || '').trim() && el.type !== 'hidden')
    .map(el => ({
        name: el.name || el.id || '',
        type: el.type || 'text',
        placeholder: el.placeholder || '',
    }))"""

_ERROR_TEXT_JS = """sels => {
    const found = [];
    for (const sel of sels) {
        for (const el of document.querySelectorAll(sel)) {
            const text = (el.textContent || '').trim();
            if (text) found.push({ text: text.slice(0, 300), visible: el.offsetParent !== null });
        }
    }
    return found;
}"""

_CAPTCHA_JS = """sels => sels.filter(sel => document.querySelector(sel) !== null)"""


# ---------------------------------------------------------------------------
# Hand-off field heuristics
# ---------------------------------------------------------------------------

class HopFieldFiller(ABC):
    """Decides whether (and with what) to fill one extra required field.

    The SSO hand-off sometimes asks for fields the PJe form never had
    (login id, e-mail).  Fillers are tried in order; the first one whose
    ``matches()`` is true supplies the value.
    """

    @abstractmethod
    def matches(self, field: LoginFieldRequirement) -> bool:
        ...

    @abstractmethod
    def value(self, field: LoginFieldRequirement, creds: Credentials, config: ServiceConfig) -> str:
        ...


class LoginIdFiller(HopFieldFiller):
    """``login`` / CPF / numeric field → the username."""

    _NAMES = ("login", "cpf", "username", "usuario")

    def matches(self, field):
        return field.name.lower() in self._NAMES or field.type == "number"

    def value(self, field, creds, config):
        return creds.username


def synthetic_email(username: str, domain: str) -> str:
    return f"{username}@{domain}"


class EmailConfirmationFiller(HopFieldFiller):
    """Confirmation e-mail → the same synthesized address."""

    def matches(self, field):
        name = field.name.lower()
        return "mail" in name and ("confirm" in name or "repet" in name)

    def value(self, field, creds, config):
        return synthetic_email(creds.username, config.synthetic_email_domain)


class EmailFiller(HopFieldFiller):
    """E-mail field → ``<username>@<synthetic_email_domain>``."""

    def matches(self, field):
        return "email" in field.name.lower() or field.type == "email"

    def value(self, field, creds, config):
        return synthetic_email(creds.username, config.synthetic_email_domain)


# Confirmation first: its name usually contains "email" too
DEFAULT_FILLERS: Sequence[HopFieldFiller] = (
    LoginIdFiller(),
    EmailConfirmationFiller(),
    EmailFiller(),
)


# ---------------------------------------------------------------------------
# Automator
# ---------------------------------------------------------------------------

@dataclass
class LoginOutcome:
    final_url: str
    success: bool
    hops: int = 0


class LoginAutomator:
    """Drives one page through the login form and any SSO hand-offs.

    Usage::

        automator = LoginAutomator(config)
        outcome = await automator.login(page, config.pje_login_url, creds)

    Raises ``AutomationError`` when the form cannot be driven and an
    ``ObstructionError`` subclass when the provider blocks the login.
    """

    def __init__(
        self,
        config: ServiceConfig,
        fillers: Optional[Sequence[HopFieldFiller]] = None,
    ):
        self.config = config
        self.fillers = list(fillers) if fillers is not None else list(DEFAULT_FILLERS)

    async def login(self, page: Page, login_url: str, creds: Credentials) -> LoginOutcome:
        """Full login flow.

        Steps:
            1. Navigate to *login_url* (bounded), let the network settle
            2. Wait for a username input (bounded; hard error on timeout)
            3. Fill username and password (clear, then type)
            4. Submit via ``robust_click``; tolerate a missing navigation event
            5. Up to ``max_hops`` SSO hand-offs: fill extra required fields, submit
            6. Still on the login page → diagnose and raise
        """
        logger.info(
            f"[LOGIN] Starting login for {creds.masked_username} at {login_url[:100]}"
        )

        # ── Step 1: Navigate ─────────────────────────────────────────
        try:
            resp = await page.goto(login_url, wait_until="load", timeout=self.config.timeout_ms)
        except PlaywrightTimeout as exc:
            raise AutomationError(
                f"login page did not load within {self.config.timeout_ms} ms"
            ) from exc
        if resp is not None and resp.status >= 400:
            logger.warning(f"[LOGIN] Login page returned HTTP {resp.status}")
        await self._settle(page)

        # ── Step 2: Wait for the username input ─────────────────────
        await self._wait_for_username(page)

        username_sel = await find_first(page, _USERNAME_SELECTORS)
        password_sel = await find_first(page, _PASSWORD_SELECTORS)
        if not username_sel:
            raise AutomationError(
                f"username field not fillable (tried: {', '.join(_USERNAME_SELECTORS)})"
            )
        if not password_sel:
            await self._screenshot(page, "no_password")
            raise AutomationError(
                f"password field not found (tried: {', '.join(_PASSWORD_SELECTORS)})"
            )

        # ── Step 3: Fill credentials ─────────────────────────────────
        await safe_fill(page, username_sel, creds.username)
        await safe_fill(page, password_sel, creds.password)
        logger.info(f"[LOGIN] Credentials filled ({username_sel})")

        # ── Step 4: Submit ───────────────────────────────────────────
        await self._submit(page, _SUBMIT_SELECTORS, enter_fallback=password_sel)
        await self._wait_after_submit(page, login_url)
        logger.info(f"[LOGIN] Post-submit URL: {page.url[:120]}")

        # ── Step 5: SSO hand-offs ────────────────────────────────────
        hops = 0
        while hops < self.config.max_hops and url_contains_any(page.url, self.config.sso_markers):
            before = page.url
            if not await self._complete_handoff(page, creds):
                break
            hops += 1
            await self._wait_after_submit(page, before)
            logger.info(f"[LOGIN] After hop {hops}: {page.url[:120]}")

        # ── Step 6: Verify ───────────────────────────────────────────
        if await self._still_on_login(page, login_url):
            await self._screenshot(page, "login_failed")
            await self._raise_obstruction(page)

        logger.info(f"[LOGIN] ✅ Login completed ({hops} hand-off(s))")
        return LoginOutcome(final_url=page.url, success=True, hops=hops)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _settle(self, page: Page) -> None:
        try:
            await page.wait_for_load_state(
                "networkidle", timeout=self.config.post_submit_timeout_ms
            )
        except PlaywrightTimeout:
            pass

    async def _wait_for_username(self, page: Page) -> None:
        combined = ", ".join(_USERNAME_SELECTORS)
        try:
            await page.wait_for_selector(
                combined, timeout=self.config.selector_timeout_ms, state="visible"
            )
        except PlaywrightTimeout as exc:
            await self._log_inputs(page)
            await self._screenshot(page, "no_username")
            raise AutomationError(
                f"username field did not appear within {self.config.selector_timeout_ms} ms "
                f"(tried: {combined})"
            ) from exc

    async def _submit(
        self,
        page: Page,
        selectors: Sequence[str],
        enter_fallback: Optional[str] = None,
    ) -> str:
        """Click the first present submit control; Enter on *enter_fallback* last."""
        failures: List[str] = []
        for sel in selectors:
            try:
                if await page.query_selector(sel) is None:
                    continue
            except Exception:
                continue
            try:
                strategy = await robust_click(
                    page, sel, "submit button", timeout_ms=self.config.selector_timeout_ms
                )
                return f"{sel} ({strategy})"
            except AutomationError as e:
                failures.append(str(e))
                logger.warning(f"[LOGIN] Submit via {sel} failed: {e}")

        if enter_fallback:
            logger.info("[LOGIN] No submit control worked - pressing Enter")
            try:
                await page.press(enter_fallback, "Enter", no_wait_after=True)
                return "enter"
            except Exception as e:
                failures.append(f"enter: {e.__class__.__name__}")

        raise AutomationError(
            f"no click strategy succeeded on the login form ({'; '.join(failures) or 'no submit control'})"
        )

    async def _wait_after_submit(self, page: Page, previous_url: str) -> None:
        """Bounded wait for the post-submit navigation; a timeout is tolerated."""
        try:
            await page.wait_for_url(
                lambda url: url != previous_url,
                timeout=self.config.post_submit_timeout_ms,
            )
        except PlaywrightTimeout:
            logger.warning("[LOGIN] No navigation detected after submit")
        await self._settle(page)

    async def scan_required_fields(self, page: Page) -> List[LoginFieldRequirement]:
        """Required inputs on the current page that are still empty."""
        try:
            raw = await page.evaluate(_REQUIRED_EMPTY_JS)
        except Exception as e:
            logger.debug(f"[LOGIN] Required-field scan failed: {e}")
            return []
        return [
            LoginFieldRequirement(
                name=item.get("name", ""),
                type=item.get("type", "text"),
                placeholder=item.get("placeholder", ""),
            )
            for item in raw or []
            if item.get("name")
        ]

    async def _complete_handoff(self, page: Page, creds: Credentials) -> bool:
        """Fill the SSO page's extra fields and submit. False if nothing to do."""
        logger.info(f"[LOGIN] SSO hand-off detected: {page.url[:100]}")
        fields = await self.scan_required_fields(page)
        if not fields:
            logger.info("[LOGIN] No extra required fields on the SSO page")
            return False

        logger.info(f"[LOGIN] Extra required fields: {[f.name for f in fields]}")
        filled = 0
        for field in fields:
            filler = next((f for f in self.fillers if f.matches(field)), None)
            if filler is None:
                logger.warning(f"[LOGIN] No heuristic for field '{field.name}'")
                continue
            await safe_fill(page, field.selector, filler.value(field, creds, self.config))
            logger.info(f"[LOGIN] Filled '{field.name}' via {filler.__class__.__name__}")
            filled += 1

        if not filled:
            return False

        await self._submit(page, _HANDOFF_SUBMIT_SELECTORS)
        return True

    async def _still_on_login(self, page: Page, login_url: str) -> bool:
        url = (page.url or "").split("#")[0]
        if url.split("?")[0].rstrip("/") == login_url.split("?")[0].rstrip("/"):
            return True
        if "login.seam" in url.lower():
            return True
        if url_contains_any(url, self.config.sso_markers):
            pw = await find_first(page, _PASSWORD_SELECTORS)
            fields = await self.scan_required_fields(page)
            return bool(pw or fields)
        return False

    # ------------------------------------------------------------------
    # Obstruction diagnosis
    # ------------------------------------------------------------------

    async def _raise_obstruction(self, page: Page) -> None:
        """Raise the most specific error: CAPTCHA, provider error, empty fields."""
        captcha = await self._evaluate_list(page, _CAPTCHA_JS, _CAPTCHA_SELECTORS)
        if captcha:
            logger.warning(f"[LOGIN] CAPTCHA indicators: {captcha}")
            raise CaptchaDetected(captcha)

        messages = await self._evaluate_list(page, _ERROR_TEXT_JS, _ERROR_SELECTORS)
        if messages:
            visible = [m["text"] for m in messages if m.get("visible")]
            main = (visible or [m["text"] for m in messages])[0]
            logger.error(f"[LOGIN] Provider error on page: {main[:200]}")
            raise LoginRejected(main)

        missing = await self.scan_required_fields(page)
        if missing:
            names = [f.name for f in missing]
            logger.warning(f"[LOGIN] Required fields still empty: {names}")
            raise RequiredFieldsMissing(names)

        raise AutomationError(STILL_ON_LOGIN_MESSAGE)

    @staticmethod
    async def _evaluate_list(page: Page, script: str, arg) -> list:
        try:
            return list(await page.evaluate(script, arg) or [])
        except Exception as e:
            logger.debug(f"[LOGIN] Page probe failed: {e}")
            return []

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def _log_inputs(self, page: Page) -> None:
        try:
            inputs = await page.eval_on_selector_all("input", _LIST_INPUTS_JS)
        except Exception as e:
            logger.debug(f"[LOGIN] Could not list inputs: {e}")
            return
        logger.info(f"[LOGIN] Inputs on page ({len(inputs)}): {inputs[:20]}")

    async def _screenshot(self, page: Page, name: str) -> None:
        """Debug screenshot on failure (never in production)."""
        if not self.config.screenshot_on_failure:
            return
        try:
            path = os.path.join(
                tempfile.gettempdir(), f"pdpj_login_{name}_{int(time.time())}.png"
            )
            await page.screenshot(path=path, full_page=False)
            logger.info(f"[LOGIN] Debug screenshot saved: {path}")
        except Exception as e:
            logger.debug(f"[LOGIN] Screenshot failed: {e}")
