"""
Acquisition Strategy Chain
==========================
Ordered token acquisition with fall-through:

    1. ``PasswordGrantStrategy``     — direct grant at the token endpoint
    2. ``PkceAuthorizationStrategy`` — browser login at the hosted
                                       authorization page + code exchange
    3. ``DomLoginStrategy``          — PJe form login + token extraction

Strategies run strictly in order, one at a time, never retried.  Any
failure of a non-terminal strategy is recorded and the next one runs; the
terminal strategy's failure ends the chain with ``success=False``.  Every
strategy is bounded by ``ServiceConfig.timeout_ms``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from playwright.async_api import Page

from ..run_config import ServiceConfig
from ..utils import matches_redirect, query_params
from .base_auth import (
    AcquisitionResult,
    AuthError,
    BaseAcquisitionStrategy,
    Credentials,
    ResourceError,
    SoftFailure,
    TokenNotFound,
)
from .browser import BrowserHandle
from .login_manager import LoginAutomator
from .oauth_client import (
    TokenEndpointClient,
    build_authorization_url,
    generate_pkce_pair,
    generate_state,
)
from .token_extractor import TokenCapture, TokenExtractor

logger = logging.getLogger(__name__)


async def _close_quietly(page: Optional[Page]) -> None:
    if page is None:
        return
    try:
        await page.close()
    except Exception as e:
        logger.debug(f"[CHAIN] Page close error: {e}")


async def _forget_sso_login(handle) -> None:
    try:
        await handle.clear_cookies()
    except Exception as e:
        logger.warning(f"[CHAIN] Could not clear cookies: {e}")


# ---------------------------------------------------------------------------
# 1. Password grant
# ---------------------------------------------------------------------------

class PasswordGrantStrategy(BaseAcquisitionStrategy):
    """Resource-owner password grant; often disabled for the client."""

    def __init__(self, config: ServiceConfig, client: Optional[TokenEndpointClient] = None):
        self.config = config
        self.client = client or TokenEndpointClient(config)

    @property
    def name(self) -> str:
        return "password_grant"

    async def acquire(self, creds, handle=None) -> str:
        return await self.client.apassword_grant(creds)


# ---------------------------------------------------------------------------
# 2. Authorization code + PKCE
# ---------------------------------------------------------------------------

class RedirectCodeListener:
    """Watches a page for ``redirect_uri?code=...&state=<ours>``.

    Both outgoing requests and frame navigations are inspected, so the
    code is seen even when the redirect target never finishes loading.
    """

    def __init__(self, redirect_uri: str, state: str):
        self.redirect_uri = redirect_uri
        self.state = state
        self.code: Optional[str] = None
        self.error: Optional[str] = None
        self._event = asyncio.Event()
        self._page: Optional[Page] = None

    def attach(self, page: Page) -> None:
        page.on("request", self._on_request)
        page.on("framenavigated", self._on_frame)
        self._page = page

    def detach(self) -> None:
        if self._page is None:
            return
        try:
            self._page.remove_listener("request", self._on_request)
            self._page.remove_listener("framenavigated", self._on_frame)
        except Exception as e:
            logger.debug(f"[PKCE] Listener removal failed: {e}")
        self._page = None

    @property
    def done(self) -> bool:
        return self._event.is_set()

    def inspect(self, url: str) -> bool:
        """Record the code (or provider error) if *url* is our redirect."""
        if self.done or not url or not matches_redirect(url, self.redirect_uri):
            return False
        params = query_params(url)
        if params.get("state") != self.state:
            if "code" in params:
                logger.warning("[PKCE] Redirect with foreign state ignored")
            return False
        if params.get("error"):
            self.error = params.get("error_description") or params["error"]
        elif params.get("code"):
            self.code = params["code"]
        else:
            return False
        self._event.set()
        return True

    async def wait(self, timeout_s: float) -> str:
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            raise SoftFailure(
                f"pkce: no authorization code within {timeout_s:.0f}s"
            ) from exc
        if self.error:
            raise SoftFailure(f"pkce: provider returned error ({self.error})")
        return self.code

    def _on_request(self, request) -> None:
        self.inspect(request.url)

    def _on_frame(self, frame) -> None:
        self.inspect(frame.url)


class PkceAuthorizationStrategy(BaseAcquisitionStrategy):
    """Drive the hosted login page, catch the code, exchange it."""

    uses_browser = True

    def __init__(
        self,
        config: ServiceConfig,
        client: Optional[TokenEndpointClient] = None,
        automator: Optional[LoginAutomator] = None,
    ):
        self.config = config
        self.client = client or TokenEndpointClient(config)
        self.automator = automator or LoginAutomator(config)

    @property
    def name(self) -> str:
        return "pkce_authorization_code"

    async def acquire(self, creds, handle=None) -> str:
        if handle is None:
            raise SoftFailure("pkce: no browser available")

        pair = generate_pkce_pair()
        state = generate_state()
        auth_url = build_authorization_url(self.config, pair.challenge, state)

        page = await handle.new_page()
        listener = RedirectCodeListener(self.config.redirect_uri, state)
        listener.attach(page)
        try:
            try:
                await self.automator.login(page, auth_url, creds)
            except AuthError as e:
                # The redirect may already be captured even if the page
                # itself never looked "logged in"
                if not listener.done:
                    raise SoftFailure(f"pkce: hosted login failed ({e})") from e
            code = await listener.wait(self.config.post_submit_timeout_ms / 1000)
            token = await self.client.aexchange_code(code, pair.verifier)
        except BaseException:
            await _close_quietly(page)
            # SSO cookies must not carry over into the DOM login
            await _forget_sso_login(handle)
            raise
        finally:
            listener.detach()

        logger.info("[PKCE] Authorization code exchanged")
        return token


# ---------------------------------------------------------------------------
# 3. DOM login + extraction
# ---------------------------------------------------------------------------

class DomLoginStrategy(BaseAcquisitionStrategy):
    """Log in through the PJe form and pull the token out of the page."""

    uses_browser = True

    def __init__(
        self,
        config: ServiceConfig,
        automator: Optional[LoginAutomator] = None,
        extractor: Optional[TokenExtractor] = None,
    ):
        self.config = config
        self.automator = automator or LoginAutomator(config)
        self.extractor = extractor or TokenExtractor(config)

    @property
    def name(self) -> str:
        return "dom_login"

    async def acquire(self, creds, handle=None) -> str:
        if handle is None:
            raise ResourceError("dom login needs a browser handle")

        page = await handle.new_page()
        capture = TokenCapture()
        capture.attach(page)
        try:
            await self.automator.login(page, self.config.pje_login_url, creds)
            found = await self.extractor.extract_with_retry(
                page, capture, fallback_url=self.config.pje_dashboard_url
            )
            if found is None:
                raise TokenNotFound(
                    "logged in, but no token surfaced in headers, responses, "
                    "storage, cookies or provider globals"
                )
        except BaseException:
            await _close_quietly(page)
            raise
        finally:
            capture.detach()

        return found.value


def default_strategies(
    config: ServiceConfig, client: Optional[TokenEndpointClient] = None
) -> List[BaseAcquisitionStrategy]:
    client = client or TokenEndpointClient(config)
    automator = LoginAutomator(config)
    return [
        PasswordGrantStrategy(config, client),
        PkceAuthorizationStrategy(config, client, automator),
        DomLoginStrategy(config, automator),
    ]


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------

class AcquisitionChain:
    """Runs the strategies in order until one returns a token.

    Usage::

        chain = AcquisitionChain(config)
        result = await chain.acquire(Credentials("12345678900", "secret"))
        if result.success:
            use(result.token)
    """

    def __init__(
        self,
        config: ServiceConfig,
        strategies: Optional[Sequence[BaseAcquisitionStrategy]] = None,
    ):
        self.config = config
        self.strategies = list(strategies) if strategies is not None else default_strategies(config)
        if not self.strategies:
            raise ValueError("AcquisitionChain needs at least one strategy")

    async def acquire(
        self, creds: Credentials, handle: Optional[BrowserHandle] = None
    ) -> AcquisitionResult:
        """Obtain a token for *creds*.

        When *handle* is given, browser strategies open pages in it and the
        caller keeps ownership; otherwise the chain creates one and closes
        it before returning.

        Raises:
            ResourceError: the terminal strategy could not get a browser.
        """
        if not creds.is_complete:
            return AcquisitionResult.failed("Username and password are required")

        owns_handle = handle is None
        if owns_handle:
            handle = BrowserHandle(self.config)

        attempts: List[Dict[str, Any]] = []
        timeout_s = self.config.timeout_ms / 1000
        try:
            for index, strategy in enumerate(self.strategies):
                terminal = index == len(self.strategies) - 1
                logger.info(
                    f"[CHAIN] {index + 1}/{len(self.strategies)} {strategy.name} "
                    f"for {creds.masked_username}"
                )
                try:
                    token = await asyncio.wait_for(
                        strategy.acquire(creds, handle), timeout=timeout_s
                    )
                except asyncio.TimeoutError:
                    attempts.append(self._attempt(
                        strategy, "TimeoutError", f"timed out after {self.config.timeout_ms} ms"
                    ))
                except SoftFailure as e:
                    attempts.append(self._attempt(strategy, e.__class__.__name__, str(e)))
                except AuthError as e:
                    attempts.append(self._attempt(strategy, e.__class__.__name__, str(e)))
                    if terminal and isinstance(e, ResourceError):
                        raise
                except Exception as e:
                    logger.exception(f"[CHAIN] Unexpected error in {strategy.name}")
                    attempts.append(self._attempt(
                        strategy, e.__class__.__name__, str(e) or e.__class__.__name__
                    ))
                else:
                    if token:
                        logger.info(f"[CHAIN] ✅ Token obtained via {strategy.name}")
                        return AcquisitionResult(
                            success=True,
                            token=token,
                            message=f"Token obtained via {strategy.name}",
                            strategy=strategy.name,
                            diagnostics={"attempts": attempts},
                        )
                    attempts.append(self._attempt(strategy, "EmptyToken", "returned an empty token"))

                reason = attempts[-1]["reason"]
                if terminal:
                    logger.error(f"[CHAIN] {strategy.name} failed: {reason}")
                else:
                    logger.warning(f"[CHAIN] {strategy.name} failed, falling through: {reason}")

            final = attempts[-1]
            return AcquisitionResult.failed(
                f"All acquisition strategies exhausted: {final['reason']}",
                attempts=attempts,
            )
        finally:
            if owns_handle:
                await handle.close()

    @staticmethod
    def _attempt(strategy: BaseAcquisitionStrategy, error: str, reason: str) -> Dict[str, Any]:
        return {"strategy": strategy.name, "error": error, "reason": reason}
