"""
Unified Service Configuration
=============================
Single source of truth for ALL service defaults and runtime limits.

Every module (CLI, acquisition chain, login automator, session manager)
reads from this object.  Environment variables (optionally loaded from a
``.env`` file) populate it; keyword overrides win over both.

Configuration is read-only after startup: build it once and pass the same
instance to every component.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .utils import sibling_url

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Defaults (overridable by env or keyword)
# ---------------------------------------------------------------------------
_DEFAULTS = {
    "pje_login_url": "https://pje.cloud.tjpe.jus.br/1g/login.seam",
    "portal_url": "https://portaldeservicos.pdpj.jus.br",
    "realm_url": "https://sso.cloud.pje.jus.br/auth/realms/pje",
    "client_id": "portalexterno-frontend",
    "scope": "openid",
    "timeout_ms": 90_000,              # navigation + per-strategy bound
    "selector_timeout_ms": 15_000,     # wait for the username field
    "post_submit_timeout_ms": 10_000,  # navigation after submit (tolerated)
    "http_timeout_s": 30.0,            # token endpoint calls
    "headless": True,
    "max_sessions": 5,
    "session_timeout_ms": 3_600_000,   # 1 hour idle
    "cleanup_interval_s": 300.0,
    "synthetic_email_domain": "exemplo.com.br",
    "environment": "development",
    "viewport_width": 1920,
    "viewport_height": 1080,
    "locale": "pt-BR",
    "timezone_id": "America/Recife",
    "user_agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
    ),
}

# Flags every launch gets (containers usually run without a sandbox)
_BASE_LAUNCH_ARGS: List[str] = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
]

# URL fragments that mean "the portal handed us off to the SSO provider"
_SSO_MARKERS: List[str] = [
    "sso.cloud.pje.jus.br",
    "auth/realms/pje",
]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() not in ("false", "0", "no", "off")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"[CONFIG] Ignoring non-integer {name}={raw!r}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"[CONFIG] Ignoring non-numeric {name}={raw!r}")
        return default


@dataclass
class ServiceConfig:
    """
    Unified configuration consumed by every subsystem.

    Populate via:
      - ``ServiceConfig()``                  → all defaults
      - ``ServiceConfig(max_sessions=2)``     → override one value
      - ``ServiceConfig.from_env()``          → from environment / ``.env``
    """

    # ---- Endpoints ----
    pje_login_url: str = _DEFAULTS["pje_login_url"]
    pje_dashboard_url: str = ""
    portal_url: str = _DEFAULTS["portal_url"]
    realm_url: str = _DEFAULTS["realm_url"]
    client_id: str = _DEFAULTS["client_id"]
    redirect_uri: str = ""
    scope: str = _DEFAULTS["scope"]

    # ---- Timeouts ----
    timeout_ms: int = _DEFAULTS["timeout_ms"]
    selector_timeout_ms: int = _DEFAULTS["selector_timeout_ms"]
    post_submit_timeout_ms: int = _DEFAULTS["post_submit_timeout_ms"]
    http_timeout_s: float = _DEFAULTS["http_timeout_s"]

    # ---- Browser ----
    headless: bool = _DEFAULTS["headless"]
    executable_path: Optional[str] = None
    extra_launch_args: List[str] = field(default_factory=list)
    viewport_width: int = _DEFAULTS["viewport_width"]
    viewport_height: int = _DEFAULTS["viewport_height"]
    locale: str = _DEFAULTS["locale"]
    timezone_id: str = _DEFAULTS["timezone_id"]
    user_agent: str = _DEFAULTS["user_agent"]

    # ---- Sessions ----
    max_sessions: int = _DEFAULTS["max_sessions"]
    session_timeout_ms: int = _DEFAULTS["session_timeout_ms"]
    cleanup_interval_s: float = _DEFAULTS["cleanup_interval_s"]

    # ---- Login heuristics ----
    sso_markers: List[str] = field(default_factory=lambda: list(_SSO_MARKERS))
    synthetic_email_domain: str = _DEFAULTS["synthetic_email_domain"]
    max_hops: int = 2

    # ---- Runtime ----
    environment: str = _DEFAULTS["environment"]

    def __post_init__(self) -> None:
        if not self.redirect_uri:
            self.redirect_uri = self.portal_url
        if not self.pje_dashboard_url:
            self.pje_dashboard_url = sibling_url(self.pje_login_url, "dashboard")
        if self.max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")

    # -----------------------------------------------------------------------
    # Factory helpers
    # -----------------------------------------------------------------------
    @classmethod
    def from_env(cls, env_file: Optional[str] = None, **overrides) -> "ServiceConfig":
        """Build config from environment variables (``.env`` loaded first)."""
        if env_file:
            load_dotenv(env_file)
        else:
            local_env = Path.cwd() / ".env"
            if local_env.exists():
                load_dotenv(local_env)

        extra_args = [
            a.strip() for a in os.environ.get("BROWSER_ARGS", "").split(",") if a.strip()
        ]
        values = dict(
            pje_login_url=os.environ.get("PJE_URL", _DEFAULTS["pje_login_url"]),
            pje_dashboard_url=os.environ.get("PJE_DASHBOARD_URL", ""),
            portal_url=os.environ.get("PORTAL_URL", _DEFAULTS["portal_url"]),
            realm_url=os.environ.get("SSO_REALM_URL", _DEFAULTS["realm_url"]),
            client_id=os.environ.get("SSO_CLIENT_ID", _DEFAULTS["client_id"]),
            redirect_uri=os.environ.get("SSO_REDIRECT_URI", ""),
            scope=os.environ.get("SSO_SCOPE", _DEFAULTS["scope"]),
            timeout_ms=_env_int("TIMEOUT", _DEFAULTS["timeout_ms"]),
            selector_timeout_ms=_env_int("SELECTOR_TIMEOUT", _DEFAULTS["selector_timeout_ms"]),
            post_submit_timeout_ms=_env_int(
                "NAVIGATION_TIMEOUT", _DEFAULTS["post_submit_timeout_ms"]
            ),
            http_timeout_s=_env_float("HTTP_TIMEOUT", _DEFAULTS["http_timeout_s"]),
            headless=_env_bool("HEADLESS", _DEFAULTS["headless"]),
            executable_path=(
                os.environ.get("BROWSER_EXECUTABLE_PATH")
                or os.environ.get("PUPPETEER_EXECUTABLE_PATH")
                or None
            ),
            extra_launch_args=extra_args,
            max_sessions=_env_int("MAX_SESSIONS", _DEFAULTS["max_sessions"]),
            session_timeout_ms=_env_int("SESSION_EXPIRATION", _DEFAULTS["session_timeout_ms"]),
            cleanup_interval_s=_env_float("CLEANUP_INTERVAL", _DEFAULTS["cleanup_interval_s"]),
            synthetic_email_domain=os.environ.get(
                "SYNTHETIC_EMAIL_DOMAIN", _DEFAULTS["synthetic_email_domain"]
            ),
            environment=(
                os.environ.get("PDPJ_ENV")
                or os.environ.get("NODE_ENV")
                or _DEFAULTS["environment"]
            ),
        )
        values.update(overrides)
        return cls(**values)

    # -----------------------------------------------------------------------
    # Derived values
    # -----------------------------------------------------------------------
    @property
    def token_endpoint(self) -> str:
        return f"{self.realm_url.rstrip('/')}/protocol/openid-connect/token"

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.realm_url.rstrip('/')}/protocol/openid-connect/auth"

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def expose_diagnostics(self) -> bool:
        """Internal failure details are only returned outside production."""
        return not self.is_production

    @property
    def screenshot_on_failure(self) -> bool:
        return not self.is_production

    @property
    def session_timeout_s(self) -> float:
        return self.session_timeout_ms / 1000

    @property
    def launch_args(self) -> List[str]:
        args = list(_BASE_LAUNCH_ARGS)
        for extra in self.extra_launch_args:
            if extra not in args:
                args.append(extra)
        return args

    # -----------------------------------------------------------------------
    # Logging helper
    # -----------------------------------------------------------------------
    def log_summary(self) -> None:
        """Emit a structured summary to the logger."""
        logger.info("=" * 60)
        logger.info("PDPJ AUTH CONFIG")
        logger.info("=" * 60)
        logger.info(f"  PJe Login URL:    {self.pje_login_url}")
        logger.info(f"  Portal URL:       {self.portal_url}")
        logger.info(f"  SSO Realm:        {self.realm_url}")
        logger.info(f"  Client ID:        {self.client_id}")
        logger.info(f"  Redirect URI:     {self.redirect_uri}")
        logger.info(f"  Timeout:          {self.timeout_ms} ms")
        logger.info(f"  Headless:         {self.headless}")
        logger.info(f"  Max Sessions:     {self.max_sessions}")
        logger.info(f"  Session Timeout:  {self.session_timeout_ms} ms")
        if self.executable_path:
            logger.info(f"  Browser Binary:   {self.executable_path}")
        logger.info(f"  Environment:      {self.environment}")
        logger.info("=" * 60)
