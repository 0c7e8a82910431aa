"""
Authentication Module
=====================
Token acquisition and session lifecycle for the PDPJ / PJe portals.

Architecture:
    - ``AcquisitionChain``     — password grant → PKCE → DOM login, in order
    - ``LoginAutomator``       — drives the login form and SSO hand-offs
    - ``TokenExtractor``       — finds the token a browser login left behind
    - ``SessionManager``       — bounded pool of authenticated browsers
    - ``Credentials``          — credential container (resolved from env/prompt)

Extending:
    To add an acquisition strategy, subclass ``BaseAcquisitionStrategy``
    and pass it to ``AcquisitionChain(config, strategies=[...])``.

Usage::

    from pdpj_auth.auth import SessionManager
    from pdpj_auth.run_config import ServiceConfig

    manager = SessionManager(ServiceConfig.from_env())
    result = await manager.create_session("12345678900", "secret")
"""

from .base_auth import (
    AcquisitionResult,
    BaseAcquisitionStrategy,
    Credentials,
    LoginFieldRequirement,
    TokenSource,
)
from .browser import BrowserHandle
from .login_manager import LoginAutomator, LoginOutcome
from .oauth_client import TokenEndpointClient, generate_pkce_pair
from .session_manager import Session, SessionManager
from .strategy_chain import (
    AcquisitionChain,
    DomLoginStrategy,
    PasswordGrantStrategy,
    PkceAuthorizationStrategy,
)
from .token_extractor import ExtractedToken, TokenCapture, TokenExtractor

__all__ = [
    "AcquisitionChain",
    "AcquisitionResult",
    "BaseAcquisitionStrategy",
    "BrowserHandle",
    "Credentials",
    "DomLoginStrategy",
    "ExtractedToken",
    "LoginAutomator",
    "LoginFieldRequirement",
    "LoginOutcome",
    "PasswordGrantStrategy",
    "PkceAuthorizationStrategy",
    "Session",
    "SessionManager",
    "TokenCapture",
    "TokenEndpointClient",
    "TokenExtractor",
    "TokenSource",
    "generate_pkce_pair",
]
