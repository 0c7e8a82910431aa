"""
Base Authentication Types
=========================
Defines the contract shared by every token acquisition strategy, plus the
value types and error taxonomy the rest of the package speaks.

To add a new acquisition strategy:
    1. Subclass ``BaseAcquisitionStrategy`` in ``strategy_chain.py``
    2. Implement ``name`` and ``acquire()``
    3. Pass it to ``AcquisitionChain(strategies=[...])`` in the order wanted

Error taxonomy: see ``pdpj_auth.errors`` (re-exported here).

Security:
    - Passwords and tokens are never logged.
    - Usernames only appear masked (``********900``).
"""

from __future__ import annotations

import getpass
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..errors import (  # noqa: F401  (re-exported)
    AuthError,
    AutomationError,
    CaptchaDetected,
    LoginRejected,
    ObstructionError,
    RequiredFieldsMissing,
    ResourceError,
    SessionNotFound,
    SoftFailure,
    TokenNotFound,
)
from ..utils import mask_username

if TYPE_CHECKING:
    from .browser import BrowserHandle

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Credentials container
# ---------------------------------------------------------------------------

_ENV_PREFIXES = [("PJE_USER", "PJE_PASS"), ("PDPJ_USERNAME", "PDPJ_PASSWORD")]


@dataclass
class Credentials:
    """Plain credential container — resolved once, used by strategies."""
    username: str = ""
    password: str = field(default="", repr=False)

    @property
    def is_complete(self) -> bool:
        return bool(self.username and self.password)

    @property
    def masked_username(self) -> str:
        return mask_username(self.username)

    def resolve(self, *, interactive: bool = False) -> "Credentials":
        """Fill missing values from env vars, then (optionally) a prompt.

        Resolution order:
            1. Values already set on this object
            2. ``PJE_USER`` / ``PJE_PASS``, then ``PDPJ_USERNAME`` / ``PDPJ_PASSWORD``
            3. Interactive terminal prompt (``getpass`` for the password)
        """
        if self.is_complete:
            return self

        for user_var, pass_var in _ENV_PREFIXES:
            if not self.username:
                self.username = os.environ.get(user_var, "")
            if not self.password:
                self.password = os.environ.get(pass_var, "")

        if self.is_complete:
            logger.info("[AUTH] Credentials resolved from environment")
            return self

        if interactive:
            if not self.username:
                self.username = input("  PJe username (CPF): ").strip()
            if not self.password:
                self.password = getpass.getpass("  PJe password: ")

        return self


# ---------------------------------------------------------------------------
# Acquisition result
# ---------------------------------------------------------------------------

@dataclass
class AcquisitionResult:
    """Outcome of one run of the acquisition chain.

    ``success=True`` always carries a non-empty token.
    """
    success: bool
    token: Optional[str] = None
    message: str = ""
    token_type: str = "Bearer"
    strategy: Optional[str] = None
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.success and not self.token:
            raise ValueError("a successful AcquisitionResult needs a non-empty token")

    @classmethod
    def failed(cls, message: str, **diagnostics: Any) -> "AcquisitionResult":
        return cls(success=False, token=None, message=message, diagnostics=diagnostics)

    def to_dict(self, include_diagnostics: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "token": self.token,
            "tokenType": self.token_type,
            "message": self.message,
        }
        if include_diagnostics and self.diagnostics:
            data["diagnostics"] = self.diagnostics
        return data


# ---------------------------------------------------------------------------
# Login field discovered during multi-hop login
# ---------------------------------------------------------------------------

@dataclass
class LoginFieldRequirement:
    """A required-but-empty input found on an identity-provider page."""
    name: str = ""
    type: str = "text"
    placeholder: str = ""
    required: bool = True

    @property
    def selector(self) -> str:
        return f'input[name="{self.name}"], input[id="{self.name}"]'


class TokenSource(str, Enum):
    """Where a token was found, in extraction priority order."""
    INTERCEPTED_HEADER = "intercepted_header"
    INTERCEPTED_RESPONSE_BODY = "intercepted_response_body"
    LOCAL_STORAGE = "local_storage"
    SESSION_STORAGE = "session_storage"
    COOKIE = "cookie"
    PROVIDER_GLOBAL = "provider_global"


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseAcquisitionStrategy(ABC):
    """Abstract base for token acquisition strategies.

    Subclasses MUST implement:
        - ``name``       — short identifier used in logs and diagnostics
        - ``acquire()``  — return a non-empty token or raise

    A strategy signals "try the next one" by raising ``SoftFailure``.
    Anything else raised by the *terminal* strategy ends the chain.
    """

    #: True when the strategy drives the browser held by the handle
    uses_browser: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def acquire(
        self, creds: Credentials, handle: Optional["BrowserHandle"] = None
    ) -> str:
        """Obtain an access token for *creds*.

        Args:
            creds:  Complete credentials.
            handle: Browser owned by the caller; strategies open pages in it
                    but never close it.

        Returns:
            The access token.
        """
        ...
