"""
Error taxonomy shared by every module.

    - ``SoftFailure``       — expected, absorbed by the chain (fall through)
    - ``AutomationError``   — the browser automation could not proceed
    - ``ObstructionError``  — the provider is blocking us (CAPTCHA, rejected
      credentials, structurally missing fields)
    - ``ResourceError``     — the browser could not be launched / capacity
    - ``SessionNotFound``   — unknown or expired session id
    - ``TokenNotFound``     — logged in, but no token surfaced anywhere
"""

from typing import List, Optional


class AuthError(Exception):
    """Root of every error raised by the auth package."""


class SoftFailure(AuthError):
    """Expected, non-fatal failure — the chain moves on to the next strategy."""


class AutomationError(AuthError):
    """The login automation could not continue (selector, click, navigation)."""


class ObstructionError(AuthError):
    """The provider actively prevents the login from completing."""


class CaptchaDetected(ObstructionError):
    def __init__(self, indicators: Optional[List[str]] = None):
        self.indicators = indicators or []
        super().__init__(
            "Login blocked by CAPTCHA - automated authentication is not possible"
        )


class LoginRejected(ObstructionError):
    def __init__(self, provider_message: str):
        self.provider_message = provider_message
        super().__init__(f"Login rejected: {provider_message}")


class RequiredFieldsMissing(ObstructionError):
    def __init__(self, field_names: List[str]):
        self.field_names = field_names
        super().__init__(f"Required fields not filled: {', '.join(field_names)}")


class ResourceError(AuthError):
    """A browser or session resource could not be acquired."""


class SessionNotFound(AuthError):
    def __init__(self, session_id: str, expired: bool = False):
        self.session_id = session_id
        self.expired = expired
        reason = "expired" if expired else "not found"
        # Only a prefix of the id is echoed back
        super().__init__(f"Session {reason}: {session_id[:8]}...")


class TokenNotFound(AuthError):
    """Authenticated, but no source surfaced a usable token."""

