"""
Utility Functions
URL parsing, credential masking, and small encoding helpers.
"""

import base64
import logging
import re
from typing import Dict, Iterable, Optional
from urllib.parse import parse_qs, urlparse

logger = logging.getLogger(__name__)


def b64url(data: bytes) -> str:
    """Base64url-encode *data* without ``=`` padding (RFC 7636 style)."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def mask_username(username: str, visible: int = 3) -> str:
    """
    Mask a username for logging.

    Only the last *visible* characters are kept, e.g. ``12345678900`` becomes
    ``********900``.  Short values are fully masked.

    Args:
        username: Raw username (CPF, login, e-mail...)
        visible: Number of trailing characters to keep

    Returns:
        Masked string, safe to log
    """
    if not username:
        return ""
    if len(username) <= visible:
        return "*" * len(username)
    return "*" * (len(username) - visible) + username[-visible:]


def describe_token(token: Optional[str]) -> str:
    """Describe a token for logs without revealing it."""
    if not token:
        return "<none>"
    kind = "jwt" if token.count(".") == 2 else "opaque"
    return f"<{kind} token, {len(token)} chars>"


def query_params(url: str) -> Dict[str, str]:
    """
    Return the first value of every query (and fragment) parameter in *url*.

    OIDC providers may return the code in the fragment when
    ``response_mode=fragment``, so both parts are merged; the query wins.
    """
    if not url:
        return {}
    try:
        parsed = urlparse(url)
    except ValueError:
        return {}

    params: Dict[str, str] = {}
    for part in (parsed.fragment, parsed.query):
        if not part or "=" not in part:
            continue
        for key, values in parse_qs(part, keep_blank_values=True).items():
            if values:
                params[key] = values[0]
    return params


def matches_redirect(url: str, redirect_uri: str) -> bool:
    """True if *url* points at *redirect_uri* (same host, same path or below it)."""
    try:
        target = urlparse(url)
        expected = urlparse(redirect_uri)
    except ValueError:
        return False
    if target.netloc.lower() != expected.netloc.lower():
        return False
    expected_path = expected.path.rstrip("/")
    target_path = target.path.rstrip("/")
    # /cb matches /cb and /cb/..., never /cbx
    return target_path == expected_path or target_path.startswith(expected_path + "/")


def url_contains_any(url: str, markers: Iterable[str]) -> bool:
    """Case-insensitive substring check of *url* against *markers*."""
    url_lower = (url or "").lower()
    return any(marker.lower() in url_lower for marker in markers)


def sibling_url(url: str, leaf: str) -> str:
    """
    Replace the last path segment of *url* with *leaf*.

    ``https://pje.example/1g/login.seam`` + ``dashboard`` gives
    ``https://pje.example/1g/dashboard``.
    """
    parsed = urlparse(url)
    base_path = parsed.path.rsplit("/", 1)[0] if "/" in parsed.path else ""
    return f"{parsed.scheme}://{parsed.netloc}{base_path}/{leaf}"


def only_digits(value: str) -> str:
    """Strip every non-digit character (process numbers, CPF)."""
    return re.sub(r"\D", "", value or "")
