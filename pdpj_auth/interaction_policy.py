"""
Interaction Policy Engine
=========================
Element-interaction primitives for login automation.

Responsibilities:
  1. **robust_click**  — trigger a control through an ordered list of click
                         strategies, falling back until one works
  2. **safe_fill**     — clear a field (select-all) and type a value
  3. **find_first**    — first selector in a bank that matches a visible element
  4. **is_computed_visible** — CSS-level visibility check

Click strategies (tried in ``CLICK_STRATEGY_ORDER``):
  ``direct_click``     → native click, only if the element is computed-visible
  ``scroll_click``     → scroll into view, then native click
  ``script_click``     → ``document.querySelector(sel).click()`` in the page
  ``coordinate_click`` → mouse click at the bounding-box centre
  ``form_submit``      → submit the enclosing form
  ``enter_key``        → focus the element and press Enter

This module does NOT own Playwright lifecycle or page navigation.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from .errors import AutomationError

logger = logging.getLogger(__name__)


CLICK_STRATEGY_ORDER: Tuple[str, ...] = (
    "direct_click",
    "scroll_click",
    "script_click",
    "coordinate_click",
    "form_submit",
    "enter_key",
)

_VISIBLE_JS = """el => {
    const style = window.getComputedStyle(el);
    return style.display !== 'none'
        && style.visibility !== 'hidden'
        && el.offsetParent !== null;
}"""

_SCRIPT_CLICK_JS = """sel => {
    const el = document.querySelector(sel);
    if (!el) return false;
    el.click();
    return true;
}"""

_FORM_SUBMIT_JS = """sel => {
    const el = document.querySelector(sel);
    const form = el && (el.form || el.closest('form'));
    if (!form) return false;
    if (typeof form.requestSubmit === 'function') {
        form.requestSubmit();
    } else {
        form.submit();
    }
    return true;
}"""

ClickStrategy = Callable[[], Awaitable[bool]]


async def is_computed_visible(element) -> bool:
    """True if the element is rendered (display / visibility / offsetParent)."""
    try:
        return bool(await element.evaluate(_VISIBLE_JS))
    except Exception:
        return False


def _click_strategies(
    page,
    element,
    selector: str,
    *,
    timeout_ms: int,
    settle_s: float,
) -> List[Tuple[str, ClickStrategy]]:
    """Build the ordered (name, closure) list for one element."""

    async def direct_click() -> bool:
        if not await is_computed_visible(element):
            return False
        await element.click(timeout=timeout_ms, no_wait_after=True)
        return True

    async def scroll_click() -> bool:
        await element.scroll_into_view_if_needed(timeout=timeout_ms)
        await asyncio.sleep(settle_s)
        await element.click(timeout=timeout_ms, no_wait_after=True)
        return True

    async def script_click() -> bool:
        return bool(await page.evaluate(_SCRIPT_CLICK_JS, selector))

    async def coordinate_click() -> bool:
        box = await element.bounding_box()
        if not box or box["width"] <= 0 or box["height"] <= 0:
            return False
        await page.mouse.click(
            box["x"] + box["width"] / 2,
            box["y"] + box["height"] / 2,
        )
        return True

    async def form_submit() -> bool:
        return bool(await page.evaluate(_FORM_SUBMIT_JS, selector))

    async def enter_key() -> bool:
        await element.focus()
        await page.keyboard.press("Enter")
        return True

    strategies = {
        "direct_click": direct_click,
        "scroll_click": scroll_click,
        "script_click": script_click,
        "coordinate_click": coordinate_click,
        "form_submit": form_submit,
        "enter_key": enter_key,
    }
    return [(name, strategies[name]) for name in CLICK_STRATEGY_ORDER]


async def robust_click(
    page,
    selector: str,
    description: str = "",
    *,
    timeout_ms: int = 5000,
    settle_s: float = 0.5,
) -> str:
    """
    Click *selector* using the first strategy that works.

    A strategy fails by raising or by returning ``False``; the failure is
    logged and the next strategy is attempted.

    Returns:
        The name of the strategy that succeeded.

    Raises:
        AutomationError: element missing, or every strategy failed.
    """
    label = description or selector
    logger.info(f"[CLICK] Robust click on: {label}")

    element = await page.query_selector(selector)
    if element is None:
        raise AutomationError(f"element not found: {selector}")

    failures: List[str] = []
    for name, strategy in _click_strategies(
        page, element, selector, timeout_ms=timeout_ms, settle_s=settle_s
    ):
        try:
            if await strategy():
                logger.info(f"[CLICK] {name} worked on {label}")
                return name
            failures.append(f"{name}: declined")
            logger.warning(f"[CLICK] {name} not applicable on {label}")
        except Exception as exc:
            failures.append(f"{name}: {exc.__class__.__name__}")
            logger.warning(f"[CLICK] {name} failed on {label}: {exc}")

    raise AutomationError(
        f"no click strategy succeeded on {label} ({'; '.join(failures)})"
    )


async def safe_fill(page, selector: str, value: str, *, timeout_ms: int = 3000) -> None:
    """Fill a field by replacing its content — click, select all, type.

    Some login forms bind key handlers and ignore a plain ``value`` write,
    so the text is typed rather than set.
    """
    await page.click(selector, timeout=timeout_ms)
    await page.click(selector, click_count=3, timeout=timeout_ms)
    await page.keyboard.press("Control+A")
    await page.keyboard.press("Backspace")
    await page.type(selector, value, delay=30)


async def find_first(page, selectors: List[str], *, visible_only: bool = True) -> Optional[str]:
    """Return the first selector matching an element (visible, if asked)."""
    for sel in selectors:
        try:
            el = await page.query_selector(sel)
        except Exception:
            continue
        if el is None:
            continue
        if visible_only and not await is_computed_visible(el):
            continue
        return sel
    return None
