"""
Portal Actions
==============
Authenticated follow-up actions, run through
``SessionManager.execute_in_session``:

    - ``validate_portal_access`` — does the token open the portal?
    - ``search_process``         — look up one process by number

Both send the session token as ``Authorization: Bearer`` on every request
of the session's browser context.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from .auth.session_manager import Session
from .errors import AutomationError
from .interaction_policy import find_first, robust_click, safe_fill
from .run_config import ServiceConfig
from .utils import only_digits

logger = logging.getLogger(__name__)

_PROCESS_FIELD = 'input[name="numeroProcesso"], input[id="numeroProcesso"]'
_SEARCH_BUTTONS = ['button#btnBuscar', 'button[type="submit"]', 'input[type="submit"]']
_RESULT_SELECTOR = 'table.resultados, div.processo-info'
_UNAUTHORISED_MARKERS = ("login", "unauthorized")

_SCRAPE_JS = """() => {
    const text = el => (el && el.textContent ? el.textContent.trim() : '');
    return {
        numero: text(document.querySelector('.numero-processo')),
        partes: Array.from(document.querySelectorAll('.parte')).map(text),
        movimentacoes: Array.from(document.querySelectorAll('.movimentacao')).map(el => ({
            data: text(el.querySelector('.data')),
            descricao: text(el.querySelector('.descricao')),
        })),
    };
}"""


@dataclass
class ProcessMovement:
    date: str = ""
    description: str = ""


@dataclass
class ProcessRecord:
    number: str
    parties: List[str] = field(default_factory=list)
    movements: List[ProcessMovement] = field(default_factory=list)

    @classmethod
    def from_scrape(cls, raw: Dict[str, Any], searched: str) -> "ProcessRecord":
        return cls(
            number=(raw.get("numero") or searched).strip(),
            parties=[p for p in raw.get("partes") or [] if p],
            movements=[
                ProcessMovement(date=m.get("data", ""), description=m.get("descricao", ""))
                for m in raw.get("movimentacoes") or []
            ],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def consulta_url(config: ServiceConfig) -> str:
    return f"{config.portal_url.rstrip('/')}/consulta"


async def _open_consulta(session: Session, config: ServiceConfig):
    await session.handle.set_bearer(session.token)
    page = await session.handle.primary_page()
    await page.goto(consulta_url(config), wait_until="networkidle", timeout=config.timeout_ms)
    return page


async def validate_portal_access(session: Session, config: ServiceConfig) -> bool:
    """True if the portal's consulta page opens without bouncing to login."""
    try:
        page = await _open_consulta(session, config)
    except PlaywrightError as e:
        logger.warning(f"[PORTAL] Consulta page did not load: {e}")
        return False

    url = page.url.lower()
    authorised = not any(marker in url for marker in _UNAUTHORISED_MARKERS)
    logger.info(f"[PORTAL] Access {'granted' if authorised else 'denied'}: {page.url[:100]}")
    return authorised


async def search_process(
    session: Session, config: ServiceConfig, process_number: str
) -> ProcessRecord:
    """Search *process_number* (any formatting; digits are kept) and scrape the result."""
    digits = only_digits(process_number)
    if not digits:
        raise ValueError(f"process number has no digits: {process_number!r}")

    logger.info(f"[PORTAL] Searching process {digits}")
    try:
        page = await _open_consulta(session, config)
        await page.wait_for_selector(
            _PROCESS_FIELD, timeout=config.selector_timeout_ms, state="visible"
        )
    except PlaywrightTimeout as exc:
        raise AutomationError("process search form did not load") from exc

    await safe_fill(page, _PROCESS_FIELD, digits)
    button = await find_first(page, _SEARCH_BUTTONS)
    if button:
        await robust_click(page, button, "process search button")
    else:
        await page.press(_PROCESS_FIELD, "Enter")

    try:
        await page.wait_for_selector(_RESULT_SELECTOR, timeout=config.timeout_ms)
    except PlaywrightTimeout as exc:
        raise AutomationError(f"no result shown for process {digits}") from exc

    record = ProcessRecord.from_scrape(await page.evaluate(_SCRAPE_JS), digits)
    logger.info(
        f"[PORTAL] Process {record.number}: {len(record.parties)} parties, "
        f"{len(record.movements)} movements"
    )
    return record
