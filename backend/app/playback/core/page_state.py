"""
Page State Capture

Compact description of what the user would see right now. Used as
context for recovery instructions and for AI verification.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

MAX_INPUTS = 10
MAX_BUTTONS = 10
MAX_BODY_TEXT = 500


_CAPTURE_JS = """
() => {
    const visible = el => el.offsetParent !== null;
    const inputs = Array.from(document.querySelectorAll('input, textarea, select'))
        .filter(visible)
        .map(el => ({
            type: el.getAttribute('type') || el.tagName.toLowerCase(),
            name: el.getAttribute('name'),
            id: el.id || null,
            placeholder: el.getAttribute('placeholder'),
            selector: el.id ? `#${el.id}` : (el.getAttribute('name') ? `[name="${el.getAttribute('name')}"]` : null)
        }));
    const buttons = Array.from(document.querySelectorAll('button, [type="submit"], a'))
        .filter(el => visible(el) && (el.textContent || '').trim())
        .map(el => ({
            text: (el.textContent || '').trim().substring(0, 80),
            type: el.getAttribute('type'),
            href: el.getAttribute('href'),
            selector: el.id ? `#${el.id}` : null
        }));
    return {
        url: window.location.href,
        title: document.title,
        inputs: inputs,
        buttons: buttons,
        bodyText: document.body ? document.body.innerText : ''
    };
}
"""


@dataclass
class PageStateSnapshot:
    """Observed page state (read-only)"""
    url: str = ""
    title: str = ""
    visible_inputs: List[Dict[str, Any]] = field(default_factory=list)
    visible_buttons: List[Dict[str, Any]] = field(default_factory=list)
    has_login_form: bool = False
    has_sign_in_button: bool = False
    body_text: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _has_login_form(inputs: List[Dict[str, Any]]) -> bool:
    for item in inputs:
        if (item.get("type") or "").lower() == "password":
            return True
        name = (item.get("name") or "").lower()
        if "login" in name or "email" in name:
            return True
    return False


def _has_sign_in_button(buttons: List[Dict[str, Any]]) -> bool:
    for item in buttons:
        text = (item.get("text") or "").lower()
        if "sign in" in text or "login" in text or "log in" in text:
            return True
    return False


def build_snapshot(raw: Dict[str, Any]) -> PageStateSnapshot:
    inputs = list(raw.get("inputs") or [])[:MAX_INPUTS]
    buttons = list(raw.get("buttons") or [])[:MAX_BUTTONS]
    return PageStateSnapshot(
        url=raw.get("url") or "",
        title=raw.get("title") or "",
        visible_inputs=inputs,
        visible_buttons=buttons,
        has_login_form=_has_login_form(inputs),
        has_sign_in_button=_has_sign_in_button(buttons),
        body_text=(raw.get("bodyText") or "")[:MAX_BODY_TEXT]
    )


async def capture_page_state(page) -> PageStateSnapshot:
    """Snapshot the page; falls back to URL and title if the script cannot run"""
    try:
        raw = await page.evaluate(_CAPTURE_JS)
        if isinstance(raw, dict):
            return build_snapshot(raw)
    except Exception as e:
        logger.debug(f"[PAGE-STATE] Capture script failed: {e}")

    title = ""
    try:
        title = await page.title()
    except Exception as e:
        logger.debug(f"[PAGE-STATE] Could not read title: {e}")

    return PageStateSnapshot(url=page.url or "", title=title)
