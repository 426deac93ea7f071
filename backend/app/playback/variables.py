"""
Variable binding for intent specifications.

Placeholders use the recorder's {{NAME}} syntax. Unbound placeholders are
left in place so a missing binding shows up in logs and in the page
instead of silently turning into an empty string.
"""

import logging
import re
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")

SECRET_HINTS = ("password", "passwd", "secret", "token", "pin", "otp")

MASK = "***"


def substitute_variables(text: Optional[str], variables: Optional[Dict[str, str]]) -> Optional[str]:
    """Replace every bound {{NAME}} in text; unbound ones stay as written"""
    if text is None:
        return None
    if not variables:
        return text

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in variables and variables[name] is not None:
            return str(variables[name])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def find_unbound_placeholders(text: Optional[str], variables: Optional[Dict[str, str]]) -> List[str]:
    if not text:
        return []
    bound = variables or {}
    names = []
    for name in PLACEHOLDER_PATTERN.findall(text):
        if name not in bound and name not in names:
            names.append(name)
    return names


def warn_unbound(text: Optional[str], variables: Optional[Dict[str, str]], where: str):
    missing = find_unbound_placeholders(text, variables)
    if missing:
        logger.warning(f"[VARIABLES] Unbound placeholder(s) {missing} in {where}")


def looks_secret(*hints: Optional[str]) -> bool:
    for hint in hints:
        if hint and any(word in hint.lower() for word in SECRET_HINTS):
            return True
    return False


def display_value(value: Optional[str], *hints: Optional[str]) -> str:
    """Value safe for logs; masked when any hint looks like a secret field"""
    if value is None:
        return ""
    if looks_secret(*hints):
        return MASK
    return value
