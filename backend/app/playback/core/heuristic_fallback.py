"""
Heuristic Fallback

Last-resort tier that runs without any model: reads the action, target
and value straight out of the instruction text and tries text, role,
label and placeholder locators. Only used when enabled in
PlaybackConfig and the AI path has already failed.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..config import PlaybackConfig
from ..models import ActionKind, ErrorKind, ExecutionMethod, ExecutionResult, Step
from ..variables import display_value, substitute_variables
from .action_executor import ScriptedStepRunner, url_reached

logger = logging.getLogger(__name__)


_VERB_PATTERNS: List[Tuple[ActionKind, re.Pattern]] = [
    (ActionKind.NAVIGATE, re.compile(r"\b(navigate|go to|open)\b", re.IGNORECASE)),
    (ActionKind.CLICK, re.compile(r"\b(click|tap|press)\b", re.IGNORECASE)),
    (ActionKind.FILL, re.compile(r"\b(fill|type|enter)\b", re.IGNORECASE)),
    (ActionKind.SELECT, re.compile(r"\b(select|choose)\b", re.IGNORECASE)),
]

_PREFIX_RE = re.compile(
    r"^\s*(click|tap|press|fill( in| out)?|type|enter|select|choose|navigate to|go to|open)\s+(on\s+|in\s+)?(the\s+)?",
    re.IGNORECASE
)
_SUFFIX_RE = re.compile(r"\s+(button|field|link|tab|section|element|option|box|input|dropdown)$", re.IGNORECASE)
_QUOTED_RE = re.compile(r"[\"']([^\"']+)[\"']")
_INTO_RE = re.compile(r"\b(?:into|in)\s+(?:the\s+)?(.+?)$", re.IGNORECASE)
_VALUE_CLAUSE_RE = re.compile(r"\s+(with|to|=|value)\s+.*$", re.IGNORECASE)
_URL_RE = re.compile(r"(https?://\S+)")
_PAGE_SUFFIX_RE = re.compile(r"\s+page$", re.IGNORECASE)

_VALUE_PATTERNS = [
    re.compile(r"with\s+[\"']?([^\"']+)[\"']?$", re.IGNORECASE),
    re.compile(r"to\s+[\"']?([^\"']+)[\"']?$", re.IGNORECASE),
    re.compile(r"=\s*[\"']?([^\"']+)[\"']?$", re.IGNORECASE),
    re.compile(r"value\s+[\"']?([^\"']+)[\"']?$", re.IGNORECASE),
]


@dataclass
class ParsedInstruction:
    kind: Optional[ActionKind]
    target: str
    value: Optional[str] = None


def _detect_verb(instruction: str) -> Optional[ActionKind]:
    """The verb that appears first in the instruction"""
    best = None
    best_pos = None
    for kind, pattern in _VERB_PATTERNS:
        match = pattern.search(instruction)
        if match and (best_pos is None or match.start() < best_pos):
            best, best_pos = kind, match.start()
    return best


def _clean_target(text: str) -> str:
    text = _SUFFIX_RE.sub("", text.strip().rstrip("."))
    return text.strip().strip("\"'")


def extract_value(instruction: str) -> Optional[str]:
    for pattern in _VALUE_PATTERNS:
        match = pattern.search(instruction.strip())
        if match:
            return match.group(1).strip()
    return None


def parse_instruction(instruction: str, default_value: Optional[str] = None) -> ParsedInstruction:
    instruction = (instruction or "").strip()
    kind = _detect_verb(instruction)

    cleaned = _PREFIX_RE.sub("", instruction)

    if kind == ActionKind.NAVIGATE:
        match = _URL_RE.search(instruction)
        if match:
            return ParsedInstruction(kind, match.group(1), default_value)
        target = _PAGE_SUFFIX_RE.sub("", _clean_target(cleaned))
        return ParsedInstruction(kind, target, default_value)

    if kind in (ActionKind.FILL, ActionKind.SELECT):
        into = _INTO_RE.search(cleaned)
        quoted = _QUOTED_RE.search(cleaned)
        if into:
            target = _clean_target(_QUOTED_RE.sub(r"\1", into.group(1)))
            if quoted and quoted.group(1) not in target:
                value = quoted.group(1)
            else:
                # "Type alice into the username field"
                value = cleaned[:into.start()].strip().strip("\"'") or None
        else:
            value = extract_value(instruction)
            target = _clean_target(_VALUE_CLAUSE_RE.sub("", cleaned))
        return ParsedInstruction(kind, target, value or default_value)

    quoted = _QUOTED_RE.search(cleaned)
    target = quoted.group(1) if quoted else _clean_target(cleaned)
    return ParsedInstruction(kind, target, default_value)


class HeuristicFallback:
    """Model-free last attempt at a step"""

    ROLES = {
        ActionKind.CLICK: ["button", "link"],
        ActionKind.FILL: ["textbox"],
        ActionKind.SELECT: ["combobox"],
    }

    def __init__(self, config: Optional[PlaybackConfig] = None):
        self.config = config or PlaybackConfig()

    def _locators(self, page, kind: ActionKind, target: str):
        yield "text", page.get_by_text(target, exact=False)
        for role in self.ROLES.get(kind, []):
            yield f"role:{role}", page.get_by_role(role, name=target)
        yield "label", page.get_by_label(target)
        yield "placeholder", page.get_by_placeholder(target)

    async def execute(self, step: Step, page, variables: Optional[Dict[str, str]] = None) -> ExecutionResult:
        variables = variables or {}
        instruction = substitute_variables(step.goal, variables)
        parsed = parse_instruction(instruction, substitute_variables(step.value, variables))
        description = f"heuristic {parsed.kind.value if parsed.kind else 'unknown'} '{parsed.target}'"

        if parsed.kind is None or not parsed.target:
            return self._failure(description, f"Could not interpret instruction: {instruction}")

        logger.info(f"[HEURISTIC] {description}")

        if parsed.kind == ActionKind.NAVIGATE:
            if parsed.value or _URL_RE.match(parsed.target):
                return await self._navigate(page, parsed, description)
            # "Go to Login" without a URL: follow the link or button with that text
            parsed = ParsedInstruction(ActionKind.CLICK, parsed.target)

        if parsed.kind in (ActionKind.FILL, ActionKind.SELECT) and parsed.value is None:
            return self._failure(description, f"No value found for {parsed.kind.value}", ErrorKind.INPUT_FAILED)

        for strategy, locator in self._locators(page, parsed.kind, parsed.target):
            element = locator.first
            try:
                await element.wait_for(state="visible", timeout=self.config.selector_timeout_ms)
            except Exception as e:
                logger.debug(f"[HEURISTIC] {strategy} locator not visible: {e}")
                continue

            try:
                if parsed.kind == ActionKind.CLICK:
                    await element.click(timeout=self.config.selector_timeout_ms)
                elif parsed.kind == ActionKind.FILL:
                    await element.fill(parsed.value)
                    actual = await element.input_value()
                    if actual != parsed.value:
                        logger.debug(f"[HEURISTIC] {strategy} read-back mismatch")
                        continue
                elif parsed.kind == ActionKind.SELECT:
                    selected = await element.select_option(parsed.value)
                    if not selected:
                        continue
                else:
                    continue
            except Exception as e:
                logger.debug(f"[HEURISTIC] {strategy} action failed: {e}")
                continue

            shown = display_value(parsed.value, parsed.target, step.name)
            logger.info(f"[HEURISTIC] Succeeded via {strategy}")
            return ExecutionResult(
                success=True,
                execution_method=ExecutionMethod.AI,
                data={"tier": "heuristic", "strategy": strategy, "target": parsed.target, "value": shown},
                all_actions=[f"{description} via {strategy}"]
            )

        kind = ErrorKind.CLICK_FAILED if parsed.kind == ActionKind.CLICK else ErrorKind.INPUT_FAILED
        return self._failure(description, f"No heuristic locator worked for '{parsed.target}'", kind)

    async def _navigate(self, page, parsed: ParsedInstruction, description: str) -> ExecutionResult:
        url = ScriptedStepRunner._absolute_url(parsed.value or parsed.target, page.url)
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=self.config.navigation_timeout_ms)
        except Exception as e:
            return self._failure(description, f"Navigation to {url} failed: {e}", ErrorKind.NAVIGATION)
        if not url_reached(page.url, url):
            return self._failure(description, f"Navigation landed on {page.url}", ErrorKind.NAVIGATION)
        return ExecutionResult(
            success=True,
            execution_method=ExecutionMethod.AI,
            data={"tier": "heuristic", "strategy": "navigate", "url": page.url},
            all_actions=[description]
        )

    @staticmethod
    def _failure(description: str, message: str, kind: ErrorKind = ErrorKind.UNKNOWN) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            execution_method=ExecutionMethod.AI,
            data={"tier": "heuristic"},
            all_actions=[description],
            error=message,
            error_kind=kind
        )
