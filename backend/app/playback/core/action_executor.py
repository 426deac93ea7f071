"""
Scripted Step Runner

Executes the deterministic part of a step with Playwright.
Handles candidate selector fallback, pre-checks before acting and
validation after acting, so a step only counts as done when the page
actually reflects it.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urljoin, urlparse

from ..config import PlaybackConfig
from ..errors import ScriptedFailure
from ..models import (
    ActionKind,
    ErrorKind,
    ExecutionMethod,
    ExecutionResult,
    Step,
    classify_error,
)
from ..variables import display_value, substitute_variables, warn_unbound

logger = logging.getLogger(__name__)


# Quoted argument: '...', "..." or `...`, with the other quote kinds allowed inside
_QUOTED = r"""(['"`])(.+?)\1"""

_GOTO_RE = re.compile(r"\.goto\(\s*" + _QUOTED)
_WAIT_URL_RE = re.compile(r"\.(?:waitForURL|wait_for_url)\(\s*" + _QUOTED)
_WAIT_SELECTOR_RE = re.compile(r"\.(?:waitForSelector|wait_for_selector)\(\s*" + _QUOTED)
_LOCATOR_RE = re.compile(r"\.locator\(\s*" + _QUOTED)
_DIRECT_ACTION_RE = re.compile(
    r"page\.(?:fill|click|type|selectOption|select_option)\(\s*" + _QUOTED
)
_DIRECT_VALUE_RE = re.compile(
    r"page\.(?:fill|type|selectOption|select_option)\(\s*(['\"`]).+?\1\s*,\s*(['\"`])(.*?)\2"
)
_CHAINED_VALUE_RE = re.compile(
    r"\)\s*\.(?:fill|type|selectOption|select_option)\(\s*(['\"`])(.*?)\1"
)


@dataclass
class ParsedSnippet:
    """What could be read out of a recorded snippet"""
    selector: Optional[str] = None
    value: Optional[str] = None
    url: Optional[str] = None
    url_pattern: Optional[str] = None
    wait_selector: Optional[str] = None


def parse_snippet(snippet: Optional[str]) -> ParsedSnippet:
    parsed = ParsedSnippet()
    if not snippet:
        return parsed

    match = _GOTO_RE.search(snippet)
    if match:
        parsed.url = match.group(2)

    match = _WAIT_URL_RE.search(snippet)
    if match:
        parsed.url_pattern = match.group(2)

    match = _WAIT_SELECTOR_RE.search(snippet)
    if match:
        parsed.wait_selector = match.group(2)

    match = _LOCATOR_RE.search(snippet) or _DIRECT_ACTION_RE.search(snippet)
    if match:
        parsed.selector = match.group(2)

    match = _DIRECT_VALUE_RE.search(snippet) or _CHAINED_VALUE_RE.search(snippet)
    if match:
        parsed.value = match.group(match.lastindex)

    return parsed


def _bare_url(url: str) -> str:
    return re.sub(r"^[a-z][a-z0-9+.\-]*://", "", url.strip(), flags=re.IGNORECASE).rstrip("/")


def url_reached(actual: Optional[str], expected: str) -> bool:
    """True if the page URL contains the navigation target, ignoring scheme and trailing slash"""
    if not actual:
        return False
    return _bare_url(expected) in _bare_url(actual)


class ScriptedStepRunner:
    """
    Runs one step deterministically.

    Features:
    - Ordered candidate selectors with visibility/enabled pre-checks
    - Read-back validation for fills and selects
    - URL-based validation for navigation
    - Failures returned as results, never raised
    """

    def __init__(self, config: Optional[PlaybackConfig] = None):
        self.config = config or PlaybackConfig()

        self._handlers: Dict[ActionKind, Callable] = {
            ActionKind.NAVIGATE: self._run_navigate,
            ActionKind.FILL: self._run_fill,
            ActionKind.CLICK: self._run_click,
            ActionKind.SELECT: self._run_select,
            ActionKind.WAIT: self._run_wait,
        }
        missing = set(ActionKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No scripted handler for {sorted(k.value for k in missing)}")

    # ==================== Entry Point ====================

    async def run_scripted(
        self,
        step: Step,
        page,
        variables: Optional[Dict[str, str]] = None
    ) -> ExecutionResult:
        variables = variables or {}
        kind = step.action_kind()
        description = self.describe(step, variables)

        for where, text in (("value", step.value), ("snippet", step.snippet)):
            warn_unbound(text, variables, f"step '{step.name}' {where}")

        try:
            if kind is None:
                # Missing target outranks the unresolved action
                await self._require_present(step, page, variables)
                raise ScriptedFailure(
                    f"Could not determine the action for step '{step.name}'",
                    ErrorKind.UNKNOWN
                )

            logger.info(f"[SCRIPTED] {description}")
            data = await self._handlers[kind](step, page, variables)

            return ExecutionResult(
                success=True,
                execution_method=ExecutionMethod.SNIPPET,
                data=data,
                all_actions=[description]
            )

        except ScriptedFailure as e:
            logger.warning(f"[SCRIPTED] Step '{step.name}' failed: {e.message}")
            return ExecutionResult(
                success=False,
                execution_method=ExecutionMethod.SNIPPET,
                data={"attempted_selectors": e.attempted_selectors},
                all_actions=[description],
                error=e.message,
                error_kind=e.kind or classify_error(e.message)
            )
        except Exception as e:
            logger.warning(f"[SCRIPTED] Step '{step.name}' raised: {e}")
            return ExecutionResult(
                success=False,
                execution_method=ExecutionMethod.SNIPPET,
                data={"attempted_selectors": self.candidate_selectors(step, variables)},
                all_actions=[description],
                error=str(e),
                error_kind=classify_error(str(e))
            )

    # ==================== Helpers ====================

    def candidate_selectors(self, step: Step, variables: Optional[Dict[str, str]] = None) -> List[str]:
        """Declared selectors first, then whatever the snippet names"""
        parsed = parse_snippet(step.snippet)
        candidates = []
        for selector in list(step.selectors) + [parsed.selector, parsed.wait_selector]:
            if not selector:
                continue
            selector = substitute_variables(selector, variables)
            if selector not in candidates:
                candidates.append(selector)
        return candidates

    def describe(self, step: Step, variables: Optional[Dict[str, str]] = None) -> str:
        kind = step.action_kind()
        label = kind.value if kind else "unknown"
        selectors = self.candidate_selectors(step, variables)
        target = selectors[0] if selectors else ""
        value = self._resolve_value(step, variables)

        if kind == ActionKind.NAVIGATE:
            return f"navigate {value or parse_snippet(step.snippet).url or ''}".strip()
        if kind in (ActionKind.FILL, ActionKind.SELECT):
            return f"{label} {target} = '{display_value(value, target, step.name)}'"
        return f"{label} {target}".strip()

    def _resolve_value(self, step: Step, variables: Optional[Dict[str, str]]) -> Optional[str]:
        value = step.value if step.value is not None else parse_snippet(step.snippet).value
        return substitute_variables(value, variables)

    def _selector_timeout(self, step: Step) -> int:
        if step.timeout_ms:
            return min(step.timeout_ms, self.config.selector_timeout_ms)
        return self.config.selector_timeout_ms

    async def _require_present(self, step: Step, page, variables: Dict[str, str]):
        """
        Raises:
            ScriptedFailure: the step names selectors and none of them is visible
        """
        candidates = self.candidate_selectors(step, variables)
        if not candidates:
            return

        timeout = self._selector_timeout(step)
        for selector in candidates:
            try:
                await page.locator(selector).first.wait_for(state="visible", timeout=timeout)
                return
            except Exception as e:
                logger.debug(f"[SCRIPTED] Element {selector} not found or not visible: {e}")

        raise ScriptedFailure(
            f"No element found for any of {len(candidates)} selector(s): {candidates}",
            ErrorKind.SELECTOR_NOT_FOUND,
            candidates
        )

    async def _try_candidates(
        self,
        step: Step,
        page,
        variables: Dict[str, str],
        kind: ActionKind,
        act: Callable
    ) -> Dict[str, Any]:
        """
        Try each candidate selector until one passes pre-check and validation.

        Raises:
            ScriptedFailure: every candidate was hidden, disabled or failed validation
        """
        candidates = self.candidate_selectors(step, variables)
        if not candidates:
            raise ScriptedFailure(
                f"No selector available for {kind.value} step '{step.name}'",
                ErrorKind.SELECTOR_NOT_FOUND
            )

        timeout = self._selector_timeout(step)
        attempted: List[str] = []
        acted = False
        last_error = None

        for i, selector in enumerate(candidates):
            attempted.append(selector)
            locator = page.locator(selector).first

            # Pre-check: never act on a hidden or disabled element
            try:
                await locator.wait_for(state="visible", timeout=timeout)
                if kind == ActionKind.CLICK and not await locator.is_enabled():
                    last_error = f"Element {selector} is disabled"
                    logger.debug(f"[SCRIPTED] {last_error}")
                    continue
            except Exception as e:
                last_error = f"Element {selector} not found or not visible: {e}"
                logger.debug(f"[SCRIPTED] {last_error}")
                continue

            try:
                details = await act(locator, selector)
            except Exception as e:
                acted = True
                last_error = str(e)
                logger.warning(f"[SCRIPTED] {kind.value} failed on {selector}: {e}")
                continue

            if i > 0:
                logger.info(f"[SCRIPTED] Alternative selector worked: {selector}")

            return {
                "selector": selector,
                "attempted_selectors": attempted,
                "alternative_used": i > 0,
                **details
            }

        if not acted:
            error_kind = ErrorKind.SELECTOR_NOT_FOUND
            message = f"No element found for any of {len(attempted)} selector(s): {attempted}"
        else:
            error_kind = ErrorKind.CLICK_FAILED if kind == ActionKind.CLICK else ErrorKind.INPUT_FAILED
            message = f"{kind.value} failed on every visible candidate: {last_error}"

        raise ScriptedFailure(message, error_kind, attempted)

    # ==================== Action Handlers ====================

    async def _run_fill(self, step: Step, page, variables: Dict[str, str]) -> Dict[str, Any]:
        value = self._resolve_value(step, variables)
        if value is None:
            raise ScriptedFailure(f"No value to fill for step '{step.name}'", ErrorKind.INPUT_FAILED)

        async def act(locator, selector):
            await locator.fill(value)
            actual = await locator.input_value()
            if actual != value:
                shown = display_value(value, selector, step.name)
                got = display_value(actual, selector, step.name)
                raise ScriptedFailure(
                    f"Value mismatch on {selector}: expected '{shown}', got '{got}'",
                    ErrorKind.INPUT_FAILED
                )
            return {"value": display_value(value, selector, step.name)}

        return await self._try_candidates(step, page, variables, ActionKind.FILL, act)

    async def _run_click(self, step: Step, page, variables: Dict[str, str]) -> Dict[str, Any]:
        timeout = self._selector_timeout(step)

        async def act(locator, selector):
            url_before = page.url
            await locator.click(timeout=timeout)

            url_changed = page.url != url_before
            if not url_changed and self.config.click_settle_ms > 0:
                await asyncio.sleep(self.config.click_settle_ms / 1000)
                url_changed = page.url != url_before

            return {"url_changed": url_changed, "url_before": url_before, "url_after": page.url}

        return await self._try_candidates(step, page, variables, ActionKind.CLICK, act)

    async def _run_select(self, step: Step, page, variables: Dict[str, str]) -> Dict[str, Any]:
        value = self._resolve_value(step, variables)
        if value is None:
            raise ScriptedFailure(f"No option to select for step '{step.name}'", ErrorKind.INPUT_FAILED)

        async def act(locator, selector):
            selected = await locator.select_option(value)
            if not selected:
                raise ScriptedFailure(f"Nothing selected on {selector}", ErrorKind.INPUT_FAILED)

            if value not in selected:
                labels = await locator.evaluate(
                    "el => Array.from(el.selectedOptions || []).map(o => (o.label || o.textContent || '').trim())"
                )
                if value not in (labels or []):
                    raise ScriptedFailure(
                        f"Selection on {selector} is {selected}, expected '{value}'",
                        ErrorKind.INPUT_FAILED
                    )
            return {"selected": list(selected)}

        return await self._try_candidates(step, page, variables, ActionKind.SELECT, act)

    async def _run_navigate(self, step: Step, page, variables: Dict[str, str]) -> Dict[str, Any]:
        target = step.value or parse_snippet(step.snippet).url
        target = substitute_variables(target, variables)
        if not target:
            raise ScriptedFailure(f"No URL for navigate step '{step.name}'", ErrorKind.NAVIGATION)

        url = self._absolute_url(target, page.url)
        timeout = step.timeout_ms or self.config.navigation_timeout_ms

        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=timeout)
        except Exception as e:
            kind = ErrorKind.TIMEOUT if "timeout" in str(e).lower() else ErrorKind.NAVIGATION
            raise ScriptedFailure(f"Navigation to {url} failed: {e}", kind)

        if not url_reached(page.url, url):
            raise ScriptedFailure(
                f"Navigation landed on {page.url}, expected {url}",
                ErrorKind.NAVIGATION
            )

        return {"url": page.url}

    @staticmethod
    def _absolute_url(target: str, current_url: Optional[str]) -> str:
        if urlparse(target).scheme:
            return target
        if target.startswith(("/", "./", "../", "?", "#")):
            return urljoin(current_url or "", target)
        return f"https://{target}"

    async def _run_wait(self, step: Step, page, variables: Dict[str, str]) -> Dict[str, Any]:
        parsed = parse_snippet(step.snippet)
        timeout = step.timeout_ms or self.config.step_timeout_ms

        if parsed.url_pattern:
            pattern = substitute_variables(parsed.url_pattern, variables)
            try:
                await page.wait_for_url(pattern, timeout=timeout)
            except Exception as e:
                raise ScriptedFailure(f"Timeout waiting for URL {pattern}: {e}", ErrorKind.TIMEOUT)
            return {"url": page.url}

        candidates = self.candidate_selectors(step, variables)
        if candidates:
            selector = candidates[0]
            try:
                await page.locator(selector).first.wait_for(state="visible", timeout=timeout)
            except Exception as e:
                raise ScriptedFailure(
                    f"Timeout waiting for {selector}: {e}",
                    ErrorKind.TIMEOUT,
                    [selector]
                )
            return {"selector": selector}

        value = substitute_variables(step.value, variables)
        ms = int(value) if value and value.strip().isdigit() else self.config.default_wait_ms
        await asyncio.sleep(ms / 1000)
        return {"waited_ms": ms}
