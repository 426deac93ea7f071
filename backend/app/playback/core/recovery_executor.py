"""
Autonomous Recovery Executor

Takes over when a scripted step fails. Builds an instruction from
everything known about the failure, hands it to the AI automation
capability and verifies the outcome before declaring success. Failed
attempts are fed back into the next instruction so the agent tries
something different each time.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, StrictBool, ValidationError

from ..brain.browser_agent import AutomationCapability, extract_json_block
from ..config import PlaybackConfig
from ..errors import RecoveryExhausted, SessionConnectionError, VerificationParseFailure
from ..models import (
    AIVerifyCriteria,
    CustomCriteria,
    ElementExistsCriteria,
    ElementHasValueCriteria,
    ErrorKind,
    ExecutionMethod,
    ExecutionResult,
    NavigationCriteria,
    Step,
)
from ..variables import substitute_variables
from .page_state import PageStateSnapshot, capture_page_state

logger = logging.getLogger(__name__)


# ==================== Failure Context ====================

@dataclass
class ErrorInfo:
    message: str
    kind: ErrorKind = ErrorKind.UNKNOWN


@dataclass
class RecoveryAttempt:
    """One recovery attempt and what came of it"""
    action: str
    outcome: str


@dataclass
class FailureContext:
    """Everything known about a failed step, for one recovery call"""
    step: Step
    error: ErrorInfo
    attempted_selectors: List[str] = field(default_factory=list)
    page_state: PageStateSnapshot = field(default_factory=PageStateSnapshot)
    previous_attempts: List[RecoveryAttempt] = field(default_factory=list)


# ==================== Verification ====================

class VerificationJudgment(BaseModel):
    """The AI judge's verdict"""
    success: StrictBool = False
    evidence: Optional[str] = None
    confidence: Optional[Union[float, str]] = None


@dataclass
class VerificationResult:
    success: bool
    evidence: Optional[str] = None
    reason: Optional[str] = None


def parse_judgment(text: Optional[str]) -> VerificationJudgment:
    """
    Parse the judge's reply.

    Raises:
        VerificationParseFailure: no JSON object, or not a valid verdict
    """
    raw = extract_json_block(text)
    if raw is None:
        raise VerificationParseFailure(f"No JSON in verification reply: {(text or '')[:200]}")
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise VerificationParseFailure(f"Invalid JSON in verification reply: {e}")
    if not isinstance(data, dict):
        raise VerificationParseFailure("Verification reply is not a JSON object")
    try:
        return VerificationJudgment.model_validate(data)
    except ValidationError as e:
        raise VerificationParseFailure(f"Unusable verification reply: {e}")


# Locator waits that mean the element was never there
_WAITING_FOR_LOCATOR_RE = re.compile(r"waiting for (locator|selector)", re.IGNORECASE)


class AutonomousRecoveryExecutor:
    """
    Bounded, verified AI recovery for a failed step.

    Features:
    - Context-rich instructions with navigation guidance
    - Attempt history fed back to avoid repeating the same approach
    - Explicit criteria checked directly, AI judgment otherwise
    - Cooperative stop between attempts
    """

    def __init__(
        self,
        capability: AutomationCapability,
        page_provider: Callable[[], Awaitable],
        config: Optional[PlaybackConfig] = None
    ):
        self.capability = capability
        self._page_provider = page_provider
        self.config = config or PlaybackConfig()

    async def recover(
        self,
        failure_context: FailureContext,
        variables: Optional[Dict[str, str]] = None,
        max_attempts: Optional[int] = None,
        stop_check: Optional[Callable[[], bool]] = None
    ) -> ExecutionResult:
        variables = variables or {}
        if max_attempts is None:
            max_attempts = self.config.max_attempts
        all_actions: List[str] = []

        try:
            return await self._attempt_loop(
                failure_context, variables, max_attempts, stop_check, all_actions
            )
        except RecoveryExhausted as e:
            logger.warning(f"[RECOVERY] {e}")
            page_state = await self._safe_page_state()
            return ExecutionResult(
                success=False,
                execution_method=ExecutionMethod.AI,
                data={"attempts": e.attempts, "page_state": page_state},
                all_actions=all_actions,
                error=str(e),
                error_kind=failure_context.error.kind
            )

    async def _attempt_loop(
        self,
        ctx: FailureContext,
        variables: Dict[str, str],
        max_attempts: int,
        stop_check: Optional[Callable[[], bool]],
        all_actions: List[str]
    ) -> ExecutionResult:
        attempt = 0
        last_reason = None

        while attempt < max_attempts:
            if stop_check and stop_check():
                logger.info(f"[RECOVERY] Stop requested after {attempt} attempt(s)")
                return ExecutionResult(
                    success=False,
                    execution_method=ExecutionMethod.AI,
                    data={"attempts": attempt, "stopped": True},
                    all_actions=all_actions,
                    error="Stopped by user",
                    error_kind=ctx.error.kind
                )

            attempt += 1
            logger.info(f"[RECOVERY] Attempt {attempt}/{max_attempts} for '{ctx.step.name}'")
            instruction = self.build_instruction(ctx, variables, attempt)

            try:
                summary = await self.capability.perform_instructed(instruction)
            except SessionConnectionError:
                raise
            except Exception as e:
                message = str(e) or e.__class__.__name__
                logger.warning(f"[RECOVERY] Attempt {attempt} failed: {message}")
                action = f"Attempt {attempt}: failed: {message}"
                all_actions.append(action)
                ctx.previous_attempts.append(RecoveryAttempt(action=action, outcome=f"error: {message}"))
                last_reason = message
                await self._sleep(self.config.retry_delay_ms)
                continue

            action = f"Attempt {attempt}: executed \"{ctx.step.name or ctx.step.goal}\""
            if summary:
                action += f" ({summary})"
            all_actions.append(action)

            await self._sleep(self.config.settle_delay_ms)

            verification = await self.verify(ctx, variables)
            if verification.success:
                logger.info(f"[RECOVERY] Verified on attempt {attempt}: {verification.evidence}")
                return ExecutionResult(
                    success=True,
                    execution_method=ExecutionMethod.AI,
                    data={
                        "evidence": verification.evidence,
                        "attempts": attempt,
                        "final_action": action,
                        "page_state": await self._safe_page_state(),
                    },
                    all_actions=all_actions
                )

            logger.info(f"[RECOVERY] Attempt {attempt} not verified: {verification.reason}")
            last_reason = verification.reason
            ctx.previous_attempts.append(RecoveryAttempt(
                action=action,
                outcome=f"verification failed: {verification.reason}"
            ))

        raise RecoveryExhausted(attempt, last_reason)

    async def _sleep(self, ms: int):
        if ms > 0:
            await asyncio.sleep(ms / 1000)

    async def _safe_page_state(self) -> Dict[str, Any]:
        try:
            page = await self._page_provider()
            return (await capture_page_state(page)).to_dict()
        except SessionConnectionError:
            raise
        except Exception as e:
            logger.debug(f"[RECOVERY] Could not capture page state: {e}")
            return {}

    # ==================== Instructions ====================

    def describe_success(self, step: Step, variables: Dict[str, str]) -> str:
        criteria = step.success_criteria
        if criteria is None:
            return ""
        if criteria.description and not isinstance(criteria, AIVerifyCriteria):
            return substitute_variables(criteria.description, variables)
        if isinstance(criteria, ElementExistsCriteria):
            return f'Ensure element "{criteria.selector}" exists on the page'
        if isinstance(criteria, ElementHasValueCriteria):
            expected = substitute_variables(criteria.expected_value, variables)
            return f'Ensure element "{criteria.selector}" has value "{expected}"'
        if isinstance(criteria, NavigationCriteria):
            return f'Ensure navigation to URL matching "{criteria.url_pattern}"'
        if isinstance(criteria, CustomCriteria):
            return "Ensure the page passes the custom completion check"
        return substitute_variables(
            criteria.description or "Verify the action completed successfully using visual confirmation",
            variables
        )

    def _needs_navigation_first(self, ctx: FailureContext) -> bool:
        if not (ctx.step.selectors or ctx.attempted_selectors):
            return False
        if ctx.error.kind in (ErrorKind.TIMEOUT, ErrorKind.SELECTOR_NOT_FOUND):
            return True
        return bool(_WAITING_FOR_LOCATOR_RE.search(ctx.error.message or ""))

    def build_instruction(self, ctx: FailureContext, variables: Dict[str, str], attempt: int) -> str:
        step = ctx.step
        url = ctx.page_state.url
        host = (urlparse(url).hostname if url else None) or "unknown"
        site = host.replace("www.", "").split(".")[0]

        ai_instruction = substitute_variables(step.ai_instruction, variables)
        value = substitute_variables(step.value, variables)
        selectors = step.selectors or ctx.attempted_selectors

        lines = [f"Task: {step.name or 'Complete the action'}"]
        lines.append(f"Website: You are working on {site} ({host})")
        lines.append(f"Current URL: {url or 'unknown'}")
        if ctx.page_state.title:
            lines.append(f"Page title: {ctx.page_state.title}")
        if ai_instruction:
            lines.append(f"Instructions: {ai_instruction}")
        if value:
            lines.append(f"Value to use: {value}")
        if selectors:
            lines.append(f"Target elements: {', '.join(selectors)}")

        lines.append("")
        lines.append("Context:")
        lines.append(f"- Previous error: {ctx.error.message}")
        lines.append(f"- Error type: {ctx.error.kind.value}")

        if attempt == 1 and self._needs_navigation_first(ctx):
            lines.append(f"- The required elements ({selectors[0]}) are not present on the current page")
            lines.append("- IMPORTANT: First navigate to where these elements would exist, then perform the action")
            lines.append("- For login fields: Look for Sign In/Login buttons to reach the login page")
            lines.append("- For app features: Ensure you're logged in first")

        lines.append(f"- IMPORTANT: You are on {site}, NOT on any other website. Do not navigate to different domains.")
        if ctx.attempted_selectors:
            lines.append(f"- Failed selectors: {', '.join(ctx.attempted_selectors)}")

        if ctx.previous_attempts:
            lines.append("")
            lines.append("Previous attempts:")
            for i, prior in enumerate(ctx.previous_attempts, 1):
                lines.append(f"{i}. {prior.action} -> {prior.outcome}")
            lines.append("These approaches did not complete the task. Please try a different approach.")

        success = self.describe_success(step, variables)
        lines.append("")
        if success:
            lines.append(f"Success criteria: {success}")
        else:
            lines.append("Complete this action successfully and verify it worked.")

        return "\n".join(lines).strip()

    # ==================== Verification ====================

    async def verify(self, ctx: FailureContext, variables: Dict[str, str]) -> VerificationResult:
        criteria = ctx.step.criteria

        try:
            page = await self._page_provider()

            if isinstance(criteria, ElementExistsCriteria):
                selector = substitute_variables(criteria.selector, variables)
                exists = await page.locator(selector).count() > 0
                if exists:
                    return VerificationResult(True, evidence=f"Element {selector} found")
                return VerificationResult(False, reason=f"Element {selector} not found")

            if isinstance(criteria, ElementHasValueCriteria):
                selector = substitute_variables(criteria.selector, variables)
                expected = substitute_variables(criteria.expected_value, variables)
                locator = page.locator(selector)
                if await locator.count() == 0:
                    return VerificationResult(False, reason=f"Element {selector} not found")
                actual = await locator.first.input_value(timeout=self.config.selector_timeout_ms)
                if actual == expected:
                    return VerificationResult(True, evidence=f"Element has expected value: {expected}")
                return VerificationResult(False, reason=f'Expected "{expected}" but got "{actual}"')

            if isinstance(criteria, NavigationCriteria):
                return await self._verify_navigation(page, criteria, variables)

            if isinstance(criteria, CustomCriteria):
                result = await page.evaluate(criteria.custom_check)
                if result:
                    return VerificationResult(True, evidence="Custom check passed")
                return VerificationResult(False, reason="Custom check failed")

            return await self._verify_with_ai(ctx, variables, page)

        except SessionConnectionError:
            raise
        except Exception as e:
            return VerificationResult(False, reason=f"Verification error: {e}")

    async def _verify_navigation(
        self,
        page,
        criteria: NavigationCriteria,
        variables: Dict[str, str]
    ) -> VerificationResult:
        pattern = substitute_variables(criteria.url_pattern, variables)
        current_url = page.url or ""
        try:
            navigated = re.search(pattern, current_url) is not None
        except re.error:
            navigated = pattern in current_url

        if not navigated:
            return VerificationResult(
                False, reason=f"URL {current_url} doesn't match pattern {pattern}"
            )

        if criteria.wait_for_element:
            selector = substitute_variables(criteria.wait_for_element, variables)
            try:
                await page.locator(selector).first.wait_for(state="visible", timeout=5000)
            except Exception:
                return VerificationResult(False, reason=f"Navigated but {selector} not found")
            return VerificationResult(True, evidence=f"Navigated to {current_url} and found {selector}")

        return VerificationResult(True, evidence=f"Successfully navigated to {current_url}")

    def build_verification_prompt(
        self,
        ctx: FailureContext,
        state: PageStateSnapshot,
        variables: Dict[str, str]
    ) -> str:
        step = ctx.step
        task = step.name or "the action"
        instruction = substitute_variables(step.ai_instruction or step.name, variables)
        value = substitute_variables(step.value, variables)
        expectation = substitute_variables(step.criteria.description, variables)

        prompt = f'Task: Verify if "{task}" was completed successfully.\n'
        prompt += f"Original instruction: {instruction}\n"
        if value:
            prompt += f"Expected value: {value}\n"
        if expectation:
            prompt += f"Expected outcome: {expectation}\n"
        prompt += "\nCurrent page state:\n"
        prompt += f"- URL: {state.url}\n"
        prompt += f"- Title: {state.title}\n"
        prompt += f"- Visible inputs: {json.dumps(state.visible_inputs, indent=2)}\n"
        prompt += f"- Visible buttons: {json.dumps(state.visible_buttons, indent=2)}\n"
        prompt += f"- Page text: {state.body_text}\n"
        prompt += """
Determine if the task was completed successfully. Return JSON:
{
  "success": true/false,
  "evidence": "what indicates success or failure",
  "confidence": 0-100
}"""
        return prompt

    async def _verify_with_ai(self, ctx: FailureContext, variables: Dict[str, str], page) -> VerificationResult:
        state = await capture_page_state(page)
        prompt = self.build_verification_prompt(ctx, state, variables)

        try:
            reply = await self.capability.judge(prompt)
        except SessionConnectionError:
            raise
        except Exception as e:
            return VerificationResult(False, reason=f"AI verification failed: {e}")

        try:
            judgment = parse_judgment(reply)
        except VerificationParseFailure as e:
            logger.warning(f"[RECOVERY] {e}")
            return VerificationResult(False, reason="Could not parse AI verification response")

        if judgment.success is True:
            return VerificationResult(True, evidence=judgment.evidence)
        return VerificationResult(False, evidence=judgment.evidence, reason=judgment.evidence or "AI judged the task incomplete")
