"""
Step Execution Controller

Runs one intent-spec step against the live page:

    Init -> SkipCheck -> Skipped | Dispatch
    Dispatch -> ScriptedPath | AIPath
    ScriptedPath -> Success | RecoveryDecision
    RecoveryDecision -> AIPath | Failure
    AIPath -> Success | Failure

Steps are serialized: at most one scripted or AI action touches the page
at a time. Only SessionConnectionError escapes; everything else comes
back as a failed ExecutionResult.
"""

import asyncio
import logging
import re
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from ..brain.browser_agent import AutomationCapability
from ..config import PlaybackConfig
from ..errors import SessionConnectionError
from ..models import (
    ErrorKind,
    ExecutionMethod,
    ExecutionResult,
    ExecutionStatistics,
    FallbackPolicy,
    SkipCondition,
    SkipConditionType,
    Step,
    StepPreference,
    classify_error,
)
from .action_executor import ScriptedStepRunner
from .heuristic_fallback import HeuristicFallback
from .page_state import capture_page_state
from .recovery_executor import AutonomousRecoveryExecutor, ErrorInfo, FailureContext

logger = logging.getLogger(__name__)


class ControllerState(Enum):
    """Where the controller is in the current step"""
    IDLE = "idle"
    SKIP_CHECK = "skip_check"
    SKIPPED = "skipped"
    DISPATCH = "dispatch"
    SCRIPTED = "scripted"
    RECOVERY_DECISION = "recovery_decision"
    AI = "ai"
    SUCCESS = "success"
    FAILURE = "failure"


DIRECT_AI_MESSAGE = "Direct AI execution requested"


class StepExecutionController:
    """
    Executes steps with scripted-first, AI-recovery semantics.

    Owns the execution statistics for its session.
    """

    def __init__(
        self,
        page_provider: Callable[[], Awaitable],
        capability: Optional[AutomationCapability] = None,
        config: Optional[PlaybackConfig] = None,
        scripted_runner: Optional[ScriptedStepRunner] = None,
        recovery_executor: Optional[AutonomousRecoveryExecutor] = None,
        heuristic: Optional[HeuristicFallback] = None
    ):
        """
        Args:
            page_provider: async callable returning the current content page;
                raises SessionConnectionError when the session is gone
            capability: AI automation capability used for recovery
            config: Playback configuration
        """
        self.config = config or PlaybackConfig()
        self._page_provider = page_provider
        self.scripted_runner = scripted_runner or ScriptedStepRunner(self.config)

        if recovery_executor is None and capability is not None:
            recovery_executor = AutonomousRecoveryExecutor(capability, page_provider, self.config)
        self.recovery_executor = recovery_executor

        if heuristic is None and self.config.enable_heuristic_fallback:
            heuristic = HeuristicFallback(self.config)
        self.heuristic = heuristic

        self.stats = ExecutionStatistics()
        self.state = ControllerState.IDLE

        self._lock = asyncio.Lock()
        self._stop_callback: Optional[Callable[[], bool]] = None

    def set_stop_callback(self, callback: Optional[Callable[[], bool]]):
        """Polled before every recovery attempt"""
        self._stop_callback = callback

    def get_statistics(self) -> Dict[str, Any]:
        return self.stats.as_dict()

    def reset_statistics(self):
        self.stats.reset()

    # ==================== Execution ====================

    async def execute_step(self, step: Step, variables: Optional[Dict[str, str]] = None) -> ExecutionResult:
        variables = variables or {}

        async with self._lock:
            self.state = ControllerState.IDLE
            self.stats.total_steps += 1
            logger.info(f"[CONTROLLER] Step '{step.name}' (prefer={step.prefer.value}, fallback={step.fallback.value})")

            # Session problems are the one hard failure
            page = await self._page_provider()

            try:
                result = await self._run(step, page, variables)
            except SessionConnectionError:
                raise
            except Exception as e:
                logger.error(f"[CONTROLLER] Unexpected error in step '{step.name}': {e}")
                result = ExecutionResult(
                    success=False,
                    execution_method=ExecutionMethod.SNIPPET,
                    error=str(e),
                    error_kind=classify_error(str(e))
                )

            self.state = ControllerState.SUCCESS if result.success else ControllerState.FAILURE
            return result

    async def _run(self, step: Step, page, variables: Dict[str, str]) -> ExecutionResult:
        self.state = ControllerState.SKIP_CHECK
        skip_reason = await self.check_skip_conditions(step, page)
        if skip_reason is not None:
            self.state = ControllerState.SKIPPED
            self.stats.skipped_steps += 1
            logger.info(f"[CONTROLLER] Skipping '{step.name}': {skip_reason}")
            return ExecutionResult(
                success=True,
                execution_method=ExecutionMethod.SNIPPET,
                skipped=True,
                skip_reason=skip_reason,
                all_actions=[f"Skipped: {skip_reason}"]
            )

        self.state = ControllerState.DISPATCH
        if step.prefer == StepPreference.AI and step.has_goal():
            return await self._ai_first(step, page, variables)
        if step.has_scripted_content():
            return await self._scripted_first(step, page, variables)
        return await self._ai_first(step, page, variables)

    async def _scripted_first(self, step: Step, page, variables: Dict[str, str]) -> ExecutionResult:
        self.state = ControllerState.SCRIPTED
        result = await self.scripted_runner.run_scripted(step, page, variables)
        if result.success:
            self.stats.snippet_success += 1
            return result

        self.stats.snippet_failure += 1
        self.state = ControllerState.RECOVERY_DECISION

        if step.fallback != FallbackPolicy.AI or not step.has_goal():
            return result

        logger.info(f"[CONTROLLER] Scripted path failed ({result.error_kind}), handing '{step.name}' to recovery")
        attempted = (result.data or {}).get("attempted_selectors") or []
        context = FailureContext(
            step=step,
            error=ErrorInfo(message=result.error or "Step failed", kind=result.error_kind or ErrorKind.UNKNOWN),
            attempted_selectors=list(attempted),
            page_state=await capture_page_state(page)
        )
        ai_result = await self._ai_path(step, page, variables, context)
        ai_result.all_actions = result.all_actions + ai_result.all_actions
        return ai_result

    async def _ai_first(self, step: Step, page, variables: Dict[str, str]) -> ExecutionResult:
        context = FailureContext(
            step=step,
            error=ErrorInfo(message=DIRECT_AI_MESSAGE, kind=ErrorKind.UNKNOWN),
            attempted_selectors=[],
            page_state=await capture_page_state(page)
        )
        ai_result = await self._ai_path(step, page, variables, context)
        if ai_result.success:
            return ai_result

        if step.fallback == FallbackPolicy.SNIPPET and step.has_scripted_content():
            logger.info(f"[CONTROLLER] AI path failed, trying scripted path for '{step.name}'")
            self.state = ControllerState.SCRIPTED
            scripted = await self.scripted_runner.run_scripted(step, page, variables)
            if scripted.success:
                self.stats.snippet_success += 1
                scripted.execution_method = ExecutionMethod.HYBRID
                scripted.all_actions = ai_result.all_actions + scripted.all_actions
                return scripted
            self.stats.snippet_failure += 1
            scripted.all_actions = ai_result.all_actions + scripted.all_actions
            return scripted

        return ai_result

    async def _ai_path(
        self,
        step: Step,
        page,
        variables: Dict[str, str],
        context: FailureContext
    ) -> ExecutionResult:
        self.state = ControllerState.AI

        if self.recovery_executor is None:
            result = ExecutionResult(
                success=False,
                execution_method=ExecutionMethod.AI,
                error="No AI automation capability configured",
                error_kind=context.error.kind
            )
        else:
            result = await self.recovery_executor.recover(
                context,
                variables,
                max_attempts=self.config.max_attempts,
                stop_check=self._stop_callback
            )

        if not result.success and self.heuristic is not None and not (result.data or {}).get("stopped"):
            logger.info(f"[CONTROLLER] AI path failed, trying heuristic tier for '{step.name}'")
            current_page = await self._page_provider()
            heuristic = await self.heuristic.execute(step, current_page, variables)
            heuristic.all_actions = result.all_actions + heuristic.all_actions
            if heuristic.success:
                result = heuristic
            else:
                # Keep the AI error, it carries the attempt count
                result.all_actions = heuristic.all_actions

        if result.success:
            self.stats.ai_success += 1
        else:
            self.stats.ai_failure += 1
        return result

    # ==================== Skip Conditions ====================

    async def check_skip_conditions(self, step: Step, page) -> Optional[str]:
        """Reason to skip the step, or None. First matching condition wins."""
        for condition in step.skip_conditions:
            try:
                if await self._condition_met(condition, page):
                    return condition.skip_reason or f"{condition.type.value} matched '{condition.value}'"
            except Exception as e:
                logger.debug(f"[CONTROLLER] Skip condition {condition.type.value} not evaluated: {e}")
        return None

    async def _condition_met(self, condition: SkipCondition, page) -> bool:
        if condition.type == SkipConditionType.URL_MATCH:
            url = page.url or ""
            if condition.value.startswith("re:"):
                return re.search(condition.value[3:], url) is not None
            return condition.value in url

        if condition.type == SkipConditionType.ELEMENT_EXISTS:
            return await page.locator(condition.value).count() > 0

        if condition.type == SkipConditionType.TEXT_PRESENT:
            title = await page.title()
            if condition.value in (title or ""):
                return True
            body = await page.locator("body").inner_text()
            return condition.value in (body or "")

        return False
