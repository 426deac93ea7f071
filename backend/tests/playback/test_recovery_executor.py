"""
Unit tests for AutonomousRecoveryExecutor.

Tests instruction building, verification and the bounded retry loop.
"""

import pytest
from pathlib import Path
from unittest.mock import AsyncMock
import sys

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "app"))

from playback.core.page_state import PageStateSnapshot
from playback.core.recovery_executor import (
    AutonomousRecoveryExecutor,
    ErrorInfo,
    FailureContext,
    RecoveryAttempt,
    parse_judgment,
)
from playback.errors import AgentActionError, SessionConnectionError, VerificationParseFailure
from playback.models import ErrorKind, ExecutionMethod, Step


def login_step(**overrides):
    data = {
        "name": "Enter username",
        "action": "fill",
        "selectors": ["#username"],
        "value": "{{USER}}",
        "aiInstruction": "Type the username into the login form",
        "fallback": "ai",
        "successCriteria": {"type": "element_has_value", "selector": "#username", "expectedValue": "{{USER}}"}
    }
    data.update(overrides)
    return Step.model_validate(data)


def failure_context(step=None, message="Timeout 3000ms exceeded waiting for locator('#username')",
                    kind=ErrorKind.TIMEOUT, url="https://www.example.com/"):
    step = step or login_step()
    return FailureContext(
        step=step,
        error=ErrorInfo(message=message, kind=kind),
        attempted_selectors=list(step.selectors),
        page_state=PageStateSnapshot(url=url, title="Example")
    )


class TestParseJudgment:
    """Test parsing the AI judge's verdict."""

    def test_plain_json(self):
        judgment = parse_judgment('{"success": true, "evidence": "Dashboard shown", "confidence": 90}')

        assert judgment.success is True
        assert judgment.evidence == "Dashboard shown"

    def test_fenced_json(self):
        judgment = parse_judgment('Looks good.\n```json\n{"success": false, "evidence": "Still on login"}\n```')

        assert judgment.success is False

    def test_no_json(self):
        with pytest.raises(VerificationParseFailure):
            parse_judgment("The task seems complete.")

    def test_string_success_rejected(self):
        """Test only a literal boolean true counts as success."""
        with pytest.raises(VerificationParseFailure):
            parse_judgment('{"success": "true"}')


class TestBuildInstruction:
    """Test recovery instruction content."""

    def test_first_attempt_has_navigation_guidance(self, capability_factory, page_provider, fast_config):
        executor = AutonomousRecoveryExecutor(capability_factory(), page_provider, fast_config)

        instruction = executor.build_instruction(failure_context(), {"USER": "alice"}, attempt=1)

        assert "Task: Enter username" in instruction
        assert "Website: You are working on example (www.example.com)" in instruction
        assert "Value to use: alice" in instruction
        assert "Target elements: #username" in instruction
        assert "- Error type: timeout" in instruction
        assert "First navigate to where these elements would exist" in instruction
        assert "Do not navigate to different domains" in instruction
        assert 'Success criteria: Ensure element "#username" has value "alice"' in instruction

    def test_later_attempts_drop_navigation_guidance(self, capability_factory, page_provider, fast_config):
        executor = AutonomousRecoveryExecutor(capability_factory(), page_provider, fast_config)

        instruction = executor.build_instruction(failure_context(), {"USER": "alice"}, attempt=2)

        assert "First navigate to where these elements would exist" not in instruction
        assert "Do not navigate to different domains" in instruction

    def test_no_navigation_guidance_for_click_failures(self, capability_factory, page_provider, fast_config):
        executor = AutonomousRecoveryExecutor(capability_factory(), page_provider, fast_config)
        ctx = failure_context(message="Element is outside of the viewport", kind=ErrorKind.CLICK_FAILED)

        instruction = executor.build_instruction(ctx, {}, attempt=1)

        assert "First navigate" not in instruction

    def test_previous_attempts_listed(self, capability_factory, page_provider, fast_config):
        executor = AutonomousRecoveryExecutor(capability_factory(), page_provider, fast_config)
        ctx = failure_context()
        ctx.previous_attempts.append(RecoveryAttempt(
            action='Attempt 1: executed "Enter username"',
            outcome="verification failed: Expected \"alice\" but got \"\""
        ))

        instruction = executor.build_instruction(ctx, {"USER": "alice"}, attempt=2)

        assert "Previous attempts:" in instruction
        assert '1. Attempt 1: executed "Enter username"' in instruction
        assert "Please try a different approach" in instruction

    def test_unknown_site(self, capability_factory, page_provider, fast_config):
        executor = AutonomousRecoveryExecutor(capability_factory(), page_provider, fast_config)

        instruction = executor.build_instruction(failure_context(url=""), {}, attempt=1)

        assert "Website: You are working on unknown (unknown)" in instruction
        assert "Current URL: unknown" in instruction


class TestVerify:
    """Test each success criteria kind."""

    @pytest.mark.asyncio
    async def test_element_exists(self, capability_factory, page_provider, mock_page, make_locator, fast_config):
        mock_page.locators[".welcome"] = make_locator(count=1)
        step = login_step(successCriteria={"type": "element_exists", "selector": ".welcome"})
        executor = AutonomousRecoveryExecutor(capability_factory(), page_provider, fast_config)

        result = await executor.verify(failure_context(step), {})

        assert result.success is True

    @pytest.mark.asyncio
    async def test_element_missing(self, capability_factory, page_provider, fast_config):
        step = login_step(successCriteria={"type": "element_exists", "selector": ".welcome"})
        executor = AutonomousRecoveryExecutor(capability_factory(), page_provider, fast_config)

        result = await executor.verify(failure_context(step), {})

        assert result.success is False
        assert "not found" in result.reason

    @pytest.mark.asyncio
    async def test_element_has_value(self, capability_factory, page_provider, mock_page, make_locator, fast_config):
        mock_page.locators["#username"] = make_locator(value="alice")
        executor = AutonomousRecoveryExecutor(capability_factory(), page_provider, fast_config)

        result = await executor.verify(failure_context(), {"USER": "alice"})

        assert result.success is True

    @pytest.mark.asyncio
    async def test_element_has_value_missing_element(self, capability_factory, page_provider, mock_page, fast_config):
        executor = AutonomousRecoveryExecutor(capability_factory(), page_provider, fast_config)

        result = await executor.verify(failure_context(), {"USER": "alice"})

        assert result.success is False
        assert result.reason == "Element #username not found"
        mock_page.missing_locator.input_value.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_element_has_value_read_is_bounded(
        self, capability_factory, page_provider, mock_page, make_locator, fast_config
    ):
        field = make_locator(value="alice")
        mock_page.locators["#username"] = field
        executor = AutonomousRecoveryExecutor(capability_factory(), page_provider, fast_config)

        await executor.verify(failure_context(), {"USER": "alice"})

        assert field.input_value.await_args.kwargs["timeout"] == fast_config.selector_timeout_ms

    @pytest.mark.asyncio
    async def test_session_loss_raises(self, capability_factory, fast_config):
        async def lost():
            raise SessionConnectionError("The host browser disconnected")

        executor = AutonomousRecoveryExecutor(capability_factory(), lost, fast_config)

        with pytest.raises(SessionConnectionError):
            await executor.verify(failure_context(), {})

    @pytest.mark.asyncio
    async def test_navigation_pattern(self, capability_factory, page_provider, mock_page, fast_config):
        mock_page.url = "https://example.com/dashboard"
        step = login_step(successCriteria={"type": "navigation", "urlPattern": r"/dash\w+"})
        executor = AutonomousRecoveryExecutor(capability_factory(), page_provider, fast_config)

        result = await executor.verify(failure_context(step), {})

        assert result.success is True

    @pytest.mark.asyncio
    async def test_navigation_invalid_regex_falls_back_to_substring(
        self, capability_factory, page_provider, mock_page, fast_config
    ):
        mock_page.url = "https://example.com/search?q=(shoes"
        step = login_step(successCriteria={"type": "navigation", "urlPattern": "q=(shoes"})
        executor = AutonomousRecoveryExecutor(capability_factory(), page_provider, fast_config)

        result = await executor.verify(failure_context(step), {})

        assert result.success is True

    @pytest.mark.asyncio
    async def test_navigation_element_missing(self, capability_factory, page_provider, mock_page, fast_config):
        mock_page.url = "https://example.com/dashboard"
        step = login_step(successCriteria={
            "type": "navigation", "urlPattern": "/dashboard", "waitForElement": "#greeting"
        })
        executor = AutonomousRecoveryExecutor(capability_factory(), page_provider, fast_config)

        result = await executor.verify(failure_context(step), {})

        assert result.success is False

    @pytest.mark.asyncio
    async def test_custom_check(self, capability_factory, page_provider, mock_page, fast_config):
        mock_page.evaluate = AsyncMock(return_value=True)
        step = login_step(successCriteria={"type": "custom", "customCheck": "() => !!window.user"})
        executor = AutonomousRecoveryExecutor(capability_factory(), page_provider, fast_config)

        result = await executor.verify(failure_context(step), {})

        assert result.success is True
        mock_page.evaluate.assert_awaited_once_with("() => !!window.user")

    @pytest.mark.asyncio
    async def test_ai_judgment_success(self, capability_factory, page_provider, fast_config):
        capability = capability_factory(verdicts=['{"success": true, "evidence": "Logged in as alice"}'])
        step = login_step(successCriteria=None)
        executor = AutonomousRecoveryExecutor(capability, page_provider, fast_config)

        result = await executor.verify(failure_context(step), {"USER": "alice"})

        assert result.success is True
        assert result.evidence == "Logged in as alice"
        assert "Expected value: alice" in capability.prompts[0]

    @pytest.mark.asyncio
    async def test_unparseable_judgment_is_failure(self, capability_factory, page_provider, fast_config):
        capability = capability_factory(verdicts=["Yes, it worked!"])
        step = login_step(successCriteria=None)
        executor = AutonomousRecoveryExecutor(capability, page_provider, fast_config)

        result = await executor.verify(failure_context(step), {})

        assert result.success is False
        assert result.reason == "Could not parse AI verification response"


class TestRecover:
    """Test the bounded, verified retry loop."""

    @pytest.mark.asyncio
    async def test_verified_success(self, capability_factory, page_provider, mock_page, make_locator, fast_config):
        field = make_locator()

        def agent_fills():
            mock_page.locators["#username"] = field
            field.input_value.side_effect = None
            field.input_value.return_value = "alice"
            return "fill #username"

        capability = capability_factory(effects=[agent_fills])
        executor = AutonomousRecoveryExecutor(capability, page_provider, fast_config)

        result = await executor.recover(failure_context(), {"USER": "alice"}, max_attempts=3)

        assert result.success is True
        assert result.execution_method == ExecutionMethod.AI
        assert result.data["attempts"] == 1
        assert result.all_actions == ['Attempt 1: executed "Enter username" (fill #username)']

    @pytest.mark.asyncio
    async def test_unverified_attempts_exhaust(self, capability_factory, page_provider, fast_config):
        """Test an attempt only counts when verification passes."""
        capability = capability_factory(effects=["did something", "did something else"])
        executor = AutonomousRecoveryExecutor(capability, page_provider, fast_config)
        ctx = failure_context()

        result = await executor.recover(ctx, {"USER": "alice"}, max_attempts=2)

        assert result.success is False
        assert result.error.startswith("Failed after 2 attempts")
        assert result.error_kind == ErrorKind.TIMEOUT
        assert result.data["attempts"] == 2
        assert len(capability.instructions) == 2
        assert len(result.all_actions) == 2

    @pytest.mark.asyncio
    async def test_history_grows_each_attempt(self, capability_factory, page_provider, fast_config):
        capability = capability_factory(effects=[AgentActionError("no login link"), "clicked Sign In", None])
        executor = AutonomousRecoveryExecutor(capability, page_provider, fast_config)
        ctx = failure_context()

        await executor.recover(ctx, {"USER": "alice"}, max_attempts=3)

        assert "Previous attempts:" not in capability.instructions[0]
        assert "1. Attempt 1: failed: no login link" in capability.instructions[1]
        assert "2. Attempt 2: executed" in capability.instructions[2]
        assert len(ctx.previous_attempts) == 3

    @pytest.mark.asyncio
    async def test_agent_errors_are_attempts(self, capability_factory, page_provider, fast_config):
        capability = capability_factory(effects=[RuntimeError("boom"), RuntimeError("boom again")])
        executor = AutonomousRecoveryExecutor(capability, page_provider, fast_config)

        result = await executor.recover(failure_context(), {}, max_attempts=2)

        assert result.success is False
        assert result.all_actions == ["Attempt 1: failed: boom", "Attempt 2: failed: boom again"]
        assert "boom again" in result.error

    @pytest.mark.asyncio
    async def test_default_attempts_from_config(self, capability_factory, page_provider, fast_config):
        fast_config.max_attempts = 4
        capability = capability_factory()
        executor = AutonomousRecoveryExecutor(capability, page_provider, fast_config)

        result = await executor.recover(failure_context(), {})

        assert result.data["attempts"] == 4
        assert len(capability.instructions) == 4

    @pytest.mark.asyncio
    async def test_zero_attempts_is_honoured(self, capability_factory, page_provider, fast_config):
        capability = capability_factory()
        executor = AutonomousRecoveryExecutor(capability, page_provider, fast_config)

        result = await executor.recover(failure_context(), {}, max_attempts=0)

        assert result.success is False
        assert result.data["attempts"] == 0
        assert capability.instructions == []

    @pytest.mark.asyncio
    async def test_session_loss_is_not_retried(self, capability_factory, page_provider, fast_config):
        capability = capability_factory(effects=[SessionConnectionError("The host browser disconnected")])
        executor = AutonomousRecoveryExecutor(capability, page_provider, fast_config)

        with pytest.raises(SessionConnectionError):
            await executor.recover(failure_context(), {}, max_attempts=5)

        assert len(capability.instructions) == 1

    @pytest.mark.asyncio
    async def test_stop_between_attempts(self, capability_factory, page_provider, fast_config):
        capability = capability_factory()
        executor = AutonomousRecoveryExecutor(capability, page_provider, fast_config)
        calls = []

        def stop_check():
            calls.append(1)
            return len(calls) > 1

        result = await executor.recover(failure_context(), {}, max_attempts=5, stop_check=stop_check)

        assert result.success is False
        assert result.error == "Stopped by user"
        assert result.data["stopped"] is True
        assert len(capability.instructions) == 1
