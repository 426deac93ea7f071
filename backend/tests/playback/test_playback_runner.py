"""
Unit tests for PlaybackRunner.

Tests whole-spec replay: start URL, abort/continue on failure, stop
control and the action log.
"""

import pytest
import json
from pathlib import Path
from unittest.mock import AsyncMock, Mock
import sys

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "app"))

from playback.core.step_controller import StepExecutionController
from playback.errors import SessionConnectionError
from playback.models import IntentSpec
from playback.playback_runner import PlaybackRunner


def make_session(mock_page):
    session = Mock()
    session.connect = AsyncMock()
    session.current_page = AsyncMock(return_value=mock_page)
    return session


def make_runner(mock_page, page_provider, config, capability=None):
    controller = StepExecutionController(page_provider, capability=capability, config=config)
    return PlaybackRunner(controller, make_session(mock_page), config)


def three_clicks(**first_step):
    steps = [
        {"name": "First", "action": "click", "selectors": ["#one"], **first_step},
        {"name": "Second", "action": "click", "selectors": ["#two"]},
        {"name": "Third", "action": "click", "selectors": ["#three"]},
    ]
    return IntentSpec.model_validate({"name": "Clicks", "startUrl": "https://example.com/{{PATH}}", "steps": steps})


class TestPlaybackRunner:

    @pytest.mark.asyncio
    async def test_all_steps_pass(self, mock_page, page_provider, make_locator, fast_config):
        for selector in ("#one", "#two", "#three"):
            mock_page.locators[selector] = make_locator()
        runner = make_runner(mock_page, page_provider, fast_config)

        report = await runner.run(three_clicks(), {"PATH": "app"})

        assert report.success is True
        assert report.passed == 3
        assert report.executed == 3
        runner.session.connect.assert_awaited_once()
        assert mock_page.goto.await_args.args[0] == "https://example.com/app"
        assert [entry.step for entry in report.action_log] == ["First", "Second", "Third"]
        assert report.statistics["snippet_success"] == 3

    @pytest.mark.asyncio
    async def test_abort_on_first_failure(self, mock_page, page_provider, make_locator, fast_config):
        mock_page.locators["#one"] = make_locator()
        mock_page.locators["#three"] = make_locator()
        runner = make_runner(mock_page, page_provider, fast_config)

        report = await runner.run(three_clicks(), {"PATH": "app"})

        assert report.success is False
        assert report.executed == 2
        assert report.failed == 1
        assert report.results[1]["errorKind"] == "selector_not_found"
        mock_page.locators["#three"].click.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_continue_on_failure(self, mock_page, page_provider, make_locator, fast_config):
        mock_page.locators["#one"] = make_locator()
        mock_page.locators["#three"] = make_locator()
        runner = make_runner(mock_page, page_provider, fast_config)

        report = await runner.run(three_clicks(), {"PATH": "app"}, continue_on_failure=True)

        assert report.executed == 3
        assert report.passed == 2
        assert report.failed == 1

    @pytest.mark.asyncio
    async def test_skipped_steps_counted(self, mock_page, page_provider, make_locator, fast_config):
        mock_page.url = "https://example.com/app"
        mock_page.locators["#two"] = make_locator()
        mock_page.locators["#three"] = make_locator()
        runner = make_runner(mock_page, page_provider, fast_config)
        spec = three_clicks(skipConditions=[{"type": "url_match", "value": "/app"}])

        report = await runner.run(spec, {"PATH": "app"})

        assert report.success is True
        assert report.skipped == 1
        assert report.passed == 2

    @pytest.mark.asyncio
    async def test_start_url_failure(self, mock_page, page_provider, fast_config):
        mock_page.goto = AsyncMock(side_effect=Exception("net::ERR_NAME_NOT_RESOLVED"))
        runner = make_runner(mock_page, page_provider, fast_config)

        report = await runner.run(three_clicks(), {"PATH": "app"})

        assert report.success is False
        assert report.executed == 0
        assert "Could not open start URL" in report.error

    @pytest.mark.asyncio
    async def test_connect_failure_raises(self, mock_page, page_provider, fast_config):
        runner = make_runner(mock_page, page_provider, fast_config)
        runner.session.connect = AsyncMock(side_effect=SessionConnectionError("no endpoint"))

        with pytest.raises(SessionConnectionError):
            await runner.run(three_clicks(), {"PATH": "app"})

    @pytest.mark.asyncio
    async def test_lost_session_mid_run(self, mock_page, make_locator, fast_config):
        mock_page.locators["#one"] = make_locator()
        calls = []

        async def flaky_provider():
            calls.append(1)
            if len(calls) > 1:
                raise SessionConnectionError("The host browser disconnected")
            return mock_page

        controller = StepExecutionController(flaky_provider, config=fast_config)
        runner = PlaybackRunner(controller, make_session(mock_page), fast_config)

        report = await runner.run(three_clicks(), {"PATH": "app"})

        assert report.executed == 1
        assert report.error == "The host browser disconnected"
        assert report.success is False

    @pytest.mark.asyncio
    async def test_stop_between_steps(self, mock_page, page_provider, make_locator, fast_config):
        for selector in ("#one", "#two", "#three"):
            mock_page.locators[selector] = make_locator()
        runner = make_runner(mock_page, page_provider, fast_config)
        runner.set_callbacks(step_callback=lambda update: runner.request_stop())

        report = await runner.run(three_clicks(), {"PATH": "app"})

        assert report.stopped is True
        assert report.executed == 1
        assert report.success is False

    @pytest.mark.asyncio
    async def test_callbacks(self, mock_page, page_provider, make_locator, fast_config):
        for selector in ("#one", "#two", "#three"):
            mock_page.locators[selector] = make_locator()
        runner = make_runner(mock_page, page_provider, fast_config)
        logs = []
        updates = []
        runner.set_callbacks(log_callback=logs.append, step_callback=updates.append)

        await runner.run(three_clicks(), {"PATH": "app"})

        assert [u["status"] for u in updates] == ["passed", "passed", "passed"]
        assert any("Starting playback of 'Clicks'" in line for line in logs)

    @pytest.mark.asyncio
    async def test_save_action_log(self, mock_page, page_provider, make_locator, fast_config, tmp_path):
        mock_page.locators["#one"] = make_locator()
        runner = make_runner(mock_page, page_provider, fast_config)
        report = await runner.run(three_clicks(), {"PATH": "app"})

        path = report.save_action_log(tmp_path / "logs" / "run.json")

        entries = json.loads(path.read_text())
        assert entries[0] == {"step": "First", "method": "snippet", "success": True, "actions": ["click #one"]}
        assert entries[1]["success"] is False
