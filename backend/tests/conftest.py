"""
Pytest configuration and shared fixtures for replay engine tests.
"""

import pytest
import sys
from pathlib import Path
from unittest.mock import Mock, AsyncMock
from typing import Dict, Any, List, Optional

# Add backend app to path
sys.path.insert(0, str(Path(__file__).parent.parent / "app"))

from playback.brain.browser_agent import AutomationCapability
from playback.config import PlaybackConfig


# ==================== Locator Helpers ====================

def build_locator(
    visible: bool = True,
    enabled: bool = True,
    value: str = "",
    count: Optional[int] = None,
    echo_fill: bool = True,
    selected: Optional[List[str]] = None
):
    """
    Create a mock Playwright locator.

    With echo_fill the locator reads back whatever was last filled, like a
    plain text input would.
    """
    locator = AsyncMock()
    locator.first = locator
    state = {"value": value}

    if visible:
        locator.wait_for = AsyncMock(return_value=None)
    else:
        locator.wait_for = AsyncMock(
            side_effect=Exception("Timeout 3000ms exceeded waiting for locator to be visible")
        )

    async def _fill(text, **kwargs):
        if echo_fill:
            state["value"] = text

    async def _input_value(**kwargs):
        return state["value"]

    locator.fill = AsyncMock(side_effect=_fill)
    locator.input_value = AsyncMock(side_effect=_input_value)
    locator.click = AsyncMock(return_value=None)
    locator.is_enabled = AsyncMock(return_value=enabled)
    locator.count = AsyncMock(return_value=(1 if visible else 0) if count is None else count)
    locator.select_option = AsyncMock(return_value=selected if selected is not None else [])
    locator.evaluate = AsyncMock(return_value=[])
    locator.inner_text = AsyncMock(return_value="")
    return locator


@pytest.fixture
def make_locator():
    """Factory for mock locators."""
    return build_locator


# ==================== Mock Page Fixture ====================

@pytest.fixture
def mock_page():
    """
    Create a mock Playwright page object.

    Register locators per selector in page.locators; anything else
    resolves to a locator that never becomes visible.
    """
    page = AsyncMock()

    # Basic properties
    page.url = "https://example.com/test"

    # Navigation
    page.goto = AsyncMock(return_value=None)
    page.wait_for_url = AsyncMock(return_value=None)

    # Content
    page.title = AsyncMock(return_value="Test Page")

    # Evaluation (page state capture reports the current URL)
    async def _evaluate(script, *args):
        return {
            "url": page.url,
            "title": "Test Page",
            "inputs": [],
            "buttons": [],
            "bodyText": ""
        }

    page.evaluate = AsyncMock(side_effect=_evaluate)

    # Locators
    missing = build_locator(visible=False)
    page.locators = {}
    page.missing_locator = missing
    page.locator = Mock(side_effect=lambda selector: page.locators.get(selector, missing))
    page.get_by_text = Mock(return_value=missing)
    page.get_by_label = Mock(return_value=missing)
    page.get_by_placeholder = Mock(return_value=missing)
    page.get_by_role = Mock(return_value=missing)

    # Keyboard
    page.keyboard = AsyncMock()
    page.keyboard.press = AsyncMock()

    return page


@pytest.fixture
def page_provider(mock_page):
    """Async callable returning the mock page, as the session locator would."""
    async def _provider():
        return mock_page
    return _provider


# ==================== Config Fixture ====================

@pytest.fixture
def fast_config():
    """Playback config with every settle and retry delay switched off."""
    return PlaybackConfig(
        click_settle_ms=0,
        settle_delay_ms=0,
        retry_delay_ms=0,
        default_wait_ms=0,
        selector_timeout_ms=100,
        fallback_ports=[9222]
    )


# ==================== Automation Capability Fixture ====================

class FakeCapability(AutomationCapability):
    """
    Scripted stand-in for the AI browser agent.

    Each perform_instructed call consumes one effect: an exception is
    raised, a callable is run (to change the mock page), anything else is
    returned as the summary. judge replies with queued verdict strings.
    """

    def __init__(self, effects: Optional[List[Any]] = None, verdicts: Optional[List[str]] = None):
        self.effects = list(effects or [])
        self.verdicts = list(verdicts or [])
        self.instructions: List[str] = []
        self.prompts: List[str] = []

    async def perform_instructed(self, instruction: str) -> Optional[str]:
        self.instructions.append(instruction)
        effect = self.effects.pop(0) if self.effects else None
        if isinstance(effect, Exception):
            raise effect
        if callable(effect):
            return effect()
        return effect

    async def judge(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.verdicts:
            return self.verdicts.pop(0)
        return '{"success": false, "evidence": "nothing changed"}'


@pytest.fixture
def capability_factory():
    """Factory for scripted automation capabilities."""
    return FakeCapability


# ==================== Sample Spec Data ====================

@pytest.fixture
def sample_intent_spec() -> Dict[str, Any]:
    """Sample intent specification as written by the generator."""
    return {
        "name": "Login Flow",
        "startUrl": "https://example.com",
        "variables": [
            {"name": "USERNAME"},
            {"name": "PASSWORD"}
        ],
        "steps": [
            {
                "name": "Enter username",
                "action": "fill",
                "selectors": ["#username"],
                "value": "{{USERNAME}}",
                "fallback": "ai",
                "aiInstruction": "Type the username into the login form"
            },
            {
                "name": "Enter password",
                "action": "fill",
                "selectors": ["#password"],
                "value": "{{PASSWORD}}"
            },
            {
                "name": "Submit",
                "snippet": "await page.locator('#login-button').click()",
                "successCriteria": {"type": "navigation", "urlPattern": "/dashboard"}
            }
        ]
    }
