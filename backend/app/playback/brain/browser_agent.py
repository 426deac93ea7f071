"""
Browser Agent

The AI automation capability used by recovery. Given a natural-language
instruction it observes the page, asks the model for one action at a
time, performs it with Playwright and repeats until the model says the
task is done.
"""

import asyncio
import json
import logging
import re
from typing import Awaitable, Callable, List, Literal, Optional

from pydantic import BaseModel, ValidationError

from ..core.page_state import capture_page_state
from ..errors import AgentActionError
from .ai_gateway import AIGateway, AIRequest

logger = logging.getLogger(__name__)

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


def extract_json_block(text: Optional[str]) -> Optional[str]:
    """JSON text from a model reply: a fenced block, else the outermost {...}"""
    if not text:
        return None
    match = _FENCED_JSON_RE.search(text)
    if match and "{" in match.group(1):
        return match.group(1)
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


class AutomationCapability:
    """
    What recovery needs from an AI agent.

    perform_instructed carries out a natural-language instruction against
    the current page and may return a short summary of what it did.
    judge answers a verification prompt with raw model text.
    """

    async def perform_instructed(self, instruction: str) -> Optional[str]:
        raise NotImplementedError

    async def judge(self, prompt: str) -> str:
        raise NotImplementedError


class AgentAction(BaseModel):
    type: Literal["click", "fill", "select", "navigate", "press", "wait"]
    selector: Optional[str] = None
    text: Optional[str] = None
    value: Optional[str] = None
    url: Optional[str] = None
    key: Optional[str] = None


class AgentDecision(BaseModel):
    done: bool = False
    action: Optional[AgentAction] = None
    reason: str = ""


SYSTEM_PROMPT = """You control a web browser to complete a task for the user.
You see a summary of the current page and the actions taken so far.
Reply with ONLY JSON:
{"done": false, "action": {"type": "click|fill|select|navigate|press|wait", "selector": "css selector", "text": "visible text if no selector", "value": "text to type or option", "url": "for navigate", "key": "for press"}, "reason": "short explanation"}
Set "done": true (with "action": null) once the task is complete."""


class InstructedBrowserAgent(AutomationCapability):
    """Observe, decide, act loop driven by the AI gateway"""

    DEFAULT_MAX_STEPS = 8
    ACTION_TIMEOUT_MS = 5000

    def __init__(
        self,
        gateway: Optional[AIGateway] = None,
        page_provider: Optional[Callable[[], Awaitable]] = None,
        max_steps: int = DEFAULT_MAX_STEPS
    ):
        self.gateway = gateway or AIGateway()
        self._page_provider = page_provider
        self.max_steps = max_steps

    def set_page_provider(self, page_provider: Callable[[], Awaitable]):
        self._page_provider = page_provider

    async def _get_page(self):
        if self._page_provider is None:
            raise AgentActionError("Browser agent has no page to work on")
        return await self._page_provider()

    async def perform_instructed(self, instruction: str) -> Optional[str]:
        history: List[str] = []

        for step_no in range(1, self.max_steps + 1):
            page = await self._get_page()
            state = await capture_page_state(page)

            prompt = self._build_prompt(instruction, state, history)
            response = await self.gateway.request(AIRequest(
                request_type="next_action",
                prompt=prompt,
                system=SYSTEM_PROMPT,
                max_tokens=400
            ))
            if not response.success:
                raise AgentActionError(f"AI call failed: {response.error}")

            decision = self.parse_decision(response.content)
            logger.info(f"[AGENT] Step {step_no}: done={decision.done} reason={decision.reason[:80]}")

            if decision.action is not None:
                history.append(await self._perform(page, decision.action))

            if decision.done:
                return "; ".join(history) if history else (decision.reason or "Task already complete")

        raise AgentActionError(
            f"Task not finished after {self.max_steps} agent steps: {'; '.join(history)}"
        )

    async def judge(self, prompt: str) -> str:
        response = await self.gateway.request(AIRequest(
            request_type="verify",
            prompt=prompt,
            max_tokens=300
        ))
        if not response.success:
            raise AgentActionError(f"AI verification call failed: {response.error}")
        return response.content

    @staticmethod
    def parse_decision(content: str) -> AgentDecision:
        raw = extract_json_block(content)
        if raw is None:
            raise AgentActionError(f"AI reply has no JSON: {content[:200]}")
        try:
            return AgentDecision.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            raise AgentActionError(f"Unusable AI reply: {e}")

    def _build_prompt(self, instruction: str, state, history: List[str]) -> str:
        inputs = [
            {k: v for k, v in item.items() if v}
            for item in state.visible_inputs
        ]
        buttons = [
            {k: v for k, v in item.items() if v}
            for item in state.visible_buttons
        ]

        prompt = f"TASK:\n{instruction}\n\n"
        prompt += f"CURRENT PAGE:\n- URL: {state.url}\n- Title: {state.title}\n"
        prompt += f"- Inputs: {json.dumps(inputs)}\n"
        prompt += f"- Buttons/links: {json.dumps(buttons)}\n"
        prompt += f"- Text: {state.body_text[:300]}\n"
        if history:
            prompt += "\nACTIONS SO FAR:\n" + "\n".join(f"- {h}" for h in history) + "\n"
        prompt += "\nWhat is the next action?"
        return prompt

    def _target(self, page, action: AgentAction):
        if action.selector:
            return page.locator(action.selector).first
        if action.text:
            return page.get_by_text(action.text, exact=False).first
        raise AgentActionError(f"{action.type} action has neither selector nor text")

    async def _perform(self, page, action: AgentAction) -> str:
        """Perform one action; failures are reported back to the model, not raised"""
        target = action.selector or action.text or action.url or action.key or ""
        description = f"{action.type} {target}".strip()

        try:
            if action.type == "click":
                await self._target(page, action).click(timeout=self.ACTION_TIMEOUT_MS)
            elif action.type == "fill":
                await self._target(page, action).fill(action.value or "", timeout=self.ACTION_TIMEOUT_MS)
            elif action.type == "select":
                await self._target(page, action).select_option(action.value or "", timeout=self.ACTION_TIMEOUT_MS)
            elif action.type == "navigate":
                if not action.url:
                    raise AgentActionError("navigate action without url")
                await page.goto(action.url, wait_until="domcontentloaded")
            elif action.type == "press":
                await page.keyboard.press(action.key or "Enter")
            elif action.type == "wait":
                ms = int(action.value) if action.value and action.value.isdigit() else 1000
                await asyncio.sleep(min(ms, 10000) / 1000)
        except Exception as e:
            logger.warning(f"[AGENT] {description} failed: {e}")
            return f"{description} (failed: {str(e)[:120]})"

        return description
