"""
AI Gateway for Playback
========================

Single entry point for language-model calls made during replay.
- Dispatches to the configured provider
- Tracks request, failure and token counts
- Never raises: failures come back as AIResponse(success=False)
"""

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from anthropic import AsyncAnthropic

logger = logging.getLogger(__name__)


class AIProvider(Enum):
    """Supported AI providers"""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    OLLAMA = "ollama"


DEFAULT_MODELS = {
    AIProvider.ANTHROPIC: "claude-sonnet-4-20250514",
    AIProvider.OPENAI: "gpt-4o-mini",
    AIProvider.OLLAMA: "llama3.2:3b",
}


@dataclass
class AIRequest:
    """A request for AI assistance"""
    request_type: str  # next_action, verify
    prompt: str
    system: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    max_tokens: int = 500


@dataclass
class AIResponse:
    """Response from AI"""
    success: bool
    content: str
    tokens_used: int
    latency_ms: int = 0
    error: Optional[str] = None


class AIGateway:
    """
    Gatekeeper for AI API calls.

    Responsibilities:
    - Pick provider and model from the environment
    - Make the call
    - Track usage metrics
    """

    def __init__(
        self,
        provider: Optional[AIProvider] = None,
        model: Optional[str] = None,
        timeout: float = 60.0
    ):
        if provider is None:
            provider = AIProvider(os.getenv("PLAYBACK_AI_PROVIDER", AIProvider.ANTHROPIC.value).lower())
        self.provider = provider
        self.model = model or os.getenv("PLAYBACK_AI_MODEL") or DEFAULT_MODELS[provider]
        self.timeout = timeout

        self._anthropic: Optional[AsyncAnthropic] = None

        # Statistics
        self.total_requests = 0
        self.api_calls = 0
        self.failures = 0
        self.total_tokens = 0

    async def request(self, request: AIRequest) -> AIResponse:
        """Make an AI request. This is the main entry point for AI calls."""
        self.total_requests += 1
        start_time = time.time()

        try:
            response = await self._call_ai(request)
        except Exception as e:
            logger.error(f"[AI-GATE] {request.request_type} call failed: {e}")
            response = AIResponse(success=False, content="", tokens_used=0, error=str(e))

        if response.success:
            self.api_calls += 1
            self.total_tokens += response.tokens_used
        else:
            self.failures += 1
            logger.warning(f"[AI-GATE] {request.request_type} failed: {response.error}")

        response.latency_ms = int((time.time() - start_time) * 1000)
        return response

    async def _call_ai(self, request: AIRequest) -> AIResponse:
        if self.provider == AIProvider.ANTHROPIC:
            return await self._call_anthropic(request)
        elif self.provider == AIProvider.OPENAI:
            return await self._call_openai(request)
        elif self.provider == AIProvider.OLLAMA:
            return await self._call_ollama(request)
        return AIResponse(
            success=False,
            content="",
            tokens_used=0,
            error=f"Unknown provider: {self.provider}"
        )

    async def _call_anthropic(self, request: AIRequest) -> AIResponse:
        """Call Anthropic Claude API"""
        api_key = os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            return AIResponse(success=False, content="", tokens_used=0, error="ANTHROPIC_API_KEY not set")

        if self._anthropic is None:
            self._anthropic = AsyncAnthropic(api_key=api_key, timeout=self.timeout)

        kwargs = {
            "model": self.model,
            "max_tokens": request.max_tokens,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.system:
            kwargs["system"] = request.system

        msg = await self._anthropic.messages.create(**kwargs)
        content = "".join(
            block.text for block in msg.content if getattr(block, "type", "") == "text"
        )
        tokens = msg.usage.input_tokens + msg.usage.output_tokens
        return AIResponse(success=True, content=content, tokens_used=tokens)

    async def _call_openai(self, request: AIRequest) -> AIResponse:
        """Call OpenAI API"""
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            return AIResponse(success=False, content="", tokens_used=0, error="OPENAI_API_KEY not set")

        messages = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.append({"role": "user", "content": request.prompt})

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                "https://api.openai.com/v1/chat/completions",
                headers={
                    "Authorization": f"Bearer {api_key}",
                    "Content-Type": "application/json"
                },
                json={
                    "model": self.model,
                    "messages": messages,
                    "max_tokens": request.max_tokens
                }
            )

        if response.status_code != 200:
            return AIResponse(
                success=False,
                content="",
                tokens_used=0,
                error=f"API error: {response.status_code}"
            )

        data = response.json()
        content = data["choices"][0]["message"]["content"]
        tokens = data.get("usage", {}).get("total_tokens", 0)
        return AIResponse(success=True, content=content, tokens_used=tokens)

    async def _call_ollama(self, request: AIRequest) -> AIResponse:
        """Call Ollama local API"""
        ollama_url = os.getenv("OLLAMA_URL", "http://localhost:11434")
        prompt = request.prompt
        if request.system:
            prompt = f"{request.system}\n\n{prompt}"

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{ollama_url}/api/generate",
                json={"model": self.model, "prompt": prompt, "stream": False}
            )

        if response.status_code != 200:
            return AIResponse(
                success=False,
                content="",
                tokens_used=0,
                error=f"Ollama error: {response.status_code}"
            )

        content = response.json().get("response", "")
        # Ollama doesn't report exact tokens, estimate
        tokens = len(prompt.split()) + len(content.split())
        return AIResponse(success=True, content=content, tokens_used=tokens)

    def get_stats(self) -> Dict[str, Any]:
        """Get gateway statistics"""
        return {
            "provider": self.provider.value,
            "model": self.model,
            "total_requests": self.total_requests,
            "api_calls": self.api_calls,
            "failures": self.failures,
            "total_tokens": self.total_tokens,
        }
