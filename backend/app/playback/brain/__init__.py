"""
AI Capability for Replay
========================

The model-backed side of recovery: a gateway for provider calls and a
browser agent that turns natural-language instructions into page actions.
"""

from .ai_gateway import AIGateway, AIProvider, AIRequest, AIResponse
from .browser_agent import AutomationCapability, InstructedBrowserAgent
