"""
Core Replay Module

Session discovery, scripted execution, AI recovery and the per-step
controller that ties them together.
"""

from .page_state import PageStateSnapshot, capture_page_state
from .session_locator import SessionLocator, SessionHandle, select_content_page
from .action_executor import ScriptedStepRunner
from .recovery_executor import AutonomousRecoveryExecutor, FailureContext
from .heuristic_fallback import HeuristicFallback
from .step_controller import StepExecutionController

__all__ = [
    "PageStateSnapshot",
    "capture_page_state",
    "SessionLocator",
    "SessionHandle",
    "select_content_page",
    "ScriptedStepRunner",
    "AutonomousRecoveryExecutor",
    "FailureContext",
    "HeuristicFallback",
    "StepExecutionController",
]
