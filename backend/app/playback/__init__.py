"""
Intent Replay Engine

Replays recorded intent specifications against a live embedded browser:
- Attaches to the desktop host over the Chrome remote-debugging protocol
- Runs each step deterministically first (selector fallback + validation)
- Hands failed steps to an AI agent with bounded, verified retries
- Reports per-step outcomes and execution statistics
"""

from .config import PlaybackConfig
from .errors import (
    PlaybackError,
    SessionConnectionError,
    NoTargetFound,
    ScriptedFailure,
    RecoveryExhausted,
    VerificationParseFailure,
    AgentActionError,
)
from .models import (
    Step,
    IntentSpec,
    ActionKind,
    ErrorKind,
    ExecutionMethod,
    ExecutionResult,
    ExecutionStatistics,
)
from .core.session_locator import SessionLocator, SessionHandle
from .core.step_controller import StepExecutionController
from .playback_runner import PlaybackRunner, PlaybackReport

__all__ = [
    "PlaybackConfig",
    # Errors
    "PlaybackError",
    "SessionConnectionError",
    "NoTargetFound",
    "ScriptedFailure",
    "RecoveryExhausted",
    "VerificationParseFailure",
    "AgentActionError",
    # Models
    "Step",
    "IntentSpec",
    "ActionKind",
    "ErrorKind",
    "ExecutionMethod",
    "ExecutionResult",
    "ExecutionStatistics",
    # Execution
    "SessionLocator",
    "SessionHandle",
    "StepExecutionController",
    "PlaybackRunner",
    "PlaybackReport",
]
