"""
Playback Errors

Exception taxonomy for the replay engine.

Only SessionConnectionError is allowed to escape the step controller.
Everything else is converted into a failed ExecutionResult so the
playback driver can decide whether to abort or continue.
"""

from typing import List, Optional


class PlaybackError(Exception):
    """Base class for all replay engine errors"""


class SessionConnectionError(PlaybackError):
    """The remote-debugging endpoint or the content page cannot be reached"""


class NoTargetFound(SessionConnectionError):
    """Connected to the host, but no page carries web content"""


class ScriptedFailure(PlaybackError):
    """A deterministic step failed its selector or validation checks"""

    def __init__(
        self,
        message: str,
        kind=None,
        attempted_selectors: Optional[List[str]] = None
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.attempted_selectors = attempted_selectors or []


class RecoveryExhausted(PlaybackError):
    """The AI path used every attempt without a verified success"""

    def __init__(self, attempts: int, last_reason: Optional[str] = None):
        self.attempts = attempts
        self.last_reason = last_reason
        message = f"Failed after {attempts} attempts. The AI agent could not complete the task."
        if last_reason:
            message += f" Last outcome: {last_reason}"
        super().__init__(message)


class VerificationParseFailure(PlaybackError):
    """The AI judge returned something that is not a usable verdict"""


class AgentActionError(PlaybackError):
    """The AI automation capability could not carry out an instruction"""
