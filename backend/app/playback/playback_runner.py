"""
Playback Runner

Replays a whole intent specification through the step controller.

This provides:
- Strictly sequential step execution
- Abort on first failure (unless asked to continue)
- Cooperative stop between steps
- A per-step action log that can be written to disk
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .config import PlaybackConfig
from .core.session_locator import SessionLocator
from .core.step_controller import StepExecutionController
from .errors import SessionConnectionError
from .models import IntentSpec
from .variables import find_unbound_placeholders, substitute_variables

logger = logging.getLogger(__name__)


@dataclass
class ActionLogEntry:
    """What happened for one step"""
    step: str
    method: str
    success: bool
    actions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PlaybackReport:
    """Outcome of replaying one intent specification"""
    id: str
    spec_name: str
    started_at: str
    completed_at: str = ""
    duration_seconds: float = 0.0

    total_steps: int = 0
    executed: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0

    stopped: bool = False
    error: Optional[str] = None

    results: List[Dict[str, Any]] = field(default_factory=list)
    action_log: List[ActionLogEntry] = field(default_factory=list)
    statistics: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return (
            self.error is None
            and not self.stopped
            and self.failed == 0
            and self.executed == self.total_steps
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["success"] = self.success
        return data

    def save_action_log(self, path: Union[str, Path]) -> Path:
        """Write the action log as a JSON array"""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump([entry.to_dict() for entry in self.action_log], f, indent=2)
        logger.info(f"[PLAYBACK] Action log saved to {path}")
        return path


class PlaybackRunner:
    """
    Playback driver for complete specifications.

    Features:
    - Session attach and start URL navigation
    - Real-time log and step callbacks
    - Stop control
    """

    def __init__(
        self,
        controller: StepExecutionController,
        session: SessionLocator,
        config: Optional[PlaybackConfig] = None
    ):
        self.controller = controller
        self.session = session
        self.config = config or controller.config

        # Callbacks
        self._log_callback: Optional[Callable[[str], None]] = None
        self._step_callback: Optional[Callable[[Dict], None]] = None

        # Stop control
        self._should_stop = False
        self._stop_check_callback: Optional[Callable[[], bool]] = None

    def set_callbacks(
        self,
        log_callback: Optional[Callable[[str], None]] = None,
        step_callback: Optional[Callable[[Dict], None]] = None
    ):
        """Set execution callbacks for real-time updates"""
        self._log_callback = log_callback
        self._step_callback = step_callback

    def set_stop_callback(self, callback: Callable[[], bool]):
        """
        Set a callback to check if execution should stop.

        The callback should return True if execution should stop.
        """
        self._stop_check_callback = callback

    def request_stop(self):
        """Request playback to stop after the current step"""
        self._should_stop = True
        self._log("Stop requested - will stop after current step completes")

    def _check_should_stop(self) -> bool:
        if self._should_stop:
            return True
        if self._stop_check_callback:
            return self._stop_check_callback()
        return False

    def _log(self, message: str, level: str = "info"):
        """Log message and send to callback"""
        log_entry = f"[{datetime.utcnow().strftime('%H:%M:%S')}] [{level.upper()}] {message}"
        getattr(logger, level, logger.info)(f"[PLAYBACK] {message}")
        if self._log_callback:
            self._log_callback(log_entry)

    async def run(
        self,
        spec: IntentSpec,
        variables: Optional[Dict[str, str]] = None,
        continue_on_failure: bool = False
    ) -> PlaybackReport:
        """
        Replay every step of the specification.

        Raises:
            SessionConnectionError: the host browser cannot be attached
        """
        variables = variables or {}
        start_time = datetime.utcnow()
        self._should_stop = False
        self.controller.set_stop_callback(self._check_should_stop)

        report = PlaybackReport(
            id=f"playback_{start_time.strftime('%Y%m%d_%H%M%S')}",
            spec_name=spec.name,
            started_at=start_time.isoformat(),
            total_steps=len(spec.steps)
        )

        self._log(f"Starting playback of '{spec.name}' ({len(spec.steps)} steps)")

        missing = [name for name in spec.variables if name not in variables]
        if missing:
            self._log(f"No value bound for declared variable(s): {missing}", "warning")

        await self.session.connect()

        if spec.start_url:
            start_url = substitute_variables(spec.start_url, variables)
            unbound = find_unbound_placeholders(start_url, variables)
            if unbound:
                self._log(f"Start URL has unbound placeholder(s) {unbound}", "warning")
            try:
                page = await self.session.current_page()
                await page.goto(start_url, wait_until="domcontentloaded", timeout=self.config.navigation_timeout_ms)
                self._log(f"Navigated to start URL {start_url}")
            except SessionConnectionError:
                raise
            except Exception as e:
                report.error = f"Could not open start URL {start_url}: {e}"
                self._log(report.error, "error")
                return self._finish(report, start_time)

        for index, step in enumerate(spec.steps, 1):
            if self._check_should_stop():
                report.stopped = True
                self._log("Playback stopped by user request")
                break

            label = step.name or f"Step {index}"
            self._log(f"Step {index}/{len(spec.steps)}: {label}")

            try:
                result = await self.controller.execute_step(step, variables)
            except SessionConnectionError as e:
                report.error = str(e)
                self._log(f"Lost connection to the browser: {e}", "error")
                break

            report.executed += 1
            report.results.append({"index": index, "name": label, **result.to_dict()})
            report.action_log.append(ActionLogEntry(
                step=label,
                method=result.execution_method.value,
                success=result.success,
                actions=list(result.all_actions)
            ))

            if result.skipped:
                report.skipped += 1
                self._log(f"  skipped: {result.skip_reason}")
            elif result.success:
                report.passed += 1
                self._log(f"  passed via {result.execution_method.value}")
            else:
                report.failed += 1
                self._log(f"  failed ({result.error_kind.value if result.error_kind else 'unknown'}): {result.error}", "warning")

            if self._step_callback:
                self._step_callback({
                    "index": index,
                    "name": label,
                    "status": "skipped" if result.skipped else ("passed" if result.success else "failed"),
                    "method": result.execution_method.value
                })

            if not result.success and not continue_on_failure:
                self._log("Aborting playback after failed step")
                break

        return self._finish(report, start_time)

    def _finish(self, report: PlaybackReport, start_time: datetime) -> PlaybackReport:
        completed = datetime.utcnow()
        report.completed_at = completed.isoformat()
        report.duration_seconds = (completed - start_time).total_seconds()
        report.statistics = self.controller.get_statistics()
        self._log(
            f"Playback finished: {report.passed} passed, {report.failed} failed, "
            f"{report.skipped} skipped of {report.total_steps}"
        )
        return report
