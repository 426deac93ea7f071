"""
Playback API Endpoints
======================
REST API the host UI uses to attach to its embedded browser and replay
intent specifications.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from playback.brain.browser_agent import AutomationCapability, InstructedBrowserAgent
from playback.config import PlaybackConfig
from playback.core.session_locator import SessionLocator
from playback.core.step_controller import StepExecutionController
from playback.errors import SessionConnectionError
from playback.models import IntentSpec, Step
from playback.playback_runner import PlaybackReport, PlaybackRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/playback", tags=["playback"])


class PlaybackService:
    """One session, controller and runner shared by the whole process"""

    def __init__(
        self,
        config: Optional[PlaybackConfig] = None,
        session: Optional[SessionLocator] = None,
        capability: Optional[AutomationCapability] = None
    ):
        self.config = config or PlaybackConfig.from_env()
        self.session = session or SessionLocator(self.config)
        self.capability = capability or InstructedBrowserAgent(page_provider=self.session.current_page)
        self.controller = StepExecutionController(
            self.session.current_page,
            capability=self.capability,
            config=self.config
        )
        self.runner = PlaybackRunner(self.controller, self.session, self.config)

        self.is_running = False
        self.last_report: Optional[PlaybackReport] = None

    async def connect(self, active_url: Optional[str] = None) -> Dict[str, Any]:
        if active_url:
            self.session.set_active_url(active_url)
        await self.session.connect()
        page = await self.session.current_page()
        return {"endpoint": self.session.endpoint, "url": page.url}

    async def run(self, spec: IntentSpec, variables: Dict[str, str], continue_on_failure: bool) -> PlaybackReport:
        self.is_running = True
        try:
            self.last_report = await self.runner.run(spec, variables, continue_on_failure)
            return self.last_report
        finally:
            self.is_running = False

    def status(self) -> Dict[str, Any]:
        return {
            "connected": self.session.is_connected,
            "endpoint": self.session.endpoint,
            "running": self.is_running,
            "controller_state": self.controller.state.value,
            "last_report": self.last_report.id if self.last_report else None,
        }


_service: Optional[PlaybackService] = None


def get_playback_service() -> PlaybackService:
    """Get or create the process-wide playback service"""
    global _service
    if _service is None:
        _service = PlaybackService()
    return _service


def set_playback_service(service: Optional[PlaybackService]):
    """Replace the process-wide service (used by tests and embedding hosts)"""
    global _service
    _service = service


class ConnectRequest(BaseModel):
    active_url: Optional[str] = None


class ExecuteStepRequest(BaseModel):
    step: Step
    variables: Dict[str, str] = Field(default_factory=dict)


class RunRequest(BaseModel):
    spec: IntentSpec
    variables: Dict[str, str] = Field(default_factory=dict)
    continue_on_failure: bool = False


# =========================================================================
# SESSION ENDPOINTS
# =========================================================================

@router.post("/connect")
async def connect(request: Optional[ConnectRequest] = None):
    """Attach to the host browser and report the content page"""
    try:
        service = get_playback_service()
        info = await service.connect(request.active_url if request else None)
        return {"success": True, **info}
    except SessionConnectionError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/status")
async def get_status():
    """Connection and execution status"""
    try:
        return {"success": True, **get_playback_service().status()}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


# =========================================================================
# EXECUTION ENDPOINTS
# =========================================================================

@router.post("/steps/execute")
async def execute_step(request: ExecuteStepRequest):
    """Execute a single step against the live page"""
    try:
        service = get_playback_service()
        result = await service.controller.execute_step(request.step, request.variables)
        return result.to_dict()
    except SessionConnectionError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/runs")
async def run_spec(request: RunRequest):
    """Replay a whole intent specification"""
    service = get_playback_service()
    if service.is_running:
        raise HTTPException(status_code=409, detail="A playback run is already in progress")

    try:
        report = await service.run(request.spec, request.variables, request.continue_on_failure)
        return {"success": report.success, "report": report.to_dict()}
    except SessionConnectionError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/stop")
async def stop_playback():
    """Stop the current run after the step in flight"""
    try:
        get_playback_service().runner.request_stop()
        return {"success": True, "message": "Stop requested"}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


# =========================================================================
# STATISTICS ENDPOINTS
# =========================================================================

@router.get("/statistics")
async def get_statistics():
    """Execution statistics for this session"""
    try:
        return {"success": True, "statistics": get_playback_service().controller.get_statistics()}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/statistics/reset")
async def reset_statistics():
    try:
        get_playback_service().controller.reset_statistics()
        return {"success": True}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
