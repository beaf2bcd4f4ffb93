"""FastAPI application exposing the NeuroGuard control and alert APIs."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from .config import get_settings
from .engine import NeuroGuardEngine

logger = logging.getLogger(__name__)


class CaptureRequest(BaseModel):
    interface: Optional[str] = None


class ObservationPayload(BaseModel):
    source_ip: str
    destination_ip: str
    protocol: str = "TCP"
    size: int = Field(default=0, ge=0)
    source_port: int = Field(default=0, ge=0, le=65535)
    destination_port: int = Field(default=0, ge=0, le=65535)
    flags: List[str] = Field(default_factory=list)
    ttl: int = 64
    payload: str = ""
    interface: str = "eth0"
    direction: str = "inbound"
    timestamp: Optional[float] = None


class LearningRequest(BaseModel):
    enabled: bool


def create_app(engine: Optional[NeuroGuardEngine] = None) -> FastAPI:
    """Build the API around ``engine`` (or one created from settings)."""

    app = FastAPI(title="NeuroGuard", version="0.1.0")
    app.state.engine = engine or NeuroGuardEngine.from_settings(get_settings())

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.engine.shutdown()

    def get_engine(request: Request) -> NeuroGuardEngine:
        return request.app.state.engine

    @app.get("/healthz")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/status")
    async def status(engine: NeuroGuardEngine = Depends(get_engine)) -> Dict[str, Any]:
        return engine.status()

    @app.get("/state")
    async def visual_state(engine: NeuroGuardEngine = Depends(get_engine)) -> Dict[str, Any]:
        return engine.visual_state()

    @app.get("/activity")
    async def neural_activity(engine: NeuroGuardEngine = Depends(get_engine)) -> Dict[str, Any]:
        return engine.neural_activity()

    @app.post("/capture/start")
    async def start_capture(
        body: Optional[CaptureRequest] = None, engine: NeuroGuardEngine = Depends(get_engine)
    ) -> Dict[str, Any]:
        started = engine.start(body.interface if body else None)
        return {"started": started, "session_id": engine.ingestion.session_id}

    @app.post("/capture/stop")
    async def stop_capture(engine: NeuroGuardEngine = Depends(get_engine)) -> Dict[str, Any]:
        engine.stop()
        return {"stopped": True}

    @app.post("/observations")
    async def ingest_observation(
        body: ObservationPayload, engine: NeuroGuardEngine = Depends(get_engine)
    ) -> Dict[str, Any]:
        observation = engine.ingest(body.model_dump(exclude_none=True))
        return observation.as_dict()

    @app.get("/alerts")
    async def alerts(engine: NeuroGuardEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
        return [alert.as_dict() for alert in engine.all_alerts()]

    @app.get("/alerts/active")
    async def active_alerts(engine: NeuroGuardEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
        return [alert.as_dict() for alert in engine.active_alerts()]

    @app.post("/alerts/{alert_id}/acknowledge")
    async def acknowledge_alert(alert_id: str, engine: NeuroGuardEngine = Depends(get_engine)) -> Dict[str, Any]:
        if not engine.acknowledge_alert(alert_id):
            raise HTTPException(status_code=404, detail="Alert not found")
        return {"id": alert_id, "acknowledged": True}

    @app.get("/actions/pending")
    async def pending_actions(engine: NeuroGuardEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
        return [action.as_dict() for action in engine.pending_actions()]

    @app.get("/actions/executed")
    async def executed_actions(engine: NeuroGuardEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
        return [result.as_dict() for result in engine.executed_actions()]

    @app.post("/actions/{action_id}/execute")
    async def execute_action(action_id: str, engine: NeuroGuardEngine = Depends(get_engine)) -> Dict[str, Any]:
        return engine.execute_action(action_id).as_dict()

    @app.get("/threats")
    async def threats(engine: NeuroGuardEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
        return [threat.as_dict() for threat in engine.detector.threats()]

    @app.get("/threats/{threat_id}/briefing")
    def threat_briefing(threat_id: str, engine: NeuroGuardEngine = Depends(get_engine)) -> Dict[str, Any]:
        briefing = engine.brief_threat(threat_id)
        if briefing is None:
            raise HTTPException(status_code=404, detail="Threat not found")
        return briefing.as_dict()

    @app.get("/report")
    def status_report(engine: NeuroGuardEngine = Depends(get_engine)) -> Dict[str, Any]:
        return engine.status_report().as_dict()

    @app.post("/learning")
    async def set_learning(body: LearningRequest, engine: NeuroGuardEngine = Depends(get_engine)) -> Dict[str, Any]:
        engine.set_learning(body.enabled)
        return {"learning": body.enabled}

    @app.patch("/config/{section}")
    async def update_config(
        section: str, changes: Dict[str, Any], engine: NeuroGuardEngine = Depends(get_engine)
    ) -> Dict[str, Any]:
        updaters = {
            "detection": engine.update_detection,
            "preprocessing": engine.update_preprocessing,
            "alerts": engine.update_alerts,
        }
        updater = updaters.get(section)
        if updater is None:
            raise HTTPException(status_code=404, detail=f"Unknown configuration section '{section}'")
        try:
            return updater(**changes)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    return app


def run() -> None:
    """Console entry point: serve the API with uvicorn."""

    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(NeuroGuardEngine.from_settings(settings)), host="0.0.0.0", port=8000)


__all__ = ["create_app", "run"]
