"""FastAPI server exposing supervisor health and loop state."""

import logging
from typing import Optional

from fastapi import FastAPI
from pydantic import BaseModel

from .context_monitor import ContextMonitor
from .output_monitor import OutputMonitor
from .restart_service import RestartService
from .tmux_controller import SessionDriver

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str = "ok"


class StatusResponse(BaseModel):
    """Snapshot of every supervision loop."""
    session_alive: Optional[bool] = None
    session_error: Optional[str] = None
    output_monitor: Optional[dict] = None
    context_usage: Optional[float] = None
    context_monitor_running: bool = False
    compactions: int = 0
    health: Optional[dict] = None
    restarts_in_window: int = 0
    max_restarts: Optional[int] = None
    total_restarts: int = 0


def create_app(
    driver: Optional[SessionDriver] = None,
    output_monitor: Optional[OutputMonitor] = None,
    context_monitor: Optional[ContextMonitor] = None,
    restart_service: Optional[RestartService] = None,
) -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title="Session Supervisor",
        description="Supervises a Claude Code session running in tmux",
        version="0.1.0",
    )

    app.state.driver = driver
    app.state.output_monitor = output_monitor
    app.state.context_monitor = context_monitor
    app.state.restart_service = restart_service

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse()

    @app.get("/status", response_model=StatusResponse)
    async def status():
        response = StatusResponse()

        if driver:
            try:
                response.session_alive = await driver.exists()
            except Exception as e:
                logger.warning(f"Could not probe session: {e}")
                response.session_error = str(e)

        if output_monitor:
            response.output_monitor = output_monitor.state.to_dict()

        if context_monitor:
            response.context_usage = context_monitor.last_usage
            response.context_monitor_running = context_monitor.is_running()
            response.compactions = context_monitor.compactions

        if restart_service:
            response.health = restart_service.health_check.state.to_dict()
            response.restarts_in_window = len(restart_service.recent_restarts())
            response.max_restarts = restart_service.max_restarts
            response.total_restarts = restart_service.restart_count

        return response

    return app
