"""
Pipeline Controller - FastAPI Application

JSON API and WebSocket push channel over DashboardService. HTML pages and
static assets are served elsewhere.

Authentication is a session cookie issued by /api/auth/login. The push
channel expects one {"type": "auth", "identity": ...} frame before targeted
events are routed to the connection.
"""

import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import SERVICE_NAME, __version__
from .access_gate import User
from .config import SESSION_TTL_HOURS, load_config
from .dashboard_service import DashboardService
from .dispatch_scheduler import CancelOutcome
from .errors import (
    AuthenticationFailure,
    AuthorizationFailure,
    AuthorizationKind,
    GatewayError,
    InvalidInput,
)
from .models import WorkflowKind, utcnow

# -----------------------------------------------------------------------------
# Logging Configuration
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("pipeline_controller")

SESSION_COOKIE = "session_id"


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------
class LoginRequest(BaseModel):
    username: str
    password: str


class TriggerWorkflowRequest(BaseModel):
    team: Optional[str] = None
    repo: str
    workflow_id: str
    ref: str
    inputs: Dict[str, Any] = Field(default_factory=dict)


class BulkTriggerRequest(BaseModel):
    team: Optional[str] = None
    apps: List[str]
    branch: str
    version: Optional[str] = None


class CancelWorkflowRequest(BaseModel):
    repo: str
    run_id: int


class SwitchUserRequest(BaseModel):
    username: str


class ServiceRestartRequest(BaseModel):
    team: Optional[str] = None
    service: str
    environment: str


class ScheduleWorkflowRequest(BaseModel):
    team: Optional[str] = None
    repo: str
    workflow_id: str
    ref: str
    scheduled_time: datetime
    inputs: Dict[str, Any] = Field(default_factory=dict)


# -----------------------------------------------------------------------------
# Sessions
# -----------------------------------------------------------------------------
class SessionStore:
    """In-memory login sessions; lost on restart."""

    def __init__(self, ttl: timedelta = timedelta(hours=SESSION_TTL_HOURS)):
        self._ttl = ttl
        self._sessions: Dict[str, Dict[str, Any]] = {}

    def create(self, identity: str) -> str:
        session_id = secrets.token_urlsafe(32)
        self._sessions[session_id] = {
            "identity": identity,
            "expires_at": utcnow() + self._ttl,
        }
        return session_id

    def get(self, session_id: Optional[str]) -> Optional[str]:
        if not session_id or session_id not in self._sessions:
            return None
        session = self._sessions[session_id]
        if utcnow() > session["expires_at"]:
            del self._sessions[session_id]
            return None
        return session["identity"]

    def switch(self, session_id: Optional[str], identity: str) -> bool:
        """Point a live session at another identity, keeping its expiry."""
        if self.get(session_id) is None:
            return False
        self._sessions[session_id]["identity"] = identity
        return True

    def delete(self, session_id: Optional[str]) -> None:
        if session_id:
            self._sessions.pop(session_id, None)


# -----------------------------------------------------------------------------
# Application
# -----------------------------------------------------------------------------
def create_app(service: Optional[DashboardService] = None) -> FastAPI:
    """
    Build the FastAPI application.

    When no service is given one is built from the YAML config at startup.
    """
    app = FastAPI(title=SERVICE_NAME, version=__version__)
    app.state.service = service
    app.state.sessions = SessionStore()

    def get_service(request: Request) -> DashboardService:
        return request.app.state.service

    def require_auth(request: Request) -> User:
        identity = request.app.state.sessions.get(request.cookies.get(SESSION_COOKIE))
        if identity is None:
            raise HTTPException(status_code=401, detail="Please log in")
        try:
            return request.app.state.service.current_user(identity)
        except AuthenticationFailure:
            raise HTTPException(status_code=401, detail="Please log in")

    # -------------------------------------------------------------------------
    # Error mapping
    # -------------------------------------------------------------------------
    @app.exception_handler(AuthenticationFailure)
    async def authentication_failure_handler(request: Request, exc: AuthenticationFailure):
        return JSONResponse(status_code=401, content={"error": "Invalid credentials", "message": str(exc)})

    @app.exception_handler(AuthorizationFailure)
    async def authorization_failure_handler(request: Request, exc: AuthorizationFailure):
        status_code = 404 if exc.kind == AuthorizationKind.NOT_FOUND else 403
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(InvalidInput)
    async def invalid_input_handler(request: Request, exc: InvalidInput):
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        logger.error(f"GitHub call failed: {exc}")
        return JSONResponse(status_code=502, content=exc.to_dict())

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    @app.on_event("startup")
    async def startup_event():
        if app.state.service is None:
            app.state.service = DashboardService(load_config())
        await app.state.service.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.service is not None:
            await app.state.service.stop()

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------
    @app.get("/health")
    async def health_check(request: Request):
        svc = request.app.state.service
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": __version__,
            "timestamp": utcnow().isoformat(),
            "components": {
                "realtime_polling": bool(svc and svc.broadcaster.running),
                "connections": len(svc.registry) if svc else 0,
                "scheduled_dispatches": len(svc.scheduler) if svc else 0,
            },
        }

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------
    @app.post("/api/auth/login")
    async def login(body: LoginRequest, response: Response, svc: DashboardService = Depends(get_service)):
        user = svc.login(body.username, body.password)
        session_id = app.state.sessions.create(user.identity)
        response.set_cookie(
            SESSION_COOKIE,
            session_id,
            httponly=True,
            max_age=SESSION_TTL_HOURS * 3600,
        )
        return {"success": True, "user": user.to_dict()}

    @app.post("/api/auth/logout")
    async def logout(request: Request, response: Response):
        app.state.sessions.delete(request.cookies.get(SESSION_COOKIE))
        response.delete_cookie(SESSION_COOKIE)
        return {"success": True, "message": "Logged out successfully"}

    @app.get("/api/auth/me")
    async def me(user: User = Depends(require_auth)):
        return user.to_dict()

    @app.get("/api/auth/users")
    async def list_users(user: User = Depends(require_auth), svc: DashboardService = Depends(get_service)):
        users = svc.access_gate.list_users(user.identity)
        return {"users": [u.to_dict() for u in users]}

    @app.post("/api/auth/switch-user")
    async def switch_user(
        body: SwitchUserRequest,
        request: Request,
        user: User = Depends(require_auth),
        svc: DashboardService = Depends(get_service),
    ):
        target = svc.switch_user(user.identity, body.username)
        app.state.sessions.switch(request.cookies.get(SESSION_COOKIE), target.identity)
        return {"success": True, "user": target.to_dict()}

    # -------------------------------------------------------------------------
    # Dashboard
    # -------------------------------------------------------------------------
    @app.get("/api/dashboard")
    async def dashboard(
        team: Optional[str] = Query(None),
        branch: Optional[str] = Query(None),
        refresh: bool = Query(False),
        user: User = Depends(require_auth),
        svc: DashboardService = Depends(get_service),
    ):
        view = await svc.get_dashboard(team_filter=team, branch_filter=branch, refresh=refresh)
        result = view.to_dict()
        result["teams"] = svc.config.public_teams()
        result["user"] = user.to_dict()
        return result

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------
    @app.post("/api/trigger/workflow")
    async def trigger_workflow(
        body: TriggerWorkflowRequest,
        user: User = Depends(require_auth),
        svc: DashboardService = Depends(get_service),
    ):
        await svc.trigger_workflow(
            user.identity, body.team, body.repo, body.workflow_id, body.ref, body.inputs
        )
        return {"success": True, "message": "Workflow triggered successfully"}

    @app.post("/api/trigger/bulk-builds")
    async def trigger_bulk_builds(
        body: BulkTriggerRequest,
        user: User = Depends(require_auth),
        svc: DashboardService = Depends(get_service),
    ):
        results = await svc.trigger_bulk(
            user.identity, body.team, body.apps, body.branch, kind=WorkflowKind.BUILD
        )
        return {"results": [r.to_dict() for r in results]}

    @app.post("/api/trigger/bulk-releases")
    async def trigger_bulk_releases(
        body: BulkTriggerRequest,
        user: User = Depends(require_auth),
        svc: DashboardService = Depends(get_service),
    ):
        results = await svc.trigger_bulk(
            user.identity, body.team, body.apps, body.branch,
            kind=WorkflowKind.RELEASE, version=body.version,
        )
        return {"results": [r.to_dict() for r in results]}

    @app.post("/api/cancel/workflow")
    async def cancel_workflow(
        body: CancelWorkflowRequest,
        user: User = Depends(require_auth),
        svc: DashboardService = Depends(get_service),
    ):
        await svc.cancel_workflow(user.identity, body.repo, body.run_id)
        return {"success": True, "message": "Workflow cancelled successfully"}

    @app.get("/api/logs/{repo}/{run_id}")
    async def get_logs(
        repo: str,
        run_id: int,
        user: User = Depends(require_auth),
        svc: DashboardService = Depends(get_service),
    ):
        results = await svc.get_logs(user.identity, repo, run_id)
        return {"jobs": [r.to_dict() for r in results]}

    @app.post("/api/services/restart")
    async def restart_service(
        body: ServiceRestartRequest,
        user: User = Depends(require_auth),
        svc: DashboardService = Depends(get_service),
    ):
        await svc.restart_service(user.identity, body.team, body.service, body.environment)
        return {
            "success": True,
            "message": f"Service restart initiated for {body.service} in {body.environment}",
        }

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------
    @app.post("/api/schedule/workflow")
    async def schedule_workflow(
        body: ScheduleWorkflowRequest,
        user: User = Depends(require_auth),
        svc: DashboardService = Depends(get_service),
    ):
        dispatch = svc.schedule_trigger(
            user.identity, body.team, body.repo, body.workflow_id, body.ref,
            body.scheduled_time, body.inputs,
        )
        return {"success": True, "job_id": dispatch.id, "scheduled_time": dispatch.fire_at.isoformat()}

    @app.post("/api/schedule/cancel/{dispatch_id}")
    async def cancel_scheduled(
        dispatch_id: str,
        user: User = Depends(require_auth),
        svc: DashboardService = Depends(get_service),
    ):
        if svc.cancel_scheduled(dispatch_id) == CancelOutcome.NOT_FOUND:
            raise HTTPException(status_code=404, detail="Scheduled job not found")
        return {"success": True, "message": "Scheduled workflow cancelled"}

    @app.get("/api/schedule/list")
    async def list_scheduled(
        user: User = Depends(require_auth),
        svc: DashboardService = Depends(get_service),
    ):
        return {"scheduled_jobs": [d.to_dict() for d in svc.list_scheduled()]}

    # -------------------------------------------------------------------------
    # Push channel
    # -------------------------------------------------------------------------
    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await websocket.accept()
        svc: DashboardService = websocket.app.state.service
        try:
            while True:
                message = await websocket.receive_text()
                try:
                    frame = json.loads(message)
                except ValueError:
                    logger.warning("WebSocket message error: not JSON")
                    continue
                if not isinstance(frame, dict) or frame.get("type") != "auth":
                    continue
                identity = frame.get("identity") or frame.get("username")
                if not isinstance(identity, str):
                    logger.warning(f"WebSocket auth frame with non-string identity: {identity!r}")
                    continue
                try:
                    user = svc.current_user(identity)
                except AuthenticationFailure:
                    logger.warning(f"WebSocket auth rejected for unknown user: {identity}")
                    continue
                svc.registry.register(user.identity, websocket)
        except WebSocketDisconnect:
            pass
        finally:
            svc.registry.unregister(websocket)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
