"""FastAPI adapter exposing the devtools core to the dashboard."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from ..devtools import DevTools
from ..exceptions import LogStreamError, UnsupportedResourceTypeError
from ..models import SandboxStatus
from ..obs.broadcast import EventTypes

logger = logging.getLogger(__name__)

EVENT_QUEUE_SIZE = 256


# Pydantic models
class StartLoggingRequest(BaseModel):
    resourceType: str


class SubscriptionResponse(BaseModel):
    resourceId: str
    status: str


class LogSettingsRequest(BaseModel):
    maxLogSizeMB: float = Field(gt=0)


class LogSettingsResponse(BaseModel):
    maxLogSizeMB: float
    currentSizeMB: float


class FriendlyNameRequest(BaseModel):
    friendlyName: str = Field(min_length=1)


class ProgressOutputRequest(BaseModel):
    message: str


class SandboxStatusResponse(BaseModel):
    status: str
    identifier: str


class SandboxStatusRequest(BaseModel):
    status: SandboxStatus


class DeploymentFailedRequest(BaseModel):
    error: str


def _devtools(request: Request) -> DevTools:
    return request.app.state.devtools


def _stream_error(resource_id: str, error: LogStreamError) -> HTTPException:
    status_code = 400 if isinstance(error, UnsupportedResourceTypeError) else 502
    return HTTPException(
        status_code=status_code,
        detail={"code": "log_stream_failed", "resourceId": resource_id, "message": str(error)},
    )


def create_app(devtools: DevTools) -> FastAPI:
    """
    Create the dashboard adapter.

    Args:
        devtools: Wired devtools core

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        devtools.shutdown.shutdown("server stopped")

    app = FastAPI(
        title="Sandbox DevTools API",
        description="Local cache and log streaming for the sandbox dashboard",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.devtools = devtools

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    def root():
        """Health check endpoint."""
        return {"message": "Sandbox DevTools API is running", "endpoint": devtools.streaming.get_endpoint()}

    @app.get("/api/status", response_model=SandboxStatusResponse)
    def get_sandbox_status(request: Request):
        tools = _devtools(request)
        return SandboxStatusResponse(
            status=tools.sandbox_state.get_status().value,
            identifier=tools.backend_identifier,
        )

    @app.put("/api/status", response_model=SandboxStatusResponse)
    def update_sandbox_status(body: SandboxStatusRequest, request: Request):
        tools = _devtools(request)
        status = tools.deployment.report_status(body.status)
        return SandboxStatusResponse(status=status.value, identifier=tools.backend_identifier)

    @app.post("/api/status/refresh", response_model=SandboxStatusResponse)
    def refresh_sandbox_status(request: Request):
        tools = _devtools(request)
        status = tools.deployment.refresh_status()
        return SandboxStatusResponse(status=status.value, identifier=tools.backend_identifier)

    @app.post("/api/deployment/started", response_model=SandboxStatusResponse)
    def deployment_started(request: Request):
        _devtools(request).deployment.deployment_started()
        return get_sandbox_status(request)

    @app.post("/api/deployment/completed", response_model=SandboxStatusResponse)
    def deployment_completed(request: Request):
        _devtools(request).deployment.deployment_completed()
        return get_sandbox_status(request)

    @app.post("/api/deployment/failed", response_model=SandboxStatusResponse)
    def deployment_failed(body: DeploymentFailedRequest, request: Request):
        _devtools(request).deployment.deployment_failed(body.error)
        return get_sandbox_status(request)

    @app.get("/api/resources")
    def get_deployed_backend_resources(request: Request):
        tools = _devtools(request)
        try:
            snapshot = tools.resources.get_deployed_backend_resources()
        except Exception as e:
            raise HTTPException(
                status_code=500,
                detail={"code": "resource_fetch_failed", "message": str(e)},
            )
        return tools.resources.apply_friendly_name_overrides(snapshot).to_dict()

    @app.get("/api/resources/saved")
    def get_saved_resources(request: Request):
        snapshot = _devtools(request).storage.load_resources()
        if snapshot is None:
            raise HTTPException(
                status_code=404,
                detail={"code": "no_saved_resources", "message": "No saved resources found"},
            )
        return snapshot.to_dict()

    @app.get("/api/logs/active")
    def get_active_log_streams(request: Request) -> Dict[str, List[str]]:
        return {"active": sorted(_devtools(request).streaming.list_active_subscriptions())}

    @app.get("/api/logs/settings", response_model=LogSettingsResponse)
    def get_log_settings(request: Request):
        return _devtools(request).streaming.get_log_settings()

    @app.put("/api/logs/settings", response_model=LogSettingsResponse)
    def save_log_settings(body: LogSettingsRequest, request: Request):
        return _devtools(request).streaming.save_log_settings(body.maxLogSizeMB)

    @app.get("/api/logs/{resource_id}")
    def get_saved_resource_logs(resource_id: str, request: Request) -> Dict[str, Any]:
        logs = _devtools(request).streaming.replay(resource_id)
        return {"resourceId": resource_id, "logs": [entry.to_dict() for entry in logs]}

    @app.post("/api/logs/{resource_id}/start", response_model=SubscriptionResponse)
    def start_resource_logging(resource_id: str, body: StartLoggingRequest, request: Request):
        try:
            status = _devtools(request).streaming.start_subscription(resource_id, body.resourceType)
        except LogStreamError as e:
            raise _stream_error(resource_id, e)
        return SubscriptionResponse(resourceId=resource_id, status=status.value)

    @app.post("/api/logs/{resource_id}/stop", response_model=SubscriptionResponse)
    def stop_resource_logging(resource_id: str, request: Request):
        status = _devtools(request).streaming.stop_subscription(resource_id)
        return SubscriptionResponse(resourceId=resource_id, status=status.value)

    @app.get("/api/progress")
    def get_saved_deployment_progress(request: Request) -> List[Dict[str, str]]:
        return [event.to_dict() for event in _devtools(request).progress.saved_progress()]

    @app.post("/api/progress")
    def record_deployment_output(body: ProgressOutputRequest, request: Request) -> List[Dict[str, str]]:
        return [event.to_dict() for event in _devtools(request).progress.record_output(body.message)]

    @app.post("/api/progress/stack-events")
    def fetch_stack_events(request: Request) -> List[Dict[str, str]]:
        return [event.to_dict() for event in _devtools(request).progress.fetch_stack_events()]

    @app.delete("/api/progress")
    def clear_deployment_progress(request: Request) -> Dict[str, bool]:
        _devtools(request).progress.clear()
        return {"ok": True}

    @app.get("/api/friendly-names")
    def get_custom_friendly_names(request: Request) -> Dict[str, str]:
        return _devtools(request).storage.load_friendly_names()

    @app.put("/api/friendly-names/{resource_id}")
    def update_custom_friendly_name(resource_id: str, body: FriendlyNameRequest, request: Request):
        tools = _devtools(request)
        tools.storage.set_friendly_name(resource_id, body.friendlyName)
        tools.broadcaster.publish(EventTypes.FRIENDLY_NAME_UPDATED, {
            "resourceId": resource_id,
            "friendlyName": body.friendlyName,
        })
        return {"resourceId": resource_id, "friendlyName": body.friendlyName}

    @app.delete("/api/friendly-names/{resource_id}")
    def remove_custom_friendly_name(resource_id: str, request: Request):
        tools = _devtools(request)
        tools.storage.remove_friendly_name(resource_id)
        tools.broadcaster.publish(EventTypes.FRIENDLY_NAME_REMOVED, {"resourceId": resource_id})
        return {"resourceId": resource_id}

    @app.websocket("/ws")
    async def stream_events(websocket: WebSocket):
        """Relay broadcast events to a dashboard client as {event, data} messages."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        resource_ids: Optional[List[str]] = websocket.query_params.getlist("resource") or None

        def offer(message: Dict[str, Any]) -> None:
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning(f"Dropping {message['event']} event for slow dashboard client")

        def listener(event_type: str, data: Dict[str, Any]) -> None:
            loop.call_soon_threadsafe(offer, {"event": event_type, "data": data})

        async def drain():
            while True:
                message = await queue.get()
                await websocket.send_json(message)

        # Events published from now on are queued until the sender starts.
        devtools.broadcaster.add_listener(listener, resource_ids)
        sender = None
        try:
            await websocket.accept()
            sender = asyncio.create_task(drain())
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("Dashboard client disconnected")
        finally:
            devtools.broadcaster.remove_listener(listener)
            if sender is not None:
                sender.cancel()
                await asyncio.gather(sender, return_exceptions=True)

    return app
