"""FastAPI HTTP and WebSocket API for the diagnostic service."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response

from shared.logging import get_logger

from .config import ServiceConfig
from .errors import (
    DiagnosticsError,
    ElevationRequired,
    InvalidSelection,
    SessionNotFound,
    SessionNotTerminal,
    UnknownTaskIds,
)
from .models import OutputFormat
from .schemas import (
    CancelResponse,
    CreateSessionRequest,
    CreateSessionResponse,
    ErrorResponse,
    HealthResponse,
    SessionStatusResponse,
    SystemInfoResponse,
    TaskListResponse,
)
from .service import DiagnosticService

log = get_logger("diagnostics", "api")

API_PREFIX = "/api/v1"

ERROR_STATUS = {
    InvalidSelection: 400,
    UnknownTaskIds: 400,
    ElevationRequired: 403,
    SessionNotFound: 404,
    SessionNotTerminal: 409,
}


def error_responses(*status_codes: int) -> dict:
    """OpenAPI entries for the error bodies a route can return."""
    return {code: {"model": ErrorResponse} for code in status_codes}


def status_for(error: DiagnosticsError) -> int:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status_code
    return 500


def create_app(
    service: Optional[DiagnosticService] = None,
    config: Optional[ServiceConfig] = None,
) -> FastAPI:
    """Create the FastAPI application."""

    service = service or DiagnosticService(config=config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(
        title="Host Diagnostics Service",
        description="Runs selected host inspection tasks and packages their output",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.service = service

    @app.exception_handler(DiagnosticsError)
    async def diagnostics_error(request: Request, exc: DiagnosticsError):
        status_code = status_for(exc)
        log.warning("diagnostics.api.request_rejected",
                    path=request.url.path, status=status_code, code=exc.code)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(**service.get_status())

    @app.get(f"{API_PREFIX}/system", response_model=SystemInfoResponse)
    async def system_info():
        """Summary of the host the service runs on."""
        info = await run_in_threadpool(service.get_system_info)
        return SystemInfoResponse(**info)

    @app.get(f"{API_PREFIX}/tasks", response_model=TaskListResponse)
    async def list_tasks():
        return TaskListResponse(tasks=service.list_tasks(), is_admin=service.privilege.elevated)

    # ==================== SESSION ENDPOINTS ====================

    @app.post(
        f"{API_PREFIX}/diagnostics",
        response_model=CreateSessionResponse,
        status_code=201,
        responses=error_responses(400, 403),
    )
    async def create_session(request: CreateSessionRequest):
        """Create a session for the selected tasks and start it."""
        session = await service.create_session(request.selected_tasks, request.output_format)
        return CreateSessionResponse(
            session_id=session.id,
            status=session.status.value,
            total_tasks=session.total,
            websocket_url=f"/ws/diagnostics/{session.id}",
        )

    @app.get(
        f"{API_PREFIX}/diagnostics/{{session_id}}",
        response_model=SessionStatusResponse,
        responses=error_responses(404),
    )
    async def session_status(session_id: str):
        return SessionStatusResponse(**service.get_session_status(session_id))

    @app.post(
        f"{API_PREFIX}/diagnostics/{{session_id}}/cancel",
        response_model=CancelResponse,
        responses=error_responses(404),
    )
    async def cancel_session(session_id: str):
        status = await service.cancel_session(session_id)
        return CancelResponse(session_id=session_id, status=status.value)

    @app.get(f"{API_PREFIX}/diagnostics/{{session_id}}/download", responses=error_responses(404, 409))
    async def download(session_id: str, format: Optional[OutputFormat] = None):
        """Packaged results of a finished session."""
        output = await run_in_threadpool(service.fetch_results, session_id, format)
        return Response(
            content=output.content,
            media_type=output.media_type,
            headers={"Content-Disposition": f'attachment; filename="{output.filename}"'},
        )

    @app.delete(
        f"{API_PREFIX}/diagnostics/{{session_id}}",
        status_code=204,
        responses=error_responses(404, 409),
    )
    async def remove_session(session_id: str):
        service.remove_session(session_id)
        return Response(status_code=204)

    # ==================== PROGRESS STREAM ====================

    @app.websocket("/ws/diagnostics/{session_id}")
    async def progress_stream(websocket: WebSocket, session_id: str):
        """Push one snapshot per task transition, then close after the terminal one."""
        await websocket.accept()
        try:
            updates = service.subscribe(session_id)
        except SessionNotFound as e:
            await websocket.send_json(e.to_dict())
            await websocket.close(code=1008)
            return

        log.info("diagnostics.api.ws_connected", session_id=session_id)
        try:
            async for snapshot in updates:
                await websocket.send_json(snapshot.to_dict())
        except WebSocketDisconnect:
            log.info("diagnostics.api.ws_disconnected", session_id=session_id)
            return
        finally:
            await updates.aclose()

        await websocket.close()

    return app


def run_api_server(config: ServiceConfig, host: Optional[str] = None, port: Optional[int] = None):
    """Serve the API with uvicorn until interrupted."""
    import uvicorn

    host = host or config.api.host
    port = port or config.api.port
    log.info("diagnostics.api.serving", host=host, port=port)

    app = create_app(config=config)
    uvicorn.run(app, host=host, port=port, log_level="info")
