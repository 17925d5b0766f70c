from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from canton_ide_backend.config import (
    CORS_ORIGINS,
    HOST,
    JANITOR_INTERVAL_SECONDS,
    LOG_LEVEL,
    PORT,
    RETENTION_SECONDS,
    TRUST_PROXY,
    WORKSPACES_ROOT,
)
from canton_ide_backend.errors import CommandError, FileSetError, RateLimitedError, ToolchainNotFoundError
from canton_ide_backend.janitor import Janitor
from canton_ide_backend.orchestrator import SessionOrchestrator
from canton_ide_backend.rate_limit import AdmissionController
from canton_ide_backend.templates import get_template_files, list_templates
from canton_ide_backend.toolchain import Toolchain


logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


class BuildRequest(BaseModel):
    # Shape is checked by validate_file_set.
    files: Optional[Any] = None
    template: Optional[str] = None


class NewProjectRequest(BaseModel):
    template: str
    name: str


def client_identity(request: Request) -> str:
    if request.app.state.trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else "unknown"


async def enforce_rate_limit(request: Request) -> None:
    # Runs before the body is handed to the orchestrator: rejected requests
    # never get a session.
    admission: AdmissionController = request.app.state.admission
    decision = admission.admit(client_identity(request))
    if not decision.allowed:
        minutes = max(1, round(admission.window_seconds / 60))
        raise RateLimitedError(
            decision.retry_after,
            f"Too many build requests. Please try again in {minutes} minutes.",
        )


router = APIRouter()


@router.get("/health")
async def health() -> JSONResponse:
    return JSONResponse({"status": "ok", "message": "Canton IDE Backend is running"})


async def _run_operation(kind: str, payload: BuildRequest, request: Request) -> JSONResponse:
    orchestrator: SessionOrchestrator = request.app.state.orchestrator
    if payload.template:
        logger.info("%s requested for template %s", kind, payload.template)
    result = await orchestrator.execute(kind, payload.files)
    return JSONResponse(result.to_payload(), status_code=200 if result.success else 500)


@router.post("/build", dependencies=[Depends(enforce_rate_limit)])
async def build(payload: BuildRequest, request: Request) -> JSONResponse:
    return await _run_operation("build", payload, request)


@router.post("/test", dependencies=[Depends(enforce_rate_limit)])
async def run_test(payload: BuildRequest, request: Request) -> JSONResponse:
    return await _run_operation("test", payload, request)


@router.get("/templates")
async def templates() -> JSONResponse:
    return JSONResponse({"templates": list_templates()})


@router.get("/templates/{name}")
async def template(name: str) -> JSONResponse:
    files = get_template_files(name)
    if files is None:
        return JSONResponse({"error": "Template not found"}, status_code=404)
    return JSONResponse(files)


@router.get("/toolchain/templates")
async def toolchain_templates(request: Request) -> JSONResponse:
    # The toolchain's template list is fixed for the lifetime of the process.
    state = request.app.state
    if state.toolchain_templates is None:
        async with state.toolchain_templates_lock:
            if state.toolchain_templates is None:
                # Only a cache miss spawns a process, so only a miss is admitted.
                await enforce_rate_limit(request)
                orchestrator: SessionOrchestrator = state.orchestrator
                try:
                    state.toolchain_templates = await orchestrator.list_toolchain_templates()
                except CommandError as exc:
                    return JSONResponse(
                        {"error": "Could not list toolchain templates", "output": exc.stdout, "errors": exc.stderr},
                        status_code=500,
                    )
                except OSError:
                    logger.exception("Could not prepare workspace for template listing")
                    return JSONResponse({"error": "Could not list toolchain templates"}, status_code=500)
    return JSONResponse({"templates": state.toolchain_templates})


@router.post("/toolchain/new", dependencies=[Depends(enforce_rate_limit)])
async def toolchain_new(payload: NewProjectRequest, request: Request) -> JSONResponse:
    orchestrator: SessionOrchestrator = request.app.state.orchestrator
    project = await orchestrator.generate_project(payload.template, payload.name)
    return JSONResponse(project.to_payload(), status_code=200 if project.result.success else 500)


async def _file_set_error(request: Request, exc: FileSetError) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=400)


async def _rate_limited(request: Request, exc: RateLimitedError) -> JSONResponse:
    admission: AdmissionController = request.app.state.admission
    headers = {"Retry-After": admission.retry_after_header(exc.retry_after)}
    logger.info("Rate limited %s (window %gs)", client_identity(request), admission.window_seconds)
    return JSONResponse({"error": exc.message}, status_code=429, headers=headers)


async def _invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse({"error": "Invalid request body"}, status_code=400)


async def _toolchain_missing(request: Request, exc: ToolchainNotFoundError) -> JSONResponse:
    logger.error("Toolchain unavailable: %s", exc)
    return JSONResponse({"success": False, "error": "Toolchain unavailable"}, status_code=503)


def create_app(
    *,
    orchestrator: Optional[SessionOrchestrator] = None,
    admission: Optional[AdmissionController] = None,
    janitor: Optional[Janitor] = None,
    workspaces_root: Path = WORKSPACES_ROOT,
    cors_origins: Optional[list[str]] = None,
    trust_proxy: bool = TRUST_PROXY,
    validate_toolchain: bool = True,
) -> FastAPI:
    orchestrator = orchestrator or SessionOrchestrator(workspaces_root, Toolchain())
    admission = admission or AdmissionController()
    janitor = janitor or Janitor(orchestrator.workspaces_root, JANITOR_INTERVAL_SECONDS, RETENTION_SECONDS)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Fail fast: a missing toolchain should stop the deploy, not the first build.
        if validate_toolchain:
            orchestrator.toolchain = orchestrator.toolchain.resolve()
            logger.info("Using toolchain %s", orchestrator.toolchain.binary)
        orchestrator.workspaces_root.mkdir(parents=True, exist_ok=True)
        app.state.toolchain_templates_lock = asyncio.Lock()
        # Reclaim anything a previous crash left behind, then keep sweeping.
        await janitor.sweep_async()
        janitor.start()
        try:
            yield
        finally:
            await janitor.stop()

    app = FastAPI(title="Canton IDE Backend", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.admission = admission
    app.state.janitor = janitor
    app.state.trust_proxy = trust_proxy
    app.state.toolchain_templates = None

    origins = cors_origins if cors_origins is not None else CORS_ORIGINS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(FileSetError, _file_set_error)
    app.add_exception_handler(RateLimitedError, _rate_limited)
    app.add_exception_handler(ToolchainNotFoundError, _toolchain_missing)
    app.add_exception_handler(RequestValidationError, _invalid_body)

    # The browser client calls /api/*; the bare paths are kept for scripts.
    app.include_router(router)
    app.include_router(router, prefix="/api")
    return app


app = create_app()


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    port = int(os.environ.get("PORT", str(PORT)))
    uvicorn.run("server:app", host=HOST, port=port, reload=False)
