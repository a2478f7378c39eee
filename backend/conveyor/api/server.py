"""FastAPI server for the Conveyor trigger and run-control API."""

import logging
from contextlib import asynccontextmanager
from itertools import islice
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from conveyor import __version__
from conveyor.api.schemas import (
    ApprovalResponse,
    CancelResponse,
    HealthResponse,
    PipelineSummary,
    TriggerRequest,
    TriggerResponse,
)
from conveyor.exceptions import (
    PipelineNotFoundError,
    RunNotFoundError,
    StorageError,
    ValidationError,
)
from conveyor.observability import initialize_logfire
from conveyor.pipeline import Run, pipeline_to_document
from conveyor.runtime import Runtime, build_runtime
from conveyor.scheduler import create_scheduler

logger = logging.getLogger(__name__)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


# ============================================================================
# Exception handlers
# ============================================================================


async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc), "errors": exc.errors, "cycle": exc.cycle},
    )


async def _request_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Malformed request", "errors": jsonable_encoder(exc.errors())},
    )


async def _not_found(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


async def _storage_error(request: Request, exc: StorageError) -> JSONResponse:
    logger.error(f"Storage error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": f"Run store unavailable: {exc}"},
    )


# ============================================================================
# Routes
# ============================================================================


async def health(runtime: Runtime = Depends(get_runtime)) -> HealthResponse:
    return HealthResponse(
        version=__version__,
        pipelines=len(runtime.catalog),
        active_runs=len(runtime.engine.active_runs()),
    )


async def list_pipelines(runtime: Runtime = Depends(get_runtime)) -> list[PipelineSummary]:
    return [PipelineSummary.from_definition(p) for p in runtime.catalog]


async def get_pipeline(name: str, runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    """Full definition document, as it would be written to a file."""
    return pipeline_to_document(runtime.catalog.get(name))


async def trigger_run(
    name: str,
    body: TriggerRequest | None = None,
    runtime: Runtime = Depends(get_runtime),
) -> TriggerResponse:
    """Create a run and return without waiting for it."""
    body = body or TriggerRequest()
    result = await runtime.trigger.trigger(
        name, body.parameters, idempotency_key=body.idempotency_key
    )
    return TriggerResponse(run_id=result.run_id, status=result.status)


async def list_pipeline_runs(
    name: str,
    limit: int = Query(20, ge=1, le=500),
    runtime: Runtime = Depends(get_runtime),
) -> list[Run]:
    runtime.catalog.get(name)
    return list(islice(runtime.store.list_by_pipeline(name), limit))


async def get_run(run_id: str, runtime: Runtime = Depends(get_runtime)) -> Run:
    return runtime.engine.get_status(run_id)


async def approve_stage(
    run_id: str, stage_name: str, runtime: Runtime = Depends(get_runtime)
) -> ApprovalResponse:
    if not await runtime.engine.approve(run_id, stage_name):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Stage '{stage_name}' of run {run_id} is not awaiting approval",
        )
    return ApprovalResponse(run_id=run_id, stage_name=stage_name)


async def cancel_run(run_id: str, runtime: Runtime = Depends(get_runtime)) -> CancelResponse:
    await runtime.engine.cancel(run_id)
    run = runtime.engine.get_status(run_id)
    return CancelResponse(
        run_id=run_id, status=run.status, cancel_requested=run.cancel_requested
    )


# ============================================================================
# Application factory
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime: Runtime = app.state.runtime

    recovered = runtime.engine.recover_interrupted()
    if recovered:
        logger.warning(f"Marked {recovered} interrupted runs as Failed")

    scheduler = None
    if runtime.settings.scheduler.enabled:
        scheduler = create_scheduler(runtime)
        scheduler.start()
        logger.info(f"✓ Scheduler started with {len(scheduler.get_jobs())} jobs")

    logger.info(f"✓ Conveyor API ready ({len(runtime.catalog)} pipelines)")
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        await runtime.engine.shutdown()
        logger.info("✓ Conveyor API stopped")


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Build the FastAPI application around a runtime."""
    runtime = runtime or build_runtime()

    app = FastAPI(title="Conveyor API", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime.settings.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ValidationError, _validation_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)
    app.add_exception_handler(PipelineNotFoundError, _not_found)
    app.add_exception_handler(RunNotFoundError, _not_found)
    app.add_exception_handler(StorageError, _storage_error)

    app.add_api_route("/health", health, methods=["GET"], response_model=HealthResponse)
    app.add_api_route(
        "/pipelines", list_pipelines, methods=["GET"], response_model=list[PipelineSummary]
    )
    app.add_api_route("/pipelines/{name}", get_pipeline, methods=["GET"])
    app.add_api_route(
        "/pipelines/{name}/runs",
        trigger_run,
        methods=["POST"],
        status_code=status.HTTP_202_ACCEPTED,
        response_model=TriggerResponse,
    )
    app.add_api_route(
        "/pipelines/{name}/runs", list_pipeline_runs, methods=["GET"], response_model=list[Run]
    )
    app.add_api_route("/runs/{run_id}", get_run, methods=["GET"], response_model=Run)
    app.add_api_route(
        "/runs/{run_id}/stages/{stage_name}/approve",
        approve_stage,
        methods=["POST"],
        response_model=ApprovalResponse,
    )
    app.add_api_route(
        "/runs/{run_id}/cancel",
        cancel_run,
        methods=["POST"],
        status_code=status.HTTP_202_ACCEPTED,
        response_model=CancelResponse,
    )

    initialize_logfire(runtime.settings, app)
    return app
