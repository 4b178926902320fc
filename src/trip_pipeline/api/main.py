"""
Trip Pipeline Service - Main FastAPI Application
================================================
HTTP boundary for the itinerary generation pipeline: accept a generation
request, run it in the background, and serve pollable workflow status.
"""

import asyncio
import hmac
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..core.config import Settings, get_settings
from ..core.exceptions import AccessDenied, PipelineValidationError
from ..core.pipeline_factory import PipelineServices, build_pipeline
from ..core.workflow import WorkflowOrchestrator, is_valid_workflow_id
from ..models.pipeline_state import SERVICE_PRINCIPAL, Principal

settings = get_settings()

# Set up logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Global service instances
pipeline: Optional[PipelineServices] = None
session_reaper: Optional[asyncio.Task] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic"""
    global pipeline, session_reaper

    # Startup
    logger.info(f"🚀 Starting {settings.app_name}")

    try:
        pipeline = build_pipeline(settings)
        session_reaper = asyncio.create_task(
            pipeline.session_service.run_reaper(settings.session_sweep_interval_seconds)
        )
        logger.info("✅ Service initialization complete")

    except Exception as e:
        logger.error(f"❌ Service initialization failed: {e}")
        raise

    yield

    # Shutdown
    logger.info(f"🛑 Shutting down {settings.app_name}")

    if session_reaper:
        session_reaper.cancel()
        try:
            await session_reaper
        except asyncio.CancelledError:
            pass
    if pipeline:
        await pipeline.aclose()

    logger.info("✅ Service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    description="Multi-agent travel itinerary generation pipeline",
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=settings.cors_methods,
    allow_headers=settings.cors_headers,
)


# API Models
class GenerateRequest(BaseModel):
    """Request model for itinerary generation"""
    model_config = ConfigDict(populate_by_name=True)

    form_data: Optional[Any] = Field(default=None, alias="formData", description="Trip intake form")
    session_id: Optional[str] = Field(default=None, alias="sessionId", description="Existing session id")


class GenerateResponse(BaseModel):
    """Response model for an accepted generation request"""
    success: bool = True
    workflowId: str
    estimatedCompletion: str
    statusEndpoint: str
    sessionId: str
    message: str = "Itinerary generation started successfully"


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    timestamp: str
    services: Dict[str, str]
    metrics: Dict[str, Any] = Field(default_factory=dict)


# Dependency functions
async def get_pipeline() -> PipelineServices:
    """Get pipeline instance"""
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return pipeline


async def get_principal(
    x_user_id: Optional[str] = Header(default=None),
    x_service_token: Optional[str] = Header(default=None),
    config: Settings = Depends(get_settings),
) -> Principal:
    """Resolve the calling identity from request headers"""
    if x_service_token is not None:
        if config.service_token and hmac.compare_digest(x_service_token, config.service_token):
            return SERVICE_PRINCIPAL
        raise HTTPException(status_code=401, detail="Invalid service token")
    return Principal(user_id=x_user_id or None)


async def execute_workflow(orchestrator: WorkflowOrchestrator, workflow_id: str) -> None:
    """Background entry point for one workflow run"""
    try:
        await orchestrator.run(workflow_id)
    except Exception as e:
        logger.error(f"❌ Workflow {workflow_id} run aborted: {e}")


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are client errors"""
    return JSONResponse(status_code=400, content={"detail": "Malformed request body", "success": False})


# API Endpoints
@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    services = {"pipeline": "healthy" if pipeline else "unavailable"}
    metrics: Dict[str, Any] = {}
    if pipeline:
        open_circuits = pipeline.health.open_count()
        services["providers"] = "degraded" if open_circuits else "healthy"
        services["state_store"] = type(pipeline.store).__name__
        metrics = pipeline.metrics.export_metrics()
        metrics["open_circuits"] = open_circuits

    return HealthResponse(
        status="healthy" if pipeline else "starting",
        version=settings.app_version,
        timestamp=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        services=services,
        metrics=metrics,
    )


@app.post("/api/itinerary/generate", response_model=GenerateResponse)
async def generate_itinerary(
    body: GenerateRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_principal),
    services: PipelineServices = Depends(get_pipeline),
) -> GenerateResponse:
    """
    Accept a generation request and schedule the workflow in the background.

    The response carries the workflow id and the endpoint to poll.
    """
    try:
        submission = await services.orchestrator.submit(body.form_data, body.session_id, principal)
    except PipelineValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AccessDenied as e:
        raise HTTPException(status_code=403, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to accept generation request: {e}")
        raise HTTPException(status_code=500, detail="Failed to start workflow")

    workflow_id = submission.workflow.workflow_id
    try:
        background_tasks.add_task(execute_workflow, services.orchestrator, workflow_id)
    except Exception as e:
        logger.error(f"Failed to enqueue workflow {workflow_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to start workflow")

    base_url = services.settings.public_base_url or str(request.base_url)
    return GenerateResponse(
        workflowId=workflow_id,
        estimatedCompletion=submission.estimated_completion.isoformat(),
        statusEndpoint=f"{base_url.rstrip('/')}/api/itinerary/status/{workflow_id}",
        sessionId=submission.session.session_id,
    )


@app.get("/api/itinerary/status/{workflow_id}")
async def get_itinerary_status(
    workflow_id: str,
    services: PipelineServices = Depends(get_pipeline),
) -> Dict[str, Any]:
    """Poll a workflow's status, progress, result and log"""
    if not is_valid_workflow_id(workflow_id):
        raise HTTPException(status_code=400, detail="Invalid workflow ID format")

    status = await services.orchestrator.get_status(workflow_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return status


@app.get("/api/providers/status")
async def get_providers_status(services: PipelineServices = Depends(get_pipeline)) -> Dict[str, Any]:
    """Circuit breaker snapshot for every registered provider"""
    snapshot = services.health.snapshot()
    providers = []
    for spec in services.registry:
        entry = {
            "name": spec.name,
            "capability": spec.capability.value,
            "operations": sorted(op.value for op in spec.operations),
            "model": spec.model_name,
        }
        entry.update(snapshot.get(spec.name, {}))
        providers.append(entry)
    return {"providers": providers, "open_circuits": services.health.open_count()}


@app.get("/api/session/{session_id}/budget")
async def get_session_budget(
    session_id: str,
    principal: Principal = Depends(get_principal),
    services: PipelineServices = Depends(get_pipeline),
) -> Dict[str, Any]:
    """Spend summary for a session"""
    try:
        ledger = await services.store.get_ledger(session_id, principal)
    except AccessDenied as e:
        raise HTTPException(status_code=403, detail=str(e))
    if ledger is None:
        raise HTTPException(status_code=404, detail="Session not found")

    summary = ledger.to_summary()
    summary["usage_records"] = len(await services.store.list_usage_records(session_id))
    return summary


@app.post("/api/session/{session_id}/flush")
async def flush_session(
    session_id: str,
    principal: Principal = Depends(get_principal),
    services: PipelineServices = Depends(get_pipeline),
) -> Dict[str, Any]:
    """Explicitly end a session and drop its stored form inputs"""
    try:
        session = await services.session_service.flush(session_id, principal)
    except AccessDenied as e:
        raise HTTPException(status_code=403, detail=str(e))
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"success": True, "sessionId": session.session_id, "state": session.state.value}


# Main entry point
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "trip_pipeline.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
