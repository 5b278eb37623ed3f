"""
FastAPI Funnel Metrics Application

Serves order funnel metrics computed over the sessionized event warehouse.

Features:
- Funnel metrics recomputed from the warehouse on every request
- Read-only data views of the stored events
- What-if re-sessionization with a different session length
- Health checks
- Error translation (no data → 404, upstream failure → 500)
"""

import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from deployment.api.config import settings
from sessionfunnel.data.sessionization import resessionize
from sessionfunnel.errors import InvalidInputError, NoDataError, UpstreamUnavailableError
from sessionfunnel.metrics.funnel import compute_funnel_metrics
from sessionfunnel.storage.warehouse import EventWarehouse

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title=settings.api_title,
    description=settings.api_description,
    version=settings.api_version,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_credentials,
    allow_methods=["GET"],
    allow_headers=["*"],
)


# ============================================================================
# Pydantic Models for Responses
# ============================================================================

class Message(BaseModel):
    """Plain message response."""

    message: str


class MetricsResponse(BaseModel):
    """Order funnel metrics."""

    median_visits_before_order: float = Field(..., description="Median sessions between consecutive orders")
    median_session_duration_minutes_before_order: float = Field(
        ..., description="Median session duration (minutes) before a customer's first order"
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "median_visits_before_order": 2.0,
                "median_session_duration_minutes_before_order": 7.5
            }
        }
    )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    warehouse_connected: bool
    events_loaded: Optional[int]
    uptime_seconds: float
    timestamp: str


class DataViewResponse(BaseModel):
    """Slice of the stored event table."""

    sessionized: bool
    side: str
    nrow: int
    columns: List[str]
    rows: List[Dict[str, Any]]


class ResessionizeResponse(BaseModel):
    """Outcome of re-sessionizing the stored events with a new session length."""

    message: str
    session_length: int
    customers: int
    sessions: int
    metrics: Optional[MetricsResponse] = None


# ============================================================================
# Warehouse Dependency
# ============================================================================

_warehouse: Optional[EventWarehouse] = None


def get_warehouse() -> EventWarehouse:
    """Connection to the event warehouse, opened on first use."""
    global _warehouse
    if _warehouse is None:
        _warehouse = EventWarehouse(settings.warehouse_path, settings.stage_dir).connect()
    return _warehouse


# ============================================================================
# Error Translation
# ============================================================================

@app.exception_handler(NoDataError)
@app.exception_handler(InvalidInputError)
async def not_found_handler(request: Request, exc: Exception):
    logger.info(f"No result for {request.url.path}: {exc}")
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(UpstreamUnavailableError)
async def upstream_handler(request: Request, exc: UpstreamUnavailableError):
    logger.error(f"Upstream failure on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Metrics store unavailable"}
    )


# ============================================================================
# API Startup/Shutdown Events
# ============================================================================

start_time = time.time()


@app.on_event("startup")
def startup_event():
    """Prepare the warehouse and copy staged data into it."""
    logger.info("=" * 80)
    logger.info("🚀 Starting Session Funnel Metrics API")
    logger.info("=" * 80)

    if settings.load_stage_on_startup:
        warehouse = get_warehouse()
        warehouse.prepare_db()
        warehouse.copy_stage_to_table(
            poll_interval=settings.stage_poll_seconds,
            max_attempts=settings.stage_max_attempts
        )

    logger.info("API ready to serve requests")


@app.on_event("shutdown")
def shutdown_event():
    """Close the warehouse connection."""
    logger.info("Shutting down API")
    if _warehouse is not None:
        _warehouse.close()


# ============================================================================
# API Endpoints
# ============================================================================

@app.get("/", tags=["General"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.api_title,
        "version": settings.api_version,
        "status": "running",
        "docs": "/docs",
        "health": "/health"
    }


@app.get("/ping", response_model=Message, tags=["General"])
async def ping():
    return Message(message="pong")


@app.get("/health", response_model=HealthResponse, tags=["General"])
def health_check(warehouse: EventWarehouse = Depends(get_warehouse)):
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        Warehouse reachability, loaded row count and uptime
    """
    try:
        events_loaded = warehouse.row_count()
        connected = True
    except UpstreamUnavailableError as e:
        logger.warning(f"Health check could not reach warehouse: {e}")
        events_loaded = None
        connected = False

    return HealthResponse(
        status="healthy" if connected else "degraded",
        warehouse_connected=connected,
        events_loaded=events_loaded,
        uptime_seconds=time.time() - start_time,
        timestamp=datetime.now().isoformat()
    )


@app.get("/metrics/orders", response_model=MetricsResponse, tags=["Metrics"])
def order_metrics(warehouse: EventWarehouse = Depends(get_warehouse)):
    """
    Funnel metrics over the full stored event history.

    Raises:
        404 if there is no data to compute a metric from, 500 if the
        warehouse is unavailable
    """
    snapshot = warehouse.publish_metrics()
    logger.info(f"Published metrics: {snapshot}")
    return MetricsResponse(**snapshot.to_dict())


@app.get("/data/view", response_model=DataViewResponse, tags=["Data"])
def view_data(
    sessionized: bool = False,
    side: str = Query("top", pattern="^(top|bottom)$"),
    nrow: int = Query(5, ge=1, le=1000),
    warehouse: EventWarehouse = Depends(get_warehouse)
):
    """
    Show the first or last rows of the stored events.

    Args:
        sessionized: Include time_diff / new_session / session_number columns
        side: "top" or "bottom"
        nrow: Number of rows
    """
    df = warehouse.view_data(sessionized=sessionized, side=side, nrow=nrow)
    if df.empty:
        raise NoDataError("No events loaded")

    return DataViewResponse(
        sessionized=sessionized,
        side=side,
        nrow=len(df),
        columns=list(df.columns),
        rows=json.loads(df.to_json(orient="records", date_format="iso", date_unit="us"))
    )


@app.get("/data/re-sessionize", response_model=ResessionizeResponse, tags=["Data"])
def re_sessionize(
    session_length: int = Query(settings.default_session_length, ge=0),
    warehouse: EventWarehouse = Depends(get_warehouse)
):
    """
    Re-sessionize the stored raw events with another session length.

    The stored table is left untouched; the new sessions only feed the
    response.
    """
    raw = warehouse.load_events(sessionized=False)
    if raw.empty:
        raise NoDataError("No events loaded")

    sessionized = resessionize(raw, session_length=session_length)
    sessions = int(sessionized.groupby("customer_id")["session_number"].max().add(1).sum())

    try:
        metrics = MetricsResponse(**compute_funnel_metrics(sessionized).to_dict())
    except NoDataError as e:
        logger.info(f"No metrics for session length {session_length}: {e}")
        metrics = None

    return ResessionizeResponse(
        message=f"Successfully resessionized the data with a session length of {session_length}",
        session_length=session_length,
        customers=int(sessionized["customer_id"].nunique()),
        sessions=sessions,
        metrics=metrics
    )


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "deployment.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower()
    )
