import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from dropwatch.api.routes import router
from dropwatch.config import settings
from dropwatch.modules.ingest import FixValidationError, TransientStoreError
from dropwatch.schemas.error import ErrorResponse

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log the pipeline configuration; it is read once per process."""
    logger.info(
        "DropWatch starting: tau_short=%ss, delay_threshold=%smin, h3_resolution=%s, min_samples_hourly=%s",
        settings.TAU_SHORT_SECONDS, settings.DELAY_THRESHOLD_MINUTES,
        settings.H3_RESOLUTION, settings.MIN_SAMPLES_FOR_HOURLY,
    )
    if settings.MICRO_DROP_FACTOR <= 1.0:
        logger.warning("MICRO_DROP_FACTOR %.2f <= 1, no gap will classify as micro", settings.MICRO_DROP_FACTOR)
    yield


app = FastAPI(
    title="DropWatch",
    description=(
        "Positioning-drop detection, corridor travel-time baselines and "
        "delay/overspeed alerting for vehicle fleets."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

# CORS origins from settings (comma-separated env var)
cors_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1")


# ── Structured error handlers ─────────────────────────────────────────────────

@app.exception_handler(FixValidationError)
async def fix_validation_error_handler(request: Request, exc: FixValidationError):
    body = ErrorResponse(error="Validation error", detail=exc.errors or str(exc))
    return JSONResponse(status_code=422, content=body.model_dump(mode="json"))


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"error": "Validation error", "detail": str(exc)})


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    return JSONResponse(status_code=409, content={"error": "Conflict", "detail": str(exc.orig) if exc.orig else str(exc)})


@app.exception_handler(TransientStoreError)
async def transient_store_error_handler(request: Request, exc: TransientStoreError):
    return JSONResponse(status_code=503, content={"error": "Transient store conflict", "detail": str(exc)})


@app.exception_handler(Exception)
async def general_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception on %s %s:\n%s", request.method, request.url.path, traceback.format_exc())
    return JSONResponse(status_code=500, content={"error": "Internal server error", "detail": "An unexpected error occurred."})


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "version": "0.1.0"}
