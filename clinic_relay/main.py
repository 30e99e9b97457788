"""
Clinic Relay - FastAPI Main Application
"""

import secrets
import shutil
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.responses import Response

from clinic_relay import __version__
from clinic_relay.config import DurationProberKind, Settings, settings
from clinic_relay.core.exceptions import ConfigError, RelayError
from clinic_relay.core.logging import setup_logging, get_logger, audit_logger
from clinic_relay.models.requests import SttRequest, SummaryRequest
from clinic_relay.models.responses import (
    SttResponse, SummaryResponse, HealthCheckResponse, ErrorResponse
)
from clinic_relay.services.audio_processor import FFmpegTranscoder, build_duration_prober
from clinic_relay.services.llm_service import LLMService
from clinic_relay.services.pipeline import SttPipeline
from clinic_relay.services.stt_service import RecognitionClient

# Initialize logging
setup_logging(settings)
logger = get_logger(__name__)

# Prometheus metrics
request_count = Counter('http_requests_total', 'Total HTTP requests', ['method', 'endpoint', 'status'])
request_duration = Histogram('http_request_duration_seconds', 'HTTP request duration')
stt_chunks_processed = Counter('stt_chunks_processed_total', 'Audio chunks sent to speech recognition')
relay_errors = Counter('relay_errors_total', 'Relay errors by type', ['error_type'])

# Rate limiter
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_requests}/{settings.rate_limit_window} seconds"],
    enabled=settings.rate_limit_enabled,
)


def build_stt_pipeline(settings: Settings) -> Optional[SttPipeline]:
    try:
        recognizer = RecognitionClient(settings)
    except ConfigError as e:
        logger.warning(f"/stt disabled: {e.message}")
        return None
    return SttPipeline(
        settings,
        recognizer=recognizer,
        transcoder=FFmpegTranscoder(settings),
        prober=build_duration_prober(settings),
    )


def build_llm_service(settings: Settings) -> Optional[LLMService]:
    try:
        return LLMService(settings)
    except ConfigError as e:
        logger.warning(f"/summary disabled: {e.message}")
        return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("Clinic Relay starting...")
    logger.info(f"Environment: {settings.environment.value}")
    logger.info(f"Listening on http://{settings.api_host}:{settings.api_port}")

    yield

    logger.info("Clinic Relay shutting down...")


app = FastAPI(
    title=settings.api_title,
    description=settings.api_description,
    version=settings.api_version,
    lifespan=lifespan,
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url=None,
    debug=settings.debug,
)

# Services are built once; a missing credential leaves the endpoint disabled until restart.
app.state.stt_pipeline = build_stt_pipeline(settings)
app.state.llm_service = build_llm_service(settings)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Rate limiting
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    return response


@app.middleware("http")
async def track_requests(request: Request, call_next):
    """Request tracking and Prometheus metrics"""
    start_time = time.time()
    request_id = secrets.token_urlsafe(16)

    request.state.request_id = request_id
    request.state.start_time = start_time

    audit_logger.log_request(
        request_id=request_id,
        endpoint=request.url.path,
        method=request.method,
        client_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )

    try:
        response = await call_next(request)
    except Exception as e:
        request_count.labels(method=request.method, endpoint=request.url.path, status=500).inc()
        logger.error(f"Request {request_id} failed: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": {"message": "An internal error occurred", "type": "internal_error"}},
            headers={"X-Request-ID": request_id},
        )

    duration = time.time() - start_time
    request_count.labels(
        method=request.method,
        endpoint=request.url.path,
        status=response.status_code
    ).inc()
    request_duration.observe(duration)

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Processing-Time"] = f"{duration:.3f}s"
    return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


@app.get("/health", response_model=HealthCheckResponse)
@limiter.exempt
async def health_check(request: Request):
    """Liveness probe, no side effects"""
    return HealthCheckResponse(ok=True, version=__version__)


@app.get("/ready")
@limiter.exempt
async def readiness_check(request: Request):
    """
    Reports whether the credentials are configured and the transcoding
    binaries can be resolved. 200 when all checks pass, otherwise 503.
    """
    checks = {
        "speech_credentials": request.app.state.stt_pipeline is not None,
        "generation_credentials": request.app.state.llm_service is not None,
        "ffmpeg": shutil.which(settings.ffmpeg_path) is not None,
        "ffprobe": (
            settings.duration_prober != DurationProberKind.FFPROBE
            or shutil.which(settings.ffprobe_path) is not None
        ),
    }
    all_ok = all(checks.values())
    if not all_ok:
        logger.warning(f"Readiness check failed: {checks}")
    return JSONResponse(
        status_code=status.HTTP_200_OK if all_ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if all_ok else "unavailable", "checks": checks},
    )


@app.get("/metrics")
@limiter.exempt
async def metrics(request: Request):
    """Prometheus metrics"""
    if not settings.enable_metrics:
        return JSONResponse(status_code=404, content={"error": {"message": "Metrics disabled"}})
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post(
    "/stt",
    response_model=SttResponse,
    responses={
        400: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
)
async def speech_to_text(request: Request, body: SttRequest):
    """
    Transcribes a base64 recording of any length into a speaker-annotated transcript.
    """
    pipeline: Optional[SttPipeline] = request.app.state.stt_pipeline
    if pipeline is None:
        raise ConfigError("Server is missing GOOGLE_API_KEY / EXPO_PUBLIC_GOOGLE_API_KEY")

    request_id = _request_id(request)
    audio_data = pipeline.audio_processor.decode_audio_base64(body.audio_base64)
    result = await pipeline.run(request_id, audio_data, body.language_code)
    stt_chunks_processed.inc(result.chunks_processed)

    return SttResponse(
        transcription=result.transcription,
        chunks_processed=result.chunks_processed,
        raw=result.raw,
    )


@app.post(
    "/summary",
    response_model=SummaryResponse,
    responses={
        400: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def summarize_transcript(request: Request, body: SummaryRequest):
    """
    Turns a transcript into the structured elder-friendly report.
    """
    llm_service: Optional[LLMService] = request.app.state.llm_service
    if llm_service is None:
        raise ConfigError("Server is missing GEMINI_API_KEY (GOOGLE_API_KEY is used as a fallback)")

    current_date = llm_service.current_date()
    report = await llm_service.summarize(
        body.transcription,
        elder_title=body.elder_title,
        current_date=current_date,
        request_id=_request_id(request),
    )
    logger.info(f"[{_request_id(request)}] Summary generated for a {len(body.transcription)} character transcript")

    return SummaryResponse(current_date=current_date, model=llm_service.model, summary=report)


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError):
    """Translate relay errors into their JSON error bodies"""
    request_id = _request_id(request)
    relay_errors.labels(error_type=exc.error_type).inc()
    audit_logger.log_failure(
        request_id=request_id,
        error_type=exc.error_type,
        message=exc.message,
        status_code=exc.status_code,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response_body(),
        headers={"X-Request-ID": request_id},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies are plain 400s"""
    fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
    message = f"Invalid or missing field(s): {', '.join(fields)}" if fields else "Invalid request body"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": {"message": message, "type": "invalid_request"}},
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Custom rate limit error handler"""
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"error": {"message": "Too many requests. Please try again later.", "type": "rate_limited"}},
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "clinic_relay.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development"
    )
