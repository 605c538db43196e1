"""
ChainTrust — Web3 Organization Registry
Domain, wallet and social verification with continuous proof monitoring
and community trust scoring.

Start with:
    uvicorn chaintrust.main:app --host 0.0.0.0 --port 8000
"""
import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from chaintrust import __version__
from chaintrust.config import settings
from chaintrust.service import shared_engine
from chaintrust.workers.scheduler import run_in_process

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("platform_starting",
                version=__version__,
                environment=settings.ENVIRONMENT,
                scheduler_in_process=settings.SCHEDULER_IN_PROCESS)

    stop = asyncio.Event()
    scheduler = None
    if settings.SCHEDULER_IN_PROCESS:
        scheduler = asyncio.create_task(run_in_process(shared_engine(), stop))

    yield

    stop.set()
    if scheduler is not None:
        await scheduler
    logger.info("platform_stopped")


app = FastAPI(
    title="ChainTrust — Web3 Organization Registry",
    description=(
        "Challenge-based verification of domains, wallets and social accounts, "
        "continuous proof monitoring and community trust scoring."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "https://chaintrust.dev",
        "https://www.chaintrust.dev",
        "http://localhost:3000",
        "http://localhost:8080",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[
        "X-Request-Id",
        "Retry-After",
    ],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = str(uuid.uuid4())[:8]
    start = time.time()
    request.state.request_id = request_id
    response = await call_next(request)
    duration_ms = round((time.time() - start) * 1000, 2)
    response.headers["X-Request-Id"] = request_id
    response.headers["X-Response-Time"] = f"{duration_ms}ms"
    if request.url.path != "/health":
        logger.info("request",
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    duration_ms=duration_ms,
                    request_id=request_id)
    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_exception",
                 path=request.url.path,
                 error=str(exc),
                 type=type(exc).__name__)
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "Something went wrong. We've been notified.",
            "request_id": getattr(request.state, "request_id", "unknown"),
        },
    )


# === Routers ===

try:
    from chaintrust.api.registry import router as registry_router
    app.include_router(registry_router)
    logger.info("router_loaded", router="registry")
except Exception as e:
    logger.warning("router_failed", router="registry", error=str(e))


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "service": "chaintrust-registry",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/")
async def root():
    return {
        "name": "ChainTrust",
        "tagline": "Verified identity for web3 organizations",
        "version": __version__,
        "endpoints": {
            "create_challenge": "POST /v1/registry/companies/{id}/challenges",
            "verify_challenge": "POST /v1/registry/companies/{id}/challenges/verify",
            "scores": "GET /v1/registry/companies/{id}/scores",
            "risk": "GET /v1/registry/companies/{id}/risk",
            "leaderboard": "GET /v1/registry/leaderboard",
            "monitoring": "GET /v1/registry/monitoring/stats",
            "health": "GET /health",
            "docs": "GET /docs",
        },
    }
