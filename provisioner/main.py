import asyncio
import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from provisioner.config.settings import settings
from provisioner.core.dependencies import ProvisioningRuntime
from provisioner.modules.callbacks import routes as callbacks_routes
from provisioner.modules.provisioning import routes as provisioning_routes
from provisioner.modules.provisioning.scheduler import provisioning_scheduler_loop

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
app = FastAPI(title=settings.app_name, debug=settings.debug, redirect_slashes=False)
app.state.limiter = limiter
app.state.scheduler_task = None
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    message = "Internal server error" if settings.is_production else str(exc)
    return JSONResponse(status_code=500, content={"detail": {"code": "INTERNAL_ERROR", "message": message}})


SECURITY_HEADERS = [
    (b"X-Content-Type-Options", b"nosniff"),
    (b"X-Frame-Options", b"DENY"),
    (b"Referrer-Policy", b"no-referrer"),
]
API_PREFIX = "/api/v1"


class SecurityHeadersMiddleware:
    """Adds security headers to every response and marks API responses no-store"""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        no_store = scope["path"].startswith(API_PREFIX)

        async def send_with_headers(message):
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.extend(SECURITY_HEADERS)
                if no_store:
                    headers.append((b"Cache-Control", b"no-store"))
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_with_headers)


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Authorization", "Content-Type", "X-Admin-API-Key"],
)

app.include_router(provisioning_routes.router, prefix=API_PREFIX)
app.include_router(callbacks_routes.router, prefix=API_PREFIX)


def start_scheduler() -> asyncio.Task:
    task = asyncio.create_task(provisioning_scheduler_loop(
        ProvisioningRuntime.get_engine(),
        ProvisioningRuntime.get_service(),
        sweep_interval=settings.sweep_interval_seconds,
        cleanup_interval=settings.cleanup_interval_seconds,
    ))
    logger.info(
        f"Provisioning scheduler started: timeout sweep every {settings.sweep_interval_seconds}s, "
        f"cleanup every {settings.cleanup_interval_seconds}s"
    )
    return task


@app.on_event("startup")
async def startup_event():
    logger.info(f"Starting {settings.app_name} ({settings.environment}, store={settings.job_store_backend})")
    if settings.scheduler_enabled:
        app.state.scheduler_task = start_scheduler()


@app.on_event("shutdown")
async def shutdown_event():
    task, app.state.scheduler_task = app.state.scheduler_task, None
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.info("Provisioning scheduler stopped")


@app.get("/")
async def root():
    return {"message": "Welcome to faceblog-provisioner", "status": "healthy"}


@app.get("/health")
@limiter.exempt
async def health():
    return {"status": "healthy"}


@app.get("/ready")
@limiter.exempt
async def ready():
    """Readiness probe: the job store must be reachable."""
    try:
        ProvisioningRuntime.get_store().count()
    except Exception as e:
        logger.error(f"Readiness check failed: {str(e)}")
        return JSONResponse(status_code=503, content={"status": "not ready"})
    return {"status": "ready"}
