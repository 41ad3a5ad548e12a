"""
main.py
FastAPI application entry point.
Registers all routers, middleware, exception handlers and startup/shutdown.

Operational features:
- Structured JSON logging tagged with the request id
- Redis fixed-window rate limiting (fails open)
- Domain errors mapped to HTTP statuses in one place
- Prometheus metrics
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.exc import IntegrityError

from config.database import close_db, init_db
from config.redis_client import close_redis, init_redis
from config.settings import settings
from shared.errors import AppError, InternalError

# Service routers
from services.auth.router import router as auth_router
from services.barber.router import router as barber_router
from services.catalog.router import router as catalog_router
from services.availability.router import router as availability_router
from services.appointment.router import router as appointment_router
from services.payment.router import router as payment_router
from services.review.router import router as review_router
from services.notification.router import router as notification_router
from services.search.router import router as search_router
from services.admin.router import router as admin_router


# ── Logging ──────────────────────────────────────────────────

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.APP_ENV})")

    await init_db()
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    yield

    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Barber Booking Platform API

- **Auth**: email/mobile + password, OTP verification, JWT (15min) + rotating refresh tokens
- **Barbers & Services**: shop profiles and priced, timed services
- **Availability**: published time slots per day
- **Appointments**: book, reschedule, cancel, confirm, complete
- **Payments**: Razorpay and Stripe checkout, webhooks, refunds
- **Reviews**: one per customer per barber, aggregated rating
- **Admin**: verification, moderation, dashboard, slot reconciliation

### Authentication
Protected endpoints require `Authorization: Bearer <access_token>`.

### Roles
- `customer`: book appointments, pay, review
- `barber`: manage shop, services, availability and appointments
- `admin`: full platform access
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (order matters: outermost first) ────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Fixed-window limiter keyed by IP for anonymous callers and by token
        for authenticated ones. Webhooks, health and metrics are exempt.
        """
        path = request.url.path
        if path in {"/health", "/docs", "/redoc", "/openapi.json", "/metrics"} or path.startswith(
            "/payments/webhook"
        ):
            return await call_next(request)

        try:
            from config.redis_client import RedisCache, redis_client
            if redis_client:
                auth_header = request.headers.get("Authorization", "")
                if auth_header.startswith("Bearer "):
                    key = f"rate:auth:{hash(auth_header[7:])}"
                    limit = settings.RATE_LIMIT_PER_MINUTE
                else:
                    client_ip = request.client.host if request.client else "unknown"
                    key = f"rate:unauth:{client_ip}"
                    limit = settings.RATE_LIMIT_UNAUTH_PER_MINUTE

                if not await RedisCache(redis_client).check_rate_limit(key, limit, 60):
                    logger.warning(f"Rate limit exceeded for {key}")
                    return JSONResponse(
                        status_code=429,
                        content={"detail": "Rate limit exceeded. Please slow down."},
                        headers={"Retry-After": "60"},
                    )
        except Exception as e:
            # Fail open when Redis is unavailable
            logger.error(f"Rate limit check failed: {e}")

        return await call_next(request)

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request and every log line it produces."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        request_id = getattr(request.state, "request_id", None)
        if isinstance(exc, InternalError):
            logger.error(f"[{request_id}] Internal error on {request.url.path}: {exc.message}")
            return JSONResponse(
                status_code=500,
                content={"detail": InternalError.default_message, "request_id": request_id},
            )
        content = {"detail": exc.message}
        if exc.code:
            content["code"] = exc.code
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError):
        logger.warning(f"Integrity conflict on {request.url.path}: {exc.orig}")
        return JSONResponse(
            status_code=409,
            content={"detail": "Request conflicts with existing data"},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Exception: {exc}", exc_info=True)
        detail = str(exc) if settings.DEBUG else "An internal server error occurred"
        return JSONResponse(
            status_code=500,
            content={"detail": detail, "request_id": request_id},
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from sqlalchemy import text
        from config.database import AsyncSessionLocal
        from config.redis_client import redis_client

        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception:
            checks["database"] = "error"
            checks["status"] = "degraded"

        try:
            if redis_client:
                await redis_client.ping()
            checks["redis"] = "ok"
        except Exception:
            checks["redis"] = "error"
            checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    app.include_router(auth_router)
    app.include_router(barber_router)
    app.include_router(catalog_router)
    app.include_router(availability_router)
    app.include_router(appointment_router)
    app.include_router(payment_router)
    app.include_router(review_router)
    app.include_router(notification_router)
    app.include_router(search_router)
    app.include_router(admin_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
