import logging
import time

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from shiftcare_shared import OTPError, RedisRateLimiter, SlidingWindowLimiter

from .config import settings
from .database import engine
from .errors import (
    AppError,
    app_error_handler,
    http_exception_handler,
    otp_error_handler,
    unhandled_exception_handler,
)
from .metrics import REQ_DURATION, REQUESTS
from .middleware_request_id import RequestIDMiddleware
from .models import Base
from .routers import healthcare_otp as healthcare_otp_router
from .routers import otp as otp_router
from .routers import session as session_router
from .utils.otp import build_otp_runtime

logger = logging.getLogger("shiftcare.app")

UNMATCHED_ROUTE = "<unmatched>"


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": {
                "code": "invalid_request",
                "message": "Request body is not valid",
                "details": {"errors": [str(err.get("msg", "")) for err in exc.errors()]},
            },
        },
    )


def create_app() -> FastAPI:
    app = FastAPI(title="ShiftCare Auth API", version="0.1.0", docs_url="/docs")

    allowed_origins = settings.ALLOWED_ORIGINS or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials="*" not in allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID + JSON request log
    app.add_middleware(RequestIDMiddleware)

    # Rate limiting
    backend = (settings.RATE_LIMIT_BACKEND or "").lower()
    common_excludes = ["/health", "/metrics", "/docs", "/openapi.json"]
    if backend == "redis":
        app.add_middleware(
            RedisRateLimiter,
            redis_url=settings.REDIS_URL,
            limit_per_minute=settings.RATE_LIMIT_PER_MINUTE,
            auth_boost=settings.RATE_LIMIT_AUTH_BOOST,
            prefix=settings.RATE_LIMIT_REDIS_PREFIX,
            otp_limit_per_minute=settings.RATE_LIMIT_OTP_PER_MINUTE,
            exclude_paths=common_excludes,
        )
    else:
        app.add_middleware(
            SlidingWindowLimiter,
            limit_per_minute=settings.RATE_LIMIT_PER_MINUTE,
            auth_boost=settings.RATE_LIMIT_AUTH_BOOST,
            otp_limit_per_minute=settings.RATE_LIMIT_OTP_PER_MINUTE,
            exclude_paths=common_excludes,
        )

    if settings.AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine)

    app.state.otp = build_otp_runtime()

    @app.get("/health")
    def health():
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return {"status": "ok", "env": settings.ENV}

    @app.middleware("http")
    async def _metrics_mw(request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        # Unmatched requests (404s, limiter rejections) share one label
        route = getattr(request.scope.get("route"), "path", None) or UNMATCHED_ROUTE
        REQUESTS.labels(request.method, route, str(response.status_code)).inc()
        REQ_DURATION.labels(request.method, route).observe(duration)
        return response

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(otp_router.router)
    app.include_router(healthcare_otp_router.router)
    app.include_router(session_router.router)

    # Error handlers
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(OTPError, otp_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.on_event("startup")
    def _start_sweeper():
        app.state.otp.sweeper.start()
        logger.info("OTP sweeper started (every %ss)", app.state.otp.sweeper.interval_secs)

    @app.on_event("shutdown")
    def _stop_sweeper():
        app.state.otp.sweeper.stop()

    return app


app = create_app()
