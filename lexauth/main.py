"""iLegal authentication API.

Password login, TOTP second factor, backup codes, rate limiting and security
auditing. Shared components (rate limiter, challenge store, audit log) are
built once in the lifespan handler and kept on ``app.state``.
"""

import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from lexauth.api import auth
from lexauth.config import get_settings
from lexauth.logging_config import bind_context, clear_context, configure_logging, get_logger
from lexauth.middleware.rate_limit import RateLimitMiddleware
from lexauth.middleware.sentry import init_sentry
from lexauth.services.audit import AuditSink, RedisStreamAuditSink, SecurityAuditLog, SqlAuditSink
from lexauth.services.challenges import RedisChallengeStore
from lexauth.services.rate_limiter import RateLimiter, RedisCounterStore, policies_from_settings
from lexauth.utils.db import async_session_factory, close_db, engine, init_db
from lexauth.utils.errors import AuthError
from lexauth.utils.json_utils import ORJSONResponse
from lexauth.utils.redis_client import close_redis, get_redis, init_redis
from lexauth.utils.security import warm_password_decoy

API_V1_PREFIX = "/api/v1"
VERSION = "1.0.0"

settings = get_settings()

configure_logging(
    log_level=settings.log_level,
    json_logs=settings.app_env == "production",
    app_env=settings.app_env,
)
logger = get_logger(__name__)

if init_sentry(
    dsn=settings.sentry_dsn,
    environment=settings.app_env,
    release=VERSION,
    traces_sample_rate=settings.sentry_traces_sample_rate if settings.app_env == "production" else 0.0,
):
    logger.info("sentry_initialized")
elif settings.app_env == "production":
    logger.warning("sentry_dsn_missing")


def build_audit_sink(redis: Redis) -> AuditSink:
    if settings.audit_sink == "redis":
        return RedisStreamAuditSink(redis, max_len=settings.audit_stream_max_len)
    return SqlAuditSink(async_session_factory)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("application_starting", env=settings.app_env)

    await init_db()
    redis = await init_redis()
    warm_password_decoy()

    audit_log = SecurityAuditLog(build_audit_sink(redis))
    app.state.audit_log = audit_log
    app.state.challenge_store = RedisChallengeStore(redis)
    app.state.rate_limiter = RateLimiter(
        RedisCounterStore(redis),
        policies=policies_from_settings(settings),
        audit_log=audit_log,
    )
    logger.info("application_started", audit_sink=settings.audit_sink)

    try:
        yield
    finally:
        await close_redis()
        await close_db()
        logger.info("application_stopped")


app = FastAPI(
    title="iLegal Auth API",
    description="Credential verification: password, TOTP and backup codes",
    version=VERSION,
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
    docs_url="/docs" if settings.app_debug else None,
    redoc_url="/redoc" if settings.app_debug else None,
)


class TraceIdMiddleware(BaseHTTPMiddleware):
    """Give every request a trace id, bind it to logs and echo it back."""

    async def dispatch(self, request: Request, call_next):
        trace_id = request.headers.get("X-Trace-Id") or uuid.uuid4().hex
        request.state.trace_id = trace_id
        clear_context()
        bind_context(trace_id=trace_id)

        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Trace-Id"] = trace_id

        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return response


# Outermost last: trace id, then CORS, then rate limiting
app.add_middleware(RateLimitMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept-Language", "X-Trace-Id"],
    expose_headers=[
        "X-Trace-Id",
        "Retry-After",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
)
app.add_middleware(TraceIdMiddleware)


def _trace_headers(request: Request) -> dict[str, str]:
    trace_id = getattr(request.state, "trace_id", None)
    return {"X-Trace-Id": trace_id} if trace_id else {}


def error_body(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"error": {"code": code, "message": message, "details": details or {}}}


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> ORJSONResponse:
    logger.info("auth_rejected", code=exc.code, status_code=exc.status_code)

    headers = {**_trace_headers(request), **getattr(exc, "headers", {})}
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers.setdefault("WWW-Authenticate", "Bearer")
    return ORJSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    # Field locations only; submitted values may be credentials
    fields = [".".join(str(part) for part in err["loc"][1:]) for err in exc.errors()]
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_body("VALIDATION_ERROR", "Invalid request", {"fields": fields}),
        headers=_trace_headers(request),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> ORJSONResponse:
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        content = exc.detail
    else:
        content = error_body("HTTP_ERROR", str(exc.detail))
    headers = {**(exc.headers or {}), **_trace_headers(request)}
    return ORJSONResponse(status_code=exc.status_code, content=content, headers=headers)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> ORJSONResponse:
    logger.error("unhandled_error", error_type=type(exc).__name__, exc_info=True)
    message = f"{type(exc).__name__}: {exc}" if settings.app_debug else "Internal server error"
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("INTERNAL_ERROR", message),
        headers=_trace_headers(request),
    )


async def _check_database() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.error("database_health_check_failed", error=type(e).__name__)
        return "unhealthy"
    return "healthy"


async def _check_redis() -> str:
    redis = get_redis()
    if redis is None:
        return "not initialized"
    try:
        await redis.ping()
    except (RedisError, OSError) as e:
        # Counters fail open without Redis; login challenges do not
        logger.error("redis_health_check_failed", error=type(e).__name__)
        return "unhealthy"
    return "healthy"


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, Any]:
    services = {"database": await _check_database(), "redis": await _check_redis()}
    healthy = all(state == "healthy" for state in services.values())
    return {
        "status": "healthy" if healthy else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
        "services": services,
    }


app.include_router(auth.router, prefix=API_V1_PREFIX)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "lexauth.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.app_debug,
    )
