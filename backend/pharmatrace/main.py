import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from pharmatrace.core.config import Settings, get_settings
from pharmatrace.core.database import create_db_engine, create_session_factory
from pharmatrace.core.errors import (
    DecodeError,
    DuplicateSerial,
    NotFound,
    QuantityExceeded,
    StoreError,
    TraceError,
)
from pharmatrace.routers import scan, shipments

# ── Structured JSON logging ──────────────────────────────────────────────

logger = logging.getLogger("pharmatrace")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        import json
        log = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0]:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log)


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())
    # Reduce noise from third-party libs
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


# ── Middleware ────────────────────────────────────────────────────────────


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


# ── Error mapping ─────────────────────────────────────────────────────────

_STATUS_BY_ERROR: list[tuple[type[TraceError], int]] = [
    (NotFound, 404),
    (DecodeError, 422),
    (DuplicateSerial, 409),
    (QuantityExceeded, 409),
    (StoreError, 503),
]


async def trace_error_handler(request: Request, exc: TraceError):
    status_code = next(
        (code for error_cls, code in _STATUS_BY_ERROR if isinstance(exc, error_cls)),
        400,
    )
    content = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, StoreError):
        # Outcome unknown: the caller must re-read before retrying
        content["hint"] = "Re-check the shipment by transfer id before retrying"
        logger.warning("Store error on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content=content)


# ── App setup ─────────────────────────────────────────────────────────────


def create_app(settings: Settings | None = None, session_factory=None) -> FastAPI:
    """Build the application around an explicit settings value.

    Tests pass their own ``session_factory``; otherwise one is created from
    ``settings.DATABASE_URL``.
    """
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    if session_factory is None:
        session_factory = create_session_factory(create_db_engine(settings))

    app = FastAPI(title="PharmaTrace - Serialized Unit Tracking", version="1.0.0")
    app.state.settings = settings
    app.state.session_factory = session_factory

    app.add_exception_handler(TraceError, trace_error_handler)

    # Middleware order: outermost runs first
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(shipments.router)
    app.include_router(scan.router)

    @app.get("/api/health")
    def health():
        checks: dict = {}

        # Database connectivity
        db = app.state.session_factory()
        try:
            db.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except SQLAlchemyError:
            logger.exception("Health check: database unreachable")
            checks["database"] = "error"
        finally:
            db.close()

        overall = "ok" if all(v == "ok" for v in checks.values()) else "degraded"
        return {"status": overall, "checks": checks}

    return app
