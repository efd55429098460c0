"""FastAPI application exposing the tab configuration API."""

from __future__ import annotations

import os
import secrets
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

import jwt
import structlog
from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session
from structlog.contextvars import bind_contextvars, unbind_contextvars

from clinictabs import presets, seed, tab_configs
from clinictabs.db import create_all, get_session, session_scope
from clinictabs.errors import ForbiddenError, TabConfigError, UnauthorizedError
from clinictabs.observability import (
    REQUEST_COUNTER,
    REQUEST_LATENCY,
    configure_logging,
    normalise_path_for_metrics,
)
from clinictabs.schemas import (
    MessageResponse,
    PresetApplyRequest,
    PresetApplyResponse,
    PresetDiff,
    PresetOut,
    PresetPreview,
    ReorderRequest,
    ReorderResponse,
    ResetRequest,
    ResetResponse,
    SeedResponse,
    TabConfigCreate,
    TabConfigOut,
    TabConfigUpdate,
    VisibilityUpdate,
)
from clinictabs.scopes import CallerContext, TabScope

load_dotenv()
configure_logging()

logger = structlog.get_logger(__name__)

ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
_DEV_ENVIRONMENTS = {"development", "dev", "local", "test"}

# ---------------------------------------------------------------------------
# JWT identity helpers
# ---------------------------------------------------------------------------
JWT_SECRET = os.getenv("JWT_SECRET")
if not JWT_SECRET:
    if ENVIRONMENT not in _DEV_ENVIRONMENTS:
        raise RuntimeError("JWT_SECRET must be set outside development")
    JWT_SECRET = secrets.token_urlsafe(48)
    logger.warning("jwt_secret_generated", environment=ENVIRONMENT)
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

bearer = HTTPBearer(auto_error=False)


def create_access_token(
    user_id: int | None,
    organization_id: int,
    role: str | None = None,
    role_id: int | None = None,
    *,
    expires_minutes: int | None = None,
) -> str:
    """Create a signed JWT carrying the caller's tenant identity."""
    minutes = expires_minutes or ACCESS_TOKEN_EXPIRE_MINUTES
    payload: Dict[str, Any] = {
        "org": organization_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=minutes),
    }
    if user_id is not None:
        payload["sub"] = str(user_id)
    if role is not None:
        payload["role"] = role
    if role_id is not None:
        payload["role_id"] = role_id
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def _optional_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    return int(value)


def get_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> CallerContext:
    """Decode the bearer token into a :class:`CallerContext`."""
    if credentials is None:
        raise UnauthorizedError("Missing bearer token")
    try:
        data = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise UnauthorizedError("Invalid or expired token") from None
    if data.get("org") in (None, ""):
        raise UnauthorizedError("Token does not identify an organization")
    try:
        return CallerContext(
            organization_id=int(data["org"]),
            user_id=_optional_int(data.get("sub")),
            role_id=_optional_int(data.get("role_id")),
            role=data.get("role"),
        )
    except (TypeError, ValueError):
        raise UnauthorizedError("Malformed identity claims") from None


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------
class ErrorDetail(BaseModel):
    """Details describing an error response payload."""

    code: int
    message: str
    type: str
    details: Any | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    success: Literal[False] = False
    error: ErrorDetail


_STATUS_TYPES = {
    400: "ValidationError",
    401: "Unauthorized",
    403: "Forbidden",
    404: "NotFound",
    409: "InvalidState",
}


def _build_error_response(
    status_code: int,
    message: str,
    error_type: str | None = None,
    details: Any | None = None,
) -> JSONResponse:
    payload = ErrorResponse(
        error=ErrorDetail(
            code=status_code,
            message=message,
            type=error_type or _STATUS_TYPES.get(status_code, "Error"),
            details=details,
        )
    )
    return JSONResponse(status_code=status_code, content=payload.model_dump(exclude_none=True))


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------
def _seed_on_startup() -> bool:
    return os.getenv("CLINICTABS_SEED_ON_STARTUP", "").strip().lower() in {"1", "true", "yes", "on"}


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised by uvicorn
    logger.info("lifespan_startup")
    if _seed_on_startup():
        create_all()
        with session_scope() as session:
            result = seed.seed_system_tabs(session)
            result["presets"] = seed.seed_builtin_presets(session)
        logger.info("startup_seed_complete", **result)
    start_ts = time.time()
    try:
        yield
    finally:
        logger.info("lifespan_shutdown_complete", uptime=time.time() - start_ts)


app = FastAPI(title="clinictabs API", lifespan=lifespan)


@app.middleware("http")
async def inject_trace_id(request: Request, call_next):
    """Attach or propagate a trace identifier for each request."""

    trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
    bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
    request.state.trace_id = trace_id
    response = None
    try:
        response = await call_next(request)
        return response
    except Exception:
        logger.exception("request_failed")
        raise
    finally:
        if response is not None:
            response.headers["X-Trace-Id"] = trace_id
        unbind_contextvars("trace_id", "path", "method")


@app.middleware("http")
async def track_http_metrics(request: Request, call_next):
    """Emit Prometheus counters and histograms for each request."""

    start = time.perf_counter()
    normalised = normalise_path_for_metrics(request.url.path)
    try:
        response = await call_next(request)
    except Exception:
        REQUEST_COUNTER.labels(request.method, normalised, "500").inc()
        REQUEST_LATENCY.labels(request.method, normalised).observe(time.perf_counter() - start)
        raise
    REQUEST_COUNTER.labels(request.method, normalised, str(response.status_code)).inc()
    REQUEST_LATENCY.labels(request.method, normalised).observe(time.perf_counter() - start)
    return response


@app.exception_handler(TabConfigError)
async def tab_config_error_handler(request: Request, exc: TabConfigError) -> JSONResponse:
    logger.info("request_rejected", error_type=exc.error_type, message=exc.message)
    return _build_error_response(exc.status_code, exc.message, exc.error_type, exc.details)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Convert ``HTTPException`` instances into the standard error envelope."""

    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return _build_error_response(exc.status_code, message)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {
            "loc": [str(part) for part in error.get("loc", ())],
            "msg": str(error.get("msg", "")),
            "type": str(error.get("type", "")),
        }
        for error in exc.errors()
    ]
    message = "; ".join(detail["msg"] for detail in details) or "Invalid request"
    return _build_error_response(status.HTTP_400_BAD_REQUEST, message, "ValidationError", details)


# ---------------------------------------------------------------------------
# Tab configuration routes
# ---------------------------------------------------------------------------
def _tab_out(row: Any) -> TabConfigOut:
    return TabConfigOut.model_validate(row)


@app.get("/api/tab-configs", response_model=List[TabConfigOut])
def get_tab_configs(
    include_hidden: bool = Query(False, alias="includeHidden"),
    caller: CallerContext = Depends(get_caller),
    session: Session = Depends(get_session),
) -> List[TabConfigOut]:
    tabs = tab_configs.list_tabs(session, caller, include_hidden=include_hidden)
    return [_tab_out(tab) for tab in tabs]


@app.post("/api/tab-configs", response_model=TabConfigOut, status_code=status.HTTP_201_CREATED)
def post_tab_config(
    payload: TabConfigCreate,
    caller: CallerContext = Depends(get_caller),
    session: Session = Depends(get_session),
) -> TabConfigOut:
    return _tab_out(tab_configs.create_tab(session, payload, caller))


@app.patch("/api/tab-configs/reorder", response_model=ReorderResponse)
def patch_tab_order(
    payload: ReorderRequest,
    caller: CallerContext = Depends(get_caller),
    session: Session = Depends(get_session),
) -> ReorderResponse:
    count = tab_configs.reorder_tabs(session, payload.tabs, caller)
    return ReorderResponse(message="Tab order updated", count=count)


@app.patch("/api/tab-configs/{tab_id}/visibility", response_model=TabConfigOut)
def patch_tab_visibility(
    tab_id: int,
    payload: VisibilityUpdate,
    caller: CallerContext = Depends(get_caller),
    session: Session = Depends(get_session),
) -> TabConfigOut:
    row = tab_configs.set_visibility(session, tab_id, payload.is_visible, payload.scope, caller)
    return _tab_out(row)


@app.patch("/api/tab-configs/{tab_id}", response_model=TabConfigOut)
def patch_tab_config(
    tab_id: int,
    payload: TabConfigUpdate,
    caller: CallerContext = Depends(get_caller),
    session: Session = Depends(get_session),
) -> TabConfigOut:
    return _tab_out(tab_configs.update_tab(session, tab_id, payload, caller))


@app.delete("/api/tab-configs/reset", response_model=ResetResponse)
def delete_tab_scope(
    payload: Optional[ResetRequest] = Body(None),
    caller: CallerContext = Depends(get_caller),
    session: Session = Depends(get_session),
) -> ResetResponse:
    scope = payload.scope if payload is not None else TabScope.USER
    deleted = tab_configs.reset_tabs(session, scope, caller)
    return ResetResponse(
        message=f"Reset {scope.value} tab configuration",
        scope=scope,
        deleted_count=deleted,
    )


@app.delete("/api/tab-configs/{tab_id}", response_model=MessageResponse)
def delete_tab_config(
    tab_id: int,
    caller: CallerContext = Depends(get_caller),
    session: Session = Depends(get_session),
) -> MessageResponse:
    tab_configs.delete_tab(session, tab_id, caller)
    return MessageResponse(message="Tab deleted")


@app.post("/api/tab-configs/seed", response_model=SeedResponse)
def post_seed(
    caller: CallerContext = Depends(get_caller),
    session: Session = Depends(get_session),
) -> SeedResponse:
    if not caller.is_admin:
        raise ForbiddenError("Seeding requires an admin role")
    return SeedResponse(**seed.seed_all(session))


# ---------------------------------------------------------------------------
# Preset routes
# ---------------------------------------------------------------------------
@app.get("/api/tab-presets", response_model=List[PresetOut])
def get_tab_presets(
    caller: CallerContext = Depends(get_caller),
    session: Session = Depends(get_session),
) -> List[PresetOut]:
    return [PresetOut.model_validate(row) for row in presets.list_presets(session, caller)]


@app.get("/api/tab-presets/{preset_id}/preview", response_model=PresetPreview)
def get_tab_preset_preview(
    preset_id: int,
    target_scope: TabScope = Query(TabScope.USER, alias="targetScope"),
    caller: CallerContext = Depends(get_caller),
    session: Session = Depends(get_session),
) -> PresetPreview:
    plan = presets.preview_preset(session, preset_id, target_scope, caller)
    return PresetPreview(
        preset=PresetOut.model_validate(plan.preset),
        target_scope=plan.target_scope,
        current=[_tab_out(tab) for tab in plan.current],
        preview=[_tab_out(tab) for tab in plan.preview],
        diff=PresetDiff(**plan.diff()),
    )


@app.post("/api/tab-presets/{preset_id}/apply", response_model=PresetApplyResponse)
def post_tab_preset_apply(
    preset_id: int,
    payload: Optional[PresetApplyRequest] = Body(None),
    caller: CallerContext = Depends(get_caller),
    session: Session = Depends(get_session),
) -> PresetApplyResponse:
    target_scope = payload.target_scope if payload is not None else TabScope.USER
    plan, tabs = presets.apply_preset(session, preset_id, target_scope, caller)
    return PresetApplyResponse(
        preset=plan.preset.name,
        target_scope=plan.target_scope,
        written=len(plan.change.upserts),
        tabs=[_tab_out(tab) for tab in tabs],
    )


# ---------------------------------------------------------------------------
# System routes
# ---------------------------------------------------------------------------
START_TIME = time.time()


@app.get("/health", tags=["system"])
def health(session: Session = Depends(get_session)) -> Dict[str, Any]:
    """Lightweight health check with a database round trip."""
    try:
        session.execute(text("SELECT 1"))
        db_ok = True
    except Exception:  # pragma: no cover - reported in the payload
        logger.exception("health_db_check_failed")
        db_ok = False
    return {"status": "ok", "uptime": round(time.time() - START_TIME, 2), "db": db_ok}


@app.get("/metrics", tags=["system"])
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
