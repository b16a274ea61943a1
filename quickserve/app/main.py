from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import time
import uuid
from datetime import datetime, timezone

from .config import settings
from .deps import PosRuntime, current_runtime, set_runtime
from .errors import RemoteRejected, StorageError, TransientRemoteError
from .logs import json_log
from .routers.billing import router as billing_router
from .routers.cache import router as cache_router
from .routers.orders import router as orders_router
from .routers.sync import router as sync_router

app = FastAPI(title="Quickserve POS Agent", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _error_content(exc, detail: str) -> dict:
    content = {"detail": detail, "kind": getattr(exc, "kind", "error")}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return content


@app.exception_handler(StorageError)
def _storage_error(req: Request, exc: StorageError):
    json_log(
        "error",
        "storage.error",
        request_id=_current_request_id(req),
        collection=exc.collection,
        op=exc.op,
        error=exc.message,
    )
    return JSONResponse(status_code=503, content=_error_content(exc, "local storage unavailable"))


@app.exception_handler(RemoteRejected)
def _remote_rejected(_req: Request, exc: RemoteRejected):
    return JSONResponse(status_code=422, content=_error_content(exc, "rejected by server"))


@app.exception_handler(TransientRemoteError)
def _remote_unavailable(_req: Request, exc: TransientRemoteError):
    return JSONResponse(status_code=503, content=_error_content(exc, "server unreachable"))


@app.exception_handler(ValueError)
def _value_error(_req: Request, exc: ValueError):
    return JSONResponse(status_code=400, content=_error_content(exc, "invalid value"))


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = {"detail": "internal error", "request_id": rid}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method

    try:
        response = await call_next(request)
    except Exception as exc:
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            duration_ms=dur_ms,
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    if path != "/health":
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            duration_ms=dur_ms,
        )
    return response


app.include_router(billing_router)
app.include_router(orders_router)
app.include_router(sync_router)
app.include_router(cache_router)


@app.on_event("startup")
async def _startup():
    # The sync worker may already have opened the runtime when it serves the agent itself.
    rt = current_runtime() or await PosRuntime.open()
    set_runtime(rt)
    json_log(
        "info",
        "startup.store_opened",
        env=settings.env,
        version=settings.api_version,
        db_path=settings.db_path,
        store_id=rt.store.store_id,
        schema_version=rt.store.version,
    )
    if settings.tenant_id:
        await rt.billing_config.set_tenant(settings.tenant_id)
    rt.online = await rt.client.ping()


@app.on_event("shutdown")
def _shutdown():
    rt = current_runtime()
    if rt is None:
        return
    set_runtime(None)
    rt.close()


async def _store_health():
    rt = current_runtime()
    if rt is None:
        return False, None, "local store not ready"
    try:
        pending = await rt.queue.count()
    except StorageError as exc:
        return False, None, exc.message
    return True, {"pending": pending, "online": rt.online, "store_id": rt.store.store_id}, None


@app.get("/health")
async def health(req: Request):
    request_id = _current_request_id(req)
    ok, info, err = await _store_health()
    if not ok:
        content = {
            "status": "degraded",
            "env": settings.env,
            "store": "down",
            "service": "quickserve-agent",
            "version": settings.api_version,
            "started_at": STARTED_AT_UTC.isoformat(),
            "request_id": request_id,
        }
        if settings.env in {"local", "dev"}:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return {
        "status": "ok",
        "env": settings.env,
        "store": "ok",
        "service": "quickserve-agent",
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": request_id,
        **info,
    }


@app.get("/health/live")
def health_live(req: Request):
    return {
        "status": "ok",
        "env": settings.env,
        "service": "quickserve-agent",
        "request_id": _current_request_id(req),
    }


@app.get("/meta")
def meta():
    return {
        "service": "quickserve-agent",
        "version": settings.api_version,
        "device_id": settings.device_id,
        "remote_configured": bool(settings.api_base_url),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
