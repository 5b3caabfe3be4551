from __future__ import annotations

import time
from uuid import uuid4

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from grantforge.api.services.runtime import StorageGetter
from grantforge.config import settings
from grantforge.storage import StorageError
from grantforge.store import PersistenceError, get_conn
from grantforge.version import APP_VERSION

READY_PROBE_BUCKET = "readyz"

_READY_CACHE_TTL_SECONDS = 30.0
_ready_cache: dict[str, object] = {
    "ts": 0.0,
    "ok": None,
    "payload": None,
}


def _cache_set(ok: bool, payload: dict[str, object]) -> None:
    _ready_cache["ts"] = time.time()
    _ready_cache["ok"] = ok
    _ready_cache["payload"] = payload


def _cache_get() -> dict[str, object] | None:
    now = time.time()
    ts = float(_ready_cache.get("ts") or 0.0)
    if now - ts > _READY_CACHE_TTL_SECONDS:
        return None
    payload = _ready_cache.get("payload")
    if isinstance(payload, dict):
        return payload
    return None


def reset_ready_cache() -> None:
    _ready_cache.update({"ts": 0.0, "ok": None, "payload": None})


def build_system_router(*, get_object_storage: StorageGetter) -> APIRouter:
    router = APIRouter()

    @router.get("/")
    def root() -> dict[str, str]:
        return {"service": "grantforge-backend", "status": "running", "version": APP_VERSION}

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "environment": settings.app_env}

    @router.get("/ready", response_model=None)
    def ready() -> JSONResponse:
        cached = _cache_get()
        if cached is not None:
            ok = bool(_ready_cache.get("ok"))
            return JSONResponse(status_code=200 if ok else 503, content=cached)

        checks: dict[str, object] = {}
        payload: dict[str, object] = {
            "status": "ready",
            "environment": settings.app_env,
            "checks": checks,
        }

        try:
            with get_conn() as conn:
                conn.execute("SELECT 1").fetchone()
            checks["db"] = {"ok": True, "backend": "sqlite"}
        except PersistenceError as exc:
            payload["status"] = "not_ready"
            checks["db"] = {"ok": False, "backend": "sqlite", "error": str(exc)}
            _cache_set(False, payload)
            return JSONResponse(status_code=503, content=payload)

        backend = settings.storage_backend.strip().lower() or "local"
        token = f"{time.time()}-{uuid4()}"
        try:
            storage = get_object_storage()
            path = f"{settings.app_env}/probe.txt"
            storage.upload(READY_PROBE_BUCKET, path, token.encode("utf-8"), "text/plain")
            if storage.download(READY_PROBE_BUCKET, path).decode("utf-8", errors="replace") != token:
                raise StorageError("storage readiness probe mismatch")
            checks["storage"] = {"ok": True, "backend": backend}
        except StorageError as exc:
            payload["status"] = "not_ready"
            checks["storage"] = {"ok": False, "backend": backend, "error": str(exc)}
            _cache_set(False, payload)
            return JSONResponse(status_code=503, content=payload)

        _cache_set(True, payload)
        return JSONResponse(status_code=200, content=payload)

    return router
