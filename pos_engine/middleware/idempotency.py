import asyncio
import json
import re
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from ..core.config import settings

# Endpoints soportados y la clave de éxito esperada en el JSON
ALLOW = (
    (re.compile(r"^/terminals/[^/]+/checkout$"), "sale_id"),
    (re.compile(r"^/drawer/open$"), "id"),
)


class _Cache:
    def __init__(self, ttl=3600, max_entries=2048):
        self.ttl = ttl
        self.max_entries = max_entries
        self._store = {}
        self._lock = asyncio.Lock()

    async def get(self, key):
        async with self._lock:
            item = self._store.get(key)
            if not item:
                return None
            if item["exp"] < time.time():
                self._store.pop(key, None)
                return None
            return item

    async def set(self, key, val):
        async with self._lock:
            if len(self._store) >= self.max_entries:
                self._store.pop(next(iter(self._store)))
            val["exp"] = time.time() + self.ttl
            self._store[key] = val

    async def clear(self):
        async with self._lock:
            self._store.clear()


class _KeyedLocks:
    def __init__(self):
        self._locks = {}
        self._guard = asyncio.Lock()

    async def acquire(self, key):
        async with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
        await lock.acquire()
        return lock


def _drop_content_length(headers: dict) -> dict:
    # Quita cualquier Content-Length (casing-insensitive)
    return {k: v for k, v in headers.items() if k.lower() != "content-length"}


def _success_key(path: str):
    for rx, key in ALLOW:
        if rx.match(path):
            return key
    return None


def _replay(cached) -> Response:
    body_bytes = cached["body"]
    try:
        js = json.loads(body_bytes.decode("utf-8"))
    except ValueError:
        js = None
    if isinstance(js, dict):
        js.setdefault("replay", True)
        body_bytes = json.dumps(js).encode("utf-8")
    headers = _drop_content_length(dict(cached["headers"]))
    headers["Idempotent-Replay"] = "true"
    return Response(
        content=body_bytes,
        status_code=cached["status"],
        media_type=cached["media_type"],
        headers=headers,
    )


class PosIdempotency(BaseHTTPMiddleware):
    def __init__(self, app, ttl: int = 3600):
        super().__init__(app)
        self.cache = _Cache(ttl=ttl)
        self.locks = _KeyedLocks()

    async def dispatch(self, request, call_next):
        if request.method != "POST":
            return await call_next(request)

        path = request.url.path
        success_key = _success_key(path)
        if not success_key:
            return await call_next(request)

        idem_key = request.headers.get("Idempotency-Key") or request.headers.get("IdempotencyKey")
        if not idem_key:
            return await call_next(request)

        # la clave incluye al cajero: dos cajeros pueden repetir la misma Idempotency-Key
        user = request.headers.get("X-User") or ""
        cache_key = f"{request.method}:{path}:{user}:{idem_key}"

        # 1) Replay inmediato si está cacheado
        cached = await self.cache.get(cache_key)
        if cached:
            return _replay(cached)

        # 2) Sección crítica por clave
        lock = await self.locks.acquire(cache_key)
        try:
            cached = await self.cache.get(cache_key)
            if cached:
                return _replay(cached)

            # 3) Procesar y capturar body de la respuesta real
            response = await call_next(request)
            body_bytes = b""
            async for chunk in response.body_iterator:
                body_bytes += chunk

            headers = _drop_content_length(dict(response.headers))
            new_resp = Response(
                content=body_bytes,
                status_code=response.status_code,
                media_type=response.media_type,
                headers=headers,
            )

            # 4) Cachear solo si 200 y contiene la clave de éxito
            should_cache = response.status_code == 200
            if should_cache:
                try:
                    js = json.loads(body_bytes.decode("utf-8"))
                    should_cache = isinstance(js, dict) and (success_key in js)
                except ValueError:
                    should_cache = False

            if should_cache:
                await self.cache.set(
                    cache_key,
                    {
                        "status": new_resp.status_code,
                        "headers": dict(new_resp.headers),
                        "media_type": new_resp.media_type,
                        "body": body_bytes,
                    },
                )

            return new_resp
        finally:
            lock.release()


def install_idempotency(app):
    app.add_middleware(PosIdempotency, ttl=settings.idempotency_ttl_seconds)
