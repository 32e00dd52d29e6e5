from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI

from nestauth.api.error_handling import register_exception_handlers
from nestauth.api.routes import router
from nestauth.config import get_settings
from nestauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

_cleanup_task: asyncio.Task | None = None


async def _sweep_expired(runtime) -> None:
    user_counts = await runtime.user_auth.cleanup_expired()
    admin_count = await runtime.admin_auth.cleanup_expired_sessions()
    if not (user_counts.ok and admin_count.ok):
        logger.warning("expired_auth_state_sweep_incomplete")


async def _run_cleanup(runtime, interval_seconds: int) -> None:
    """Background loop that drops expired sessions and one-time tokens."""

    interval = max(interval_seconds, 60)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await _sweep_expired(runtime)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("expired_auth_state_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cleanup_task
    from nestauth.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.cleanup_interval_seconds
    if interval > 0:
        _cleanup_task = asyncio.create_task(_run_cleanup(runtime, interval))

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="NestAuth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation id.

    The client's ``X-Request-ID`` is reused when present, otherwise a UUID is
    generated. It is bound for structured logging, echoed in the envelope's
    ``request_id`` and returned in the ``X-Request-ID`` response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # token-bearing responses must never sit in a shared cache
    response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and get_settings().enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_PROBE_TIMEOUT_SECONDS = 3


async def _probe(component: str, check: Callable[[], Any]) -> bool:
    """Run one blocking dependency check off the event loop, bounded in time."""
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_PROBE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_probe_timeout", component=component)
        return False
    except Exception as exc:
        logger.error("health_probe_failed", component=component, error=str(exc))
        return False
    return True


def _state_dir_probe(root: Path) -> Callable[[], None]:
    def check() -> None:
        marker = root / ".healthz"
        marker.write_text(datetime.now(timezone.utc).isoformat())
        marker.unlink(missing_ok=True)

    return check


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report each backing dependency; the memory store is always healthy."""
    from nestauth.service.runtime import get_runtime

    runtime = get_runtime()
    probes: Dict[str, Optional[Callable[[], Any]]] = {
        "database": getattr(runtime.store, "verify_connection", None),
        "redis": runtime.token_store.verify_connection if runtime.token_store else None,
        "filesystem": None,
    }
    state_root = getattr(runtime.store, "fs_root", None)
    if state_root is not None and getattr(runtime.store, "persist", False):
        probes["filesystem"] = _state_dir_probe(Path(state_root))

    checks: Dict[str, Dict[str, Any]] = {}
    for component, check in probes.items():
        if check is not None:
            ok = await _probe(component, check)
            checks[component] = {"status": "healthy" if ok else "unhealthy"}
        elif component == "database":
            checks[component] = {"status": "healthy", "type": "memory"}
        else:
            checks[component] = {"status": "not_configured"}

    healthy = all(c["status"] != "unhealthy" for c in checks.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
