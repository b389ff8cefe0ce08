import logging
import time
from typing import Any, Awaitable, Callable

import anyio
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.infra.stripe_resilience import stripe_circuit

router = APIRouter()
logger = logging.getLogger(__name__)

DB_PING_TIMEOUT_SECONDS = 2.0

CheckResult = tuple[bool, dict[str, Any]]


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.head("/healthz")
async def healthz_head() -> Response:
    return Response(status_code=200)


async def check_database(request: Request) -> CheckResult:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    if session_factory is None:
        return False, {"message": "database session factory unavailable"}
    try:
        with anyio.fail_after(DB_PING_TIMEOUT_SECONDS):
            async with session_factory() as session:
                await session.execute(text("SELECT 1"))
    except TimeoutError:
        return False, {"message": "database check timed out", "timeout_seconds": DB_PING_TIMEOUT_SECONDS}
    except Exception as exc:  # noqa: BLE001
        logger.debug("database_check_failed", exc_info=exc)
        return False, {"message": "database check failed", "error": type(exc).__name__}
    return True, {"message": "database reachable"}


async def check_billing(request: Request) -> CheckResult:
    """Ready once a webhook secret is configured; the Stripe circuit state is informational."""
    app_settings = getattr(request.app.state, "app_settings", None)
    configured = bool(getattr(app_settings, "stripe_webhook_secret", None))
    return configured, {"webhook_configured": configured, "stripe_circuit": stripe_circuit.state}


READINESS_CHECKS: dict[str, Callable[[Request], Awaitable[CheckResult]]] = {
    "db": check_database,
    "billing": check_billing,
}


async def _timed(name: str, check: Callable[[Request], Awaitable[CheckResult]], request: Request) -> dict[str, Any]:
    started = time.perf_counter()
    try:
        ok, detail = await check(request)
    except Exception as exc:  # noqa: BLE001
        logger.exception("readiness_check_failed", extra={"extra": {"check": name}})
        ok, detail = False, {"message": "unexpected error", "error": type(exc).__name__}
    return {
        "name": name,
        "ok": bool(ok),
        "ms": round((time.perf_counter() - started) * 1000, 2),
        "detail": detail,
    }


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    checks = [await _timed(name, check, request) for name, check in READINESS_CHECKS.items()]
    ready = all(check["ok"] for check in checks)
    return JSONResponse(status_code=200 if ready else 503, content={"ok": ready, "checks": checks})
