from fastapi import APIRouter, Depends, Response
import redis
from sqlalchemy import text
from sqlalchemy.orm import Session

from shopkit.core.config import settings
from shopkit.db.session import get_db


router = APIRouter()


def _check_database(db: Session) -> str:
    db.execute(text("SELECT 1"))
    return "ok"


def _check_redis() -> str:
    # breaker state for the Paystack client is kept in Redis
    client = redis.Redis.from_url(settings.redis_url, socket_connect_timeout=2)
    client.ping()
    return "ok"


@router.get("/health")
def health() -> dict:
    """Liveness check - always returns 200 if app is running."""
    return {"status": "ok"}


@router.get("/ready")
def readiness(response: Response, db: Session = Depends(get_db)) -> dict:
    """
    Readiness check - 503 if the database or Redis is unavailable.
    Missing processor secrets are reported but do not fail readiness.
    """
    checks: dict[str, str] = {}
    ready = True
    for name, check in (("database", lambda: _check_database(db)), ("redis", _check_redis)):
        try:
            checks[name] = check()
        except Exception as e:
            checks[name] = f"error: {e}"
            ready = False
    checks["paystack"] = "configured" if settings.paystack_secret_key else "missing-secret"
    checks["stripe"] = "configured" if settings.stripe_webhook_secret else "missing-secret"

    if not ready:
        response.status_code = 503
    return {"status": "ready" if ready else "not_ready", "checks": checks}
