"""Entry point. Wires the attempt store into the ledger and the routes.

Persistence strategy:
  - If DATABASE_URL is set  -> SQL store (PostgreSQL) with row-level CAS.
  - Otherwise               -> JSON file store (development / single process).
"""
import logging
import os

from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
PROJECT_DIR = os.path.dirname(BASE_DIR)
load_dotenv(os.path.join(PROJECT_DIR, ".env"))

from fastapi import FastAPI

from loginguard.api.routes.guard_routes import router as guard_router, init_guard_routes
from loginguard.application.ledger import AttemptLedger
from loginguard.application.login_protection import LoginProtection
from loginguard.config import GuardSettings
from loginguard.infrastructure.audit import AuditLog
from loginguard.infrastructure.database.connection import resolve_database_url

log = logging.getLogger("loginguard.startup")


def build_store(settings: GuardSettings, database_url: str | None = None, data_dir: str | None = None):
    """Return (store, persistence label) for the configured backend."""
    database_url = resolve_database_url() if database_url is None else database_url
    if database_url:
        from loginguard.infrastructure.database.connection import init_engine, create_tables
        from loginguard.infrastructure.repositories.pg_attempt_repository import PgAttemptRepository

        session_factory = init_engine(database_url, timeout=settings.store_timeout_seconds)
        create_tables()
        return PgAttemptRepository(session_factory, max_retries=settings.max_update_retries), "sql"

    from loginguard.infrastructure.repositories.attempt_repository import AttemptRepository

    data_dir = data_dir or os.environ.get("LOGINGUARD_DATA_DIR") or os.path.join(PROJECT_DIR, "data")
    store = AttemptRepository(
        data_path=os.path.join(data_dir, "login_attempts.json"),
        lock_timeout=settings.store_timeout_seconds,
    )
    return store, "json"


# Marker for "write audit entries to settings.audit_log_dir".
AUDIT_FROM_SETTINGS = object()


def create_app(
    settings: GuardSettings | None = None, store=None, clock=None, audit=AUDIT_FROM_SETTINGS,
) -> FastAPI:
    """Build the FastAPI application around one ledger.

    ``audit=None`` disables the audit trail; any callable replaces it.
    """
    settings = settings or GuardSettings.from_env()
    if audit is AUDIT_FROM_SETTINGS:
        audit = AuditLog(settings.audit_log_dir)
    persistence = "custom"
    if store is None:
        store, persistence = build_store(settings)

    ledger = AttemptLedger(store, settings=settings, clock=clock, audit=audit)
    protection = LoginProtection(ledger)

    app = FastAPI(
        title="LOGINGUARD - progressive login blocking",
        description="Identifier-scoped blocking of repeated authentication failures.",
        version="1.0.0",
    )
    init_guard_routes(ledger, protection)
    app.include_router(guard_router)
    app.state.ledger = ledger
    app.state.settings = settings

    @app.get("/health")
    def health():
        result = {
            "status": "online",
            "system": "LOGINGUARD v1.0.0",
            "persistence": persistence,
            "fail_mode": settings.fail_mode.value,
            "admin_api": settings.admin_token is not None,
        }
        result["store"] = "connected" if ledger.check_health() else "disconnected"
        return result

    log.info(
        "Login guard ready: thresholds ip=%s email=%s, persistence=%s",
        settings.ip_limits.model_dump(), settings.email_limits.model_dump(), persistence,
    )
    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    uvicorn.run(
        create_app(),
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
    )
