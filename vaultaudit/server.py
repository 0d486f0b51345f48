from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
import logging
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

# Load environment variables first
ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

from vaultaudit.config import Settings, get_settings, validate_environment
from vaultaudit.logging_config import setup_logging, get_logger
from vaultaudit.sentry_integration import init_sentry, set_tag
from vaultaudit.database import create_engine, create_session_factory, init_db
from vaultaudit.reconciliation.endpoints import discrepancy_router
from vaultaudit.reconciliation.services.reconciliation_service import ReconciliationEngine
from vaultaudit.reconciliation.sources import AccountSource, HttpAccountSource

logger = get_logger(__name__)


def build_account_source(settings: Settings) -> AccountSource:
    return HttpAccountSource(
        base_url=settings.ACCOUNT_SOURCE_URL,
        token=settings.ACCOUNT_SOURCE_TOKEN or None,
        timeout=settings.ACCOUNT_SOURCE_TIMEOUT_SECONDS,
    )


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker] = None,
    account_source: Optional[AccountSource] = None,
) -> FastAPI:
    """
    Build the API application.

    Collaborators passed in are used as-is; anything missing is built from
    settings during startup.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("=" * 60)
        logger.info("Starting Vault Coverage Audit API...")
        logger.info(f"Environment: {settings.ENVIRONMENT}")
        logger.info("=" * 60)

        env_status = validate_environment(settings)
        if not env_status["valid"]:
            for error in env_status["errors"]:
                logger.error(f"Configuration Error: {error}")
            if settings.is_production:
                raise RuntimeError("Cannot start in production with invalid configuration")

        for warning in env_status.get("warnings", []):
            logger.warning(f"Configuration Warning: {warning}")

        db_engine = None
        if app.state.session_factory is None:
            db_engine = create_engine(settings.get_database_url(), echo=settings.DATABASE_ECHO)
            await init_db(db_engine, create_tables=not settings.is_production)
            app.state.session_factory = create_session_factory(db_engine)
            logger.info("Database connection established")

        if app.state.reconciliation_engine is None:
            app.state.reconciliation_engine = ReconciliationEngine(
                app.state.session_factory,
                account_source if account_source is not None else build_account_source(settings),
                run_timeout=settings.RECONCILE_RUN_TIMEOUT_SECONDS,
            )

        logger.info("Vault Coverage Audit API started successfully")

        yield

        logger.info("Shutting down Vault Coverage Audit API...")
        if db_engine is not None:
            await db_engine.dispose()

    app = FastAPI(
        title=settings.API_TITLE,
        version=settings.API_VERSION,
        description="Tracks not-vaulted and orphaned privileged accounts per platform.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.reconciliation_engine = None

    if session_factory is not None and account_source is not None:
        app.state.reconciliation_engine = ReconciliationEngine(
            session_factory,
            account_source,
            run_timeout=settings.RECONCILE_RUN_TIMEOUT_SECONDS,
        )

    api_router = APIRouter(prefix="/api")

    @api_router.get("/health")
    async def health():
        return {
            "status": "healthy",
            "environment": settings.ENVIRONMENT,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    api_router.include_router(discrepancy_router)
    app.include_router(api_router)

    return app


def main():
    import uvicorn

    settings = get_settings()
    setup_logging(
        level=settings.LOG_LEVEL,
        json_format=settings.is_production,
        service_name="vaultaudit"
    )
    if settings.SENTRY_DSN:
        init_sentry(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            traces_sample_rate=0.1 if settings.is_production else 0.0,
        )
        set_tag("service", "vaultaudit")

    uvicorn.run(create_app(settings), host="0.0.0.0", port=8001)


if __name__ == "__main__":
    main()
