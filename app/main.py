import logging
import time
from contextlib import asynccontextmanager
from fastapi import FastAPI
from sqlalchemy import text
from alembic.config import Config
from alembic import command
from app.core.artifacts import ArtifactStore
from app.core.config import settings
from app.core.handshake import HandshakeService
from app.core.logging import configure_logging
from app.api.routes import router as api_router
from app.db.session import SessionLocal, engine

configure_logging()
log = logging.getLogger(__name__)


def wait_for_database(max_retries: int = 30, retry_delay: float = 1.0) -> None:
    for attempt in range(max_retries):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            log.info("Database reachable at %s", engine.url.render_as_string(hide_password=True))
            return
        except Exception as e:
            if attempt == max_retries - 1:
                log.error("Database unreachable after %d attempts", max_retries)
                raise
            log.warning("Database not ready (attempt %d/%d), retrying in %ss: %s",
                        attempt + 1, max_retries, retry_delay, e)
            time.sleep(retry_delay)


def run_migrations() -> None:
    """Upgrade the controller schema to the latest Alembic revision."""
    log.info("Applying controller schema migrations")
    command.upgrade(Config("alembic.ini"), "head")


def sweep_handshakes() -> None:
    """Resolve handshakes whose deadline passed while the controller was down."""
    db = SessionLocal()
    try:
        expired = HandshakeService(db).expire_overdue()
    finally:
        db.close()
    if expired:
        log.warning("Timed out %d overdue handshake(s) on startup", len(expired), extra={"stage": "handshake"})


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("Starting %s (%s)", settings.app_name, settings.app_env)
    try:
        wait_for_database()
        run_migrations()
        ArtifactStore().ensure()
        sweep_handshakes()
    except Exception as e:
        log.error("Controller startup failed: %s", e, exc_info=True)
        raise
    log.info("Accepting handshake signals at %s/v1/handshakes", settings.callback_base_url.rstrip("/"))
    yield
    log.info("Controller API stopped")


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    lifespan=lifespan
)
app.include_router(api_router, prefix="/v1")
