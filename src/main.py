import logging
import time

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from src.api.routes.payment_routes import router as payment_router
from src.api.routes.routes import router
from src.infrastructure.config import Settings
from src.infrastructure.container import ServiceContainer
from src.infrastructure.db.models import Base

logger = logging.getLogger(__name__)


def _wait_for_db(engine: Engine, max_retries: int, retry_delay_seconds: float) -> None:
    # Handles the common case where API starts before Postgres is ready.
    for attempt in range(1, max_retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database is reachable.")
            return
        except OperationalError:
            if attempt == max_retries:
                logger.exception(
                    "Database not reachable after %s attempts. Check DATABASE_URL and Postgres status.",
                    max_retries,
                )
                raise
            logger.warning(
                "Database not ready (attempt %s/%s). Retrying in %.1f seconds...",
                attempt,
                max_retries,
                retry_delay_seconds,
            )
            time.sleep(retry_delay_seconds)


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    if container is None:
        settings = Settings.from_env()
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        container = ServiceContainer.build(settings)

    app = FastAPI(title="Bus Booking Integrity Engine")
    app.state.container = container
    app.include_router(router)
    app.include_router(payment_router)

    @app.on_event("startup")
    def on_startup() -> None:
        settings = container.settings
        _wait_for_db(
            container.engine,
            settings.db_connect_max_retries,
            settings.db_connect_retry_delay,
        )
        Base.metadata.create_all(bind=container.engine)

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        container.engine.dispose()

    return app


app = create_app()
