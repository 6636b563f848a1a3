"""
ASGI application exposing the share-credit engine.

Run:
  uvicorn --factory share_credits.api.app:create_app --reload
or
  share-credits-api
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Mapping, Optional

from fastapi import FastAPI

from ..config import Settings, settings as default_settings
from ..db.mongo import MongoDBManager
from ..models.credits import CreditType
from ..scheduler import create_scheduler
from ..services.engine import ShareCreditsEngine, build_engine
from .middleware import ShareCreditMiddleware
from .router import router

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[ShareCreditsEngine] = None,
    share_routes: Optional[Mapping[str, CreditType]] = None,
) -> FastAPI:
    """
    Build the app. `share_routes` enables `ShareCreditMiddleware` for the
    given path prefixes; without it only the engine's own routes are served.
    """
    settings = settings or default_settings
    engine = engine or build_engine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if isinstance(engine.db, MongoDBManager):
            await engine.db.ensure_indexes()
            logger.info("Share credit indexes ensured")

        scheduler = None
        if settings.SCHEDULER_ENABLED:
            scheduler = create_scheduler(engine, settings.SWEEP_INTERVAL_MINUTES)
            scheduler.start()
            logger.info("Share credit scheduler started")
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
                logger.info("Share credit scheduler stopped")

    app = FastAPI(title="Share credits", lifespan=lifespan)
    app.state.engine = engine
    app.include_router(router)

    if share_routes:
        app.add_middleware(
            ShareCreditMiddleware,
            engine=engine,
            share_routes=share_routes,
            user_id_header=settings.USER_ID_HEADER,
        )

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=default_settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("share_credits.api.app:create_app", factory=True, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
