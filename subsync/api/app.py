import logging

from fastapi import FastAPI

from subsync.api.sync_routes import sync_router
from subsync.api.webhook_routes import webhook_router
from subsync.database.db import init_db
from subsync.config.settings import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


def create_app() -> FastAPI:
    # Disable Swagger/ReDoc in production
    docs_kwargs = {}
    if settings.is_production:
        docs_kwargs = {"docs_url": None, "redoc_url": None}

    app = FastAPI(
        title="SubSync API",
        description="Stripe webhook ingestion, retry and subscription reconciliation",
        version="0.1.0",
        **docs_kwargs,
    )

    app.include_router(sync_router, prefix="/api/v1")
    app.include_router(webhook_router)

    @app.get("/health", tags=["health"])
    def health_check():
        return {"status": "ok", "version": "0.1.0"}

    @app.on_event("startup")
    def on_startup():
        settings.validate_production()
        if not settings.is_deployed:
            init_db()  # Deployed envs use: alembic upgrade head

    return app


app = create_app()
