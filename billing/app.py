"""FastAPI application factory — entry point for the billing service."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from billing.config import get_settings
from billing.routers import admin, payments, subscriptions, webhooks
from billing.utils import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    # Auto-create tables for SQLite (dev mode); PostgreSQL uses Alembic
    from billing.db.session import engine
    from billing.models import Base

    settings = get_settings()
    if settings.database_url.startswith("sqlite"):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    # Initialize the Stripe API key once at startup
    if settings.stripe_secret_key:
        from billing.services.gateways.stripe_gateway import init_stripe
        init_stripe()

    # Shared httpx client (provider APIs) and Redis client (throttle counters)
    from billing.http_client import init_http_client, close_http_client
    from billing.services.rate_limit import init_redis, close_redis
    await init_http_client()
    await init_redis()

    yield

    await close_redis()
    await close_http_client()
    await engine.dispose()


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.debug)

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )
    app.state.settings = settings

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok"}

    # --- Routers ---
    app.include_router(webhooks.router)
    app.include_router(payments.router)
    app.include_router(subscriptions.router)
    app.include_router(admin.router)

    return app


app = create_app()
