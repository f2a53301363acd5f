"""FastAPI application entry point."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from review_bridge import __version__
from review_bridge.api.health import router as health_router
from review_bridge.bridge import Bridge


def create_app(bridge: Bridge, *, manage_lifecycle: bool = True) -> FastAPI:
    """Build the HTTP app around a bridge.

    With ``manage_lifecycle`` the bridge is started and stopped with the
    server; otherwise the caller owns it.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if manage_lifecycle:
            await bridge.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await bridge.stop()

    app = FastAPI(
        title=bridge.settings.APP_NAME,
        description="Google Play reviews <-> Matrix bridge",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.bridge = bridge
    app.include_router(health_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with basic application info."""
        return {
            "name": bridge.settings.APP_NAME,
            "version": __version__,
            "docs": "/docs",
        }

    return app
