"""FastAPI web application exposing video room provisioning.

This module defines the FastAPI application, includes the API routes and
provides a convenience function to launch the server via Uvicorn.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
import uvicorn

from .routes import router, close_provisioner
from ..utils.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("officesync API starting")
    yield
    await close_provisioner()
    logger.info("officesync API stopped")


app = FastAPI(
    title="officesync",
    description="Workspace synchronization and access core",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(router)


def start_server(host: str = "0.0.0.0", port: int = 8000, reload: bool = True) -> None:
    """Start the Uvicorn web server.

    Parameters
    ----------
    host: str
        Host to bind the server to. Defaults to ``0.0.0.0``.
    port: int
        Port to listen on. Defaults to 8000.
    reload: bool
        Whether to enable auto-reload. Useful during development.
    """
    uvicorn.run(
        "officesync.web.app:app",
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    start_server()
