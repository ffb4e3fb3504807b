"""Route registration — mounts all routers under ``/api/v1``."""

from fastapi import FastAPI

from radiance_server.routes.analysis import router as analysis_router
from radiance_server.routes.sessions import router as sessions_router
from radiance_server.routes.steps import router as steps_router

API_PREFIX = "/api/v1"


def register_routes(app: FastAPI) -> None:
    """Include all sub-routers under the versioned API prefix."""
    app.include_router(sessions_router, prefix=API_PREFIX)
    app.include_router(steps_router, prefix=API_PREFIX)
    app.include_router(analysis_router, prefix=API_PREFIX)
