"""
Taskflow - Task Lifecycle & Review Engine

FastAPI application exposing the task workflow over HTTP and WebSocket.

Run with:
    taskflow-server
or:
    uvicorn taskflow.main:app --host 0.0.0.0 --port 8000
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request

from . import __version__
from .api import router
from .config import DEFAULT_LOG_FORMAT, Settings
from .service import TaskflowService, get_service

logging.basicConfig(
    level=Settings.from_env().log_level,
    format=DEFAULT_LOG_FORMAT,
)
logger = logging.getLogger("taskflow")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application; a fresh service when settings are given, else the singleton."""
    service = TaskflowService(settings) if settings is not None else get_service()

    app = FastAPI(
        title="Taskflow - Task Lifecycle & Review Engine",
        description="Production task workflow with role-gated transitions and client review",
        version=__version__,
    )
    app.state.service = service
    app.include_router(router)

    @app.get("/")
    async def root():
        return {
            "name": "taskflow",
            "version": __version__,
            "status": "running",
        }

    @app.get("/health")
    async def health(request: Request):
        svc: TaskflowService = request.app.state.service
        return {
            "status": "healthy",
            "version": __version__,
            "realtime": svc.broadcaster.get_stats(),
            "change_feed": svc.feed.get_stats(),
        }

    @app.on_event("startup")
    async def startup_event():
        logger.info(f"Taskflow {__version__} starting up...")
        await service.store.recover_state()
        await service.broadcaster.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Taskflow shutting down...")
        await service.broadcaster.stop()
        await service.dispatcher.drain()

    return app


app = create_app()


def main():
    import uvicorn

    settings = get_service().settings
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
