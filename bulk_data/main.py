import asyncio
import logging
from fastapi import FastAPI
from bulk_data import __version__
from bulk_data.api.outcomes import outcome_error_handler
from bulk_data.api.redis_progress import redis_progress_subscriber
from bulk_data.api.routes import exports, files, imports, outcome
from bulk_data.api.websocket_route import router as websocket_router
from bulk_data.config import settings
from bulk_data.database import engine
from bulk_data.errors import OutcomeError
from bulk_data.importer.task_manager import TaskManager

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Bulk Data Server",
    description="SMART Bulk Data import and export flows for client testing",
    version=__version__,
    debug=settings.debug
)

app.add_exception_handler(OutcomeError, outcome_error_handler)

# Include routers
app.include_router(imports.router)
app.include_router(exports.router)
app.include_router(files.router)
app.include_router(outcome.router)
app.include_router(websocket_router)


@app.get("/")
async def root():
    return {"message": "Bulk Data Server", "version": __version__, "docs": "/docs"}


@app.on_event("startup")
async def startup():
    """Create the job registry and start the worker progress relay."""
    app.state.task_manager = TaskManager()

    # Forward progress published by Celery workers to WebSocket clients
    if settings.progress_subscriber_enabled:
        app.state._redis_progress_task = asyncio.create_task(redis_progress_subscriber())


@app.on_event("shutdown")
async def shutdown():
    """Cancel running jobs and release connections."""
    task_manager = getattr(app.state, "task_manager", None)
    if task_manager is not None:
        task_manager.close()

    task = getattr(app.state, "_redis_progress_task", None)
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    await engine.dispose()
    logger.info("Shutdown complete")
