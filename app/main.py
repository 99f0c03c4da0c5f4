import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from app.core.config import get_settings
from app.core.events import configure_logging
from app.core.exceptions import (
    AuthorizationError,
    CacheError,
    NotFoundError,
    StoreError,
    TaskError,
    ValidationError,
)
from app.database import Database
from app.routers import tasks
from app.services.task_service import TaskService

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    AuthorizationError: status.HTTP_403_FORBIDDEN,
    StoreError: status.HTTP_503_SERVICE_UNAVAILABLE,
    CacheError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)

    database = Database.from_settings(settings)
    service = await TaskService.from_settings(settings, database)
    app.state.database = database
    app.state.task_service = service
    logger.info("Task service started")
    try:
        yield
    finally:
        await service.close()
        await database.dispose()
        logger.info("Task service stopped")


app = FastAPI(
    title="Task Management API",
    description="Async task tracking API with filtered queries and a tag-invalidated cache",
    swagger_ui_parameters={"displayRequestDuration": True},
    version="1.0.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(tasks.router)


@app.exception_handler(TaskError)
async def task_error_handler(request: Request, exc: TaskError):
    status_code = next(
        (code for kind, code in ERROR_STATUS.items() if isinstance(exc, kind)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    body = {"error": exc.code, "detail": exc.message}
    if isinstance(exc, ValidationError) and exc.errors:
        body["errors"] = jsonable_encoder(exc.errors)
    return JSONResponse(status_code=status_code, content=body)


@app.get("/")
async def root():
    return {
        "message": "Welcome to Task Management API",
        "docs": "/docs",
        "version": "1.0.0",
    }


@app.get("/health")
async def health_check(request: Request):
    service = getattr(request.app.state, "task_service", None)
    cache = service.cache.get_stats() if service is not None else None
    return {"status": "healthy", "cache": cache}
