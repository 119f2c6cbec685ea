from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config.settings import settings
from app.db.db import create_tables
from app.utils.logging import get_logger
from app.routers import main_router
from app.utils.errors import setup_error_handlers
from app.middlewares import (
    RequestIDMiddleware,
    DevSecurityMiddleware,
    ProdSecurityMiddleware,
    AuthMiddleware,
)
from app.middlewares.auth_middleware import USER_ID_HEADER
from app.middlewares.request_id_middleware import REQUEST_ID_HEADER

# Initialize the logger
logger = get_logger()


@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info(f"{settings.NAME} {settings.VERSION} starting ({settings.ENVIRONMENT})")
    if settings.CREATE_TABLES_ON_STARTUP:
        create_tables()
    yield
    logger.info(f"{settings.NAME} is shutting down...")


def add_middlewares(application: FastAPI) -> None:
    """
    Register middlewares. Starlette runs the last one added first, so a
    request passes RequestID -> Auth -> Security -> CORS -> routes.
    """
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_HOSTS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", USER_ID_HEADER, REQUEST_ID_HEADER],
        expose_headers=[REQUEST_ID_HEADER],
    )
    application.add_middleware(
        ProdSecurityMiddleware
        if settings.ENVIRONMENT == "production"
        else DevSecurityMiddleware
    )
    application.add_middleware(AuthMiddleware)
    application.add_middleware(RequestIDMiddleware)


def create_application() -> FastAPI:
    """Initialize the FastAPI application with settings and lifespan events."""
    application = FastAPI(
        title=settings.NAME, version=settings.VERSION, lifespan=lifespan
    )

    setup_error_handlers(application)
    add_middlewares(application)
    application.include_router(main_router, prefix=settings.API_PREFIX)

    return application


app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_config=None,
        log_level=None,
    )
