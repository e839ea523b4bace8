import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load env from the project root .env before settings are read
project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(project_dir, ".env"))

from persona.core.config import settings, validate_config  # noqa: E402
from persona.core.database import create_all_tables, get_database_url  # noqa: E402
from persona.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from persona.core.logging import configure_logging  # noqa: E402
from persona.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from persona.api import apikey, engagement, health, public, reviews, superadmin  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("persona")
    logger.info("Starting Persona API...")
    if get_database_url() and settings.ENVIRONMENT.lower() != "prod":
        # Schema is migration-managed in prod; dev/test get tables on boot
        create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping Persona API...")


app = FastAPI(title="Celebrity Persona API", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(engagement.router)
app.include_router(reviews.router)
app.include_router(apikey.router)
app.include_router(public.router)
app.include_router(superadmin.router)
