import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load env from cloudmedia/.env before settings are read
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from cloudmedia.core.config import cors_origins, settings, validate_config
from cloudmedia.core.database import create_all_tables
from cloudmedia.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from cloudmedia.core.logging import configure_logging
from cloudmedia.core.middleware.request_id import RequestIdMiddleware
from cloudmedia.api import (
    brand_kits,
    health,
    organization,
    organization_users,
    subscription,
    usage,
    video_transforms,
    videos,
    webhooks,
)

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("cloudmedia")
    logger.info("Starting CloudMedia backend...")
    create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping CloudMedia backend...")


app = FastAPI(title="CloudMedia - Backend", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(organization.router)
app.include_router(organization_users.router)
app.include_router(brand_kits.router)
app.include_router(videos.router)
app.include_router(video_transforms.router)
app.include_router(subscription.router)
app.include_router(usage.router)
app.include_router(webhooks.router)
app.include_router(health.router)
