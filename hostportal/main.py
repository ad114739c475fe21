import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from dotenv import load_dotenv

# Load env from hostportal/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from hostportal.core.config import settings, validate_config
from hostportal.core.database import create_all_tables
from hostportal.core.logging import configure_logging
from hostportal.core.middleware.request_id import RequestIdMiddleware
from hostportal.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from hostportal.api import admin_dns, dns_plans, health

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("hostportal")
    logger.info("Starting hostportal DNS billing service...")
    if settings.DATABASE_URL:
        create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping hostportal DNS billing service...")


app = FastAPI(title="Hostportal - DNS plan billing", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(health.root_router)
app.include_router(dns_plans.router)
app.include_router(admin_dns.router)
