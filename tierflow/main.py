import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from dotenv import load_dotenv

# Load env before settings are read elsewhere
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from tierflow.core.config import settings, validate_config
from tierflow.core.logging import configure_logging
from tierflow.core.middleware.request_id import RequestIdMiddleware
from tierflow.core.middleware.metrics import MetricsMiddleware
from tierflow.core.validation import validate_env
from tierflow.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from tierflow.core.database import create_all_tables
from tierflow.features.plans.service import seed_plans
from tierflow.api import plans, subscriptions, billing, admin_billing, health, metrics

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("tierflow")
    logger.info("Starting tierflow backend...")
    if settings.ENV.lower() != "production":
        # Production schema is managed by migrations
        create_all_tables()
        seed_plans()
    try:
        yield
    finally:
        logging.getLogger("tierflow").info("Stopping tierflow backend...")


app = FastAPI(title="Tierflow - Subscription Lifecycle", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(plans.router)
app.include_router(subscriptions.router)
app.include_router(billing.router)
app.include_router(admin_billing.router)
app.include_router(health.router)
app.include_router(metrics.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tierflow.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
