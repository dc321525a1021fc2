import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load .env before settings are read; tests configure the environment themselves
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from tierpay.core.config import settings, validate_config
from tierpay.core.database import create_all_tables, dispose_engine
from tierpay.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from tierpay.core.logging import configure_logging
from tierpay.core.middleware.request_id import RequestIdMiddleware
from tierpay.core.validation import validate_env
from tierpay.api import admin_billing, billing, health, transactions

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("tierpay")
    logger.info("Starting tierpay...")
    app.state.startup_time = time.time()
    create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("tierpay").info("Stopping tierpay...")
        dispose_engine()


app = FastAPI(title="tierpay - subscription payments", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS (adjust origins in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_BASE_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(billing.router, prefix="/api")
app.include_router(transactions.router, prefix="/api")
app.include_router(admin_billing.router, prefix="/api")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tierpay.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
