"""
HTTP entry point for the intake service.

Mounts the import and template routers; the console script in
``debt_intake.console`` drives the same pipeline without a server.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .api.routers import imports, templates
from .core.config import settings
from .core.logging_config import configure_logging

configure_logging(settings.log_level, settings.log_file or None, settings.log_file_max_mb)

logger = logging.getLogger(__name__)

SERVICE_NAME = "debt-intake-api"
API_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup unless SKIP_DB_INIT=1."""
    if os.getenv("SKIP_DB_INIT") != "1":
        from .db.session import create_all_tables

        logger.info("Creating intake tables if missing")
        create_all_tables()
    else:
        logger.info("SKIP_DB_INIT=1; leaving schema untouched")
    yield


app = FastAPI(
    title="Debt Intake API",
    version=API_VERSION,
    description="Resumable bulk import of debt accounts, skip-trace results, portfolios, clients and agencies",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(imports.router)
app.include_router(templates.router)


@app.get("/")
async def root():
    return {"message": "Debt Intake API", "version": API_VERSION}


@app.get("/health")
def health_check():
    """Liveness plus a database round trip; always 200 so the caller can read the detail."""
    from .db.session import get_engine

    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as exc:
        logger.warning("Health check could not reach the database: %s", exc)
        database = "unavailable"

    return {
        "status": "healthy" if database == "ok" else "degraded",
        "database": database,
        "timestamp": datetime.now().isoformat(),
        "service": SERVICE_NAME,
    }
