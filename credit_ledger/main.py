"""
Credit Ledger API
=================

FastAPI application exposing the credit ledger. The lifespan:
  startup  — load the error registry, create tables, load the plan
             catalog, start the flush/cleanup loops
  shutdown — stop the loops, drain dirty balances, close the database

Run with:
    uvicorn credit_ledger.main:app
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from credit_ledger import __version__
from credit_ledger.config import settings
from credit_ledger.core.database import close_db, init_db
from credit_ledger.core.errors import LedgerError
from credit_ledger.core.errors.middleware import ledger_error_handler
from credit_ledger.core.errors.registry import error_registry
from credit_ledger.core.log_middleware import CorrelationMiddleware
from credit_ledger.core.structured_logging import setup_logging
from credit_ledger.routers import billing
from credit_ledger.services.ledger_engine import LedgerEngine, build_ledger_engine

setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)
logger = logging.getLogger(__name__)


def create_app(ledger: Optional[LedgerEngine] = None) -> FastAPI:
    """Create the application.

    A pre-built ``ledger`` owns its own storage; the lifespan then skips
    table creation and leaves the database alone on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting %s v%s...", settings.app_name, __version__)
        if not error_registry.loaded:
            error_registry.load()

        engine = ledger
        if engine is None:
            init_db()
            engine = build_ledger_engine(settings)
        app.state.ledger = engine
        await engine.start()

        yield

        logger.info("Shutting down %s...", settings.app_name)
        await engine.shutdown()
        if ledger is None:
            close_db()

    app = FastAPI(
        title="Credit Ledger API",
        description="Write-back credit ledger with monthly subscription allowances.",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(CorrelationMiddleware)
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.include_router(billing.router, prefix="/api", tags=["ledger"])
    return app


app = create_app()
