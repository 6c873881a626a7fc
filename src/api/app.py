"""FastAPI application for the funding drawdown service."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.billing import router as billing_router
from src.api.errors import register_error_handlers
from src.api.funding import router as funding_router
from src.api.transactions import router as transactions_router
from src.services import init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Database tables ready")
    yield


app = FastAPI(
    title="NDIS Drawdown",
    description="Funding contract drawdown and balance reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

app.include_router(funding_router)
app.include_router(transactions_router)
app.include_router(billing_router)


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint for monitoring."""
    return {"status": "ok"}
