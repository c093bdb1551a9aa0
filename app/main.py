"""Ledger Sync API - FastAPI application."""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from app.core.database import create_tables
from app.core.logging_config import setup_logging
from app.routers import plaid
from app.services.scheduler import get_sync_scheduler

load_dotenv()

SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
CREATE_TABLES = os.getenv("CREATE_TABLES", "true").lower() == "true"
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    if CREATE_TABLES:
        await create_tables()

    scheduler = get_sync_scheduler()
    # Each worker runs its own rounds; the Connection lease keeps them apart
    if SCHEDULER_ENABLED:
        scheduler.start()
    try:
        yield
    finally:
        scheduler.shutdown()


app = FastAPI(
    title="Ledger Sync API",
    description="Incremental bank account and transaction sync with Plaid",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(plaid.router, prefix="/api/v1")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
