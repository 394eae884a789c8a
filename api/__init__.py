"""REST API module for marketplace transactions.

This module provides HTTP endpoints for:
- Starting, paying for and cancelling purchases
- Shipping updates and delivery confirmation
- Transaction statistics
- Payment methods, fee quotes and payment method validation
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings_conf
from workers.reservation_expiry import run_worker
from .dependencies import get_transaction_service

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Lifecycle management
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    # Startup
    logger.info("Initializing API...")
    # Don't initialize DB here since it's handled in __main__.py

    stop_event = asyncio.Event()
    expiry_task = asyncio.create_task(
        run_worker(get_transaction_service(), stop_event=stop_event)
    )
    logger.info(
        f"Started reservation expiry task (every {settings_conf['reservation_sweep_seconds']} seconds)"
    )

    yield

    # Shutdown
    logger.info("Shutting down API...")
    stop_event.set()
    try:
        await asyncio.wait_for(expiry_task, timeout=5)
    except asyncio.TimeoutError:
        expiry_task.cancel()
    # Don't close DB here since it's handled in __main__.py


# Create FastAPI app
app = FastAPI(
    title="Marketplace Transactions API",
    description="REST API for marketplace purchases and payments",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, replace with specific origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health():
    """Liveness probe."""
    return {"status": "ok"}


# Import and include all routers
from .transactions import router as transactions_router
from .payments import router as payments_router

app.include_router(transactions_router)
app.include_router(payments_router)
