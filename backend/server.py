"""
Legacy Sync Service - Main Server

Entry point for the legacy material request sync API. Routes are organized
in /routes/, the sync engine lives in /services/legacy_sync/.
"""

from dotenv import load_dotenv
load_dotenv()  # Load .env file before any os.environ calls

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
import os
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ==================== ROUTERS ====================
from routes import legacy_sync

# ==================== SERVICES ====================
from services.legacy_sync import ensure_indexes
from services.legacy_sync.config import is_legacy_sync_enabled

# ==================== DATABASE ====================
MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "legacy_sync")

db = None
mongo_client = None


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global db, mongo_client

    # Startup
    logger.info("Starting Legacy Sync Service...")

    # Connect to MongoDB
    mongo_client = AsyncIOMotorClient(MONGO_URL)
    db = mongo_client[DB_NAME]

    # Initialize routers with database
    legacy_sync.set_db(db)

    # Create indexes
    await ensure_indexes(db)

    logger.info("Legacy Sync Service started (sync enabled: %s)", is_legacy_sync_enabled())

    yield

    # Shutdown
    logger.info("Shutting down Legacy Sync Service...")
    if mongo_client:
        mongo_client.close()


# ==================== APP SETUP ====================
app = FastAPI(
    title="Legacy Sync Service",
    description="Imports legacy material requests into the canonical approval workflow",
    version="1.0.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(legacy_sync.router)


# ==================== ROOT ENDPOINTS ====================
@app.get("/")
async def root():
    return {
        "service": "Legacy Sync Service",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/api/health")
async def health():
    return {
        "status": "healthy",
        "service": "legacy-sync"
    }
