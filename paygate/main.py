import os
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from dotenv import load_dotenv

from paygate.core import get_scheduler_status, setup_scheduler, start_scheduler, stop_scheduler
from paygate.database import Database
from paygate.routes.dependencies import get_credential_store
from paygate.routes.payment.payment_routes import router as payment_router
from paygate.routes.payment.webhook_routes import router as webhook_router
from paygate.routes.payment.provider_routes import router as provider_router

# Load environment variables
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)

# Get environment variables
APP_NAME = os.getenv("APP_NAME", "EventPaymentGateway")
APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan events for the application"""
    # Startup: a missing or malformed credentials key fails here
    get_credential_store()
    await Database.connect_db()
    setup_scheduler()
    start_scheduler()

    yield
    # Shutdown
    stop_scheduler()
    await Database.close_db()


app = FastAPI(
    title=APP_NAME,
    version=APP_VERSION,
    description="Multi-provider payment gateway for event registrations",
    lifespan=lifespan
)

# CORS middleware
# In development, allow all origins for easier testing
DEBUG = os.getenv("DEBUG", "True").lower() == "true"

cors_origins = [
    FRONTEND_URL,
    "http://localhost:3000",
    "http://localhost:5173",
    "http://localhost:8000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins if not DEBUG else ["*"],
    allow_credentials=not DEBUG,  # Can't use credentials with wildcard origin
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers with /api prefix
app.include_router(payment_router, prefix="/api")   # Payment operations
app.include_router(webhook_router, prefix="/api")   # Provider callbacks
app.include_router(provider_router, prefix="/api")  # Organizer provider settings


@app.get("/")
async def read_root():
    """Root endpoint"""
    return {
        "message": f"Welcome to {APP_NAME} API",
        "version": APP_VERSION,
        "docs": "/docs"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint, including background job status"""
    status = get_scheduler_status()
    return {
        "status": "healthy",
        "scheduler_running": status["running"],
        "scheduler": status
    }
