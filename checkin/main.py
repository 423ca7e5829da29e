"""
Check-in Reminders - Main Application Entry Point

Recurring text-message reminders with reply classification, using FastAPI,
Twilio, SQLite and APScheduler.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from checkin.api.sms_webhook import router as sms_router
from checkin.infrastructure.database import init_database
from checkin.infrastructure.scheduler import start_scheduler, stop_scheduler, get_scheduler
from checkin.config.settings import get_settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)

logger = logging.getLogger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Starting Check-in Reminders...")

    logger.info("Initializing database...")
    await init_database()
    logger.info("Database initialized")

    await start_scheduler()

    logger.info("Application startup complete!")
    logger.info(f"Default timezone: {settings.timezone}")
    logger.info(
        f"Scan every {settings.scan_interval_seconds}s over a "
        f"{settings.scan_window_seconds}s window, unconfirmed policy: "
        f"{settings.unconfirmed_policy.value}"
    )
    logger.info(f"Twilio signature validation: {settings.validate_twilio_signature}")

    yield

    logger.info("Shutting down...")
    await stop_scheduler()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Check-in Reminders",
    description="Recurring SMS reminders with reply classification",
    version="1.0.0",
    lifespan=lifespan
)

# Add CORS middleware (restricted to Twilio for production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["https://api.twilio.com"],
    allow_credentials=True,
    allow_methods=["POST", "GET"],
    allow_headers=["*"],
)

app.include_router(sms_router, tags=["SMS"])


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Check-in Reminders",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "webhook": "/webhook/sms",
            "health": "/health",
            "scheduler": "/scheduler/status"
        }
    }


@app.get("/scheduler/status")
async def scheduler_status():
    """Get scheduler status and pending jobs."""
    scheduler = get_scheduler()

    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": str(job.next_run_time) if job.next_run_time else None
        })

    return {
        "running": scheduler.running,
        "jobs_count": len(jobs),
        "jobs": jobs
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "checkin.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
