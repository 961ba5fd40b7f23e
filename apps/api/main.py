"""
Vehicle Inspection Reports - FastAPI Backend
Main application entry point with health check and API routing.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings, validate_worker_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, reports, billing
from services.recovery import run_startup_recovery
from services.worker_pool import WorkerPool

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Vehicle Inspection Reports API...")
    validate_security_settings()
    validate_worker_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await run_startup_recovery()
        if any(recovered.values()):
            print(
                f"♻️ Recovery: requeued={recovered['requeued']} "
                f"refunds={recovered['refunds']} dead_letters={recovered['dead_letters']} "
                f"unrecorded_debits={recovered['unrecorded_debits']}"
            )
    except Exception as exc:
        print(f"⚠️ Startup recovery skipped: {exc}")

    pool = None
    if settings.RUN_WORKERS_IN_API:
        pool = WorkerPool()
        await pool.start()
        print(f"🛠️ In-process analysis workers enabled ({pool.size}).")
    yield
    # Shutdown
    if pool is not None:
        await pool.stop()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Vehicle Inspection Reports API",
    description="Pay-per-report AI vehicle inspections: damage, paint, engine sound and value analysis",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(reports.router, prefix="/reports", tags=["Reports"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Vehicle Inspection Reports API",
        "version": "0.1.0",
        "status": "running"
    }
