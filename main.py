"""Field Service Workflow Engine — FastAPI Application Entry Point."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from database import SessionLocal, init_db
from routes.health import router as health_router
from routes.workflow import router as workflow_router
from workflow.engine import WorkflowEngine
from workflow.errors import ConsistencyError, EntityNotFoundError, InvalidInputError, WorkflowError

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)-7s | %(name)-25s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def _scheduler_tick(engine: WorkflowEngine):
    db = SessionLocal()
    try:
        engine.run_agreement_passes(db)
    finally:
        db.close()


async def _scheduler_loop(engine: WorkflowEngine):
    """Single in-process timer; each tick runs to completion before the next sleep."""
    interval = settings.AGREEMENT_SCHEDULER_INTERVAL_MINUTES * 60
    while True:
        try:
            await asyncio.to_thread(_scheduler_tick, engine)
        except Exception as e:
            logger.error(f"Agreement scheduler run failed: {e}")
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    logger.info("=" * 60)
    logger.info("Field Service Workflow Engine — Starting up")
    logger.info("=" * 60)
    init_db()
    logger.info("Database initialized")

    task = None
    if settings.AGREEMENT_SCHEDULER_ENABLED:
        task = asyncio.create_task(_scheduler_loop(app.state.engine))
        logger.info(f"Agreement scheduler every {settings.AGREEMENT_SCHEDULER_INTERVAL_MINUTES} min")
    yield
    if task is not None:
        task.cancel()
    logger.info("Field Service Workflow Engine — Shutting down")


app = FastAPI(
    title="Field Service Workflow Engine",
    description="Status-triggered automation for estimates, jobs, invoices and service agreements",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.engine = WorkflowEngine()

# CORS: allow frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

STATUS_BY_ERROR = {
    EntityNotFoundError: 404,
    InvalidInputError: 422,
    ConsistencyError: 409,
}


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    status_code = next((code for cls, code in STATUS_BY_ERROR.items() if isinstance(exc, cls)), 400)
    logger.warning(f"{request.method} {request.url.path} -> {status_code}: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# Register routes
app.include_router(health_router)
app.include_router(workflow_router)


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "service": "Field Service Workflow Engine",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }
