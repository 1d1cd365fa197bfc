"""FastAPI application entry point for the Relay message orchestrator."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, Request

from relay_platform.agents.message_renderer import MessageRenderer
from relay_platform.agents.relevance_checker import RelevanceChecker
from relay_platform.app.config import get_settings
from relay_platform.infra.database import async_session, init_db
from relay_platform.services.delivery_metrics import DeliveryMetrics
from relay_platform.services.processor_runner import ProcessorRunner
from relay_platform.services.queue_processor import QueueProcessor
from relay_platform.services.sms_service import SMSService

logger = logging.getLogger(__name__)


def build_runner(metrics: DeliveryMetrics | None = None) -> ProcessorRunner:
    """Wire the processor with the production renderer, relevance checker and SMS sender."""
    settings = get_settings()
    processor = QueueProcessor(
        session_factory=async_session,
        renderer=MessageRenderer(),
        sender=SMSService(),
        metrics=metrics or DeliveryMetrics(),
        settings=settings,
        relevance=RelevanceChecker(),
    )
    return ProcessorRunner(processor, interval_seconds=settings.poll_interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database, run the queue processor."""
    await init_db()

    runner = build_runner()
    app.state.runner = runner
    if settings.processor_autostart:
        runner.start()
    try:
        yield
    finally:
        await runner.stop()


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Relay Message Orchestrator API",
    lifespan=lifespan,
    debug=settings.debug,
)

# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from relay_platform.app.routes.orchestrator import router as orchestrator_router  # noqa: E402

app.include_router(orchestrator_router)


@app.get("/health", tags=["health"])
async def health_check(request: Request):
    """Return service health status and processor counters."""
    runner: ProcessorRunner | None = getattr(request.app.state, "runner", None)
    stats = runner.metrics.snapshot() if runner else DeliveryMetrics().snapshot()
    stats["processorRunning"] = bool(runner and runner.running)

    return {
        "status": "healthy",
        "service": "message-orchestrator",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "stats": stats,
    }


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "relay_platform.app.main:app",
        host="0.0.0.0",
        port=8080,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
