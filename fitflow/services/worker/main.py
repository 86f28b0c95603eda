"""Workflow worker lifecycle: dispatcher loop plus health and metrics endpoints."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from fitflow.common.config import settings
from fitflow.common.db import SessionLocal
from fitflow.common.logging import configure_logging, logger
from fitflow.common.metrics import metrics_response
from fitflow.common.schedules import seed_recurring_tasks
from fitflow.common.startup import log_startup_config
from fitflow.common.tracing import instrument_app, setup_tracing
from fitflow.services.worker.registry import build_dispatcher

configure_logging()
setup_tracing(settings.service_name, settings.otel_exporter_otlp_endpoint)
log_startup_config(settings)
dispatcher = build_dispatcher(SessionLocal, settings)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Seed recurring schedules and run the dispatcher with the app lifecycle."""

    await asyncio.to_thread(seed_recurring_tasks, SessionLocal)
    dispatcher_task = asyncio.create_task(dispatcher.run_forever())
    yield
    dispatcher.stop()
    dispatcher_task.cancel()
    logger.info("dispatcher stopped worker_id=%s", dispatcher.worker_id)


app = FastAPI(title="FitFlow Workflow Worker", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
