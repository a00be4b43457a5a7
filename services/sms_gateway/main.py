from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Query, Request

from app.core.config import load_settings
from app.core.logging_utils import setup_logging
from services.scheduler.jobs import Runtime, build_runtime
from shared.contracts.models import DeliveryReport, NotificationOut

from .worker import DeliveryWorker


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = runtime
        if rt is None:
            settings = load_settings()
            setup_logging(settings)
            rt = build_runtime(settings)
        app.state.runtime = rt
        yield

    app = FastAPI(title="sms_gateway", lifespan=lifespan)

    def _worker(request: Request) -> DeliveryWorker:
        return request.app.state.runtime.worker

    @app.get("/health")
    def health(request: Request) -> dict[str, str | bool]:
        worker = _worker(request)
        return {
            "status": "ok",
            "service": "sms_gateway",
            "transport_configured": worker.transport.is_configured,
            "in_flight": worker.in_flight,
        }

    @app.post("/worker/run-once")
    def run_once(request: Request) -> DeliveryReport:
        return _worker(request).run_once()

    @app.get("/pending")
    def pending(request: Request, limit: int = Query(default=50, ge=1, le=500)) -> list[NotificationOut]:
        return [NotificationOut.model_validate(n) for n in _worker(request).pending(limit=limit)]

    @app.get("/logs")
    def logs(request: Request) -> list[dict[str, Any]]:
        return _worker(request).audit_log

    return app


app = create_app()
