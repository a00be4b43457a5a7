from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Request

from app.core.config import load_settings
from app.core.logging_utils import setup_logging
from shared.contracts.models import TriggerReminderRequest, TriggerResult

from .jobs import (
    DAILY_RESET,
    ESCALATION_CHECK,
    EXPIRY_CHECK,
    MISSED_CHECK,
    JobRunner,
    Runtime,
    build_runtime,
    build_scheduler,
    reminder_job,
)

logger = logging.getLogger(__name__)


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = runtime
        if rt is None:
            settings = load_settings()
            setup_logging(settings)
            rt = build_runtime(settings)
        runner = JobRunner(rt.adherence, rt.worker)
        scheduler = build_scheduler(runner, rt.settings)
        app.state.runtime = rt
        app.state.runner = runner
        app.state.scheduler = scheduler

        runner.catch_up()
        if rt.settings.scheduler_enabled:
            scheduler.start()
            logger.info("scheduler started")
        try:
            yield
        finally:
            if scheduler.running:
                scheduler.shutdown(wait=False)
                logger.info("scheduler stopped")

    app = FastAPI(title="scheduler", lifespan=lifespan)

    def get_runner(request: Request) -> JobRunner:
        return request.app.state.runner

    @app.get("/health")
    def health(request: Request) -> dict[str, Any]:
        scheduler = getattr(request.app.state, "scheduler", None)
        return {
            "status": "ok",
            "service": "scheduler",
            "scheduler_running": bool(scheduler and scheduler.running),
        }

    @app.get("/jobs")
    def jobs(request: Request, runner: JobRunner = Depends(get_runner)) -> list[dict[str, Any]]:
        scheduler = request.app.state.scheduler
        listed = []
        for name in runner.names:
            job = scheduler.get_job(name)
            next_run = getattr(job, "next_run_time", None) if job else None
            listed.append(
                {
                    "name": name,
                    "trigger": str(job.trigger) if job else None,
                    "next_run_time": next_run.isoformat() if next_run else None,
                }
            )
        return listed

    @app.post("/jobs/{name}/run")
    def run_job(name: str, runner: JobRunner = Depends(get_runner)) -> TriggerResult:
        try:
            return runner.run(name)
        except KeyError:
            raise HTTPException(status_code=404, detail={"reason": "not_found", "message": f"Unknown job {name!r}"})

    @app.post("/trigger-reminder")
    def trigger_reminder(payload: TriggerReminderRequest, runner: JobRunner = Depends(get_runner)) -> TriggerResult:
        return runner.run(reminder_job(payload.timing))

    @app.post("/trigger-missed-check")
    def trigger_missed_check(runner: JobRunner = Depends(get_runner)) -> TriggerResult:
        return runner.run(MISSED_CHECK)

    @app.post("/trigger-expiry-check")
    def trigger_expiry_check(runner: JobRunner = Depends(get_runner)) -> TriggerResult:
        return runner.run(EXPIRY_CHECK)

    @app.post("/trigger-reset")
    def trigger_reset(runner: JobRunner = Depends(get_runner)) -> TriggerResult:
        return runner.run(DAILY_RESET)

    @app.post("/trigger-emergency-contact-check")
    def trigger_emergency_contact_check(runner: JobRunner = Depends(get_runner)) -> TriggerResult:
        return runner.run(ESCALATION_CHECK)

    return app


app = create_app()
