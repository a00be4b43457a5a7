from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from app.core.config import load_settings
from app.core.logging_utils import setup_logging
from app.db.store import NotificationQueue
from medisense import (
    AdherenceEngine,
    AdherenceError,
    DoseConflict,
    InvalidDoseRequest,
    OutOfStock,
    PermissionDenied,
)
from services.scheduler.jobs import Runtime, build_runtime
from shared.contracts.models import (
    CreatePrescriptionRequest,
    DoseUpdate,
    MedicineOut,
    NotificationOut,
    PatientStats,
    PrescriptionOut,
    TakeDoseRequest,
    TodaySchedule,
)


def status_for(exc: AdherenceError) -> int:
    if isinstance(exc, InvalidDoseRequest):
        return 400
    if isinstance(exc, PermissionDenied):
        return 403
    if isinstance(exc, LookupError):
        return 404
    if isinstance(exc, (DoseConflict, OutOfStock)):
        return 409
    return 400


def current_user_id(x_user_id: int = Header(..., ge=1)) -> int:
    """Identity is established upstream by the auth service and trusted here."""
    return x_user_id


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

    app = FastAPI(title="tracker", lifespan=lifespan)

    @app.exception_handler(AdherenceError)
    async def adherence_error_handler(_request: Request, exc: AdherenceError) -> JSONResponse:
        return JSONResponse(
            status_code=status_for(exc),
            content={"detail": {"reason": exc.reason, "message": str(exc)}},
        )

    def engine(request: Request) -> AdherenceEngine:
        return request.app.state.runtime.adherence

    def inbox(request: Request):
        return request.app.state.runtime.session_factory

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": "tracker"}

    @app.get("/medicines")
    def my_medicines(
        user_id: int = Depends(current_user_id),
        adherence: AdherenceEngine = Depends(engine),
    ) -> list[MedicineOut]:
        return adherence.list_medicines(user_id)

    @app.delete("/medicines/{medicine_id}", status_code=204)
    def delete_medicine(
        medicine_id: int,
        user_id: int = Depends(current_user_id),
        adherence: AdherenceEngine = Depends(engine),
    ) -> None:
        adherence.delete_medicine(medicine_id, patient_id=user_id)

    @app.get("/medicines/schedule")
    def today_schedule(
        user_id: int = Depends(current_user_id),
        adherence: AdherenceEngine = Depends(engine),
    ) -> TodaySchedule:
        return adherence.get_today_schedule(user_id)

    @app.get("/medicines/stats")
    def stats(
        user_id: int = Depends(current_user_id),
        adherence: AdherenceEngine = Depends(engine),
    ) -> PatientStats:
        return adherence.get_stats(user_id)

    @app.put("/medicines/{medicine_id}/take")
    def take(
        medicine_id: int,
        payload: TakeDoseRequest,
        user_id: int = Depends(current_user_id),
        adherence: AdherenceEngine = Depends(engine),
    ) -> DoseUpdate:
        return adherence.take_dose(medicine_id, payload.timing, patient_id=user_id)

    @app.put("/medicines/{medicine_id}/untake")
    def untake(
        medicine_id: int,
        payload: TakeDoseRequest,
        user_id: int = Depends(current_user_id),
        adherence: AdherenceEngine = Depends(engine),
    ) -> DoseUpdate:
        return adherence.untake_dose(medicine_id, payload.timing, patient_id=user_id)

    @app.post("/prescriptions", status_code=201)
    def create_prescription(
        payload: CreatePrescriptionRequest,
        user_id: int = Depends(current_user_id),
        adherence: AdherenceEngine = Depends(engine),
    ) -> PrescriptionOut:
        return adherence.create_prescription(
            prescriber_id=user_id,
            patient_id=payload.patient_id,
            medicines=payload.medicines,
        )

    @app.get("/notifications")
    def notifications(
        unread_only: bool = False,
        limit: int = Query(default=50, ge=1, le=200),
        user_id: int = Depends(current_user_id),
        session_factory=Depends(inbox),
    ) -> list[NotificationOut]:
        with session_factory() as session:
            rows = NotificationQueue(session).for_user(user_id, unread_only=unread_only, limit=limit)
            return [NotificationOut.model_validate(n) for n in rows]

    @app.get("/notifications/unread-count")
    def unread_count(user_id: int = Depends(current_user_id), session_factory=Depends(inbox)) -> dict[str, int]:
        with session_factory() as session:
            return {"count": NotificationQueue(session).unread_count(user_id)}

    @app.put("/notifications/read-all")
    def mark_all_read(user_id: int = Depends(current_user_id), session_factory=Depends(inbox)) -> dict[str, int]:
        with session_factory.begin() as session:
            return {"updated": NotificationQueue(session).mark_all_read(user_id)}

    @app.put("/notifications/{notification_id}/read")
    def mark_read(
        notification_id: int,
        user_id: int = Depends(current_user_id),
        session_factory=Depends(inbox),
    ) -> NotificationOut:
        with session_factory.begin() as session:
            notification = NotificationQueue(session).mark_read(user_id, notification_id)
            if notification is None:
                raise HTTPException(
                    status_code=404,
                    detail={"reason": "not_found", "message": f"Notification {notification_id} not found"},
                )
            session.flush()
            return NotificationOut.model_validate(notification)

    return app


app = create_app()
