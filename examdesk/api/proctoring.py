import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, HttpUrl
from sqlalchemy.ext.asyncio import AsyncSession

from examdesk.api.deps import get_app_settings, get_hub, get_proctoring
from examdesk.clients.proctoring import ProctoringClient
from examdesk.core.auth import TokenData, get_current_user, require_roles
from examdesk.core.config import Settings
from examdesk.core.database import get_db
from examdesk.core.realtime import RealtimeHub
from examdesk.core.responses import ok, paginated
from examdesk.models.orm import ProctoringEventType, UserRole
from examdesk.services import proctoring as proctoring_service

router = APIRouter()
guru = require_roles(UserRole.GURU)
murid = require_roles(UserRole.MURID)


class EventReport(BaseModel):
    session_id: str = Field(..., min_length=1)
    event_type: ProctoringEventType
    confidence: Optional[float] = Field(None, ge=0, le=1)
    details: Optional[Dict[str, Any]] = None
    snapshot_url: Optional[HttpUrl] = None


class BrowserEvent(BaseModel):
    session_id: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1)
    details: Optional[Dict[str, Any]] = None


@router.post("/events", status_code=201)
async def report_event(payload: EventReport, user: TokenData = Depends(murid), db: AsyncSession = Depends(get_db),
                       hub: RealtimeHub = Depends(get_hub), settings: Settings = Depends(get_app_settings)):
    data = await proctoring_service.report_event(
        db, hub, user.user_id, payload.session_id, payload.event_type, payload.confidence, payload.details,
        str(payload.snapshot_url) if payload.snapshot_url else None,
        threshold=settings.SUSPICIOUS_VIOLATION_THRESHOLD,
    )
    return ok(data, "Proctoring event recorded")


@router.post("/browser-events")
async def report_browser_event(payload: BrowserEvent, user: TokenData = Depends(murid),
                               db: AsyncSession = Depends(get_db),
                               proctoring: ProctoringClient = Depends(get_proctoring)):
    data = await proctoring_service.report_browser_event(db, proctoring, user.user_id, payload.session_id,
                                                         payload.event_type, payload.details)
    return ok(data, "Browser event reported")


@router.get("/exams/{exam_id}/logs")
async def exam_logs(exam_id: uuid.UUID, page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=100),
                    event_type: Optional[ProctoringEventType] = None, student_id: Optional[uuid.UUID] = None,
                    user: TokenData = Depends(guru), db: AsyncSession = Depends(get_db)):
    items, total = await proctoring_service.exam_logs(db, exam_id, user.user_id, page, limit, event_type, student_id)
    return paginated(items, page, limit, total)


@router.get("/exams/{exam_id}/stats")
async def exam_stats(exam_id: uuid.UUID, user: TokenData = Depends(guru), db: AsyncSession = Depends(get_db),
                     settings: Settings = Depends(get_app_settings)):
    return ok(await proctoring_service.exam_stats(db, exam_id, user.user_id, settings.SUSPICIOUS_VIOLATION_THRESHOLD))


@router.get("/exams/{exam_id}/students/{student_id}")
async def student_logs(exam_id: uuid.UUID, student_id: uuid.UUID, user: TokenData = Depends(guru),
                       db: AsyncSession = Depends(get_db)):
    return ok(await proctoring_service.student_logs(db, exam_id, student_id, user.user_id))


@router.get("/sessions/{session_id}", dependencies=[Depends(get_current_user)])
async def session_info(session_id: str, proctoring: ProctoringClient = Depends(get_proctoring)):
    return ok(await proctoring_service.session_info(proctoring, session_id))


@router.get("/sessions/{session_id}/events", dependencies=[Depends(get_current_user)])
async def session_events(session_id: str, proctoring: ProctoringClient = Depends(get_proctoring)):
    return ok(await proctoring_service.session_events(proctoring, session_id))
