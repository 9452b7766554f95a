import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from examdesk.api.deps import get_scoring
from examdesk.core.auth import TokenData, require_roles
from examdesk.core.database import get_db
from examdesk.core.responses import ok
from examdesk.models.orm import UserRole
from examdesk.services import scoring as scoring_service
from examdesk.services.scoring import ScoringQueue

router = APIRouter()
guru = require_roles(UserRole.GURU)


class TriggerRequest(BaseModel):
    participant_ids: Optional[List[uuid.UUID]] = None


class OverrideRequest(BaseModel):
    final_score: float = Field(..., ge=0, le=100)
    feedback: Optional[str] = None


@router.get("/exams/{exam_id}")
async def exam_scores(exam_id: uuid.UUID, user: TokenData = Depends(guru), db: AsyncSession = Depends(get_db)):
    return ok(await scoring_service.exam_scores(db, exam_id, user.user_id))


@router.get("/exams/{exam_id}/status")
async def scoring_status(exam_id: uuid.UUID, user: TokenData = Depends(guru), db: AsyncSession = Depends(get_db),
                         scoring: ScoringQueue = Depends(get_scoring)):
    return ok(await scoring.status(db, exam_id, user.user_id))


@router.get("/exams/{exam_id}/participants/{participant_id}")
async def participant_answers(exam_id: uuid.UUID, participant_id: uuid.UUID, user: TokenData = Depends(guru),
                              db: AsyncSession = Depends(get_db)):
    return ok(await scoring_service.participant_answers(db, exam_id, participant_id, user.user_id))


@router.post("/exams/{exam_id}/trigger", status_code=202)
async def trigger_scoring(exam_id: uuid.UUID, payload: Optional[TriggerRequest] = None,
                          user: TokenData = Depends(guru), db: AsyncSession = Depends(get_db),
                          scoring: ScoringQueue = Depends(get_scoring)):
    participant_ids = payload.participant_ids if payload else None
    data = await scoring.trigger(db, exam_id, user.user_id, participant_ids)
    return ok(data, f"Scoring started for {data['triggered']} participants")


@router.put("/answers/{answer_id}")
async def override_score(answer_id: uuid.UUID, payload: OverrideRequest, user: TokenData = Depends(guru),
                         db: AsyncSession = Depends(get_db)):
    data = await scoring_service.override_score(db, answer_id, user.user_id, payload.final_score, payload.feedback)
    return ok(data, "Score updated successfully")
