import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from examdesk.core.auth import TokenData, require_roles
from examdesk.core.database import get_db
from examdesk.core.responses import ok
from examdesk.models.orm import UserRole
from examdesk.services import analytics as analytics_service

router = APIRouter()
guru = require_roles(UserRole.GURU)


@router.get("/overview")
async def overview(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                   user: TokenData = Depends(guru), db: AsyncSession = Depends(get_db)):
    return ok(await analytics_service.overview(db, user.user_id, start_date, end_date))


@router.get("/exams/{exam_id}")
async def exam_analytics(exam_id: uuid.UUID, user: TokenData = Depends(guru), db: AsyncSession = Depends(get_db)):
    return ok(await analytics_service.exam_analytics(db, exam_id, user.user_id))


@router.get("/students/{student_id}")
async def student_analytics(student_id: uuid.UUID, user: TokenData = Depends(guru),
                            db: AsyncSession = Depends(get_db)):
    return ok(await analytics_service.student_analytics(db, student_id, user.user_id))
