import uuid
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, ValidationInfo, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from examdesk.core.auth import TokenData, require_roles
from examdesk.core.database import get_db
from examdesk.core.responses import ok, paginated
from examdesk.models.orm import Difficulty, QuestionType, UserRole
from examdesk.services import questions as questions_service

router = APIRouter()
guru = require_roles(UserRole.GURU)


class QuestionCreate(BaseModel):
    type: QuestionType
    prompt: str = Field(..., min_length=1)
    options: Optional[Dict[str, str]] = None
    answer_key: Optional[str] = None
    rubric: Optional[Dict[str, float]] = None
    difficulty: Optional[Difficulty] = None
    category: Optional[str] = Field(None, max_length=100)
    is_hots: bool = False


class QuestionUpdate(BaseModel):
    type: Optional[QuestionType] = None
    prompt: Optional[str] = Field(None, min_length=1)
    options: Optional[Dict[str, str]] = None
    answer_key: Optional[str] = None
    rubric: Optional[Dict[str, float]] = None
    difficulty: Optional[Difficulty] = None
    category: Optional[str] = Field(None, max_length=100)
    is_hots: Optional[bool] = None

    @field_validator("type", "prompt", "is_hots")
    @classmethod
    def not_null(cls, v, info: ValidationInfo):
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v


@router.post("", status_code=201)
async def create_question(payload: QuestionCreate, user: TokenData = Depends(guru),
                          db: AsyncSession = Depends(get_db)):
    data = await questions_service.create_question(db, user.user_id, payload.model_dump())
    return ok(data, "Question created successfully")


@router.get("")
async def list_questions(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                         type: Optional[QuestionType] = None, difficulty: Optional[Difficulty] = None,
                         search: Optional[str] = None, user: TokenData = Depends(guru),
                         db: AsyncSession = Depends(get_db)):
    items, total = await questions_service.list_questions(db, user.user_id, page, limit, type, difficulty, search)
    return paginated(items, page, limit, total)


@router.get("/{question_id}")
async def get_question(question_id: uuid.UUID, user: TokenData = Depends(guru), db: AsyncSession = Depends(get_db)):
    return ok(await questions_service.get_question(db, question_id, user.user_id))


@router.put("/{question_id}")
async def update_question(question_id: uuid.UUID, payload: QuestionUpdate, user: TokenData = Depends(guru),
                          db: AsyncSession = Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True)
    data = await questions_service.update_question(db, question_id, user.user_id, changes)
    return ok(data, "Question updated successfully")


@router.delete("/{question_id}")
async def delete_question(question_id: uuid.UUID, user: TokenData = Depends(guru),
                          db: AsyncSession = Depends(get_db)):
    await questions_service.delete_question(db, question_id, user.user_id)
    return ok(message="Question deleted successfully")
