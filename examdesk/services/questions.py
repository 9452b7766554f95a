import uuid
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from examdesk.core.database import paginate
from examdesk.core.errors import NotFoundError
from examdesk.models.orm import Difficulty, Question, QuestionType


async def get_owned_question(db: AsyncSession, question_id: uuid.UUID, teacher_id: uuid.UUID) -> Question:
    question = await db.scalar(select(Question).where(Question.id == question_id, Question.teacher_id == teacher_id))
    if not question:
        raise NotFoundError("Question")
    return question


async def create_question(db: AsyncSession, teacher_id: uuid.UUID, data: Dict[str, Any]) -> dict:
    question = Question(teacher_id=teacher_id, **data)
    db.add(question)
    await db.flush()
    return question.to_dict()


async def list_questions(db: AsyncSession, teacher_id: uuid.UUID, page: int = 1, limit: int = 20,
                         type: Optional[QuestionType] = None, difficulty: Optional[Difficulty] = None,
                         search: Optional[str] = None):
    stmt = select(Question).where(Question.teacher_id == teacher_id)
    if type:
        stmt = stmt.where(Question.type == type)
    if difficulty:
        stmt = stmt.where(Question.difficulty == difficulty)
    if search:
        stmt = stmt.where(Question.prompt.ilike(f"%{search}%"))
    rows, total = await paginate(db, stmt.order_by(Question.created_at.desc()), page, limit)
    return [row[0].to_dict() for row in rows], total


async def get_question(db: AsyncSession, question_id: uuid.UUID, teacher_id: uuid.UUID) -> dict:
    return (await get_owned_question(db, question_id, teacher_id)).to_dict()


async def update_question(db: AsyncSession, question_id: uuid.UUID, teacher_id: uuid.UUID,
                          changes: Dict[str, Any]) -> dict:
    question = await get_owned_question(db, question_id, teacher_id)
    for key, value in changes.items():
        setattr(question, key, value)
    await db.flush()
    return question.to_dict()


async def delete_question(db: AsyncSession, question_id: uuid.UUID, teacher_id: uuid.UUID) -> None:
    question = await get_owned_question(db, question_id, teacher_id)
    await db.delete(question)
    await db.flush()
