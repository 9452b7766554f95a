"""
Exam lifecycle: creation, editing, question links and status transitions.

Every teacher-side operation goes through ``get_owned_exam`` so that exams of
other teachers look exactly like missing ones.
"""
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from examdesk.core.auth import TokenData
from examdesk.core.database import paginate, utcnow
from examdesk.core.errors import BadRequestError, ForbiddenError, NotFoundError
from examdesk.core.realtime import RealtimeHub
from examdesk.models.orm import (
    DEFAULT_EXAM_SETTINGS, Exam, ExamParticipant, ExamQuestion, ExamStatistic, ExamStatus,
    Question, User, UserRole,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[ExamStatus, frozenset] = {
    ExamStatus.DRAFT: frozenset({ExamStatus.ONGOING}),
    ExamStatus.ONGOING: frozenset({ExamStatus.FINISHED}),
    ExamStatus.FINISHED: frozenset({ExamStatus.PUBLISHED, ExamStatus.ONGOING}),
    ExamStatus.PUBLISHED: frozenset(),
}
EDITABLE_STATUSES = frozenset({ExamStatus.DRAFT, ExamStatus.FINISHED})
RESULT_VISIBLE_STATUSES = frozenset({ExamStatus.FINISHED, ExamStatus.PUBLISHED})
STUDENT_HIDDEN_FIELDS = ("answer_key", "rubric")


def can_transition(current: ExamStatus, target: ExamStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


async def get_owned_exam(db: AsyncSession, exam_id: uuid.UUID, teacher_id: uuid.UUID) -> Exam:
    exam = await db.scalar(select(Exam).where(Exam.id == exam_id, Exam.teacher_id == teacher_id))
    if not exam:
        raise NotFoundError("Exam")
    return exam


async def get_or_create_statistics(db: AsyncSession, exam_id: uuid.UUID) -> ExamStatistic:
    stats = await db.get(ExamStatistic, exam_id)
    if stats is None:
        stats = ExamStatistic(exam_id=exam_id, total_participants=0, submitted_count=0,
                              scored_count=0, suspicious_count=0)
        db.add(stats)
        await db.flush()
    return stats


async def count_exam_questions(db: AsyncSession, exam_id: uuid.UUID) -> int:
    return int(await db.scalar(
        select(func.count()).select_from(ExamQuestion).where(ExamQuestion.exam_id == exam_id)
    ) or 0)


async def exam_questions(db: AsyncSession, exam_id: uuid.UUID, hide_keys: bool = False) -> List[dict]:
    rows = (await db.execute(
        select(ExamQuestion, Question)
        .join(Question, Question.id == ExamQuestion.question_id)
        .where(ExamQuestion.exam_id == exam_id)
        .order_by(ExamQuestion.position, Question.created_at)
    )).all()
    items = []
    for link, question in rows:
        item = question.to_dict()
        if hide_keys:
            for field in STUDENT_HIDDEN_FIELDS:
                item.pop(field, None)
        item["position"] = link.position
        item["points"] = link.points
        items.append(item)
    return items


# ---------- CRUD ----------

async def create_exam(db: AsyncSession, teacher_id: uuid.UUID, data: Dict[str, Any]) -> dict:
    settings = {**DEFAULT_EXAM_SETTINGS, **(data.pop("settings", None) or {})}
    exam = Exam(teacher_id=teacher_id, status=ExamStatus.DRAFT, settings=settings, **data)
    db.add(exam)
    await db.flush()
    logger.info("Exam %s created by %s", exam.id, teacher_id)
    return exam.to_dict()


async def list_exams(db: AsyncSession, user: TokenData, page: int = 1, limit: int = 20,
                     status: Optional[ExamStatus] = None, search: Optional[str] = None):
    stmt = select(Exam)
    if user.role == UserRole.GURU.value:
        stmt = stmt.where(Exam.teacher_id == user.user_id)
        if status:
            stmt = stmt.where(Exam.status == status)
    else:
        stmt = stmt.where(Exam.status == ExamStatus.ONGOING)
    if search:
        stmt = stmt.where(Exam.title.ilike(f"%{search}%"))
    rows, total = await paginate(db, stmt.order_by(Exam.created_at.desc()), page, limit)
    return [row[0].to_dict() for row in rows], total


async def get_exam(db: AsyncSession, exam_id: uuid.UUID, user: TokenData) -> dict:
    if user.role == UserRole.GURU.value:
        exam = await get_owned_exam(db, exam_id, user.user_id)
        data = exam.to_dict()
        data["questions"] = await exam_questions(db, exam.id)
        stats = await db.get(ExamStatistic, exam.id)
        data["statistics"] = stats.to_dict() if stats else None
        return data

    exam = await db.get(Exam, exam_id)
    if not exam or exam.status == ExamStatus.DRAFT:
        raise NotFoundError("Exam")
    if exam.status in RESULT_VISIBLE_STATUSES:
        participated = await db.scalar(select(ExamParticipant.id).where(
            ExamParticipant.exam_id == exam_id, ExamParticipant.student_id == user.user_id
        ))
        if not participated:
            raise ForbiddenError("This exam is not available")
    data = exam.to_dict()
    data["questions"] = await exam_questions(db, exam.id, hide_keys=True)
    return data


async def update_exam(db: AsyncSession, exam_id: uuid.UUID, teacher_id: uuid.UUID,
                      changes: Dict[str, Any]) -> dict:
    exam = await get_owned_exam(db, exam_id, teacher_id)
    if exam.status not in EDITABLE_STATUSES:
        raise BadRequestError(f"Cannot update exam that is currently {exam.status.value}")
    if "settings" in changes:
        exam.settings = {**(exam.settings or {}), **(changes.pop("settings") or {})}
    for key, value in changes.items():
        setattr(exam, key, value)
    await db.flush()
    return exam.to_dict()


async def delete_exam(db: AsyncSession, exam_id: uuid.UUID, teacher_id: uuid.UUID) -> None:
    exam = await get_owned_exam(db, exam_id, teacher_id)
    if exam.status == ExamStatus.ONGOING:
        raise BadRequestError("Cannot delete exam that is currently ongoing")
    await db.delete(exam)
    await db.flush()
    logger.info("Exam %s deleted", exam_id)


# ---------- lifecycle ----------

async def transition(db: AsyncSession, hub: RealtimeHub, exam_id: uuid.UUID, teacher_id: uuid.UUID,
                     target: ExamStatus) -> dict:
    """Move an exam along the status table; the only source of exam broadcasts."""
    exam = await get_owned_exam(db, exam_id, teacher_id)
    current = exam.status
    if not can_transition(current, target):
        raise BadRequestError(f"Cannot transition from {current.value} to {target.value}")

    now = utcnow()
    if current == ExamStatus.DRAFT and target == ExamStatus.ONGOING:
        if await count_exam_questions(db, exam.id) == 0:
            raise BadRequestError("Cannot start exam without questions")
        if exam.start_time is None:
            exam.start_time = now
        stats = await get_or_create_statistics(db, exam.id)
        stats.avg_score = stats.max_score = stats.min_score = None
        stats.total_participants = stats.submitted_count = stats.scored_count = stats.suspicious_count = 0
    elif current == ExamStatus.ONGOING and target == ExamStatus.FINISHED:
        exam.end_time = now

    exam.status = target
    await db.commit()
    logger.info("Exam %s moved %s -> %s", exam.id, current.value, target.value)

    if target == ExamStatus.ONGOING and current == ExamStatus.DRAFT:
        await hub.broadcast_exam_start(exam.id, now)
    elif target == ExamStatus.FINISHED:
        await hub.broadcast_exam_end(exam.id, now)
    return exam.to_dict()


async def publish_exam(db: AsyncSession, hub: RealtimeHub, exam_id: uuid.UUID, teacher_id: uuid.UUID) -> dict:
    return await transition(db, hub, exam_id, teacher_id, ExamStatus.ONGOING)


async def end_exam(db: AsyncSession, hub: RealtimeHub, exam_id: uuid.UUID, teacher_id: uuid.UUID) -> dict:
    return await transition(db, hub, exam_id, teacher_id, ExamStatus.FINISHED)


# ---------- question links ----------

async def add_questions(db: AsyncSession, exam_id: uuid.UUID, teacher_id: uuid.UUID,
                        items: Iterable[Dict[str, Any]]) -> List[dict]:
    """Link owned questions; pairs that are already linked are left alone."""
    exam = await get_owned_exam(db, exam_id, teacher_id)
    if exam.status != ExamStatus.DRAFT:
        raise BadRequestError("Questions can only be added to draft exams")
    items = list(items)
    ids = [item["question_id"] for item in items]
    owned = set((await db.scalars(
        select(Question.id).where(Question.id.in_(ids), Question.teacher_id == teacher_id)
    )).all())
    for question_id in ids:
        if question_id not in owned:
            raise NotFoundError(f"Question {question_id}")
    linked = set((await db.scalars(
        select(ExamQuestion.question_id).where(ExamQuestion.exam_id == exam.id)
    )).all())
    for index, item in enumerate(items):
        if item["question_id"] in linked:
            continue
        position = item.get("order")
        points = item.get("points")
        db.add(ExamQuestion(
            exam_id=exam.id,
            question_id=item["question_id"],
            position=index if position is None else position,
            points=1.0 if points is None else points,
        ))
        linked.add(item["question_id"])
    await db.flush()
    return await exam_questions(db, exam.id)


async def remove_question(db: AsyncSession, exam_id: uuid.UUID, teacher_id: uuid.UUID,
                          question_id: uuid.UUID) -> None:
    exam = await get_owned_exam(db, exam_id, teacher_id)
    if exam.status != ExamStatus.DRAFT:
        raise BadRequestError("Questions can only be removed from draft exams")
    result = await db.execute(delete(ExamQuestion).where(
        ExamQuestion.exam_id == exam.id, ExamQuestion.question_id == question_id
    ))
    if result.rowcount == 0:
        raise NotFoundError(message="Question not found in this exam")


async def list_participants(db: AsyncSession, exam_id: uuid.UUID, teacher_id: uuid.UUID) -> List[dict]:
    await get_owned_exam(db, exam_id, teacher_id)
    rows = (await db.execute(
        select(ExamParticipant, User.name, User.email)
        .join(User, User.id == ExamParticipant.student_id)
        .where(ExamParticipant.exam_id == exam_id)
        .order_by(ExamParticipant.created_at)
    )).all()
    return [{**participant.to_dict(), "student_name": name, "student_email": email}
            for participant, name, email in rows]
