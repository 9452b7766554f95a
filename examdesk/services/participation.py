"""
Student side of an exam: join, answer, finish and result visibility.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from examdesk.clients.proctoring import ProctoringClient
from examdesk.clients.storage import ObjectStorage
from examdesk.core.database import utcnow
from examdesk.core.errors import AppError, BadRequestError, ForbiddenError, NotFoundError
from examdesk.models.orm import (
    Answer, AnswerStatus, Exam, ExamParticipant, ExamQuestion, ExamStatus, ParticipantStatus, Question, User,
)
from examdesk.services.exams import RESULT_VISIBLE_STATUSES, get_or_create_statistics

logger = logging.getLogger(__name__)


async def _get_participant(db: AsyncSession, exam_id: uuid.UUID, student_id: uuid.UUID) -> Optional[ExamParticipant]:
    return await db.scalar(select(ExamParticipant).where(
        ExamParticipant.exam_id == exam_id, ExamParticipant.student_id == student_id
    ))


async def _active_participant(db: AsyncSession, exam_id: uuid.UUID, student_id: uuid.UUID) -> ExamParticipant:
    """Participant that may still change answers."""
    participant = await _get_participant(db, exam_id, student_id)
    if not participant:
        raise ForbiddenError("You have not joined this exam")
    if participant.submit_time is not None:
        raise BadRequestError("You have already submitted the exam")
    return participant


async def join_exam(db: AsyncSession, exam_id: uuid.UUID, student_id: uuid.UUID,
                    proctoring: Optional[ProctoringClient] = None) -> dict:
    exam = await db.get(Exam, exam_id)
    if not exam:
        raise NotFoundError("Exam")
    if exam.status != ExamStatus.ONGOING:
        raise BadRequestError("This exam is not available for joining")

    existing = await _get_participant(db, exam_id, student_id)
    if existing:
        return {"participant": existing.to_dict(), "already_joined": True}

    session_id = None
    if (exam.settings or {}).get("enable_proctoring") and proctoring is not None:
        student = await db.get(User, student_id)
        try:
            session_id = await proctoring.start_session(
                student_id=str(student_id),
                exam_id=str(exam_id),
                student_name=student.name if student else "",
                exam_name=exam.title,
            )
        except AppError as e:
            # joining never depends on the proctoring service
            logger.warning(f"Could not start proctoring session for {student_id}: {e.message}")

    participant = ExamParticipant(
        exam_id=exam_id,
        student_id=student_id,
        proctoring_session_id=session_id,
        start_time=utcnow(),
        status=ParticipantStatus.IN_PROGRESS,
    )
    db.add(participant)
    stats = await get_or_create_statistics(db, exam_id)
    stats.total_participants += 1
    await db.flush()
    logger.info("Student %s joined exam %s", student_id, exam_id)
    return {"participant": participant.to_dict(), "already_joined": False}


async def _linked_question_ids(db: AsyncSession, exam_id: uuid.UUID) -> set:
    return set((await db.scalars(select(ExamQuestion.question_id).where(ExamQuestion.exam_id == exam_id))).all())


async def _upsert_answer(db: AsyncSession, participant: ExamParticipant, question_id: uuid.UUID,
                         answer_text: Optional[str], answer_file_url: Optional[str]) -> Answer:
    answer = await db.scalar(select(Answer).where(
        Answer.participant_id == participant.id, Answer.question_id == question_id
    ))
    if answer is None:
        answer = Answer(participant_id=participant.id, question_id=question_id)
        db.add(answer)
    answer.answer_text = answer_text
    answer.answer_file_url = answer_file_url
    answer.status = AnswerStatus.PENDING
    return answer


async def submit_answer(db: AsyncSession, exam_id: uuid.UUID, student_id: uuid.UUID, question_id: uuid.UUID,
                        answer_text: Optional[str] = None, answer_file_url: Optional[str] = None) -> dict:
    participant = await _active_participant(db, exam_id, student_id)
    if question_id not in await _linked_question_ids(db, exam_id):
        raise NotFoundError(message="Question not found in this exam")
    answer = await _upsert_answer(db, participant, question_id, answer_text, answer_file_url)
    await db.flush()
    return answer.to_dict()


async def batch_submit(db: AsyncSession, exam_id: uuid.UUID, student_id: uuid.UUID,
                       answers: List[Dict[str, Any]]) -> List[dict]:
    participant = await _active_participant(db, exam_id, student_id)
    linked = await _linked_question_ids(db, exam_id)
    for item in answers:
        if item["question_id"] not in linked:
            raise NotFoundError(message="Question not found in this exam")
    saved = []
    for item in answers:
        saved.append(await _upsert_answer(
            db, participant, item["question_id"], item.get("answer_text"), item.get("answer_file_url")
        ))
        # keeps a repeated question id in one batch on the same row
        await db.flush()
    return [answer.to_dict() for answer in saved]


async def finish_exam(db: AsyncSession, exam_id: uuid.UUID, student_id: uuid.UUID,
                      proctoring: Optional[ProctoringClient] = None) -> dict:
    exam = await db.get(Exam, exam_id)
    if not exam:
        raise NotFoundError("Exam")
    participant = await _active_participant(db, exam_id, student_id)

    if participant.proctoring_session_id and proctoring is not None:
        try:
            await proctoring.end_session(participant.proctoring_session_id)
        except AppError as e:
            logger.warning(f"Could not end proctoring session {participant.proctoring_session_id}: {e.message}")

    participant.submit_time = utcnow()
    participant.status = ParticipantStatus.SUBMITTED
    stats = await get_or_create_statistics(db, exam_id)
    stats.submitted_count += 1
    await db.flush()
    logger.info("Student %s finished exam %s", student_id, exam_id)
    return participant.to_dict()


async def student_status(db: AsyncSession, exam_id: uuid.UUID, student_id: uuid.UUID) -> dict:
    exam = await db.get(Exam, exam_id)
    if not exam:
        raise NotFoundError("Exam")
    participant = await _get_participant(db, exam_id, student_id)
    if not participant:
        return {"joined": False}

    answered = int(await db.scalar(
        select(func.count()).select_from(Answer).where(Answer.participant_id == participant.id)
    ) or 0)
    result = {
        "joined": True,
        "participant": participant.to_dict(),
        "answered_count": answered,
        "submitted": participant.submit_time is not None,
    }
    if exam.status in RESULT_VISIBLE_STATUSES:
        rows = (await db.execute(
            select(Answer, Question.prompt, Question.type)
            .join(Question, Question.id == Answer.question_id)
            .where(Answer.participant_id == participant.id)
        )).all()
        result["answers"] = [{**answer.to_dict(), "question": prompt, "question_type": qtype.value}
                             for answer, prompt, qtype in rows]
    return result


async def student_exams(db: AsyncSession, student_id: uuid.UUID, status: Optional[ExamStatus] = None) -> List[dict]:
    stmt = (
        select(ExamParticipant, Exam)
        .join(Exam, Exam.id == ExamParticipant.exam_id)
        .where(ExamParticipant.student_id == student_id)
        .order_by(ExamParticipant.created_at.desc())
    )
    if status:
        stmt = stmt.where(Exam.status == status)
    rows = (await db.execute(stmt)).all()
    history = []
    for participant, exam in rows:
        item = participant.to_dict()
        item["exam"] = {
            "id": str(exam.id),
            "title": exam.title,
            "status": exam.status.value,
            "start_time": exam.to_dict()["start_time"],
            "end_time": exam.to_dict()["end_time"],
        }
        if exam.status not in RESULT_VISIBLE_STATUSES:
            item["score"] = None
        history.append(item)
    return history


async def upload_attachment(db: AsyncSession, storage: ObjectStorage, exam_id: uuid.UUID, student_id: uuid.UUID,
                            filename: Optional[str], content_type: str, data: bytes) -> dict:
    participant = await _active_participant(db, exam_id, student_id)
    key = storage.build_key(f"answers/{exam_id}/{participant.id}", filename)
    url = await storage.upload(data, key, content_type)
    return {"url": url, "key": key}
