"""
Scoring pipeline.

Jobs live in the ``scoring_jobs`` table, one row per participant, moving
pending -> processing -> done | failed. ``ScoringQueue`` owns dispatch: by
default an asyncio task in this process, or an enqueue callable (RQ) when
scoring runs in a separate worker. Pending and processing rows are picked up
again by ``resume`` after a restart.
"""
import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from examdesk.core.config import Settings
from examdesk.core.database import utcnow
from examdesk.core.errors import AppError, BadRequestError, ForbiddenError, NotFoundError
from examdesk.models.orm import (
    Answer, AnswerStatus, Exam, ExamParticipant, ExamStatistic, ParticipantStatus, Question, QuestionType,
    ScoringJob, ScoringJobStatus, User,
)
from examdesk.services.exams import get_or_create_statistics, get_owned_exam

logger = logging.getLogger(__name__)

MAX_SCORE = 100.0
MANUAL_REVIEW_MESSAGE = "Automatic scoring is unavailable; this answer needs manual review."
ACTIVE_JOB_STATUSES = (ScoringJobStatus.PENDING, ScoringJobStatus.PROCESSING)


class EssayScorer(Protocol):
    async def score_text(self, student_answer: str, answer_key: str,
                         rubric: Optional[Dict[str, float]] = None, question: Optional[str] = None) -> Dict[str, Any]: ...

    async def score_image(self, image_url: str, answer_key: str,
                          rubric: Optional[Dict[str, float]] = None, question: Optional[str] = None) -> Dict[str, Any]: ...


def normalize_choice(value: Optional[str]) -> str:
    return (value or "").strip().casefold()


def score_multiple_choice(submitted: Optional[str], answer_key: str) -> float:
    """Binary score: 100 when the normalized answer equals the normalized key."""
    return MAX_SCORE if normalize_choice(submitted) == normalize_choice(answer_key) else 0.0


def _clamp(score: float) -> float:
    return max(0.0, min(MAX_SCORE, float(score)))


# ---------- aggregates ----------

async def recalculate_participant_score(db: AsyncSession, participant_id: uuid.UUID) -> Optional[float]:
    """Mean of final scores; participants without scored answers are left untouched."""
    scores = [s for s in (await db.scalars(
        select(Answer.final_score).where(Answer.participant_id == participant_id, Answer.final_score.is_not(None))
    )).all()]
    if not scores:
        return None
    mean = sum(scores) / len(scores)
    await db.execute(
        update(ExamParticipant)
        .where(ExamParticipant.id == participant_id)
        .values(score=mean, status=ParticipantStatus.SCORED)
    )
    return mean


async def update_exam_statistics(db: AsyncSession, exam_id: uuid.UUID) -> ExamStatistic:
    """Full recompute over every participant of the exam."""
    participants = (await db.scalars(select(ExamParticipant).where(ExamParticipant.exam_id == exam_id))).all()
    scores = [p.score for p in participants if p.score is not None]
    stats = await get_or_create_statistics(db, exam_id)
    stats.total_participants = len(participants)
    stats.submitted_count = sum(1 for p in participants if p.submit_time is not None)
    stats.scored_count = sum(1 for p in participants if p.status == ParticipantStatus.SCORED)
    if scores:
        stats.avg_score = sum(scores) / len(scores)
        stats.max_score = max(scores)
        stats.min_score = min(scores)
    await db.flush()
    return stats


# ---------- queue ----------

class ScoringQueue:
    def __init__(self, session_factory: async_sessionmaker, scorer: EssayScorer, settings: Settings,
                 enqueue: Optional[Callable[[str, List[str]], Any]] = None):
        self.session_factory = session_factory
        self.scorer = scorer
        self.settings = settings
        self._enqueue = enqueue
        self._tasks: set = set()

    async def trigger(self, db: AsyncSession, exam_id: uuid.UUID, teacher_id: uuid.UUID,
                      participant_ids: Optional[Iterable[uuid.UUID]] = None) -> dict:
        await get_owned_exam(db, exam_id, teacher_id)
        stmt = select(ExamParticipant.id).where(
            ExamParticipant.exam_id == exam_id, ExamParticipant.submit_time.is_not(None)
        )
        if participant_ids is not None:
            stmt = stmt.where(ExamParticipant.id.in_(list(participant_ids)))
        targets = list((await db.scalars(stmt)).all())
        if not targets:
            return {"triggered": 0, "jobs": []}

        existing = {job.participant_id: job for job in (await db.scalars(
            select(ScoringJob).where(ScoringJob.participant_id.in_(targets))
        )).all()}
        queued, jobs = [], []
        for participant_id in targets:
            job = existing.get(participant_id)
            if job is not None and job.status in ACTIVE_JOB_STATUSES:
                # owned by a run that has not finished yet
                jobs.append({"participant_id": str(participant_id), "status": job.status.value})
                continue
            if job is None:
                db.add(ScoringJob(exam_id=exam_id, participant_id=participant_id, status=ScoringJobStatus.PENDING))
            else:
                job.status = ScoringJobStatus.PENDING
                job.error = None
                job.started_at = job.completed_at = None
            queued.append(participant_id)
            jobs.append({"participant_id": str(participant_id), "status": ScoringJobStatus.PENDING.value})
        # workers read the rows from their own sessions
        await db.commit()

        if queued:
            self._dispatch(exam_id, queued)
        logger.info("Scoring triggered for %d of %d participants of exam %s", len(queued), len(targets), exam_id)
        return {"triggered": len(queued), "jobs": jobs}

    def _dispatch(self, exam_id: uuid.UUID, participant_ids: List[uuid.UUID]) -> None:
        if self._enqueue is not None:
            self._enqueue(str(exam_id), [str(pid) for pid in participant_ids])
            return
        task = asyncio.create_task(self.process(exam_id, participant_ids))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def status(self, db: AsyncSession, exam_id: uuid.UUID, teacher_id: uuid.UUID) -> dict:
        await get_owned_exam(db, exam_id, teacher_id)
        rows = (await db.execute(
            select(ScoringJob.status, func.count()).where(ScoringJob.exam_id == exam_id).group_by(ScoringJob.status)
        )).all()
        counts = {state.value: 0 for state in ScoringJobStatus}
        for state, count in rows:
            counts[state.value] = count
        return counts

    async def process(self, exam_id: uuid.UUID, participant_ids: List[uuid.UUID]) -> None:
        for participant_id in participant_ids:
            async with self.session_factory() as session:
                await self._process_participant(session, participant_id)
        async with self.session_factory() as session:
            await update_exam_statistics(session, exam_id)
            await session.commit()
        logger.info("Scoring batch for exam %s finished", exam_id)

    async def _set_job(self, session: AsyncSession, participant_id: uuid.UUID, **values) -> None:
        await session.execute(update(ScoringJob).where(ScoringJob.participant_id == participant_id).values(**values))
        await session.commit()

    async def _process_participant(self, session: AsyncSession, participant_id: uuid.UUID) -> None:
        await self._set_job(session, participant_id, status=ScoringJobStatus.PROCESSING, started_at=utcnow(),
                            attempts=ScoringJob.attempts + 1, error=None)
        try:
            rows = (await session.execute(
                select(Answer, Question)
                .join(Question, Question.id == Answer.question_id)
                .where(Answer.participant_id == participant_id, Answer.status != AnswerStatus.SCORED)
            )).all()
            for answer, question in rows:
                if await self._score_answer(answer, question):
                    # already-scored answers survive a later failure
                    await session.commit()
            await recalculate_participant_score(session, participant_id)
            await session.commit()
        except Exception as e:
            logger.exception(f"Scoring job for participant {participant_id} failed")
            await session.rollback()
            await self._set_job(session, participant_id, status=ScoringJobStatus.FAILED, error=str(e),
                                completed_at=utcnow())
            return
        await self._set_job(session, participant_id, status=ScoringJobStatus.DONE, completed_at=utcnow())

    async def _score_answer(self, answer: Answer, question: Question) -> bool:
        """Score one answer in place; False when it has to wait for a teacher."""
        if question.type == QuestionType.PG:
            if not question.answer_key:
                logger.warning("Question %s has no answer key; answer %s left for manual scoring",
                               question.id, answer.id)
                return False
            score = score_multiple_choice(answer.answer_text, question.answer_key)
            feedback, detail = None, None
        else:
            score, feedback, detail = await self._score_essay(answer, question)
        answer.ai_score = score
        answer.final_score = score
        answer.feedback = feedback
        answer.feedback_detail = detail
        answer.status = AnswerStatus.SCORED
        return True

    async def _score_essay(self, answer: Answer, question: Question) -> Tuple[float, Optional[str], Dict[str, Any]]:
        if not answer.answer_text and not answer.answer_file_url:
            return 0.0, "No answer submitted.", {"strengths": [], "improvements": [], "rubric_breakdown": {}}
        try:
            if answer.answer_file_url:
                result = await self.scorer.score_image(answer.answer_file_url, question.answer_key or "",
                                                       question.rubric, question.prompt)
            else:
                result = await self.scorer.score_text(answer.answer_text, question.answer_key or "",
                                                      question.rubric, question.prompt)
            feedback = result.get("feedback") or {}
            return _clamp(result["score"]), feedback.get("overall"), {
                "strengths": feedback.get("strengths", []),
                "improvements": feedback.get("improvements", []),
                "rubric_breakdown": result.get("rubric_breakdown", {}),
                "needs_manual_review": False,
            }
        except (AppError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Essay scoring failed for answer {answer.id}, using fallback score: {e}")
            return _clamp(self.settings.ESSAY_FALLBACK_SCORE), MANUAL_REVIEW_MESSAGE, {
                "needs_manual_review": True,
                "error": str(e),
            }

    async def resume(self) -> int:
        """Dispatch jobs left pending or processing by a previous run."""
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(ScoringJob.exam_id, ScoringJob.participant_id)
                .where(ScoringJob.status.in_([ScoringJobStatus.PENDING, ScoringJobStatus.PROCESSING]))
            )).all()
        by_exam: Dict[uuid.UUID, List[uuid.UUID]] = {}
        for exam_id, participant_id in rows:
            by_exam.setdefault(exam_id, []).append(participant_id)
        for exam_id, participant_ids in by_exam.items():
            logger.info("Resuming %d scoring jobs for exam %s", len(participant_ids), exam_id)
            self._dispatch(exam_id, participant_ids)
        return len(rows)

    async def drain(self) -> None:
        """Wait for in-process scoring tasks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)


# ---------- read models and overrides ----------

def _summary(participants: List[ExamParticipant]) -> dict:
    scores = [p.score for p in participants if p.score is not None]
    return {
        "average": sum(scores) / len(scores) if scores else None,
        "highest": max(scores) if scores else None,
        "lowest": min(scores) if scores else None,
        "submitted": sum(1 for p in participants if p.submit_time is not None),
        "scored": sum(1 for p in participants if p.status == ParticipantStatus.SCORED),
        "total": len(participants),
    }


async def exam_scores(db: AsyncSession, exam_id: uuid.UUID, teacher_id: uuid.UUID) -> dict:
    exam = await get_owned_exam(db, exam_id, teacher_id)
    rows = (await db.execute(
        select(ExamParticipant, User.name, User.email)
        .join(User, User.id == ExamParticipant.student_id)
        .where(ExamParticipant.exam_id == exam_id)
        .order_by(ExamParticipant.created_at)
    )).all()
    participants = [row[0] for row in rows]
    return {
        "exam": {"id": str(exam.id), "title": exam.title, "status": exam.status.value},
        "participants": [{**p.to_dict(), "student_name": name, "student_email": email} for p, name, email in rows],
        "statistics": _summary(participants),
    }


async def participant_answers(db: AsyncSession, exam_id: uuid.UUID, participant_id: uuid.UUID,
                              teacher_id: uuid.UUID) -> dict:
    await get_owned_exam(db, exam_id, teacher_id)
    row = (await db.execute(
        select(ExamParticipant, User.name, User.email)
        .join(User, User.id == ExamParticipant.student_id)
        .where(ExamParticipant.id == participant_id)
    )).first()
    if not row or row[0].exam_id != exam_id:
        raise NotFoundError("Participant")
    participant, name, email = row
    answers = (await db.execute(
        select(Answer, Question)
        .join(Question, Question.id == Answer.question_id)
        .where(Answer.participant_id == participant_id)
    )).all()
    return {
        "participant": {**participant.to_dict(), "student_name": name, "student_email": email},
        "answers": [{**answer.to_dict(), "question": question.to_dict()} for answer, question in answers],
    }


async def override_score(db: AsyncSession, answer_id: uuid.UUID, teacher_id: uuid.UUID, final_score: float,
                         feedback: Optional[str] = None) -> dict:
    """Teacher correction; goes through the same aggregate recompute as automatic scoring."""
    if not 0 <= final_score <= MAX_SCORE:
        raise BadRequestError("Score must be between 0 and 100")
    row = (await db.execute(
        select(Answer, ExamParticipant.exam_id, Exam.teacher_id)
        .join(ExamParticipant, ExamParticipant.id == Answer.participant_id)
        .join(Exam, Exam.id == ExamParticipant.exam_id)
        .where(Answer.id == answer_id)
    )).first()
    if not row:
        raise NotFoundError("Answer")
    answer, exam_id, owner_id = row
    if owner_id != teacher_id:
        raise ForbiddenError("You do not own this exam")

    answer.final_score = final_score
    if feedback is not None:
        answer.feedback = feedback
    answer.status = AnswerStatus.SCORED
    await db.flush()
    await recalculate_participant_score(db, answer.participant_id)
    await update_exam_statistics(db, exam_id)
    logger.info("Answer %s overridden to %.1f by %s", answer_id, final_score, teacher_id)
    return answer.to_dict()
