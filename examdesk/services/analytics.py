import uuid
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from examdesk.core.database import as_utc
from examdesk.core.errors import NotFoundError
from examdesk.models.orm import (
    Exam, ExamParticipant, ExamStatistic, Material, ProctoringLog, Question, User,
)
from examdesk.services.exams import get_owned_exam
from examdesk.services.proctoring import violations_by_type

SCORE_BUCKETS = ["0-10", "11-20", "21-30", "31-40", "41-50", "51-60", "61-70", "71-80", "81-90", "91-100"]


def score_bucket(score: float) -> str:
    """Upper-inclusive decile: 10 -> "0-10", 10.5 -> "11-20", 100 -> "91-100"."""
    for index in range(len(SCORE_BUCKETS) - 1):
        if score <= (index + 1) * 10:
            return SCORE_BUCKETS[index]
    return SCORE_BUCKETS[-1]


def score_distribution(scores: List[float]) -> Dict[str, int]:
    distribution = {bucket: 0 for bucket in SCORE_BUCKETS}
    for score in scores:
        distribution[score_bucket(score)] += 1
    return distribution


async def exam_analytics(db: AsyncSession, exam_id: uuid.UUID, teacher_id: uuid.UUID) -> dict:
    exam = await get_owned_exam(db, exam_id, teacher_id)
    stats = await db.get(ExamStatistic, exam_id)
    participants = (await db.scalars(select(ExamParticipant).where(ExamParticipant.exam_id == exam_id))).all()

    total = len(participants)
    submitted = [p for p in participants if p.submit_time is not None]
    durations = [
        (as_utc(p.submit_time) - as_utc(p.start_time)).total_seconds() / 60
        for p in submitted if p.start_time is not None
    ]
    exam_data = exam.to_dict()
    return {
        "exam": {key: exam_data[key] for key in ("id", "title", "status", "start_time", "end_time")},
        "statistics": {
            "avg_score": stats.avg_score if stats else None,
            "max_score": stats.max_score if stats else None,
            "min_score": stats.min_score if stats else None,
            "total_participants": total,
            "submitted_count": len(submitted),
            "scored_count": stats.scored_count if stats else 0,
            "completion_rate": round(len(submitted) / total * 100) if total else 0,
            "avg_completion_minutes": round(sum(durations) / len(durations)) if durations else 0,
        },
        "score_distribution": score_distribution([p.score for p in participants if p.score is not None]),
        "proctoring_violations": await violations_by_type(db, exam_id),
        "suspicious_count": stats.suspicious_count if stats else 0,
    }


async def overview(db: AsyncSession, teacher_id: uuid.UUID, start_date: Optional[datetime] = None,
                   end_date: Optional[datetime] = None) -> dict:
    exam_filter = [Exam.teacher_id == teacher_id]
    if start_date:
        exam_filter.append(Exam.created_at >= start_date)
    if end_date:
        exam_filter.append(Exam.created_at <= end_date)

    exams_by_status = {
        status.value: count for status, count in (await db.execute(
            select(Exam.status, func.count()).where(*exam_filter).group_by(Exam.status)
        )).all()
    }
    materials_by_type = {
        mtype.value: count for mtype, count in (await db.execute(
            select(Material.type, func.count()).where(Material.teacher_id == teacher_id).group_by(Material.type)
        )).all()
    }
    question_count = await db.scalar(
        select(func.count()).select_from(Question).where(Question.teacher_id == teacher_id)
    )
    owned_exams = select(Exam.id).where(Exam.teacher_id == teacher_id)
    student_count = await db.scalar(
        select(func.count(distinct(ExamParticipant.student_id))).where(ExamParticipant.exam_id.in_(owned_exams))
    )
    avg_score = await db.scalar(
        select(func.avg(ExamParticipant.score)).where(
            ExamParticipant.exam_id.in_(owned_exams), ExamParticipant.score.is_not(None)
        )
    )
    recent = (await db.execute(
        select(Exam, ExamStatistic)
        .outerjoin(ExamStatistic, ExamStatistic.exam_id == Exam.id)
        .where(Exam.teacher_id == teacher_id)
        .order_by(Exam.created_at.desc())
        .limit(5)
    )).all()

    return {
        "summary": {
            "total_exams": sum(exams_by_status.values()),
            "total_materials": sum(materials_by_type.values()),
            "total_questions": int(question_count or 0),
            "total_students": int(student_count or 0),
            "avg_score": round(float(avg_score), 2) if avg_score is not None else 0,
        },
        "exams_by_status": exams_by_status,
        "materials_by_type": materials_by_type,
        "recent_exams": [
            {
                "id": str(exam.id),
                "title": exam.title,
                "status": exam.status.value,
                "created_at": exam.to_dict()["created_at"],
                "avg_score": stats.avg_score if stats else None,
                "participant_count": stats.total_participants if stats else 0,
            }
            for exam, stats in recent
        ],
    }


async def student_analytics(db: AsyncSession, student_id: uuid.UUID, teacher_id: uuid.UUID) -> dict:
    """A student's results, restricted to exams owned by the asking teacher."""
    rows = (await db.execute(
        select(ExamParticipant, Exam.title)
        .join(Exam, Exam.id == ExamParticipant.exam_id)
        .where(ExamParticipant.student_id == student_id, Exam.teacher_id == teacher_id)
        .order_by(ExamParticipant.created_at.desc())
    )).all()
    if not rows:
        raise NotFoundError("Student data")
    student = await db.get(User, student_id)

    scores = [p.score for p, _ in rows if p.score is not None]
    violations = await db.scalar(
        select(func.count()).select_from(ProctoringLog)
        .join(Exam, Exam.id == ProctoringLog.exam_id)
        .where(ProctoringLog.student_id == student_id, Exam.teacher_id == teacher_id)
    )
    return {
        "student": {"id": str(student.id), "name": student.name, "email": student.email} if student else None,
        "exams": [
            {
                "exam_id": str(p.exam_id),
                "exam_title": title,
                "score": p.score,
                "status": p.status.value,
                "start_time": p.to_dict()["start_time"],
                "submit_time": p.to_dict()["submit_time"],
            }
            for p, title in rows
        ],
        "total_exams": len(rows),
        "completed_exams": sum(1 for p, _ in rows if p.submit_time is not None),
        "average_score": round(sum(scores) / len(scores), 2) if scores else 0,
        "highest_score": max(scores) if scores else None,
        "lowest_score": min(scores) if scores else None,
        "total_violations": int(violations or 0),
    }
