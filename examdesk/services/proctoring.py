import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from examdesk.clients.proctoring import ProctoringClient
from examdesk.core.database import paginate
from examdesk.core.errors import AppError, NotFoundError
from examdesk.core.realtime import RealtimeHub
from examdesk.models.orm import ExamParticipant, ProctoringEventType, ProctoringLog, User
from examdesk.services.exams import get_or_create_statistics, get_owned_exam

logger = logging.getLogger(__name__)


async def _participant_for_session(db: AsyncSession, session_id: str, student_id: uuid.UUID):
    row = (await db.execute(
        select(ExamParticipant, User.name)
        .join(User, User.id == ExamParticipant.student_id)
        .where(ExamParticipant.proctoring_session_id == session_id, ExamParticipant.student_id == student_id)
    )).first()
    if not row:
        raise NotFoundError("Proctoring session")
    return row


async def violations_by_type(db: AsyncSession, exam_id: uuid.UUID,
                             student_id: Optional[uuid.UUID] = None) -> Dict[str, int]:
    stmt = (
        select(ProctoringLog.event_type, func.count())
        .where(ProctoringLog.exam_id == exam_id)
        .group_by(ProctoringLog.event_type)
    )
    if student_id is not None:
        stmt = stmt.where(ProctoringLog.student_id == student_id)
    return {event_type.value: count for event_type, count in (await db.execute(stmt)).all()}


async def suspicious_students(db: AsyncSession, exam_id: uuid.UUID, threshold: int) -> List[uuid.UUID]:
    return list((await db.scalars(
        select(ProctoringLog.student_id)
        .where(ProctoringLog.exam_id == exam_id)
        .group_by(ProctoringLog.student_id)
        .having(func.count() >= threshold)
    )).all())


async def report_event(db: AsyncSession, hub: RealtimeHub, student_id: uuid.UUID, session_id: str,
                       event_type: ProctoringEventType, confidence: Optional[float] = None,
                       details: Optional[Dict[str, Any]] = None, snapshot_url: Optional[str] = None,
                       threshold: int = 5) -> dict:
    """Append a violation, alert observers, and refresh the exam's suspicious count."""
    participant, student_name = await _participant_for_session(db, session_id, student_id)
    log = ProctoringLog(
        exam_id=participant.exam_id,
        student_id=participant.student_id,
        participant_id=participant.id,
        event_type=event_type,
        confidence=confidence,
        details=details,
        snapshot_url=snapshot_url,
    )
    db.add(log)
    await db.flush()

    total = int(await db.scalar(select(func.count()).select_from(ProctoringLog).where(
        ProctoringLog.exam_id == participant.exam_id, ProctoringLog.student_id == participant.student_id
    )) or 0)
    if total >= threshold:
        stats = await get_or_create_statistics(db, participant.exam_id)
        stats.suspicious_count = len(await suspicious_students(db, participant.exam_id, threshold))
        await db.flush()
    await db.commit()

    payload = {
        "student_id": str(participant.student_id),
        "student_name": student_name,
        "exam_id": str(participant.exam_id),
        "type": event_type.value,
        "confidence": confidence or 0,
        "timestamp": log.to_dict()["created_at"],
    }
    await hub.emit_proctoring_alert(participant.exam_id, payload)
    await hub.emit_proctoring_warning(participant.student_id, {
        "exam_id": str(participant.exam_id),
        "type": event_type.value,
        "message": f"Proctoring violation detected: {event_type.value}",
        "violation_count": total,
    })
    logger.info("Proctoring event %s recorded for student %s in exam %s",
                event_type.value, participant.student_id, participant.exam_id)
    return log.to_dict()


async def report_browser_event(db: AsyncSession, proctoring: ProctoringClient, student_id: uuid.UUID,
                               session_id: str, event_type: str, details: Optional[Dict[str, Any]] = None) -> dict:
    await _participant_for_session(db, session_id, student_id)
    try:
        await proctoring.report_browser_event(session_id, event_type, details or {})
    except AppError as e:
        logger.error(f"Failed to report browser event to proctoring service: {e.message}")
    logger.debug("Browser event %s reported for session %s", event_type, session_id)
    return {"session_id": session_id, "event_type": event_type}


async def exam_logs(db: AsyncSession, exam_id: uuid.UUID, teacher_id: uuid.UUID, page: int = 1, limit: int = 50,
                    event_type: Optional[ProctoringEventType] = None, student_id: Optional[uuid.UUID] = None):
    await get_owned_exam(db, exam_id, teacher_id)
    stmt = (
        select(ProctoringLog, User.name, User.email)
        .join(User, User.id == ProctoringLog.student_id)
        .where(ProctoringLog.exam_id == exam_id)
    )
    if event_type:
        stmt = stmt.where(ProctoringLog.event_type == event_type)
    if student_id:
        stmt = stmt.where(ProctoringLog.student_id == student_id)
    rows, total = await paginate(db, stmt.order_by(ProctoringLog.created_at.desc()), page, limit)
    items = [{**log.to_dict(), "student": {"id": str(log.student_id), "name": name, "email": email}}
             for log, name, email in rows]
    return items, total


async def exam_stats(db: AsyncSession, exam_id: uuid.UUID, teacher_id: uuid.UUID, threshold: int = 5) -> dict:
    await get_owned_exam(db, exam_id, teacher_id)
    by_type = await violations_by_type(db, exam_id)
    suspicious = await suspicious_students(db, exam_id, threshold)
    return {
        "total_violations": sum(by_type.values()),
        "violations_by_type": by_type,
        "suspicious_count": len(suspicious),
        "suspicious_students": [str(sid) for sid in suspicious],
    }


async def student_logs(db: AsyncSession, exam_id: uuid.UUID, student_id: uuid.UUID, teacher_id: uuid.UUID) -> dict:
    await get_owned_exam(db, exam_id, teacher_id)
    logs = (await db.scalars(
        select(ProctoringLog)
        .where(ProctoringLog.exam_id == exam_id, ProctoringLog.student_id == student_id)
        .order_by(ProctoringLog.created_at.desc())
    )).all()
    return {
        "logs": [log.to_dict() for log in logs],
        "summary": {"total": len(logs), "by_type": await violations_by_type(db, exam_id, student_id)},
    }


async def session_info(proctoring: ProctoringClient, session_id: str) -> Dict[str, Any]:
    try:
        return await proctoring.get_session(session_id)
    except AppError as e:
        logger.error(f"Failed to get proctoring session {session_id}: {e.message}")
        raise NotFoundError("Proctoring session")


async def session_events(proctoring: ProctoringClient, session_id: str) -> List[Dict[str, Any]]:
    try:
        return await proctoring.get_session_events(session_id)
    except AppError as e:
        logger.error(f"Failed to get events for proctoring session {session_id}: {e.message}")
        return []
