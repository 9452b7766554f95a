import asyncio
import logging
import uuid
from typing import List

from rq import get_current_job

from examdesk.clients.essay_scorer import EssayScorerClient
from examdesk.core.config import get_settings
from examdesk.core.database import build_engine, build_session_factory
from examdesk.services.scoring import ScoringQueue

logger = logging.getLogger(__name__)


async def _run(exam_id: str, participant_ids: List[str]) -> None:
    settings = get_settings()
    engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
    scorer = EssayScorerClient(settings.ESSAY_SCORER_URL, timeout=settings.EXTERNAL_TIMEOUT_SECONDS)
    try:
        scoring = ScoringQueue(build_session_factory(engine), scorer, settings)
        await scoring.process(uuid.UUID(exam_id), [uuid.UUID(pid) for pid in participant_ids])
    finally:
        await scorer.close()
        await engine.dispose()


def score_participants_job(exam_id: str, participant_ids: List[str]) -> dict:
    """RQ entry point; job state mirrors the scoring_jobs rows it works through."""
    job = get_current_job()
    if job is not None:
        job.meta.update({"state": "running", "exam_id": exam_id, "participants": len(participant_ids)})
        job.save_meta()
    try:
        asyncio.run(_run(exam_id, participant_ids))
    except Exception:
        logger.exception(f"Scoring job for exam {exam_id} failed")
        if job is not None:
            job.meta.update({"state": "failed"})
            job.save_meta()
        raise
    if job is not None:
        job.meta.update({"state": "done"})
        job.save_meta()
    return {"exam_id": exam_id, "participants": len(participant_ids)}
