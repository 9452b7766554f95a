from typing import List

from redis import Redis
from rq import Queue

from examdesk.core.config import settings

redis = Redis.from_url(settings.REDIS_URL)
queue = Queue(settings.RQ_QUEUE, connection=redis)


def enqueue_scoring(exam_id: str, participant_ids: List[str]):
    return queue.enqueue(
        "examdesk.jobs.scoring_job.score_participants_job",
        exam_id,
        participant_ids,
        job_timeout=30 * 60,
        description=f"score exam {exam_id}",
    )
