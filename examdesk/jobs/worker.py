from rq import Worker

from examdesk.core.config import settings
from examdesk.core.logging_config import configure_logging
from examdesk.jobs.queue import redis

if __name__ == "__main__":
    configure_logging(settings)
    w = Worker([settings.RQ_QUEUE], connection=redis)
    w.work(with_scheduler=True)
