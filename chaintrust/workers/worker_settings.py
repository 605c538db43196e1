"""
ChainTrust — Worker Settings

arq worker running the monitoring scheduler:

    arq chaintrust.workers.worker_settings.WorkerSettings
"""
from arq import cron
from arq.connections import RedisSettings
import structlog

from chaintrust.config import settings
from chaintrust.service import shared_engine
from chaintrust.workers.scheduler import heartbeat, tick

logger = structlog.get_logger()

REDIS_SETTINGS = RedisSettings.from_dsn(settings.REDIS_URL)


async def startup(ctx: dict):
    ctx["engine"] = shared_engine()
    logger.info("worker_started", heartbeat_minutes=settings.HEARTBEAT_MINUTES)


async def shutdown(ctx: dict):
    logger.info("worker_stopped")


class WorkerSettings:
    """arq worker configuration."""

    functions = [tick, heartbeat]

    cron_jobs = [
        cron(tick, minute={0}, unique=True),
        cron(
            heartbeat,
            minute=set(range(0, 60, settings.HEARTBEAT_MINUTES)),
            unique=True,
        ),
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = REDIS_SETTINGS
    max_jobs = settings.WORKER_MAX_JOBS
    job_timeout = settings.WORKER_JOB_TIMEOUT
