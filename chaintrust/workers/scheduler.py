"""
ChainTrust — Monitoring Scheduler

Runs as periodic jobs, either inside the arq worker or, for a single-process
deployment, on a timer inside the API process (`run_in_process`):

    tick       - hourly. Drains every due monitoring task, then schedules a
                 low-priority check for each live proof with none pending.
    heartbeat  - every few minutes. Drains due Critical/High tasks only and
                 expires idle rate-limit history.

When arq hands us its redis connection, a short lock keeps two workers from
running the same tick concurrently. The in-process loop drains the engine
the API routes use. A worker in its own process keeps its own queue and
only learns about proofs through the full scan over the entity store.
"""
import asyncio
from typing import Optional

import structlog

from chaintrust.config import settings
from chaintrust.service import TrustEngine, shared_engine

logger = structlog.get_logger()

TICK_LOCK_KEY = "chaintrust:lock:tick"
HEARTBEAT_LOCK_KEY = "chaintrust:lock:heartbeat"


def get_engine(ctx: dict = None) -> TrustEngine:
    if ctx and ctx.get("engine") is not None:
        return ctx["engine"]
    return shared_engine()


# =============================================
# EXECUTION LOCK
# =============================================

async def acquire_lock(ctx: dict, key: str, ttl_seconds: int = 600) -> bool:
    """Acquire a worker-wide lock. Always granted without redis."""
    r = (ctx or {}).get("redis")
    if r is None:
        return True
    return bool(await r.set(key, "1", nx=True, ex=ttl_seconds))


async def release_lock(ctx: dict, key: str):
    r = (ctx or {}).get("redis")
    if r is not None:
        await r.delete(key)


# =============================================
# MAIN SCHEDULER
# =============================================

async def tick(ctx: dict = None):
    """Drain due monitoring tasks, then run the full proof scan."""
    logger.info("scheduler_tick_start")
    if not await acquire_lock(ctx, TICK_LOCK_KEY):
        logger.info("scheduler_tick_skipped", reason="already_running")
        return {"completed": 0, "scheduled": 0}

    engine = get_engine(ctx)
    try:
        completed = await engine.run_scheduled_tasks()
        scheduled = await engine.monitor.full_scan()
    finally:
        await release_lock(ctx, TICK_LOCK_KEY)

    logger.info("scheduler_tick_complete",
                completed=len(completed),
                scheduled=scheduled,
                pending=len(engine.monitor.pending_tasks()),
                failed=len(engine.monitor.failed_tasks()))
    return {"completed": len(completed), "scheduled": scheduled}


async def heartbeat(ctx: dict = None):
    """Run urgent tasks between ticks and expire idle rate-limit history."""
    if not await acquire_lock(ctx, HEARTBEAT_LOCK_KEY, ttl_seconds=120):
        return {"completed": 0, "expired": 0}

    engine = get_engine(ctx)
    try:
        completed = await engine.monitor.run_priority_tasks()
        expired = await engine.limiter.cleanup()
    finally:
        await release_lock(ctx, HEARTBEAT_LOCK_KEY)

    if completed or expired:
        logger.info("scheduler_heartbeat", completed=len(completed), expired=expired)
    return {"completed": len(completed), "expired": expired}


# =============================================
# IN-PROCESS LOOP
# =============================================

async def _run_job(job, ctx: dict):
    try:
        await job(ctx)
    except Exception:
        logger.exception("scheduler_job_failed", job=job.__name__)


async def run_in_process(
    engine: TrustEngine,
    stop: asyncio.Event,
    tick_seconds: Optional[float] = None,
    heartbeat_seconds: Optional[float] = None,
):
    """
    Run tick and heartbeat on a timer until `stop` is set. Both fire once
    immediately, then every tick_seconds / heartbeat_seconds.
    """
    tick_seconds = tick_seconds or settings.SCHEDULER_TICK_SECONDS
    heartbeat_seconds = heartbeat_seconds or settings.HEARTBEAT_MINUTES * 60
    ctx = {"engine": engine}
    loop = asyncio.get_running_loop()
    next_tick = next_heartbeat = loop.time()

    logger.info("in_process_scheduler_started",
                tick_seconds=tick_seconds, heartbeat_seconds=heartbeat_seconds)
    while not stop.is_set():
        now = loop.time()
        if now >= next_tick:
            await _run_job(tick, ctx)
            next_tick = now + tick_seconds
        if now >= next_heartbeat:
            await _run_job(heartbeat, ctx)
            next_heartbeat = now + heartbeat_seconds

        wait = max(0.0, min(next_tick, next_heartbeat) - loop.time())
        try:
            await asyncio.wait_for(stop.wait(), timeout=wait)
        except asyncio.TimeoutError:
            pass
    logger.info("in_process_scheduler_stopped")
