"""
Pulso — Background Scheduler
═══════════════════════════════════════════════════════════════════════

Two jobs, both in-process on the FastAPI event loop:

  process_news   every NEWS_INTERVAL_MINUTES (30)
         ├─ Why:    keep the news store inside the staleness threshold
         │          without waiting for a reader to notice
         └─ How:    RefreshCoordinator.run(), so a run already started
                    by a stale read is joined, never duplicated

  cache_sweep    every SWEEP_INTERVAL_S (5 min)
         └─ Why:    expired entries are otherwise only evicted when
                    someone asks for them again

A run must finish well inside the interval; RUN_DEADLINE_S bounds the
classification stage, and max_instances=1 makes APScheduler skip a tick
rather than stack runs.
"""

import logging
import os
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from indicator_engine.cache.memory_cache import TTLCache
from indicator_engine.cache.ttl_config import SWEEP_INTERVAL_S

log = logging.getLogger("pulso.scheduler")

NEWS_INTERVAL_MINUTES = float(os.environ.get("NEWS_INTERVAL_MINUTES", "30"))
GRACE_S               = 300   # 5-minute misfire grace window

_scheduler  = None
_is_running = False


# ─────────────────────────────────────────────────────────────
# JOBS
# ─────────────────────────────────────────────────────────────

async def job_process_news(coordinator):
    result = await coordinator.run()
    log.info(f"[process_news] {result.status}: processed={result.processed_count} "
             f"errors={result.error_count} feed_errors={result.feed_error_count}")


def job_cache_sweep(cache: TTLCache):
    removed = cache.sweep()
    if removed:
        log.info(f"[cache_sweep] evicted {removed} expired entries")


# ─────────────────────────────────────────────────────────────
# SCHEDULER CONTROL
# ─────────────────────────────────────────────────────────────

def start_scheduler(coordinator, cache: TTLCache, run_news_now: bool = False):
    global _scheduler, _is_running
    if _is_running:
        log.warning("Scheduler already running, ignoring start call")
        return

    _scheduler = AsyncIOScheduler(timezone="UTC")
    # next_run_time=None would add the job paused, so only pass it to run now
    first_run = {"next_run_time": datetime.now(timezone.utc)} if run_news_now else {}
    _scheduler.add_job(
        job_process_news,
        IntervalTrigger(minutes=NEWS_INTERVAL_MINUTES),
        args                = [coordinator],
        id                  = "process_news",
        name                = f"News pipeline every {NEWS_INTERVAL_MINUTES:g} min",
        max_instances       = 1,
        misfire_grace_time  = GRACE_S,
        replace_existing    = True,
        **first_run,
    )
    _scheduler.add_job(
        job_cache_sweep,
        IntervalTrigger(seconds=SWEEP_INTERVAL_S),
        args                = [cache],
        id                  = "cache_sweep",
        name                = f"Cache sweep every {SWEEP_INTERVAL_S}s",
        max_instances       = 1,
        misfire_grace_time  = GRACE_S,
        replace_existing    = True,
    )

    _scheduler.start()
    _is_running = True
    log.info(f"Scheduler live: {len(_scheduler.get_jobs())} jobs registered")


def stop_scheduler():
    global _scheduler, _is_running
    if _scheduler and _is_running:
        _scheduler.shutdown(wait=False)
        _is_running = False
        log.info("Scheduler stopped")


def get_scheduler_status() -> dict:
    if not _scheduler or not _is_running:
        return {"running": False, "jobs": []}

    jobs = []
    for job in _scheduler.get_jobs():
        nxt = job.next_run_time
        jobs.append({
            "id":       job.id,
            "name":     job.name,
            "next_run": nxt.isoformat() if nxt else None,
        })
    jobs.sort(key=lambda j: j["next_run"] or "9999")
    return {"running": True, "job_count": len(jobs), "jobs": jobs}
