"""
Pulso — Staleness & Refresh Coordinator
────────────────────────────────────────
Decides when the news store is due for a refresh and guarantees at
most one pipeline run per process.

Staleness is read from the store's last_updated record, never from
memory, so it survives restarts:

  stale = last_updated is missing  or  now - last_updated > threshold

Single-flight: the in-flight task is checked and set under an
asyncio.Lock. A trigger that finds a run in flight is a no-op; a
caller of run() that finds one shares its result.
A forced run that lands on a normal one in flight gets that run's result
marked joined_in_flight, since the store was not cleared.
"""

import asyncio
import dataclasses
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Optional, Tuple

from news_ingestion.database import NewsStore, run_blocking
from news_ingestion.errors import StoreUnavailable
from news_ingestion.pipeline import NewsPipeline, PipelineRunResult

log = logging.getLogger("pulso.refresh")

STALE_THRESHOLD_MINUTES = float(os.environ.get("STALE_THRESHOLD_MINUTES", "30"))


class RefreshCoordinator:

    def __init__(self, store: NewsStore, pipeline: NewsPipeline,
                 threshold_minutes: float = STALE_THRESHOLD_MINUTES,
                 clock=time.time):
        self.store             = store
        self.pipeline          = pipeline
        self.threshold_minutes = threshold_minutes
        self.run_count         = 0          # pipeline runs actually started
        self.last_result: Optional[PipelineRunResult] = None
        self._clock            = clock
        self._lock             = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._task_forced      = False

    @property
    def is_refreshing(self) -> bool:
        return self._task is not None and not self._task.done()

    async def is_store_stale(self) -> dict:
        """{stale, minutes_old, last_updated}; a store that cannot answer counts as stale."""
        try:
            last = await run_blocking(self.store.get_last_updated)
        except StoreUnavailable as e:
            log.warning(f"Staleness check failed: {e}")
            last = None
        if last is None:
            return {"stale": True, "minutes_old": None, "last_updated": None}

        age_s = max(0.0, self._clock() - last)
        return {
            "stale":        age_s > self.threshold_minutes * 60,
            "minutes_old":  int(age_s // 60),
            "last_updated": datetime.fromtimestamp(last, tz=timezone.utc).isoformat(),
        }

    # ── Single-flight ────────────────────────────────────────

    async def _claim(self, force: bool) -> Tuple[asyncio.Task, bool, bool]:
        """(task, started, whether that task is a forced run)"""
        async with self._lock:
            if self.is_refreshing:
                return self._task, False, self._task_forced
            self.run_count += 1
            self._task = asyncio.create_task(self._execute(force))
            self._task_forced = force
            return self._task, True, force

    async def _execute(self, force: bool) -> PipelineRunResult:
        try:
            result = await (self.pipeline.force_reprocess() if force else self.pipeline.run())
        except Exception as e:
            log.error(f"News run crashed: {e}", exc_info=True)
            result = PipelineRunResult(run_id=f"crashed-{uuid.uuid4().hex[:6]}", status="failed")
            result.record_error(f"{type(e).__name__}: {e}")
        self.last_result = result
        return result

    async def trigger_background_refresh(self, force: bool = False) -> bool:
        """Start a run without waiting for it. False if one was already in flight."""
        _, started, _ = await self._claim(force)
        if started:
            log.info(f"Background news refresh started (force={force})")
        else:
            log.debug("News refresh already in flight, trigger ignored")
        return started

    async def run(self, force: bool = False) -> PipelineRunResult:
        """Run and wait. Joins the in-flight run instead of starting a second one."""
        task, started, task_forced = await self._claim(force)
        if started:
            return await asyncio.shield(task)

        log.info("Joining in-flight news run")
        result = await asyncio.shield(task)
        if force and not task_forced:
            log.warning("Force requested while a normal run was in flight; the store was not cleared")
            return dataclasses.replace(result, errors=list(result.errors), joined_in_flight=True)
        return result

    async def refresh_if_stale(self) -> bool:
        if not (await self.is_store_stale())["stale"]:
            return False
        return await self.trigger_background_refresh()
