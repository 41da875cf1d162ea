"""
Mitr Analytics Background Scheduler
===================================
Runs housekeeping on a schedule:
  - Analytics cache cleanup: drops expired entries (every loop tick)
  - Extraction job retention: purges old completed jobs (daily by default)

State persisted to scheduler_state.json so the purge cadence survives restarts.
"""
import asyncio
import json
import os
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

logger = logging.getLogger(__name__)

MIN_TICK_SECONDS = 5
_scheduler_task: Optional[asyncio.Task] = None


def _get_state_path() -> str:
    from mitr_analytics.config import CONFIG_DIR
    return os.path.join(CONFIG_DIR, "scheduler_state.json")


def _load_state() -> dict:
    path = _get_state_path()
    if not os.path.exists(path):
        return {}
    try:
        with open(path) as f:
            raw = json.load(f)
        return raw if isinstance(raw, dict) else {}
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable scheduler state: {e}")
        return {}


def _save_state(state: dict):
    path = _get_state_path()
    try:
        with open(path, "w") as f:
            json.dump(state, f, default=str, indent=2)
    except OSError as e:
        logger.error(f"Failed to save scheduler state: {e}")


def _parse_dt(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


def run_cache_cleanup() -> int:
    from mitr_analytics.analytics.cache import get_cache

    removed = get_cache().cleanup()
    if removed:
        logger.debug(f"Cache cleanup removed {removed} expired entries")
    return removed


async def run_job_retention_purge(days_old: int) -> int:
    from mitr_analytics.extraction.jobs import clear_old_jobs

    return await clear_old_jobs(days_old=days_old)


def _purge_due(state: dict, now: datetime, interval_hours: float) -> bool:
    last = _parse_dt(state.get("last_job_purge"))
    return last is None or (now - last) > timedelta(hours=interval_hours)


async def scheduler_tick(state: dict, now: Optional[datetime] = None) -> bool:
    """One pass over the scheduled tasks. Returns True when ``state`` changed."""
    from mitr_analytics.config import get_section

    now = now or datetime.now(timezone.utc)
    changed = False

    try:
        run_cache_cleanup()
    except Exception as e:
        logger.warning(f"Cache cleanup failed: {e}")

    try:
        scheduler_cfg = get_section("scheduler")
        queue_cfg = get_section("job_queue")
        interval_hours = max(1.0, float(scheduler_cfg.get("purge_interval_hours", 24)))
        if _purge_due(state, now, interval_hours):
            deleted = await run_job_retention_purge(int(queue_cfg.get("retention_days", 30)))
            state["last_job_purge"] = now.isoformat()
            state["last_job_purge_deleted"] = deleted
            changed = True
    except Exception as e:
        logger.warning(f"Job retention purge failed: {e}")

    return changed


async def scheduler_loop():
    from mitr_analytics.config import get_section

    logger.info("Scheduler loop started")
    state = _load_state()
    while True:
        try:
            if await scheduler_tick(state):
                _save_state(state)
        except Exception as e:
            logger.error(f"Scheduler loop error: {e}")

        interval = float(get_section("analytics_cache").get("cleanup_interval_seconds", 60))
        await asyncio.sleep(max(MIN_TICK_SECONDS, interval))


def start_scheduler():
    """Schedule the scheduler loop on the running event loop."""
    global _scheduler_task
    if _scheduler_task and not _scheduler_task.done():
        return
    _scheduler_task = asyncio.create_task(scheduler_loop())


async def stop_scheduler():
    global _scheduler_task
    if _scheduler_task is None:
        return
    _scheduler_task.cancel()
    try:
        await _scheduler_task
    except asyncio.CancelledError:
        pass
    _scheduler_task = None
