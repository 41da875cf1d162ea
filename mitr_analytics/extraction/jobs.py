from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from mitr_analytics.config import get_section
from mitr_analytics.database.client import JOBS_TABLE, escape_sql, get_db
from mitr_analytics.extraction.errors import NoMessagesError
from mitr_analytics.extraction.write_queue import enqueue_write

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

_STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED)
_ACTIVE_STATUSES = {STATUS_PENDING, STATUS_PROCESSING}
_TERMINAL_STATUSES = {STATUS_COMPLETED, STATUS_FAILED}

PRIORITY_HIGH = "high"
PRIORITY_NORMAL = "normal"
PRIORITY_LOW = "low"
_PRIORITY_RANK = {PRIORITY_HIGH: 0, PRIORITY_NORMAL: 1, PRIORITY_LOW: 2}

MAX_SCAN_ROWS = 5000


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_dt(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)
        except ValueError:
            return None
    return None


def _epoch(value: Any) -> float:
    dt = _to_dt(value)
    return dt.timestamp() if dt else 0.0


def _normalize_priority(value: Any) -> str:
    priority = str(value or PRIORITY_NORMAL).strip().lower()
    return priority if priority in _PRIORITY_RANK else PRIORITY_NORMAL


def _iso(value: Any) -> Optional[str]:
    dt = _to_dt(value)
    return dt.isoformat() if dt else None


def public_job(row: dict) -> dict:
    return {
        "id": str(row.get("id") or ""),
        "conversation_id": str(row.get("conversation_id") or ""),
        "user_id": str(row.get("user_id") or ""),
        "status": str(row.get("status") or ""),
        "priority": str(row.get("priority") or PRIORITY_NORMAL),
        "message_count_at_extraction": int(row.get("message_count_at_extraction") or 0),
        "retry_count": int(row.get("retry_count") or 0),
        "error_message": row.get("error_message") or None,
        "created_at": _iso(row.get("created_at")),
        "started_at": _iso(row.get("started_at")),
        "completed_at": _iso(row.get("completed_at")),
        "next_attempt_at": _iso(row.get("next_attempt_at")),
    }


def _jobs_table():
    db = get_db()
    if JOBS_TABLE not in db.table_names():
        return None
    return db.open_table(JOBS_TABLE)


def _rows_with_status(tbl, status: str) -> list[dict]:
    return tbl.search().where(f"status = '{status}'").limit(MAX_SCAN_ROWS).to_list()


def _is_eligible(row: dict, now: datetime) -> bool:
    next_attempt = _to_dt(row.get("next_attempt_at"))
    return next_attempt is None or next_attempt <= now


def get_job(job_id: str) -> Optional[dict]:
    tbl = _jobs_table()
    if tbl is None:
        return None
    rows = tbl.search().where(f"id = '{escape_sql(job_id)}'").limit(1).to_list()
    return rows[0] if rows else None


def get_jobs_for_conversation(conversation_id: str) -> list[dict]:
    tbl = _jobs_table()
    if tbl is None:
        return []
    rows = tbl.search().where(f"conversation_id = '{escape_sql(conversation_id)}'").limit(MAX_SCAN_ROWS).to_list()
    rows.sort(key=lambda r: _epoch(r.get("created_at")), reverse=True)
    return rows


async def enqueue_extraction_job(
    *,
    conversation_id: str,
    user_id: str,
    message_count: int,
    priority: str = PRIORITY_NORMAL,
) -> dict:
    """Insert a pending job unless one is already active for this snapshot.

    Returns {"status": "accepted" | "duplicate", "job": ...}.
    """
    safe_priority = _normalize_priority(priority)
    snapshot = max(0, int(message_count))
    now = _now()

    async def _write_op():
        tbl = get_db().open_table(JOBS_TABLE)
        where = (
            f"conversation_id = '{escape_sql(conversation_id)}' "
            f"AND message_count_at_extraction = {snapshot}"
        )
        for row in tbl.search().where(where).limit(MAX_SCAN_ROWS).to_list():
            if str(row.get("status") or "") in _ACTIVE_STATUSES:
                return {"status": "duplicate", "job": public_job(row)}

        row = {
            "id": str(uuid.uuid4()),
            "conversation_id": conversation_id,
            "user_id": user_id,
            "status": STATUS_PENDING,
            "priority": safe_priority,
            "message_count_at_extraction": snapshot,
            "retry_count": 0,
            "error_message": None,
            "created_at": now,
            "updated_at": now,
            "started_at": None,
            "completed_at": None,
            "next_attempt_at": None,
        }
        tbl.add([row])
        return {"status": "accepted", "job": public_job(row)}

    result = await enqueue_write(_write_op)
    if result["status"] == "duplicate":
        logger.debug(f"Extraction job for {conversation_id}@{snapshot} already active")
    else:
        logger.info(f"Queued {safe_priority} extraction job {result['job']['id']} for conversation {conversation_id}")
    return result


async def set_job_status(
    job_id: str,
    status: str,
    *,
    error_message: Optional[str] = None,
    retry_count: Optional[int] = None,
    next_attempt_at: Optional[datetime] = None,
) -> Optional[dict]:
    escaped = escape_sql(job_id)
    now = _now()

    async def _write_op():
        tbl = _jobs_table()
        if tbl is None:
            return None
        values: dict[str, Any] = {"status": status, "updated_at": now}
        if error_message is not None:
            values["error_message"] = str(error_message)[:500]
        if retry_count is not None:
            values["retry_count"] = int(retry_count)
        if status == STATUS_PENDING:
            values["started_at"] = None
            values["completed_at"] = None
            values["next_attempt_at"] = next_attempt_at
        if status in _TERMINAL_STATUSES:
            values["completed_at"] = now
            values["next_attempt_at"] = None
        tbl.update(where=f"id = '{escaped}'", values=values)
        rows = tbl.search().where(f"id = '{escaped}'").limit(1).to_list()
        return rows[0] if rows else None

    return await enqueue_write(_write_op)


def fetch_pending_jobs(limit: int, now: Optional[datetime] = None) -> list[dict]:
    """Eligible pending jobs, highest priority first, then oldest first.

    Jobs waiting out a retry delay (next_attempt_at in the future) are left out.
    """
    tbl = _jobs_table()
    if tbl is None:
        return []
    now = now or _now()
    rows = [r for r in _rows_with_status(tbl, STATUS_PENDING) if _is_eligible(r, now)]
    rows.sort(key=lambda r: (_PRIORITY_RANK.get(_normalize_priority(r.get("priority")), 1), _epoch(r.get("created_at"))))
    return rows[: max(0, int(limit))]


async def claim_job(job_id: str, now: Optional[datetime] = None) -> Optional[dict]:
    """Atomically move a job from pending to processing.

    Runs on the write queue, so two claimers can never both see "pending".
    Returns the claimed row, or None when the job was taken or is not yet eligible.
    """
    escaped = escape_sql(job_id)
    claim_time = now or _now()

    async def _write_op():
        tbl = _jobs_table()
        if tbl is None:
            return None
        rows = tbl.search().where(f"id = '{escaped}'").limit(1).to_list()
        if not rows:
            return None
        current = rows[0]
        if str(current.get("status") or "") != STATUS_PENDING or not _is_eligible(current, claim_time):
            return None
        tbl.update(
            where=f"id = '{escaped}'",
            values={"status": STATUS_PROCESSING, "started_at": claim_time, "updated_at": claim_time},
        )
        updated = tbl.search().where(f"id = '{escaped}'").limit(1).to_list()
        return updated[0] if updated else None

    claimed = await enqueue_write(_write_op)
    return claimed if isinstance(claimed, dict) else None


def get_queue_stats(now: Optional[datetime] = None) -> dict:
    stats = {status: 0 for status in _STATUSES}
    stats["deferred"] = 0
    tbl = _jobs_table()
    if tbl is None:
        stats["total"] = 0
        return stats
    now = now or _now()
    for status in _STATUSES:
        rows = _rows_with_status(tbl, status)
        stats[status] = len(rows)
        if status == STATUS_PENDING:
            stats["deferred"] = sum(1 for r in rows if not _is_eligible(r, now))
    stats["total"] = sum(stats[s] for s in _STATUSES)
    return stats


async def clear_old_jobs(days_old: int = 30) -> int:
    """Delete completed jobs whose completion is older than ``days_old`` days."""
    cutoff = _now() - timedelta(days=max(0, int(days_old)))

    async def _write_op():
        tbl = _jobs_table()
        if tbl is None:
            return 0
        deleted = 0
        for row in _rows_with_status(tbl, STATUS_COMPLETED):
            completed_at = _to_dt(row.get("completed_at"))
            if completed_at is None or completed_at >= cutoff:
                continue
            tbl.delete(f"id = '{escape_sql(row.get('id'))}'")
            deleted += 1
        return deleted

    deleted = await enqueue_write(_write_op)
    if deleted:
        logger.info(f"Purged {deleted} completed extraction job(s) older than {days_old} days")
    return deleted


async def retry_failed_jobs() -> int:
    """Reset every failed job to pending with a fresh retry budget.

    A failed job whose snapshot already has an active job stays failed.
    """
    now = _now()

    async def _write_op():
        tbl = _jobs_table()
        if tbl is None:
            return 0
        active = {
            (str(r.get("conversation_id")), int(r.get("message_count_at_extraction") or 0))
            for status in _ACTIVE_STATUSES
            for r in _rows_with_status(tbl, status)
        }
        reset = 0
        for row in _rows_with_status(tbl, STATUS_FAILED):
            key = (str(row.get("conversation_id")), int(row.get("message_count_at_extraction") or 0))
            if key in active:
                continue
            tbl.update(
                where=f"id = '{escape_sql(row.get('id'))}'",
                values={
                    "status": STATUS_PENDING,
                    "retry_count": 0,
                    "error_message": None,
                    "started_at": None,
                    "completed_at": None,
                    "next_attempt_at": None,
                    "updated_at": now,
                },
            )
            active.add(key)
            reset += 1
        return reset

    reset = await enqueue_write(_write_op)
    if reset:
        logger.info(f"Reset {reset} failed extraction job(s) to pending")
    return reset


async def recover_stuck_jobs(max_retries: int) -> int:
    """Return jobs left in processing by a crashed worker to the queue."""
    now = _now()

    async def _write_op():
        tbl = _jobs_table()
        if tbl is None:
            return 0
        recovered = 0
        for row in _rows_with_status(tbl, STATUS_PROCESSING):
            retries = int(row.get("retry_count") or 0)
            values: dict[str, Any] = {
                "error_message": "Recovered after restart during processing.",
                "updated_at": now,
                "started_at": None,
            }
            if retries < max_retries:
                values.update({"status": STATUS_PENDING, "retry_count": retries + 1, "next_attempt_at": None})
            else:
                values.update({"status": STATUS_FAILED, "completed_at": now})
            tbl.update(where=f"id = '{escape_sql(row.get('id'))}'", values=values)
            recovered += 1
        return recovered

    recovered = await enqueue_write(_write_op)
    if recovered:
        logger.info(f"Recovered {recovered} in-flight extraction job(s)")
    return recovered


class JobQueueProcessor:
    """Polls the job table and runs extractions one job at a time.

    All mutable state lives on the instance, so independent processors can
    coexist in tests. Within one instance a guard stops overlapping batches;
    across instances the atomic claim keeps a job from running twice.
    """

    def __init__(
        self,
        *,
        batch_size: int = 10,
        max_retries: int = 3,
        retry_delay_ms: int = 1000,
        retry_backoff_multiplier: float = 2,
        poll_interval_seconds: float = 5.0,
        extractor: Optional[Callable[[str], Awaitable[dict]]] = None,
        storer: Optional[Callable[..., Awaitable[dict]]] = None,
        clock: Callable[[], datetime] = _now,
    ):
        self.batch_size = max(1, int(batch_size))
        self.max_retries = max(0, int(max_retries))
        self.retry_delay_ms = max(0, int(retry_delay_ms))
        self.retry_backoff_multiplier = float(retry_backoff_multiplier)
        self.poll_interval_seconds = max(0.1, float(poll_interval_seconds))
        self._extractor = extractor
        self._storer = storer
        self._clock = clock
        self._processing = False
        self._task: Optional[asyncio.Task] = None
        self._state: dict[str, Any] = {
            "batches": 0,
            "processed_count": 0,
            "succeeded_count": 0,
            "failed_count": 0,
            "current_job_id": None,
            "last_result": None,
            "last_error": None,
            "last_heartbeat": None,
        }

    @classmethod
    def from_config(cls, section: Optional[dict] = None, **overrides) -> "JobQueueProcessor":
        cfg = section if section is not None else get_section("job_queue")
        return cls(
            batch_size=int(cfg.get("batch_size", 10)),
            max_retries=int(cfg.get("max_retries", 3)),
            retry_delay_ms=int(cfg.get("retry_delay_ms", 1000)),
            retry_backoff_multiplier=float(cfg.get("retry_backoff_multiplier", 2)),
            poll_interval_seconds=float(cfg.get("poll_interval_seconds", 5.0)),
            **overrides,
        )

    @property
    def is_processing(self) -> bool:
        return self._processing

    def retry_delay_for(self, retry_count: int) -> timedelta:
        delay_ms = self.retry_delay_ms * (self.retry_backoff_multiplier ** max(0, int(retry_count)))
        return timedelta(milliseconds=delay_ms)

    async def _extract(self, conversation_id: str) -> dict:
        if self._extractor is not None:
            return await self._extractor(conversation_id)
        from mitr_analytics.extraction.pipeline import extract_from_conversation

        return await extract_from_conversation(conversation_id)

    async def _store(self, conversation_id: str, user_id: str, result: dict, job_id: str) -> dict:
        if self._storer is not None:
            return await self._storer(conversation_id, user_id, result, job_id)
        from mitr_analytics.extraction.storage import store_extraction_results

        return await store_extraction_results(conversation_id, user_id, result, job_id)

    async def _handle_failure(self, job: dict, error: Exception):
        job_id = str(job.get("id") or "")
        message = str(error).strip() or error.__class__.__name__
        retry_count = int(job.get("retry_count") or 0)

        if isinstance(error, NoMessagesError):
            await set_job_status(job_id, STATUS_FAILED, error_message=message)
            logger.warning(f"Extraction job {job_id} failed permanently: {message}")
            return

        if retry_count < self.max_retries:
            delay = self.retry_delay_for(retry_count)
            # Deferred rather than slept on, so the rest of the batch keeps moving.
            await set_job_status(
                job_id,
                STATUS_PENDING,
                error_message=message,
                retry_count=retry_count + 1,
                next_attempt_at=self._clock() + delay,
            )
            logger.warning(
                f"Extraction job {job_id} failed (attempt {retry_count + 1}), "
                f"retrying in {delay.total_seconds():.1f}s: {message}"
            )
            return

        await set_job_status(job_id, STATUS_FAILED, error_message=message)
        logger.error(f"Extraction job {job_id} failed after {retry_count} retries: {message}")

    async def process_job(self, job: dict) -> bool:
        job_id = str(job.get("id") or "")
        conversation_id = str(job.get("conversation_id") or "")
        user_id = str(job.get("user_id") or "")
        self._state["current_job_id"] = job_id
        try:
            result = await self._extract(conversation_id)
            await self._store(conversation_id, user_id, result, job_id)
            current = get_job(job_id)
            if current and str(current.get("status") or "") == STATUS_PROCESSING:
                await set_job_status(job_id, STATUS_COMPLETED)
            return True
        except Exception as e:
            self._state["last_error"] = str(e)
            await self._handle_failure(job, e)
            return False
        finally:
            self._state["current_job_id"] = None

    async def process_extraction_queue(self) -> dict:
        """Run one batch. Returns {processed, succeeded, failed, skipped}."""
        result = {"processed": 0, "succeeded": 0, "failed": 0, "skipped": 0}
        if self._processing:
            logger.debug("Extraction batch already running, skipping")
            return {**result, "busy": True}

        self._processing = True
        try:
            now = self._clock()
            for job in fetch_pending_jobs(self.batch_size, now=now):
                claimed = await claim_job(str(job.get("id") or ""), now=now)
                if not claimed:
                    result["skipped"] += 1
                    continue
                result["processed"] += 1
                if await self.process_job(claimed):
                    result["succeeded"] += 1
                else:
                    result["failed"] += 1
        finally:
            self._processing = False

        self._state["batches"] += 1
        self._state["processed_count"] += result["processed"]
        self._state["succeeded_count"] += result["succeeded"]
        self._state["failed_count"] += result["failed"]
        self._state["last_result"] = dict(result)
        if result["processed"]:
            logger.info(
                f"Extraction batch: {result['processed']} processed, "
                f"{result['succeeded']} succeeded, {result['failed']} failed"
            )
        return result

    async def _worker_loop(self):
        await recover_stuck_jobs(self.max_retries)
        logger.info("Extraction job worker started")
        while True:
            self._state["last_heartbeat"] = self._clock().isoformat()
            try:
                result = await self.process_extraction_queue()
                if not result.get("processed"):
                    await asyncio.sleep(self.poll_interval_seconds)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._state["last_error"] = str(e)
                logger.error(f"Extraction worker loop error: {e}")
                await asyncio.sleep(self.poll_interval_seconds)

    def start(self):
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._worker_loop())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Extraction job worker stopped")

    def state(self) -> dict:
        state = dict(self._state)
        state["task_alive"] = bool(self._task and not self._task.done())
        state["processing"] = self._processing
        state["batch_size"] = self.batch_size
        state["max_retries"] = self.max_retries
        return state


_processor: Optional[JobQueueProcessor] = None


def get_processor() -> JobQueueProcessor:
    global _processor
    if _processor is None:
        _processor = JobQueueProcessor.from_config()
    return _processor
