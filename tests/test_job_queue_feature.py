import asyncio
from datetime import datetime, timedelta, timezone

from conftest import BASE_TIME
from mitr_analytics.extraction import jobs
from mitr_analytics.extraction.errors import EndpointError, NoMessagesError, StorageError


class FakeClock:
    def __init__(self, start=BASE_TIME):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def _enqueue(conversation_id, message_count=3, priority="normal", user_id="u1"):
    return asyncio.run(
        jobs.enqueue_extraction_job(
            conversation_id=conversation_id,
            user_id=user_id,
            message_count=message_count,
            priority=priority,
        )
    )


def _job_row(db, job_id):
    return next(row for row in db.tables["extraction_jobs"].rows if row["id"] == job_id)


def _processor(extractor, clock=None, **kwargs):
    async def _store(_conversation_id, _user_id, _result, _job_id):
        return {"status": "stored"}

    options = {"max_retries": 3, "retry_delay_ms": 1000, "retry_backoff_multiplier": 2, "batch_size": 10}
    options.update(kwargs)
    return jobs.JobQueueProcessor(extractor=extractor, storer=_store, clock=clock or FakeClock(), **options)


def test_enqueue_rejects_duplicate_active_snapshot(fake_db):
    first = _enqueue("c1", message_count=3)
    second = _enqueue("c1", message_count=3)

    assert first["status"] == "accepted"
    assert second["status"] == "duplicate"
    assert second["job"]["id"] == first["job"]["id"]
    assert len(fake_db.tables["extraction_jobs"].rows) == 1


def test_enqueue_allows_snapshot_again_after_completion(fake_db):
    first = _enqueue("c1", message_count=3)
    asyncio.run(jobs.set_job_status(first["job"]["id"], jobs.STATUS_COMPLETED))

    again = _enqueue("c1", message_count=3)

    assert again["status"] == "accepted"


def test_pending_jobs_are_ordered_by_priority_then_age(fake_db):
    low = _enqueue("c-low", priority="low")["job"]["id"]
    normal = _enqueue("c-normal", priority="normal")["job"]["id"]
    high = _enqueue("c-high", priority="HIGH")["job"]["id"]
    bogus = _enqueue("c-bogus", priority="urgent")["job"]

    assert bogus["priority"] == "normal"
    order = [row["id"] for row in jobs.fetch_pending_jobs(10)]
    assert order == [high, normal, bogus["id"], low]
    assert [row["id"] for row in jobs.fetch_pending_jobs(1)] == [high]


def test_claim_job_is_atomic(fake_db):
    job_id = _enqueue("c1")["job"]["id"]

    first = asyncio.run(jobs.claim_job(job_id))
    second = asyncio.run(jobs.claim_job(job_id))

    assert first["status"] == "processing"
    assert first["started_at"] is not None
    assert second is None


def test_processor_runs_jobs_in_priority_order_and_completes_them(fake_db):
    _enqueue("c-low", priority="low")
    _enqueue("c-high", priority="high")
    seen = []

    async def _extract(conversation_id):
        seen.append(conversation_id)
        return {"metadata": {"confidence": 0.9}}

    processor = _processor(_extract)
    result = asyncio.run(processor.process_extraction_queue())

    assert result == {"processed": 2, "succeeded": 2, "failed": 0, "skipped": 0}
    assert seen == ["c-high", "c-low"]
    statuses = {row["status"] for row in fake_db.tables["extraction_jobs"].rows}
    assert statuses == {"completed"}
    assert all(row["completed_at"] is not None for row in fake_db.tables["extraction_jobs"].rows)


def test_failed_job_is_deferred_until_next_attempt_at_instead_of_sleeping(fake_db):
    clock = FakeClock()
    job_id = _enqueue("c1")["job"]["id"]
    calls = []

    async def _extract(conversation_id):
        calls.append(clock())
        raise EndpointError("upstream 503", status_code=503)

    processor = _processor(_extract, clock=clock)

    first = asyncio.run(processor.process_extraction_queue())
    row = _job_row(fake_db, job_id)
    assert first["failed"] == 1
    assert row["status"] == "pending"
    assert row["retry_count"] == 1
    assert row["next_attempt_at"] == BASE_TIME + timedelta(seconds=1)
    assert row["error_message"] == "upstream 503"

    # Not eligible yet: the worker moves on rather than waiting.
    early = asyncio.run(processor.process_extraction_queue())
    assert early["processed"] == 0
    assert jobs.get_queue_stats(now=clock())["deferred"] == 1

    clock.advance(seconds=1)
    second = asyncio.run(processor.process_extraction_queue())
    row = _job_row(fake_db, job_id)
    assert second["processed"] == 1
    assert row["retry_count"] == 2
    # Backoff doubles.
    assert row["next_attempt_at"] == clock() + timedelta(seconds=2)
    assert len(calls) == 2


def test_deferred_job_does_not_block_other_jobs(fake_db):
    clock = FakeClock()
    failing = _enqueue("c-fail", priority="high")["job"]["id"]
    _enqueue("c-ok")
    processed = []

    async def _extract(conversation_id):
        processed.append(conversation_id)
        if conversation_id == "c-fail":
            raise EndpointError("timeout")
        return {}

    processor = _processor(_extract, clock=clock)
    result = asyncio.run(processor.process_extraction_queue())

    assert result["processed"] == 2
    assert processed == ["c-fail", "c-ok"]
    assert _job_row(fake_db, failing)["status"] == "pending"


def test_job_fails_permanently_after_max_retries(fake_db):
    clock = FakeClock()
    job_id = _enqueue("c1")["job"]["id"]
    attempts = []

    async def _extract(conversation_id):
        attempts.append(conversation_id)
        raise EndpointError("bad gateway", status_code=502)

    processor = _processor(_extract, clock=clock, max_retries=2)
    for _ in range(5):
        asyncio.run(processor.process_extraction_queue())
        clock.advance(minutes=10)

    row = _job_row(fake_db, job_id)
    assert row["status"] == "failed"
    assert row["retry_count"] == 2
    assert row["completed_at"] is not None
    assert row["next_attempt_at"] is None
    # First attempt plus two retries, then never picked up again.
    assert len(attempts) == 3


def test_no_messages_error_fails_without_retry(fake_db):
    job_id = _enqueue("c-empty")["job"]["id"]

    async def _extract(conversation_id):
        raise NoMessagesError(conversation_id)

    processor = _processor(_extract)
    asyncio.run(processor.process_extraction_queue())

    row = _job_row(fake_db, job_id)
    assert row["status"] == "failed"
    assert row["retry_count"] == 0
    assert "No messages found" in row["error_message"]


def test_storer_terminal_status_is_kept(fake_db):
    job_id = _enqueue("c1")["job"]["id"]

    async def _extract(_conversation_id):
        return {}

    async def _store(_conversation_id, _user_id, _result, stored_job_id):
        await jobs.set_job_status(stored_job_id, jobs.STATUS_COMPLETED, error_message="Low confidence: 0.40")
        return {"status": "low_confidence"}

    processor = jobs.JobQueueProcessor(extractor=_extract, storer=_store, clock=FakeClock())
    asyncio.run(processor.process_extraction_queue())

    row = _job_row(fake_db, job_id)
    assert row["status"] == "completed"
    assert row["error_message"] == "Low confidence: 0.40"


def test_requeued_job_after_storage_failure_has_no_completed_at(fake_db):
    job_id = _enqueue("c1")["job"]["id"]

    async def _extract(_conversation_id):
        return {}

    async def _store(_conversation_id, _user_id, _result, stored_job_id):
        await jobs.set_job_status(stored_job_id, jobs.STATUS_FAILED, error_message="write failed")
        raise StorageError("write failed")

    processor = jobs.JobQueueProcessor(extractor=_extract, storer=_store, clock=FakeClock(), max_retries=3)
    asyncio.run(processor.process_extraction_queue())

    row = _job_row(fake_db, job_id)
    assert row["status"] == "pending"
    assert row["retry_count"] == 1
    assert row["completed_at"] is None


def test_processor_guard_rejects_overlapping_batches(fake_db):
    _enqueue("c1")
    nested = []
    processor = None

    async def _extract(_conversation_id):
        nested.append(await processor.process_extraction_queue())
        return {}

    processor = _processor(_extract)
    outer = asyncio.run(processor.process_extraction_queue())

    assert outer["processed"] == 1
    assert nested == [{"processed": 0, "succeeded": 0, "failed": 0, "skipped": 0, "busy": True}]
    assert processor.is_processing is False


def test_processors_keep_independent_state(fake_db):
    async def _extract(_conversation_id):
        return {}

    busy = _processor(_extract)
    idle = _processor(_extract)
    busy._processing = True
    _enqueue("c1")

    assert asyncio.run(busy.process_extraction_queue())["busy"] is True
    assert asyncio.run(idle.process_extraction_queue())["processed"] == 1
    assert idle.state()["processed_count"] == 1
    assert busy.state()["processed_count"] == 0


def test_retry_failed_jobs_resets_budget_but_skips_active_snapshots(fake_db):
    first = _enqueue("c1", message_count=3)["job"]["id"]
    other = _enqueue("c2", message_count=5)["job"]["id"]
    asyncio.run(jobs.set_job_status(first, jobs.STATUS_FAILED, error_message="boom", retry_count=3))
    asyncio.run(jobs.set_job_status(other, jobs.STATUS_FAILED, error_message="boom", retry_count=3))
    # A fresh job for c2's snapshot is already waiting.
    _enqueue("c2", message_count=5)

    reset = asyncio.run(jobs.retry_failed_jobs())

    assert reset == 1
    row = _job_row(fake_db, first)
    assert row["status"] == "pending"
    assert row["retry_count"] == 0
    assert row["error_message"] is None
    assert _job_row(fake_db, other)["status"] == "failed"


def test_clear_old_jobs_only_deletes_old_completed_jobs(fake_db):
    old = _enqueue("c-old")["job"]["id"]
    recent = _enqueue("c-recent")["job"]["id"]
    failed = _enqueue("c-failed")["job"]["id"]
    pending = _enqueue("c-pending")["job"]["id"]
    long_ago = datetime.now(timezone.utc) - timedelta(days=45)
    for job_id, status in ((old, "completed"), (recent, "completed"), (failed, "failed")):
        row = _job_row(fake_db, job_id)
        row["status"] = status
        row["completed_at"] = long_ago if job_id != recent else datetime.now(timezone.utc)

    deleted = asyncio.run(jobs.clear_old_jobs(days_old=30))

    remaining = {row["id"] for row in fake_db.tables["extraction_jobs"].rows}
    assert deleted == 1
    assert remaining == {recent, failed, pending}


def test_queue_stats_count_each_status(fake_db):
    clock = FakeClock()
    a = _enqueue("c1")["job"]["id"]
    b = _enqueue("c2")["job"]["id"]
    c = _enqueue("c3")["job"]["id"]
    _enqueue("c4")
    asyncio.run(jobs.set_job_status(a, jobs.STATUS_COMPLETED))
    asyncio.run(jobs.set_job_status(b, jobs.STATUS_FAILED))
    asyncio.run(jobs.set_job_status(c, jobs.STATUS_PENDING, retry_count=1, next_attempt_at=clock() + timedelta(hours=1)))

    stats = jobs.get_queue_stats(now=clock())

    assert stats == {
        "pending": 2,
        "processing": 0,
        "completed": 1,
        "failed": 1,
        "deferred": 1,
        "total": 4,
    }


def test_recover_stuck_jobs_requeues_or_fails_in_flight_jobs(fake_db):
    fresh = _enqueue("c1")["job"]["id"]
    worn = _enqueue("c2")["job"]["id"]
    asyncio.run(jobs.claim_job(fresh))
    asyncio.run(jobs.claim_job(worn))
    _job_row(fake_db, worn)["retry_count"] = 3

    recovered = asyncio.run(jobs.recover_stuck_jobs(max_retries=3))

    assert recovered == 2
    assert _job_row(fake_db, fresh)["status"] == "pending"
    assert _job_row(fake_db, fresh)["retry_count"] == 1
    assert _job_row(fake_db, worn)["status"] == "failed"


def test_public_job_serializes_timestamps(fake_db):
    job = _enqueue("c1", priority="low")["job"]

    assert job["status"] == "pending"
    assert job["priority"] == "low"
    assert job["message_count_at_extraction"] == 3
    assert job["created_at"].endswith("+00:00")
    assert job["next_attempt_at"] is None
