import asyncio
import json

import httpx
import pytest

from conftest import add_conversation, add_scheme
from mitr_analytics.analytics import service
from mitr_analytics.extraction import jobs, pipeline, storage, trigger
from mitr_analytics.extraction.errors import StorageError

SETTINGS = {"confidence_threshold": 0.5, "interest_level_policy": "latest"}


def _result(confidence=0.8, location="Mumbai", interests=None, languages=None, method="ai"):
    return {
        "attributes": {
            "location": location,
            "industry": "Retail - Grocery",
            "business_size": "Micro",
            "annual_turnover": 500000.0,
            "employee_count": 2,
        },
        "scheme_interests": interests or [],
        "metadata": {
            "confidence": confidence,
            "detected_languages": languages or ["hinglish"],
            "extraction_notes": None,
            "original_language_data": {"location": "Bombay"},
            "method": method,
            "extracted_from_message_id": "m3",
        },
    }


def _interest(level, scheme_id="s1"):
    return {"scheme_id": scheme_id, "scheme_name": "Mudra", "interest_level": level}


def _store(result, conversation_id="c1", user_id="u1", job_id=None, settings=SETTINGS):
    return asyncio.run(storage.store_extraction_results(conversation_id, user_id, result, job_id, settings=settings))


def test_low_confidence_result_writes_nothing_and_completes_job(fake_db):
    job_id = asyncio.run(
        jobs.enqueue_extraction_job(conversation_id="c1", user_id="u1", message_count=4)
    )["job"]["id"]
    asyncio.run(jobs.claim_job(job_id))

    outcome = _store(_result(confidence=0.3, interests=[_interest("detailed")]), job_id=job_id)

    assert outcome["status"] == "low_confidence"
    assert fake_db.tables["user_attributes"].rows == []
    assert fake_db.tables["scheme_interests"].rows == []
    job = jobs.get_job(job_id)
    assert job["status"] == "completed"
    assert job["error_message"] == "Low confidence: 0.3"


def test_stores_attributes_and_interests(fake_db):
    outcome = _store(_result(interests=[_interest("inquired")]))

    assert outcome["status"] == "stored"
    assert outcome["attribute"] == "created"
    assert outcome["scheme_interests"] == 1
    attribute = fake_db.tables["user_attributes"].rows[0]
    assert attribute["location"] == "Mumbai"
    assert attribute["extraction_confidence"] == 0.8
    assert attribute["extraction_method"] == "ai"
    assert json.loads(attribute["original_language_data_json"]) == {"location": "Bombay"}
    interest = fake_db.tables["scheme_interests"].rows[0]
    assert interest["interest_level"] == "inquired"
    assert interest["mention_count"] == 1
    assert interest["mentioned_in_languages"] == ["hinglish"]


def test_attribute_is_replaced_only_by_strictly_higher_confidence(fake_db):
    _store(_result(confidence=0.7, location="Mumbai"))

    lower = _store(_result(confidence=0.6, location="Delhi"))
    equal = _store(_result(confidence=0.7, location="Pune"))
    assert lower["attribute"] == "kept"
    assert equal["attribute"] == "kept"
    assert fake_db.tables["user_attributes"].rows[0]["location"] == "Mumbai"

    higher = _store(_result(confidence=0.9, location="Delhi"))
    rows = fake_db.tables["user_attributes"].rows
    assert higher["attribute"] == "updated"
    assert len(rows) == 1
    assert rows[0]["location"] == "Delhi"
    assert rows[0]["extraction_confidence"] == 0.9


def test_attributes_are_kept_per_conversation(fake_db):
    _store(_result(), conversation_id="c1")
    _store(_result(), conversation_id="c2")

    assert len(fake_db.tables["user_attributes"].rows) == 2


def test_latest_interest_level_overwrites_stronger_earlier_level(fake_db):
    _store(_result(interests=[_interest("detailed")], languages=["hindi"]))
    _store(_result(interests=[_interest("mentioned")], languages=["english"]), conversation_id="c2")

    rows = fake_db.tables["scheme_interests"].rows
    assert len(rows) == 1
    assert rows[0]["interest_level"] == "mentioned"
    assert rows[0]["mention_count"] == 2
    assert rows[0]["mentioned_in_languages"] == ["hindi", "english"]
    assert rows[0]["conversation_id"] == "c2"


def test_max_interest_level_policy_keeps_strongest_level(fake_db):
    settings = {**SETTINGS, "interest_level_policy": "max"}
    _store(_result(interests=[_interest("detailed")]), settings=settings)
    _store(_result(interests=[_interest("mentioned")]), settings=settings)

    assert fake_db.tables["scheme_interests"].rows[0]["interest_level"] == "detailed"


def test_fallback_method_is_recorded_as_inferred(fake_db):
    _store(_result(method="fallback", confidence=0.6))

    assert fake_db.tables["user_attributes"].rows[0]["extraction_method"] == "inferred"


def test_storage_failure_marks_job_failed(fake_db, monkeypatch):
    job_id = asyncio.run(
        jobs.enqueue_extraction_job(conversation_id="c1", user_id="u1", message_count=3)
    )["job"]["id"]

    async def _broken(_write_op):
        raise RuntimeError("disk full")

    monkeypatch.setattr(storage, "enqueue_write", _broken)

    with pytest.raises(StorageError):
        _store(_result(), job_id=job_id)

    job = jobs.get_job(job_id)
    assert job["status"] == "failed"
    assert "disk full" in job["error_message"]


def test_unavailable_endpoint_fallback_below_threshold_leaves_records_unchanged(fake_db):
    add_conversation(
        fake_db,
        "c1",
        "u1",
        [
            ("user", "namaste"),
            ("user", "mera kapde ka kaam hai"),
            ("user", "Mumbai mein"),
            ("user", "theek hai"),
        ],
    )
    prior = asyncio.run(jobs.enqueue_extraction_job(conversation_id="c1", user_id="u1", message_count=0))
    asyncio.run(jobs.set_job_status(prior["job"]["id"], jobs.STATUS_COMPLETED))
    _store(_result(confidence=0.6, location="Pune"))
    before = [dict(row) for row in fake_db.tables["user_attributes"].rows]

    queued = asyncio.run(trigger.evaluate_and_queue("c1"))
    assert queued["status"] == "queued"

    async def _extract(conversation_id):
        unavailable = httpx.MockTransport(lambda _request: httpx.Response(503, text="unavailable"))
        settings = {"provider": "openrouter", "api_key": "k", "model": "m1", "fallback_model": "m2"}
        return await pipeline.extract_from_conversation(conversation_id, settings=settings, transport=unavailable)

    async def _store_result(conversation_id, user_id, result, job_id):
        return await storage.store_extraction_results(conversation_id, user_id, result, job_id, settings=SETTINGS)

    processor = jobs.JobQueueProcessor(extractor=_extract, storer=_store_result)
    outcome = asyncio.run(processor.process_extraction_queue())

    assert outcome["succeeded"] == 1
    job = jobs.get_job(queued["job_id"])
    assert job["status"] == "completed"
    assert job["error_message"] == "Low confidence: 0.4"
    assert fake_db.tables["user_attributes"].rows == before


def test_summary_is_recomputed_after_new_results_are_stored(fake_db):
    add_scheme(fake_db, "s1", "Pradhan Mantri Mudra Yojana")
    before = service.get_summary()
    assert before["total_users"] == 0

    # Served from cache until a store invalidates it.
    fake_db.tables["user_attributes"].rows.append({"user_id": "ghost", "location": "Agra"})
    assert service.get_summary()["total_users"] == 0
    fake_db.tables["user_attributes"].rows.clear()

    _store(_result(interests=[_interest("inquired")]))
    after = service.get_summary()

    assert after["total_users"] == 1
    assert after["top_schemes"][0]["scheme_name"] == "Pradhan Mantri Mudra Yojana"
    assert after["top_schemes"][0]["inquired"] == 1
