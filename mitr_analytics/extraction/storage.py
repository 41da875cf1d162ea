from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from mitr_analytics.analytics.cache import invalidate_analytics_cache
from mitr_analytics.config import get_extraction_settings
from mitr_analytics.database.client import (
    SCHEME_INTERESTS_TABLE,
    USER_ATTRIBUTES_TABLE,
    escape_sql,
    get_db,
)
from mitr_analytics.extraction.errors import StorageError
from mitr_analytics.extraction.scheme_matcher import INTEREST_LEVELS, normalize_interest_level
from mitr_analytics.extraction.write_queue import enqueue_write

logger = logging.getLogger(__name__)

STATUS_LOW_CONFIDENCE = "low_confidence"
STATUS_STORED = "stored"

# Extraction methods as recorded on user attributes.
_ATTRIBUTE_METHODS = {"ai": "ai", "fallback": "inferred", "manual": "manual", "inferred": "inferred"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _resolve_interest_level(existing: str, incoming: str, policy: str) -> str:
    """Latest extraction wins unless the policy is "max".

    With "latest", a later "mentioned" replaces an earlier "detailed"; this
    tracks the user's current intent rather than their peak engagement.
    """
    incoming = normalize_interest_level(incoming)
    if str(policy or "").strip().lower() != "max":
        return incoming
    existing = normalize_interest_level(existing)
    return max(existing, incoming, key=INTEREST_LEVELS.index)


def _merge_languages(existing: Any, incoming: list[str]) -> list[str]:
    merged = [str(v) for v in (existing or []) if str(v)]
    for language in incoming or []:
        if language and language not in merged:
            merged.append(language)
    return merged


def _upsert_user_attribute(db, user_id: str, conversation_id: str, result: dict, now: datetime) -> str:
    """Returns "created", "updated" or "kept"."""
    tbl = db.open_table(USER_ATTRIBUTES_TABLE)
    attributes = result.get("attributes", {})
    metadata = result.get("metadata", {})
    confidence = float(metadata.get("confidence") or 0.0)
    where = f"user_id = '{escape_sql(user_id)}' AND conversation_id = '{escape_sql(conversation_id)}'"
    existing = tbl.search().where(where).limit(1).to_list()

    values = {
        "location": attributes.get("location"),
        "industry": attributes.get("industry"),
        "business_size": attributes.get("business_size"),
        "annual_turnover": attributes.get("annual_turnover"),
        "employee_count": attributes.get("employee_count"),
        "detected_languages": list(metadata.get("detected_languages") or []),
        "original_language_data_json": json.dumps(
            metadata.get("original_language_data") or {}, ensure_ascii=False, sort_keys=True
        ),
        "extraction_confidence": confidence,
        "extraction_method": _ATTRIBUTE_METHODS.get(str(metadata.get("method") or "ai"), "ai"),
        "extracted_from_message_id": metadata.get("extracted_from_message_id"),
        "extraction_notes": metadata.get("extraction_notes"),
        "updated_at": now,
    }

    if existing:
        current = existing[0]
        if confidence <= float(current.get("extraction_confidence") or 0.0):
            return "kept"
        tbl.update(where=f"id = '{escape_sql(current.get('id'))}'", values=values)
        return "updated"

    tbl.add([
        {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "conversation_id": conversation_id,
            **values,
            "is_anonymized": False,
            "anonymized_at": None,
            "created_at": now,
        }
    ])
    return "created"


def _upsert_scheme_interest(
    db,
    user_id: str,
    conversation_id: str,
    interest: dict,
    languages: list[str],
    message_id: Optional[str],
    policy: str,
    now: datetime,
) -> str:
    tbl = db.open_table(SCHEME_INTERESTS_TABLE)
    scheme_id = str(interest.get("scheme_id") or "")
    level = normalize_interest_level(interest.get("interest_level"))
    where = f"user_id = '{escape_sql(user_id)}' AND scheme_id = '{escape_sql(scheme_id)}'"
    existing = tbl.search().where(where).limit(1).to_list()

    if existing:
        current = existing[0]
        tbl.update(
            where=f"id = '{escape_sql(current.get('id'))}'",
            values={
                "interest_level": _resolve_interest_level(current.get("interest_level"), level, policy),
                "mention_count": int(current.get("mention_count") or 0) + 1,
                "mentioned_in_languages": _merge_languages(current.get("mentioned_in_languages"), languages),
                "last_mentioned_at": now,
                "conversation_id": conversation_id,
                "extracted_from_message_id": message_id,
                "updated_at": now,
            },
        )
        return "updated"

    tbl.add([
        {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "scheme_id": scheme_id,
            "conversation_id": conversation_id,
            "interest_level": level,
            "extracted_from_message_id": message_id,
            "mentioned_in_languages": list(languages or []),
            "first_mentioned_at": now,
            "last_mentioned_at": now,
            "mention_count": 1,
            "is_anonymized": False,
            "created_at": now,
            "updated_at": now,
        }
    ])
    return "created"


async def store_extraction_results(
    conversation_id: str,
    user_id: str,
    result: dict,
    job_id: Optional[str] = None,
    *,
    settings: Optional[dict] = None,
) -> dict:
    """Merge an extraction result into the attribute and interest tables.

    Below the confidence threshold nothing is written and the job completes
    with a "Low confidence" note. On a storage failure the job is marked
    failed and StorageError is raised.
    """
    from mitr_analytics.extraction.jobs import STATUS_COMPLETED, STATUS_FAILED, set_job_status

    settings = settings if settings is not None else get_extraction_settings()
    threshold = float(settings.get("confidence_threshold", 0.5))
    policy = str(settings.get("interest_level_policy") or "latest")
    metadata = result.get("metadata", {}) if isinstance(result, dict) else {}
    confidence = float(metadata.get("confidence") or 0.0)

    if confidence < threshold:
        note = f"Low confidence: {confidence}"
        logger.info(f"Skipping storage for conversation {conversation_id}: {note} < {threshold}")
        if job_id:
            await set_job_status(job_id, STATUS_COMPLETED, error_message=note)
        return {"status": STATUS_LOW_CONFIDENCE, "confidence": confidence, "threshold": threshold}

    languages = list(metadata.get("detected_languages") or [])
    message_id = metadata.get("extracted_from_message_id")
    interests = list(result.get("scheme_interests") or [])
    now = _now()

    async def _write_op():
        db = get_db()
        attribute_action = _upsert_user_attribute(db, user_id, conversation_id, result, now)
        interest_actions = [
            _upsert_scheme_interest(db, user_id, conversation_id, interest, languages, message_id, policy, now)
            for interest in interests
        ]
        return attribute_action, interest_actions

    try:
        attribute_action, interest_actions = await enqueue_write(_write_op)
    except Exception as e:
        logger.error(f"Storing extraction results for conversation {conversation_id} failed: {e}")
        if job_id:
            await set_job_status(job_id, STATUS_FAILED, error_message=f"Storage failed: {e}")
        raise StorageError(f"Failed to store extraction results: {e}") from e

    invalidate_analytics_cache()
    if job_id:
        await set_job_status(job_id, STATUS_COMPLETED)

    return {
        "status": STATUS_STORED,
        "confidence": confidence,
        "attribute": attribute_action,
        "scheme_interests": len(interest_actions),
        "scheme_interests_created": sum(1 for a in interest_actions if a == "created"),
    }
