from __future__ import annotations

import csv
import hashlib
import io
import json
import logging
import math
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Optional

from mitr_analytics.analytics.cache import (
    ANALYTICS_PATTERN,
    generate_cache_key,
    get_cache,
    invalidate_analytics_cache,
)
from mitr_analytics.config import get_section
from mitr_analytics.database.client import (
    CONVERSATIONS_TABLE,
    SCHEME_INTERESTS_TABLE,
    SCHEMES_TABLE,
    USER_ATTRIBUTES_TABLE,
    escape_sql,
    get_db,
)
from mitr_analytics.extraction.normalization import BUSINESS_SIZES
from mitr_analytics.extraction.scheme_matcher import INTEREST_LEVELS
from mitr_analytics.extraction.write_queue import enqueue_write

logger = logging.getLogger(__name__)

TOP_SCHEMES_LIMIT = 10
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 200

SUMMARY_CACHE_PREFIX = "analytics:summary"
FILTER_OPTIONS_CACHE_KEY = "analytics:filter-options"

_ATTRIBUTE_SORT_FIELDS = {
    "created_at", "updated_at", "location", "industry", "business_size",
    "annual_turnover", "employee_count", "extraction_confidence",
}
_INTEREST_SORT_FIELDS = {
    "last_mentioned_at", "first_mentioned_at", "mention_count", "interest_level", "created_at",
}

EXPORT_FORMATS = {"csv", "json"}


def _to_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)
        except ValueError:
            return None
    return None


def _iso(value: Any) -> Optional[str]:
    dt = _to_dt(value)
    return dt.isoformat() if dt else None


def _load_rows(table_name: str) -> list[dict]:
    db = get_db()
    if table_name not in db.table_names():
        return []
    tbl = db.open_table(table_name)
    # search() defaults to a small limit, so size it to the table.
    return tbl.search().limit(max(tbl.count_rows(), 1)).to_list()


def _clean_filters(filters: Optional[dict]) -> dict:
    filters = dict(filters or {})
    languages = filters.get("languages")
    if isinstance(languages, str):
        languages = [v.strip() for v in languages.split(",")]
    return {
        "date_from": _to_dt(filters.get("date_from")),
        "date_to": _to_dt(filters.get("date_to")),
        "location": (str(filters.get("location") or "").strip() or None),
        "industry": (str(filters.get("industry") or "").strip() or None),
        "business_size": (str(filters.get("business_size") or "").strip() or None),
        "languages": [str(v).strip().lower() for v in (languages or []) if str(v).strip()],
        "scheme_id": (str(filters.get("scheme_id") or "").strip() or None),
    }


def _in_range(value: Any, f: dict) -> bool:
    if not f["date_from"] and not f["date_to"]:
        return True
    dt = _to_dt(value)
    if dt is None:
        return False
    if f["date_from"] and dt < f["date_from"]:
        return False
    if f["date_to"] and dt > f["date_to"]:
        return False
    return True


def _has_attribute_filters(f: dict) -> bool:
    return bool(f["location"] or f["industry"] or f["business_size"])


def _filter_attributes(rows: list[dict], f: dict) -> list[dict]:
    out = []
    for row in rows:
        if not _in_range(row.get("created_at"), f):
            continue
        if f["location"] and row.get("location") != f["location"]:
            continue
        if f["industry"] and row.get("industry") != f["industry"]:
            continue
        if f["business_size"] and row.get("business_size") != f["business_size"]:
            continue
        if f["languages"]:
            row_langs = {str(v).lower() for v in (row.get("detected_languages") or [])}
            if not row_langs.intersection(f["languages"]):
                continue
        out.append(row)
    return out


def _filter_interests(rows: list[dict], f: dict, allowed_users: Optional[set[str]]) -> list[dict]:
    out = []
    for row in rows:
        if not _in_range(row.get("first_mentioned_at"), f):
            continue
        if f["scheme_id"] and str(row.get("scheme_id") or "") != f["scheme_id"]:
            continue
        if f["languages"]:
            row_langs = {str(v).lower() for v in (row.get("mentioned_in_languages") or [])}
            if not row_langs.intersection(f["languages"]):
                continue
        if allowed_users is not None and str(row.get("user_id") or "") not in allowed_users:
            continue
        out.append(row)
    return out


def _allowed_users(attributes: list[dict], f: dict) -> Optional[set[str]]:
    """Users matching attribute filters, or None when no attribute filter is set."""
    if not _has_attribute_filters(f):
        return None
    return {str(r.get("user_id") or "") for r in _filter_attributes(attributes, f)}


def _distribution(counter: Counter, total: int, label: str) -> list[dict]:
    return [
        {label: key, "user_count": count, "percentage": round((count / total) * 100, 2) if total else 0.0}
        for key, count in counter.most_common()
    ]


def _scheme_lookup() -> dict[str, dict]:
    return {str(r.get("id") or ""): r for r in _load_rows(SCHEMES_TABLE)}


def _build_top_schemes(interests: list[dict], schemes: dict[str, dict]) -> list[dict]:
    grouped: dict[str, dict] = {}
    for row in interests:
        scheme_id = str(row.get("scheme_id") or "")
        entry = grouped.setdefault(
            scheme_id,
            {
                "scheme_id": scheme_id,
                "scheme_name": str((schemes.get(scheme_id) or {}).get("scheme_name") or "Unknown"),
                "interest_count": 0,
                "mentioned": 0,
                "inquired": 0,
                "detailed": 0,
            },
        )
        entry["interest_count"] += 1
        level = str(row.get("interest_level") or "")
        if level in INTEREST_LEVELS:
            entry[level] += 1
    ranked = sorted(grouped.values(), key=lambda e: (-e["interest_count"], e["scheme_name"]))
    return ranked[:TOP_SCHEMES_LIMIT]


def _build_conversation_trend(conversations: list[dict]) -> list[dict]:
    counts: Counter = Counter()
    for row in conversations:
        dt = _to_dt(row.get("created_at"))
        if dt:
            counts[dt.date().isoformat()] += 1
    return [{"date": day, "conversation_count": counts[day]} for day in sorted(counts)]


def build_summary(
    attributes: list[dict],
    interests: list[dict],
    conversations: list[dict],
    schemes: dict[str, dict],
    filters: Optional[dict] = None,
) -> dict:
    f = _clean_filters(filters)
    filtered_attrs = _filter_attributes(attributes, f)
    allowed = _allowed_users(attributes, f)
    filtered_interests = _filter_interests(interests, f, allowed)
    filtered_convs = [
        c for c in conversations
        if _in_range(c.get("created_at"), f)
        and (allowed is None or str(c.get("user_id") or "") in allowed)
    ]

    total = len(filtered_attrs)
    locations = Counter(r["location"] for r in filtered_attrs if r.get("location"))
    industries = Counter(r["industry"] for r in filtered_attrs if r.get("industry"))
    languages: Counter = Counter()
    for row in filtered_attrs:
        for language in set(str(v).lower() for v in (row.get("detected_languages") or []) if v):
            languages[language] += 1

    return {
        "total_users": len({str(r.get("user_id") or "") for r in filtered_attrs}),
        "total_conversations": len(filtered_convs),
        "unique_locations": len(locations),
        "unique_industries": len(industries),
        "top_schemes": _build_top_schemes(filtered_interests, schemes),
        "location_distribution": _distribution(locations, sum(locations.values()), "location"),
        "industry_distribution": _distribution(industries, sum(industries.values()), "industry"),
        "language_distribution": _distribution(languages, total, "language"),
        "conversation_trend": _build_conversation_trend(filtered_convs),
    }


def _ttl_seconds() -> float:
    return float(get_section("analytics_cache").get("ttl_seconds", 300))


def get_summary(filters: Optional[dict] = None) -> dict:
    cache = get_cache()
    key = generate_cache_key(SUMMARY_CACHE_PREFIX, {"filters": filters or {}})
    cached = cache.get(key)
    if cached is not None:
        return cached

    summary = build_summary(
        attributes=_load_rows(USER_ATTRIBUTES_TABLE),
        interests=_load_rows(SCHEME_INTERESTS_TABLE),
        conversations=_load_rows(CONVERSATIONS_TABLE),
        schemes=_scheme_lookup(),
        filters=filters,
    )
    summary["generated_at"] = datetime.now(timezone.utc).isoformat()
    cache.set(key, summary, ttl_seconds=_ttl_seconds())
    return summary


def _sort_value(value: Any):
    dt = _to_dt(value) if not isinstance(value, (int, float)) else None
    if dt is not None:
        return (1, dt.timestamp())
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (1, float(value))
    if value is None:
        return (0, "")
    return (1, str(value).lower())


def _paginate(rows: list[dict], page: int, page_size: int) -> dict:
    page = max(1, int(page or 1))
    page_size = max(1, min(MAX_PAGE_SIZE, int(page_size or DEFAULT_PAGE_SIZE)))
    total = len(rows)
    start = (page - 1) * page_size
    return {
        "data": rows[start : start + page_size],
        "pagination": {
            "page": page,
            "page_size": page_size,
            "total_count": total,
            "total_pages": math.ceil(total / page_size) if total else 0,
        },
    }


def _public_attribute(row: dict) -> dict:
    try:
        original = json.loads(row.get("original_language_data_json") or "{}")
    except ValueError:
        original = {}
    return {
        "id": str(row.get("id") or ""),
        "user_id": str(row.get("user_id") or ""),
        "conversation_id": str(row.get("conversation_id") or ""),
        "location": row.get("location"),
        "industry": row.get("industry"),
        "business_size": row.get("business_size"),
        "annual_turnover": row.get("annual_turnover"),
        "employee_count": row.get("employee_count"),
        "detected_languages": list(row.get("detected_languages") or []),
        "original_language_data": original,
        "extraction_confidence": float(row.get("extraction_confidence") or 0.0),
        "extraction_method": row.get("extraction_method"),
        "extracted_from_message_id": row.get("extracted_from_message_id"),
        "extraction_notes": row.get("extraction_notes"),
        "is_anonymized": bool(row.get("is_anonymized")),
        "anonymized_at": _iso(row.get("anonymized_at")),
        "created_at": _iso(row.get("created_at")),
        "updated_at": _iso(row.get("updated_at")),
    }


def _public_interest(row: dict, schemes: dict[str, dict]) -> dict:
    scheme = schemes.get(str(row.get("scheme_id") or "")) or {}
    return {
        "id": str(row.get("id") or ""),
        "user_id": str(row.get("user_id") or ""),
        "scheme_id": str(row.get("scheme_id") or ""),
        "scheme_name": scheme.get("scheme_name") or "Unknown",
        "ministry": scheme.get("ministry") or "",
        "conversation_id": row.get("conversation_id"),
        "interest_level": row.get("interest_level"),
        "extracted_from_message_id": row.get("extracted_from_message_id"),
        "mentioned_in_languages": list(row.get("mentioned_in_languages") or []),
        "mention_count": int(row.get("mention_count") or 0),
        "first_mentioned_at": _iso(row.get("first_mentioned_at")),
        "last_mentioned_at": _iso(row.get("last_mentioned_at")),
        "is_anonymized": bool(row.get("is_anonymized")),
    }


def _sorted(rows: list[dict], sort_by: str, sort_order: str, allowed: set[str], default: str) -> list[dict]:
    field = sort_by if sort_by in allowed else default
    reverse = str(sort_order or "desc").lower() != "asc"
    return sorted(rows, key=lambda r: _sort_value(r.get(field)), reverse=reverse)


def get_user_attributes(
    filters: Optional[dict] = None,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> dict:
    f = _clean_filters(filters)
    rows = _filter_attributes(_load_rows(USER_ATTRIBUTES_TABLE), f)
    rows = _sorted(rows, sort_by, sort_order, _ATTRIBUTE_SORT_FIELDS, "created_at")
    result = _paginate(rows, page, page_size)
    result["data"] = [_public_attribute(r) for r in result["data"]]
    return result


def get_scheme_interests(
    filters: Optional[dict] = None,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    sort_by: str = "last_mentioned_at",
    sort_order: str = "desc",
) -> dict:
    f = _clean_filters(filters)
    allowed = _allowed_users(_load_rows(USER_ATTRIBUTES_TABLE), f)
    rows = _filter_interests(_load_rows(SCHEME_INTERESTS_TABLE), f, allowed)
    rows = _sorted(rows, sort_by, sort_order, _INTEREST_SORT_FIELDS, "last_mentioned_at")
    result = _paginate(rows, page, page_size)
    schemes = _scheme_lookup()
    result["data"] = [_public_interest(r, schemes) for r in result["data"]]
    return result


def get_filter_options() -> dict:
    cache = get_cache()
    cached = cache.get(FILTER_OPTIONS_CACHE_KEY)
    if cached is not None:
        return cached

    attributes = _load_rows(USER_ATTRIBUTES_TABLE)
    languages = sorted({str(v).lower() for r in attributes for v in (r.get("detected_languages") or []) if v})
    sizes_seen = {r.get("business_size") for r in attributes if r.get("business_size")}
    options = {
        "locations": sorted({r["location"] for r in attributes if r.get("location")}),
        "industries": sorted({r["industry"] for r in attributes if r.get("industry")}),
        "business_sizes": [s for s in BUSINESS_SIZES if s in sizes_seen],
        "languages": languages,
        "schemes": sorted(
            (
                {"id": str(r.get("id") or ""), "scheme_name": str(r.get("scheme_name") or "")}
                for r in _load_rows(SCHEMES_TABLE)
                if bool(r.get("is_active", True))
            ),
            key=lambda s: s["scheme_name"],
        ),
    }
    cache.set(FILTER_OPTIONS_CACHE_KEY, options, ttl_seconds=_ttl_seconds())
    return options


def hash_identifier(value: str, prefix: str = "user") -> str:
    digest = hashlib.sha256(str(value or "").encode("utf-8")).hexdigest()[:16]
    return f"{prefix}_{digest}"


def _anonymize_attribute(row: dict) -> dict:
    out = dict(row)
    out["user_id"] = hash_identifier(row.get("user_id"), "user")
    out["conversation_id"] = hash_identifier(row.get("conversation_id"), "conv")
    out["extracted_from_message_id"] = None
    out["is_anonymized"] = True
    return out


def _anonymize_interest(row: dict) -> dict:
    out = dict(row)
    out["user_id"] = hash_identifier(row.get("user_id"), "user")
    if row.get("conversation_id"):
        out["conversation_id"] = hash_identifier(row.get("conversation_id"), "conv")
    out["extracted_from_message_id"] = None
    out["is_anonymized"] = True
    return out


def _csv_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return "; ".join(str(v) for v in value)
    return value


def _generate_csv(attributes: list[dict], interests: list[dict]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["USER ATTRIBUTES"])
    writer.writerow([])
    writer.writerow([
        "User ID", "Location", "Industry", "Business Size", "Annual Turnover",
        "Employee Count", "Languages", "Confidence", "Created At",
    ])
    for a in attributes:
        writer.writerow([_csv_value(v) for v in (
            a["user_id"], a["location"], a["industry"], a["business_size"], a["annual_turnover"],
            a["employee_count"], a["detected_languages"], a["extraction_confidence"], a["created_at"],
        )])
    writer.writerow([])
    writer.writerow([])
    writer.writerow(["SCHEME INTERESTS"])
    writer.writerow([])
    writer.writerow([
        "User ID", "Scheme Name", "Ministry", "Interest Level", "Mention Count",
        "Languages", "First Mentioned", "Last Mentioned",
    ])
    for i in interests:
        writer.writerow([_csv_value(v) for v in (
            i["user_id"], i["scheme_name"], i["ministry"], i["interest_level"], i["mention_count"],
            i["mentioned_in_languages"], i["first_mentioned_at"], i["last_mentioned_at"],
        )])
    return buffer.getvalue()


def export_data(fmt: str = "csv", filters: Optional[dict] = None, anonymize: bool = False) -> dict:
    """Export attributes and scheme interests as a CSV or JSON document.

    Returns {"content", "media_type", "filename"}.
    """
    fmt = str(fmt or "csv").strip().lower()
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported export format: {fmt}")

    f = _clean_filters(filters)
    raw_attributes = _load_rows(USER_ATTRIBUTES_TABLE)
    allowed = _allowed_users(raw_attributes, f)
    schemes = _scheme_lookup()
    attributes = [_public_attribute(r) for r in _filter_attributes(raw_attributes, f)]
    interests = [
        _public_interest(r, schemes)
        for r in _filter_interests(_load_rows(SCHEME_INTERESTS_TABLE), f, allowed)
    ]
    if anonymize:
        attributes = [_anonymize_attribute(a) for a in attributes]
        interests = [_anonymize_interest(i) for i in interests]

    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    if fmt == "csv":
        return {
            "content": _generate_csv(attributes, interests),
            "media_type": "text/csv",
            "filename": f"mitr_analytics_{stamp}.csv",
        }

    payload = {
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "anonymized": bool(anonymize),
        "summary": get_summary(filters),
        "user_attributes": attributes,
        "scheme_interests": interests,
    }
    return {
        "content": json.dumps(payload, ensure_ascii=False, indent=2, default=str),
        "media_type": "application/json",
        "filename": f"mitr_analytics_{stamp}.json",
    }


async def anonymize_user_data(user_id: str) -> dict:
    """Scrub a user's stored analytics rows in place."""
    escaped = escape_sql(user_id)
    hashed = hash_identifier(user_id, "user")
    now = datetime.now(timezone.utc)

    async def _write_op():
        db = get_db()
        counts = {"user_attributes": 0, "scheme_interests": 0}
        for table_name, key in ((USER_ATTRIBUTES_TABLE, "user_attributes"), (SCHEME_INTERESTS_TABLE, "scheme_interests")):
            if table_name not in db.table_names():
                continue
            tbl = db.open_table(table_name)
            rows = tbl.search().where(f"user_id = '{escaped}'").limit(max(tbl.count_rows(), 1)).to_list()
            for row in rows:
                values: dict[str, Any] = {
                    "user_id": hashed,
                    "extracted_from_message_id": None,
                    "is_anonymized": True,
                    "updated_at": now,
                }
                if table_name == USER_ATTRIBUTES_TABLE:
                    values["anonymized_at"] = now
                tbl.update(where=f"id = '{escape_sql(row.get('id'))}'", values=values)
                counts[key] += 1
        return counts

    counts = await enqueue_write(_write_op)
    invalidate_analytics_cache()
    logger.info(f"Anonymized analytics rows for a user: {counts}")
    return {"status": "ok", "anonymized_user_id": hashed, **counts}


def invalidate_cache() -> int:
    return invalidate_analytics_cache()


def get_cache_stats() -> dict:
    stats = get_cache().stats()
    stats["pattern"] = ANALYTICS_PATTERN
    return stats

