from __future__ import annotations

import logging
import time
from typing import Any, Optional

import httpx

from mitr_analytics.config import get_extraction_settings
from mitr_analytics.extraction.conversation_store import get_active_schemes, get_messages
from mitr_analytics.extraction.errors import EndpointError, NoMessagesError
from mitr_analytics.extraction.llm_client import generate_json, resolve_runtime, runtime_can_call_provider
from mitr_analytics.extraction.normalization import (
    detect_conversation_languages,
    normalize_business_size,
    normalize_currency,
    normalize_employee_count,
    normalize_industry,
    normalize_location,
)
from mitr_analytics.extraction.prompt import build_extraction_prompt
from mitr_analytics.extraction.scheme_matcher import SchemeMatcher, get_scheme_matcher

logger = logging.getLogger(__name__)

METHOD_AI = "ai"
METHOD_FALLBACK = "fallback"

FALLBACK_CONFIDENCE = 0.4
FALLBACK_NOTE = "Extracted using fallback rule-based method"

_FALLBACK_CITIES = ("mumbai", "delhi", "bangalore", "pune", "chennai", "hyderabad", "kolkata")
_FALLBACK_INDUSTRIES = (
    (("textile", "kapde", "कपड़े"), "Manufacturing - Textiles"),
    (("food", "restaurant", "खाना"), "Food & Beverage"),
    (("retail", "shop", "dukaan"), "Retail"),
)
_FALLBACK_MICRO_WORDS = ("small", "chota", "छोटा")


def fallback_extraction(messages: list[dict]) -> dict:
    """Keyword scan used when no model answer is available."""
    all_text = " ".join(str(m.get("content") or "") for m in messages).lower()
    raw: dict[str, Any] = {
        "location": None,
        "industry": None,
        "businessSize": None,
        "annualTurnover": None,
        "employeeCount": None,
        "schemeInterests": [],
        "confidence": FALLBACK_CONFIDENCE,
        "extractionNotes": FALLBACK_NOTE,
        "detectedLanguages": detect_conversation_languages(messages),
    }
    for city in _FALLBACK_CITIES:
        if city in all_text:
            raw["location"] = city
            break
    for keywords, industry in _FALLBACK_INDUSTRIES:
        if any(k in all_text for k in keywords):
            raw["industry"] = industry
            break
    if any(w in all_text for w in _FALLBACK_MICRO_WORDS):
        raw["businessSize"] = "Micro"
    return raw


def _coerce_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, confidence))


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in {"null", "none", "unknown", "n/a"}:
        return None
    return text


def normalize_extraction_result(raw: dict, detected_languages: list[str], method: str = METHOD_AI) -> dict:
    location_raw = _clean_text(raw.get("location"))
    industry_raw = _clean_text(raw.get("industry"))
    size_raw = _clean_text(raw.get("businessSize"))
    turnover_raw = raw.get("annualTurnover")
    employees_raw = raw.get("employeeCount")

    location = normalize_location(location_raw)
    industry = normalize_industry(industry_raw)
    annual_turnover = normalize_currency(turnover_raw)
    employee_count = normalize_employee_count(employees_raw)
    business_size = normalize_business_size(size_raw, employee_count, annual_turnover)

    original: dict[str, Any] = {}
    if location_raw and location_raw != location:
        original["location"] = location_raw
    if industry_raw and industry_raw != industry:
        original["industry"] = industry_raw
    if size_raw and size_raw != business_size:
        original["business_size"] = size_raw
    if isinstance(turnover_raw, str) and turnover_raw.strip():
        original["annual_turnover"] = turnover_raw.strip()
    if isinstance(employees_raw, str) and employees_raw.strip():
        original["employee_count"] = employees_raw.strip()

    languages = list(detected_languages)
    reported = raw.get("detectedLanguages")
    if isinstance(reported, list):
        for item in reported:
            tag = str(item or "").strip().lower()
            if tag and tag not in languages:
                languages.append(tag)
    if not languages:
        languages = ["english"]

    interests = raw.get("schemeInterests")
    return {
        "attributes": {
            "location": location,
            "industry": industry,
            "business_size": business_size,
            "annual_turnover": annual_turnover,
            "employee_count": employee_count,
        },
        "scheme_interests": interests if isinstance(interests, list) else [],
        "metadata": {
            "confidence": _coerce_confidence(raw.get("confidence")),
            "detected_languages": languages,
            "extraction_notes": _clean_text(raw.get("extractionNotes")),
            "original_language_data": original,
            "method": method,
        },
    }


def match_scheme_interests(interests: list[dict], matcher: Optional[SchemeMatcher] = None) -> list[dict]:
    if not interests:
        return []
    schemes = get_active_schemes()
    if not schemes:
        return []
    return (matcher or get_scheme_matcher()).match_all(interests, schemes)


async def _model_extraction(
    messages: list[dict],
    runtime: dict,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> tuple[Optional[dict], list[str]]:
    """Primary model, then the secondary model once. Returns (raw, errors)."""
    errors: list[str] = []
    if runtime.get("provider") == "heuristic":
        return None, errors
    if not runtime_can_call_provider(runtime):
        logger.warning(f"Extraction provider '{runtime.get('provider')}' is not configured, using fallback")
        errors.append("provider not configured")
        return None, errors

    prompt = build_extraction_prompt(messages)
    models = [runtime.get("model")]
    secondary = runtime.get("fallback_model")
    if secondary and secondary != runtime.get("model"):
        models.append(secondary)

    for model in models:
        try:
            raw = await generate_json(prompt, runtime, model=model, transport=transport)
            raw["_model"] = model
            return raw, errors
        except EndpointError as e:
            # ParseError is an EndpointError too.
            logger.warning(f"Extraction with model {model} failed: {e}")
            errors.append(str(e)[:200])
    return None, errors


async def extract_from_conversation(
    conversation_id: str,
    *,
    settings: Optional[dict] = None,
    matcher: Optional[SchemeMatcher] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """Analyze a conversation and return normalized attributes, matched
    scheme interests and metadata.

    Raises NoMessagesError for an empty conversation. A degraded endpoint
    never raises; the keyword fallback is used instead.
    """
    start = time.monotonic()
    messages = get_messages(conversation_id)
    if not messages:
        raise NoMessagesError(conversation_id)

    detected = detect_conversation_languages(messages)
    runtime = resolve_runtime(settings if settings is not None else get_extraction_settings())

    raw, errors = await _model_extraction(messages, runtime, transport=transport)
    method = METHOD_AI
    model = raw.pop("_model", None) if raw else None
    if raw is None:
        raw = fallback_extraction(messages)
        method = METHOD_FALLBACK

    result = normalize_extraction_result(raw, detected, method)
    result["scheme_interests"] = match_scheme_interests(result["scheme_interests"], matcher)

    user_messages = [m for m in messages if str(m.get("role") or "").lower() == "user"]
    metadata = result["metadata"]
    metadata["model"] = model
    metadata["endpoint_errors"] = errors
    metadata["message_count"] = len(messages)
    metadata["extracted_from_message_id"] = str(user_messages[-1].get("id") or "") if user_messages else None
    metadata["duration_ms"] = int((time.monotonic() - start) * 1000)

    logger.info(
        f"Extracted conversation {conversation_id} via {method} "
        f"(confidence={metadata['confidence']:.2f}, schemes={len(result['scheme_interests'])})"
    )
    return result
