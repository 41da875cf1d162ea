import logging
from typing import Optional

from mitr_analytics.config import get_section
from mitr_analytics.extraction.conversation_store import get_conversation, get_messages
from mitr_analytics.extraction.jobs import PRIORITY_NORMAL, enqueue_extraction_job, get_jobs_for_conversation

logger = logging.getLogger(__name__)

SCHEME_KEYWORDS = [
    "scheme", "yojana", "योजना", "mudra", "मुद्रा", "pmegp", "startup india",
    "credit", "loan", "subsidy", "grant", "funding", "financial assistance",
    "government scheme", "सरकारी योजना", "apply", "eligible", "eligibility",
]

BUSINESS_KEYWORDS = [
    "business", "व्यवसाय", "karobar", "कारोबार", "dukaan", "दुकान", "shop",
    "company", "firm", "enterprise", "industry", "उद्योग", "manufacturing",
    "retail", "service", "location", "city", "state", "employees", "turnover",
    "revenue", "sales", "small", "micro", "medium", "chota", "छोटा", "bada", "बड़ा",
]


def contains_keywords(text: str, keywords: list[str]) -> bool:
    lowered = (text or "").lower()
    return any(keyword.lower() in lowered for keyword in keywords)


def get_last_extraction_job(conversation_id: str) -> Optional[dict]:
    jobs = get_jobs_for_conversation(conversation_id)
    return jobs[0] if jobs else None


def _messages_since_last_extraction(conversation: dict, last_job: Optional[dict]) -> int:
    message_count = int(conversation.get("message_count") or 0)
    if not last_job:
        return message_count
    return message_count - int(last_job.get("message_count_at_extraction") or 0)


def should_trigger_extraction(conversation_id: str, conditions: Optional[dict] = None) -> bool:
    """Decide whether a conversation has enough new material to analyze.

    Fires once ``message_threshold`` messages arrived since the last job, or
    earlier when a recent user message talks about schemes or the business.
    Any read failure means no trigger.
    """
    cfg = conditions if conditions is not None else get_section("trigger")
    threshold = int(cfg.get("message_threshold", 3))
    window = int(cfg.get("recent_message_window", 5))
    check_schemes = bool(cfg.get("check_scheme_keywords", True))
    check_business = bool(cfg.get("check_business_keywords", True))

    try:
        conversation = get_conversation(conversation_id)
        if not conversation:
            logger.warning(f"Trigger check: conversation {conversation_id} not found")
            return False

        since = _messages_since_last_extraction(conversation, get_last_extraction_job(conversation_id))
        if since >= threshold:
            return True

        if not (check_schemes or check_business):
            return False
        to_check = min(since, window)
        if to_check <= 0:
            return False

        recent = get_messages(conversation_id)[-to_check:]
        text = " ".join(
            str(m.get("content") or "") for m in recent if str(m.get("role") or "").lower() == "user"
        )
        if not text.strip():
            return False
        if check_schemes and contains_keywords(text, SCHEME_KEYWORDS):
            return True
        if check_business and contains_keywords(text, BUSINESS_KEYWORDS):
            return True
        return False
    except Exception as e:
        logger.error(f"Error checking extraction trigger for {conversation_id}: {e}")
        return False


async def queue_extraction_job(conversation_id: str, priority: str = PRIORITY_NORMAL) -> Optional[str]:
    """Queue a job at the conversation's current message count.

    Returns the new job id, or None when the conversation is unknown or an
    equivalent job is already active.
    """
    conversation = get_conversation(conversation_id)
    if not conversation:
        logger.warning(f"Cannot queue extraction: conversation {conversation_id} not found")
        return None
    result = await enqueue_extraction_job(
        conversation_id=conversation_id,
        user_id=str(conversation.get("user_id") or ""),
        message_count=int(conversation.get("message_count") or 0),
        priority=priority,
    )
    if result.get("status") == "duplicate":
        return None
    return result["job"]["id"]


async def evaluate_and_queue(conversation_id: str, priority: str = PRIORITY_NORMAL) -> dict:
    if not should_trigger_extraction(conversation_id):
        return {"triggered": False, "job_id": None, "status": "skipped"}
    job_id = await queue_extraction_job(conversation_id, priority=priority)
    return {
        "triggered": True,
        "job_id": job_id,
        "status": "queued" if job_id else "duplicate",
    }
