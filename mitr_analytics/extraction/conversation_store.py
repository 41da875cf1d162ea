"""Read-only access to conversations, messages and the scheme catalog."""
from datetime import datetime, timezone
from typing import Any, Optional

from mitr_analytics.database.client import (
    CONVERSATIONS_TABLE,
    MESSAGES_TABLE,
    SCHEMES_TABLE,
    escape_sql,
    get_db,
)

MAX_ROWS = 20000


def _to_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)
        except ValueError:
            pass
    return datetime.fromtimestamp(0, tz=timezone.utc)


def get_conversation(conversation_id: str) -> Optional[dict]:
    db = get_db()
    if CONVERSATIONS_TABLE not in db.table_names():
        return None
    rows = (
        db.open_table(CONVERSATIONS_TABLE)
        .search()
        .where(f"id = '{escape_sql(conversation_id)}'")
        .limit(1)
        .to_list()
    )
    return rows[0] if rows else None


def get_messages(conversation_id: str) -> list[dict]:
    """Messages of a conversation, oldest first."""
    db = get_db()
    if MESSAGES_TABLE not in db.table_names():
        return []
    rows = (
        db.open_table(MESSAGES_TABLE)
        .search()
        .where(f"conversation_id = '{escape_sql(conversation_id)}'")
        .limit(MAX_ROWS)
        .to_list()
    )
    rows.sort(key=lambda r: _to_dt(r.get("created_at")))
    return rows


def get_active_schemes() -> list[dict]:
    db = get_db()
    if SCHEMES_TABLE not in db.table_names():
        return []
    rows = db.open_table(SCHEMES_TABLE).search().limit(MAX_ROWS).to_list()
    return [r for r in rows if bool(r.get("is_active", True))]
