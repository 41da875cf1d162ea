import os
import re
import tempfile
from copy import deepcopy
from datetime import datetime, timedelta, timezone

os.environ.setdefault("MITR_APPDATA_DIR", tempfile.mkdtemp(prefix="mitr-tests-"))

import pytest

from mitr_analytics.analytics import service
from mitr_analytics.analytics.cache import InMemoryTTLCache, set_cache
from mitr_analytics.extraction import conversation_store, jobs, storage

_CONDITION = re.compile(r"(\w+)\s*=\s*(?:'((?:[^']|'')*)'|(-?\d+(?:\.\d+)?))")

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _row_to_dict(row):
    if isinstance(row, dict):
        return deepcopy(row)
    if hasattr(row, "model_dump"):
        return deepcopy(row.model_dump())
    return deepcopy(dict(row))


def _matches(row, clause):
    for field, quoted, number in _CONDITION.findall(str(clause or "")):
        expected = quoted.replace("''", "'") if number == "" else number
        actual = row.get(field)
        if isinstance(actual, bool):
            actual = str(actual).lower()
        if str(actual if actual is not None else "") != expected:
            return False
    return True


class FakeQuery:
    # LanceDB returns 10 rows when no limit is given.
    DEFAULT_LIMIT = 10

    def __init__(self, rows, limit=DEFAULT_LIMIT):
        self._rows = list(rows)
        self._limit = limit

    def where(self, clause):
        return FakeQuery([row for row in self._rows if _matches(row, clause)], self._limit)

    def limit(self, n):
        return FakeQuery(self._rows, int(n))

    def to_list(self):
        return [deepcopy(row) for row in self._rows[: self._limit]]


class FakeTable:
    def __init__(self):
        self.rows = []

    def search(self, *_args, **_kwargs):
        return FakeQuery(self.rows)

    def count_rows(self, *_args, **_kwargs):
        return len(self.rows)

    def add(self, rows):
        for row in rows:
            self.rows.append(_row_to_dict(row))

    def update(self, where, values):
        for row in self.rows:
            if _matches(row, where):
                row.update(deepcopy(values or {}))

    def delete(self, where):
        self.rows = [row for row in self.rows if not _matches(row, where)]


class FakeDb:
    def __init__(self):
        self.tables = {
            name: FakeTable()
            for name in (
                "conversations",
                "messages",
                "schemes",
                "extraction_jobs",
                "user_attributes",
                "scheme_interests",
            )
        }

    def table_names(self):
        return list(self.tables.keys())

    def open_table(self, name):
        return self.tables[name]


@pytest.fixture
def fake_db(monkeypatch):
    db = FakeDb()
    for module in (conversation_store, jobs, storage, service):
        monkeypatch.setattr(module, "get_db", lambda: db)

    async def _run_inline(write_op):
        return await write_op()

    for module in (jobs, storage, service):
        monkeypatch.setattr(module, "enqueue_write", _run_inline)

    set_cache(InMemoryTTLCache())
    return db


def add_conversation(db, conversation_id, user_id, messages, created_at=BASE_TIME):
    """Seed a conversation whose message_count matches the given (role, content) pairs."""
    db.tables["conversations"].add([
        {
            "id": conversation_id,
            "user_id": user_id,
            "title": f"Conversation {conversation_id}",
            "message_count": len(messages),
            "created_at": created_at,
            "updated_at": created_at,
        }
    ])
    db.tables["messages"].add([
        {
            "id": f"{conversation_id}-m{i}",
            "conversation_id": conversation_id,
            "role": role,
            "content": content,
            "created_at": created_at + timedelta(seconds=i),
        }
        for i, (role, content) in enumerate(messages, start=1)
    ])


def add_scheme(db, scheme_id, name, ministry="Ministry of MSME", active=True):
    db.tables["schemes"].add([
        {
            "id": scheme_id,
            "scheme_name": name,
            "ministry": ministry,
            "description": "",
            "category": "credit",
            "is_active": active,
            "created_at": BASE_TIME,
        }
    ])
