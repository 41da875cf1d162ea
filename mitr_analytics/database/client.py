import lancedb
import os
import logging

logger = logging.getLogger(__name__)

if os.environ.get("MITR_APPDATA_DIR"):
    DATA_DIR = os.path.join(os.environ["MITR_APPDATA_DIR"], "data")
elif os.name == 'nt':
    DATA_DIR = os.path.join(os.environ['APPDATA'], 'Mitr', 'data')
else:
    DATA_DIR = os.path.join(os.path.expanduser('~'), '.mitr', 'data')

DB_PATH = os.path.join(DATA_DIR, "lancedb")

CONVERSATIONS_TABLE = "conversations"
MESSAGES_TABLE = "messages"
SCHEMES_TABLE = "schemes"
JOBS_TABLE = "extraction_jobs"
USER_ATTRIBUTES_TABLE = "user_attributes"
SCHEME_INTERESTS_TABLE = "scheme_interests"

_db = None


def get_db():
    global _db
    if _db is None:
        os.makedirs(DB_PATH, exist_ok=True)
        _db = lancedb.connect(DB_PATH)
    return _db


def escape_sql(value) -> str:
    return str(value).replace("'", "''")


def _safe_create_table(db, name: str, schema):
    """
    Create table idempotently.
    Handles races on startup/reload where the table can be created between
    existence check and create call.
    """
    try:
        if name in set(db.table_names()):
            db.open_table(name)
            return
    except Exception as e:
        logger.debug(f"Table listing failed before creating {name}: {e}")

    try:
        db.create_table(name, schema=schema)
    except Exception as e:
        msg = str(e).lower()
        if "already exists" in msg:
            db.open_table(name)
            return
        raise


def init_tables():
    db = get_db()
    from .schema import (
        Conversation,
        ExtractionJob,
        Message,
        Scheme,
        SchemeInterest,
        UserAttribute,
    )

    _safe_create_table(db, CONVERSATIONS_TABLE, Conversation)
    _safe_create_table(db, MESSAGES_TABLE, Message)
    _safe_create_table(db, SCHEMES_TABLE, Scheme)
    _safe_create_table(db, JOBS_TABLE, ExtractionJob)
    _safe_create_table(db, USER_ATTRIBUTES_TABLE, UserAttribute)
    _safe_create_table(db, SCHEME_INTERESTS_TABLE, SchemeInterest)
    logger.info(f"LanceDB tables ready at {DB_PATH}")
