"""
MongoDB access for the School Management API.

Handlers never touch a module level client; they receive a ``Store`` through
the ``get_store`` dependency so tests can swap in an in-memory database.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pymongo import ASCENDING, DESCENDING, MongoClient

import settings

logger = logging.getLogger(__name__)

HIDDEN_FIELDS = {"password_hash"}


class Store:
    def __init__(self, db, client=None, transactions: bool = False):
        self.db = db
        self.client = client
        self.transactions = transactions and client is not None

    def __getitem__(self, name: str):
        return self.db[name]

    @property
    def name(self) -> str:
        return getattr(self.db, "name", "unknown")

    @contextmanager
    def transaction(self):
        """Yield a session bound to a transaction, or None when disabled.

        Every read and write of a multi-document mutation must pass the
        yielded value as ``session=`` so it joins the transaction.
        """
        if not self.transactions:
            yield None
            return
        with self.client.start_session() as session:
            with session.start_transaction():
                yield session


_store: Optional[Store] = None


def connect() -> Optional[Store]:
    global _store
    if _store is None and settings.DATABASE_URL:
        client = MongoClient(settings.DATABASE_URL)
        _store = Store(client[settings.DATABASE_NAME], client=client,
                       transactions=settings.MONGO_TRANSACTIONS)
        logger.info("Using MongoDB database %s (transactions=%s)",
                    settings.DATABASE_NAME, _store.transactions)
    return _store


def get_store() -> Store:
    store = connect()
    if store is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return store


def ensure_indexes(db) -> None:
    db["school"].create_index([("code", ASCENDING)], unique=True)
    db["admin"].create_index([("email", ASCENDING)], unique=True)
    db["teacher"].create_index([("email", ASCENDING)], unique=True)
    db["teacher"].create_index([("unique_code", ASCENDING)], unique=True)
    db["teacher"].create_index([("school_id", ASCENDING)])
    db["teacher"].create_index([("admin_class_id", ASCENDING)])
    db["student"].create_index([("email", ASCENDING)], unique=True)
    db["student"].create_index([("student_number", ASCENDING)], unique=True)
    db["student"].create_index([("school_id", ASCENDING), ("class_id", ASCENDING)])
    db["class"].create_index([("school_id", ASCENDING), ("name", ASCENDING), ("section", ASCENDING)])
    db["exam"].create_index([("class_id", ASCENDING), ("exam_date", ASCENDING)])
    db["exam"].create_index([("subjects.teacher_id", ASCENDING)])
    db["subject"].create_index([("class_id", ASCENDING)], unique=True)
    db["subject"].create_index([("subjects.teacher_id", ASCENDING)])
    db["mark"].create_index([("student_id", ASCENDING), ("class_id", ASCENDING)], unique=True)
    db["attendance"].create_index([("class_id", ASCENDING), ("date_string", ASCENDING)], unique=True)
    db["attendance"].create_index([("class_id", ASCENDING), ("date", DESCENDING)])


def parse_id(value: Any, label: str = "ID") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail=f"Invalid {label}")


def _plain(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return serialize(value)
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def serialize(doc: Optional[dict]) -> Optional[dict]:
    """Convert a stored document into JSON-ready output."""
    if doc is None:
        return None
    out = {}
    for key, value in doc.items():
        if key in HIDDEN_FIELDS:
            continue
        if key == "_id":
            out["id"] = str(value)
            continue
        out[key] = _plain(value)
    return out


def now() -> datetime:
    # BSON stores naive UTC datetimes
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)
