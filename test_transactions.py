"""Multi-document mutations run inside one session-bound transaction."""

from contextlib import contextmanager

import mongomock
import pytest
from bson import ObjectId

from database import Store, ensure_indexes

WRITE_OPS = {"insert_one", "insert_many", "update_one", "update_many", "delete_one", "delete_many"}


class FakeSession:
    def __init__(self, events):
        self.events = events

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.events.append("end_session")
        return False

    @contextmanager
    def start_transaction(self):
        self.events.append("start_transaction")
        try:
            yield
        except Exception:
            self.events.append("abort")
            raise
        self.events.append("commit")


class FakeClient:
    def __init__(self, events):
        self.events = events
        self.sessions = []

    def start_session(self):
        session = FakeSession(self.events)
        self.sessions.append(session)
        return session


class RecordingCollection:
    """Logs writes with the session they were given; mongomock itself rejects sessions."""

    def __init__(self, collection, writes):
        self._collection = collection
        self._writes = writes

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        def call(*args, **kwargs):
            session = kwargs.pop("session", None)
            if name in WRITE_OPS:
                self._writes.append((self._collection.name, name, session))
            return attr(*args, **kwargs)
        return call


class RecordingDB:
    def __init__(self, db, writes):
        self._db = db
        self._writes = writes
        self.name = db.name

    def __getitem__(self, name):
        return RecordingCollection(self._db[name], self._writes)

    def list_collection_names(self):
        return self._db.list_collection_names()


@pytest.fixture
def recorder():
    return {"events": [], "writes": []}


@pytest.fixture
def store(recorder):
    db = mongomock.MongoClient()["school_test"]
    ensure_indexes(db)
    return Store(RecordingDB(db, recorder["writes"]), client=FakeClient(recorder["events"]), transactions=True)


def _reset(recorder):
    recorder["events"].clear()
    recorder["writes"].clear()


def test_transactions_need_a_client():
    assert Store(mongomock.MongoClient()["x"], client=None, transactions=True).transactions is False


def test_assign_teachers_writes_share_the_session(client, store, recorder, admin, make_class, make_teacher):
    class_id = make_class()
    teachers = [make_teacher()["id"], make_teacher()["id"]]
    _reset(recorder)

    r = client.post("/api/admin/classes/assign-teachers", headers=admin["headers"],
                    json={"class_id": class_id, "teacher_ids": teachers})
    assert r.status_code == 200, r.text
    assert recorder["events"] == ["start_transaction", "commit", "end_session"]
    session = store.client.sessions[-1]
    assert [(c, op) for c, op, _ in recorder["writes"]] == [("class", "update_one"), ("teacher", "update_many")]
    assert all(s is session for _, _, s in recorder["writes"])


def test_failed_assignment_aborts(client, recorder, admin, make_class, make_teacher):
    class_id = make_class()
    teacher = make_teacher()
    _reset(recorder)

    r = client.post("/api/admin/classes/assign-teachers", headers=admin["headers"],
                    json={"class_id": class_id, "teacher_ids": [teacher["id"], str(ObjectId())]})
    assert r.status_code == 404
    assert recorder["events"] == ["start_transaction", "abort", "end_session"]
    assert recorder["writes"] == []


def test_class_admin_for_unassigned_teacher_aborts(client, recorder, admin, make_class, make_teacher):
    class_id = make_class()
    teacher = make_teacher()
    _reset(recorder)

    r = client.post("/api/admin/classes/assign-class-admin", headers=admin["headers"],
                    json={"class_id": class_id, "teacher_id": teacher["id"]})
    assert r.status_code == 400
    assert "abort" in recorder["events"]
    assert "commit" not in recorder["events"]
    assert recorder["writes"] == []


def test_delete_class_cleanup_runs_in_one_transaction(client, store, recorder, admin, make_class, make_teacher,
                                                      make_student):
    class_id = make_class()
    teacher = make_teacher()
    client.post("/api/admin/classes/assign-teacher", headers=admin["headers"],
                json={"class_id": class_id, "teacher_id": teacher["id"]})
    make_student()
    _reset(recorder)

    r = client.delete(f"/api/admin/classes/{class_id}", headers=admin["headers"])
    assert r.status_code == 200
    assert recorder["events"] == ["start_transaction", "commit", "end_session"]
    session = store.client.sessions[-1]
    touched = {c for c, _, _ in recorder["writes"]}
    assert touched == {"school", "teacher", "student", "class"}
    assert all(s is session for _, _, s in recorder["writes"])
    assert store["class"].find_one({"_id": ObjectId(class_id)}) is None
