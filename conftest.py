import itertools
import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("SECRET_KEY", "x" * 40)
os.environ["MONGO_TRANSACTIONS"] = "0"

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from database import Store, ensure_indexes, get_store
from main import app

PASSWORD = "password123"
_counter = itertools.count(1)


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def store():
    db = mongomock.MongoClient()["school_test"]
    ensure_indexes(db)
    return Store(db)


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin(client):
    r = client.post("/api/admin/register", json={
        "name": "Grace Hopper",
        "email": "principal@greenwood.edu",
        "password": PASSWORD,
        "school_name": "Greenwood High",
        "school_code": "GWH",
    })
    assert r.status_code == 201, r.text
    data = r.json()
    return {"id": data["user_id"], "token": data["token"], "headers": auth(data["token"]), "school_code": "GWH"}


@pytest.fixture
def make_class(client, admin):
    def _make(name="Grade 5", section="A"):
        r = client.post("/api/admin/classes", json={"name": name, "section": section}, headers=admin["headers"])
        assert r.status_code == 201, r.text
        return r.json()["id"]
    return _make


@pytest.fixture
def make_teacher(client, admin):
    def _make(name=None):
        n = next(_counter)
        email = f"teacher{n}@greenwood.edu"
        r = client.post("/api/admin/accounts/create-teacher", headers=admin["headers"], json={
            "name": name or f"Teacher {n}",
            "email": email,
            "password": PASSWORD,
            "school_code": admin["school_code"],
            "unique_code": f"T-{n:03d}",
            "phone": "555-0100",
        })
        assert r.status_code == 201, r.text
        login = client.post("/api/teacher/login", json={"email": email, "password": PASSWORD}).json()
        return {"id": r.json()["teacher"]["id"], "email": email, "headers": auth(login["token"])}
    return _make


@pytest.fixture
def make_student(client, admin, store):
    def _make(class_name="Grade 5", section="A", name=None):
        n = next(_counter)
        email = f"student{n}@greenwood.edu"
        r = client.post("/api/admin/accounts/create-student", headers=admin["headers"], json={
            "name": name or f"Student {n}",
            "email": email,
            "password": PASSWORD,
            "school_code": admin["school_code"],
            "class_name": class_name,
            "section": section,
            "phone": "555-0199",
        })
        assert r.status_code == 201, r.text
        sid = r.json()["student"]["id"]
        doc = store["student"].find_one({"_id": ObjectId(sid)})
        login = client.post("/api/student/login", json={"email": email, "password": PASSWORD}).json()
        return {"id": sid, "email": email, "class_id": str(doc["class_id"]), "headers": auth(login["token"])}
    return _make


@pytest.fixture
def class_admin(client, admin, make_class, make_teacher):
    """A class with one teacher assigned and promoted to class admin."""
    class_id = make_class()
    teacher = make_teacher()
    client.post("/api/admin/classes/assign-teacher", headers=admin["headers"],
                json={"class_id": class_id, "teacher_id": teacher["id"]})
    r = client.post("/api/admin/classes/assign-class-admin", headers=admin["headers"],
                    json={"class_id": class_id, "teacher_id": teacher["id"]})
    assert r.status_code == 200, r.text
    return {"class_id": class_id, "teacher": teacher}


@pytest.fixture
def make_subject(client, class_admin):
    """Adds a catalogue subject to the class_admin class, optionally assigning a teacher."""
    def _make(name, teacher_id=None, credits=1):
        base = f"/api/subjects/class/{class_admin['class_id']}"
        headers = class_admin["teacher"]["headers"]
        r = client.post(base, headers=headers, json={"name": name, "credits": credits})
        assert r.status_code == 201, r.text
        subject_id = r.json()["subject"]["id"]
        if teacher_id:
            r = client.post(f"{base}/subject/{subject_id}/assign", headers=headers, json={"teacher_id": teacher_id})
            assert r.status_code == 200, r.text
        return subject_id
    return _make
