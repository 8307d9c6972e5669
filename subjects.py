"""
Per-class subject catalogue.

Each class has at most one ``subject`` document holding its subjects and the
teacher assigned to each. Exams pick their subjects from this catalogue, and
teacher changes here are copied onto the class's exams and mark records.
"""

import logging
import random
import re
from typing import List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException

from database import Store, get_store, now, parse_id, serialize
from roster import brief, class_for_admin, class_for_teacher, class_info
from schemas import CatalogueSubjectIn, CatalogueSubjectUpdate, ExamSubjectIn, SubjectTeacherIn
from security import require_teacher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subjects", tags=["subjects"])


# ----------------------- Catalogue helpers -----------------------

def get_catalogue(store: Store, class_id: ObjectId, session=None) -> Optional[dict]:
    return store["subject"].find_one({"class_id": class_id}, session=session)


def create_catalogue(store: Store, cls: dict, class_admin: dict, session=None) -> dict:
    doc = {
        "school_id": cls["school_id"],
        "class_id": cls["_id"],
        "class_admin_id": class_admin["_id"],
        "subjects": [],
        "created_at": now(),
        "updated_at": now(),
    }
    doc["_id"] = store["subject"].insert_one(doc, session=session).inserted_id
    logger.info("Subject catalogue initialized for class %s", cls["_id"])
    return doc


def generate_code(name: str) -> str:
    letters = re.sub(r"[^A-Za-z]", "", name)[:4].upper() or "SUBJ"
    return f"{letters}{random.randint(1, 99):02d}"


def _entry(catalogue: Optional[dict], subject_id: str) -> dict:
    if not catalogue:
        raise HTTPException(status_code=404, detail="No subjects found for this class")
    sid = parse_id(subject_id, "subject ID")
    for entry in catalogue["subjects"]:
        if entry["_id"] == sid:
            return entry
    raise HTTPException(status_code=404, detail="Subject not found")


def _check_unique(catalogue: dict, name: Optional[str], code: Optional[str], exclude=None) -> None:
    for entry in catalogue["subjects"]:
        if entry["_id"] == exclude:
            continue
        if name and entry["name"].lower() == name.lower():
            raise HTTPException(status_code=400, detail="Subject with this name already exists in this class")
        if code and entry.get("code", "").upper() == code.upper():
            raise HTTPException(status_code=400, detail="Subject with this code already exists in this class")


def _save_subjects(store: Store, catalogue: dict, session=None) -> None:
    store["subject"].update_one({"_id": catalogue["_id"]},
                                {"$set": {"subjects": catalogue["subjects"], "updated_at": now()}},
                                session=session)


def _with_teachers(store: Store, catalogue: Optional[dict]) -> List[dict]:
    if not catalogue:
        return []
    ids = [s["teacher_id"] for s in catalogue["subjects"] if s.get("teacher_id")]
    teachers = {t["id"]: t for t in brief(store, "teacher", ids, ["name", "email"])}
    out = []
    for entry in catalogue["subjects"]:
        item = serialize(entry)
        item["teacher"] = teachers.get(item.get("teacher_id")) if item.get("teacher_id") else None
        out.append(item)
    return out


def sync_subject_teachers(store: Store, class_id: ObjectId, assignments: dict, session=None) -> dict:
    """Copy catalogue teacher assignments onto the class's exams and mark records.

    ``assignments`` maps subject id to teacher id (or None). A subject losing its
    teacher also loses ``scored_by`` on mark records; scores are kept.
    """
    exams_updated = 0
    for exam in store["exam"].find({"class_id": class_id}, session=session):
        changed = False
        for subject in exam["subjects"]:
            if subject["subject_id"] in assignments and subject["teacher_id"] != assignments[subject["subject_id"]]:
                subject["teacher_id"] = assignments[subject["subject_id"]]
                changed = True
        if changed:
            store["exam"].update_one({"_id": exam["_id"]},
                                     {"$set": {"subjects": exam["subjects"], "updated_at": now()}}, session=session)
            exams_updated += 1

    records_updated = subjects_updated = 0
    for mark in store["mark"].find({"class_id": class_id}, session=session):
        changed = False
        for entry in mark.get("exams", []):
            for subject in entry["subjects"]:
                if subject["subject_id"] not in assignments:
                    continue
                teacher_id = assignments[subject["subject_id"]]
                if subject.get("teacher_id") != teacher_id:
                    subject["teacher_id"] = teacher_id
                    if teacher_id is None:
                        subject["scored_by"] = None
                    subjects_updated += 1
                    changed = True
        if changed:
            store["mark"].update_one({"_id": mark["_id"]}, {"$set": {"exams": mark["exams"], "updated_at": now()}},
                                     session=session)
            records_updated += 1
    return {"exams_updated": exams_updated, "updated_records": records_updated, "updated_subjects": subjects_updated}


def resolve_exam_subjects(store: Store, cls: dict, subjects: List[ExamSubjectIn], session=None) -> List[dict]:
    """Exam subject entries for ``subjects``, each checked against the class catalogue."""
    catalogue = get_catalogue(store, cls["_id"], session=session)
    if not catalogue:
        raise HTTPException(status_code=400, detail="Subjects not initialized for this class")
    active = {s["_id"]: s for s in catalogue["subjects"] if s.get("is_active", True)}

    built = []
    for subject in subjects:
        entry = active.get(parse_id(subject.subject_id, "subject ID"))
        if entry is None:
            raise HTTPException(status_code=404, detail=f"Subject {subject.subject_id} not found in this class")
        teacher_id = parse_id(subject.teacher_id, "teacher ID") if subject.teacher_id else entry.get("teacher_id")
        if teacher_id is None:
            raise HTTPException(status_code=400, detail=f"No teacher assigned to subject {entry['name']}")
        if not store["teacher"].find_one({"_id": teacher_id, "school_id": cls["school_id"]}, {"_id": 1},
                                         session=session):
            raise HTTPException(status_code=404, detail=f"Teacher not found for subject {entry['name']}")
        built.append({
            "subject_id": entry["_id"],
            "subject_name": subject.subject_name or entry["name"],
            "teacher_id": teacher_id,
            "credits": subject.credits or max(entry.get("credits", 1), 1),
            "full_marks": subject.full_marks,
        })

    ids = [s["subject_id"] for s in built]
    if len(ids) != len(set(ids)):
        raise HTTPException(status_code=400, detail="Duplicate subjects are not allowed")
    return built


# ----------------------- Class admin -----------------------
@router.post("/class/{class_id}/initialize", status_code=201)
def initialize_subjects(class_id: str, current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    with store.transaction() as session:
        if get_catalogue(store, cls["_id"], session=session):
            raise HTTPException(status_code=400, detail="Subjects already initialized for this class")
        create_catalogue(store, cls, current, session=session)
    return {"msg": "Subjects initialized successfully for class", "class_info": class_info(cls), "subjects": []}


@router.get("/class/{class_id}/status")
def subjects_status(class_id: str, current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    catalogue = get_catalogue(store, cls["_id"])
    return {
        "initialized": catalogue is not None,
        "class_info": class_info(cls),
        "subject_count": len(catalogue["subjects"]) if catalogue else 0,
    }


@router.get("/class/{class_id}")
def list_subjects(class_id: str, current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_teacher(store, current, class_id)
    catalogue = get_catalogue(store, cls["_id"])
    return {
        "initialized": catalogue is not None,
        "class_info": class_info(cls),
        "items": _with_teachers(store, catalogue),
    }


@router.post("/class/{class_id}", status_code=201)
def add_subject(class_id: str, payload: CatalogueSubjectIn, current=Depends(require_teacher),
                store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    code = payload.code.strip().upper() if payload.code and payload.code.strip() else None
    with store.transaction() as session:
        catalogue = get_catalogue(store, cls["_id"], session=session) or \
            create_catalogue(store, cls, current, session=session)
        _check_unique(catalogue, payload.name, code)
        if code is None:
            code = generate_code(payload.name)
            while any(s.get("code") == code for s in catalogue["subjects"]):
                code = generate_code(payload.name)
        entry = {
            "_id": ObjectId(),
            "name": payload.name,
            "code": code,
            "teacher_id": None,
            "description": payload.description,
            "credits": payload.credits,
            "is_active": True,
            "created_at": now(),
        }
        catalogue["subjects"].append(entry)
        _save_subjects(store, catalogue, session=session)
    logger.info("Subject %s (%s) added to class %s", entry["name"], code, cls["_id"])
    return {"msg": "Subject added successfully", "subject": serialize(entry)}


@router.put("/class/{class_id}/subject/{subject_id}")
def update_subject(class_id: str, subject_id: str, payload: CatalogueSubjectUpdate,
                   current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    changes = {k: v for k, v in payload.model_dump().items() if v is not None}
    if "code" in changes:
        changes["code"] = changes["code"].upper()
    with store.transaction() as session:
        catalogue = get_catalogue(store, cls["_id"], session=session)
        entry = _entry(catalogue, subject_id)
        _check_unique(catalogue, changes.get("name"), changes.get("code"), exclude=entry["_id"])
        entry.update(changes)
        _save_subjects(store, catalogue, session=session)
    return {"msg": "Subject updated successfully", "subject": serialize(entry)}


@router.delete("/class/{class_id}/subject/{subject_id}")
def delete_subject(class_id: str, subject_id: str, current=Depends(require_teacher),
                   store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    with store.transaction() as session:
        catalogue = get_catalogue(store, cls["_id"], session=session)
        entry = _entry(catalogue, subject_id)
        catalogue["subjects"] = [s for s in catalogue["subjects"] if s["_id"] != entry["_id"]]
        _save_subjects(store, catalogue, session=session)
    # exams already holding the subject keep their copy
    return {"msg": f'Subject "{entry["name"]}" deleted successfully', "subject_id": str(entry["_id"])}


@router.post("/class/{class_id}/subject/{subject_id}/assign")
def assign_subject_teacher(class_id: str, subject_id: str, payload: SubjectTeacherIn,
                           current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    tid = parse_id(payload.teacher_id, "teacher ID")
    with store.transaction() as session:
        catalogue = get_catalogue(store, cls["_id"], session=session)
        entry = _entry(catalogue, subject_id)
        teacher = store["teacher"].find_one({"_id": tid, "school_id": cls["school_id"]}, session=session)
        if not teacher:
            raise HTTPException(status_code=404, detail="Teacher not found or not from same school")
        if cls["_id"] not in teacher.get("class_ids", []):
            raise HTTPException(status_code=400, detail="Teacher must be assigned to this class first")
        entry["teacher_id"] = tid
        _save_subjects(store, catalogue, session=session)
        synced = sync_subject_teachers(store, cls["_id"], {entry["_id"]: tid}, session=session)
    logger.info("Teacher %s assigned to subject %s in class %s", tid, entry["_id"], cls["_id"])
    return {
        "msg": f'Teacher assigned to subject "{entry["name"]}" successfully',
        "subject": serialize(entry),
        "teacher_info": {"id": str(tid), "name": teacher["name"], "email": teacher["email"]},
        "sync": synced,
    }


@router.delete("/class/{class_id}/subject/{subject_id}/teacher")
def remove_subject_teacher(class_id: str, subject_id: str, current=Depends(require_teacher),
                           store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    with store.transaction() as session:
        catalogue = get_catalogue(store, cls["_id"], session=session)
        entry = _entry(catalogue, subject_id)
        if not entry.get("teacher_id"):
            raise HTTPException(status_code=400, detail="No teacher assigned to this subject")
        previous = entry["teacher_id"]
        entry["teacher_id"] = None
        _save_subjects(store, catalogue, session=session)
        synced = sync_subject_teachers(store, cls["_id"], {entry["_id"]: None}, session=session)
    logger.info("Teacher %s removed from subject %s in class %s", previous, entry["_id"], cls["_id"])
    return {
        "msg": f'Teacher removed from subject "{entry["name"]}" successfully',
        "subject_id": str(entry["_id"]),
        "previous_teacher_id": str(previous),
        "sync": synced,
    }


@router.put("/class/{class_id}/sync-marks")
def sync_marks(class_id: str, current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    with store.transaction() as session:
        catalogue = get_catalogue(store, cls["_id"], session=session)
        if not catalogue:
            raise HTTPException(status_code=404, detail="No subjects found for this class")
        assignments = {s["_id"]: s.get("teacher_id") for s in catalogue["subjects"]}
        synced = sync_subject_teachers(store, cls["_id"], assignments, session=session)
    return {"msg": "Marks synced with subject assignments", **synced}


@router.get("/class/{class_id}/teachers")
def class_teachers(class_id: str, current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    return {"class_info": class_info(cls),
            "items": brief(store, "teacher", cls.get("teacher_ids", []), ["name", "email", "unique_code"])}


# ----------------------- Teacher -----------------------
@router.get("/my-subjects")
def my_subjects(current=Depends(require_teacher), store: Store = Depends(get_store)):
    docs = list(store["subject"].find({"subjects.teacher_id": current["_id"]}))
    classes = {c["_id"]: c for c in store["class"].find({"_id": {"$in": [d["class_id"] for d in docs]}})}
    items = []
    for doc in docs:
        cls = classes.get(doc["class_id"])
        for entry in doc["subjects"]:
            if entry.get("teacher_id") != current["_id"] or not entry.get("is_active", True):
                continue
            item = serialize(entry)
            item["class_info"] = class_info(cls) if cls else None
            items.append(item)
    return {"items": items, "total_subjects": len(items)}
