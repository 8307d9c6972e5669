import logging
from datetime import datetime, time

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException

from database import Store, get_store, now, parse_id, serialize
from marks import initialize_exam_marks, remove_exam_marks
from roster import class_for_admin, class_info
from schemas import ExamCreate, ExamSubjectsIn, ExamUpdate
from security import require_teacher
from subjects import resolve_exam_subjects

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/exams", tags=["exams"])


def _check_unique(store: Store, class_id: ObjectId, name: str, code: str, exclude=None, session=None) -> None:
    query = {"class_id": class_id, "is_active": True, "$or": [{"exam_name": name}, {"exam_code": code}]}
    if exclude is not None:
        query["_id"] = {"$ne": exclude}
    if store["exam"].find_one(query, {"_id": 1}, session=session):
        raise HTTPException(status_code=400, detail="Exam with this name or code already exists for this class")


def _get_exam(store: Store, cls: dict, exam_id: str, session=None) -> dict:
    exam = store["exam"].find_one({"_id": parse_id(exam_id, "exam ID"), "class_id": cls["_id"]}, session=session)
    if not exam:
        raise HTTPException(status_code=404, detail="Exam not found")
    return exam


def _with_teachers(store: Store, exam: dict) -> dict:
    out = serialize(exam)
    ids = list({s["teacher_id"] for s in exam.get("subjects", []) if s.get("teacher_id")})
    names = {t["_id"]: t["name"] for t in store["teacher"].find({"_id": {"$in": ids}}, {"name": 1})}
    for subject, raw in zip(out["subjects"], exam.get("subjects", [])):
        if raw.get("teacher_id") is None:
            subject["teacher_name"] = "Unassigned"
        else:
            subject["teacher_name"] = names.get(raw["teacher_id"], "Unknown")
    return out


@router.post("/class/{class_id}", status_code=201)
def create_exam(class_id: str, payload: ExamCreate, current=Depends(require_teacher),
                store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    with store.transaction() as session:
        _check_unique(store, cls["_id"], payload.exam_name, payload.exam_code, session=session)
        exam = {
            "school_id": cls["school_id"],
            "class_id": cls["_id"],
            "class_admin_id": current["_id"],
            "exam_name": payload.exam_name,
            "exam_code": payload.exam_code,
            "exam_date": datetime.combine(payload.exam_date, time()),
            "duration": payload.duration,
            "subjects": resolve_exam_subjects(store, cls, payload.subjects, session=session),
            "is_active": True,
            "created_at": now(),
            "updated_at": now(),
        }
        exam["_id"] = store["exam"].insert_one(exam, session=session).inserted_id
        students = initialize_exam_marks(store, exam, session=session)
    logger.info("Exam %s created for class %s by %s", exam["_id"], cls["_id"], current["_id"])
    return {
        "msg": "Exam created successfully",
        "exam": _with_teachers(store, exam),
        "class_info": class_info(cls),
        "students_initialized": students,
    }


@router.get("/class/{class_id}")
def list_exams(class_id: str, current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    docs = store["exam"].find({"class_id": cls["_id"]}).sort("exam_date", -1)
    return {"class_info": class_info(cls), "items": [_with_teachers(store, d) for d in docs]}


@router.get("/class/{class_id}/exam/{exam_id}")
def get_exam(class_id: str, exam_id: str, current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    return _with_teachers(store, _get_exam(store, cls, exam_id))


@router.put("/class/{class_id}/exam/{exam_id}")
def update_exam(class_id: str, exam_id: str, payload: ExamUpdate, current=Depends(require_teacher),
                store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    changes = {k: v for k, v in payload.model_dump().items() if v is not None}
    if "exam_code" in changes:
        changes["exam_code"] = changes["exam_code"].upper()
    if "exam_date" in changes:
        changes["exam_date"] = datetime.combine(changes["exam_date"], time())

    with store.transaction() as session:
        exam = _get_exam(store, cls, exam_id, session=session)
        if "exam_name" in changes or "exam_code" in changes:
            _check_unique(store, cls["_id"], changes.get("exam_name", exam["exam_name"]),
                          changes.get("exam_code", exam["exam_code"]), exclude=exam["_id"], session=session)
        changes["updated_at"] = now()
        store["exam"].update_one({"_id": exam["_id"]}, {"$set": changes}, session=session)
        exam.update(changes)
        # keep the copies on mark records in step with the exam header
        initialize_exam_marks(store, exam, session=session)
    return {"msg": "Exam updated successfully", "exam": _with_teachers(store, exam)}


@router.delete("/class/{class_id}/exam/{exam_id}")
def delete_exam(class_id: str, exam_id: str, current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    with store.transaction() as session:
        exam = _get_exam(store, cls, exam_id, session=session)
        remove_exam_marks(store, exam, session=session)
        store["exam"].delete_one({"_id": exam["_id"]}, session=session)
    logger.info("Exam %s deleted from class %s", exam["_id"], cls["_id"])
    return {"msg": "Exam deleted successfully"}


@router.post("/class/{class_id}/exam/{exam_id}/subjects")
def add_subjects(class_id: str, exam_id: str, payload: ExamSubjectsIn, current=Depends(require_teacher),
                 store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    with store.transaction() as session:
        exam = _get_exam(store, cls, exam_id, session=session)
        added = resolve_exam_subjects(store, cls, payload.subjects, session=session)
        existing_ids = {s["subject_id"] for s in exam["subjects"]}
        existing_names = {s["subject_name"].lower() for s in exam["subjects"]}
        for subject in added:
            if subject["subject_id"] in existing_ids or subject["subject_name"].lower() in existing_names:
                raise HTTPException(status_code=400,
                                    detail=f"Subject {subject['subject_name']} already exists in this exam")
        exam["subjects"] = exam["subjects"] + added
        store["exam"].update_one({"_id": exam["_id"]}, {"$set": {"subjects": exam["subjects"], "updated_at": now()}},
                                 session=session)
        initialize_exam_marks(store, exam, session=session)
    return {"msg": "Subjects added successfully", "exam": _with_teachers(store, exam)}


@router.delete("/class/{class_id}/exam/{exam_id}/subject/{subject_id}")
def remove_subject(class_id: str, exam_id: str, subject_id: str, current=Depends(require_teacher),
                   store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    sid = parse_id(subject_id, "subject ID")
    with store.transaction() as session:
        exam = _get_exam(store, cls, exam_id, session=session)
        remaining = [s for s in exam["subjects"] if s["subject_id"] != sid]
        if len(remaining) == len(exam["subjects"]):
            raise HTTPException(status_code=404, detail="Subject not found in this exam")
        if not remaining:
            raise HTTPException(status_code=400, detail="An exam must keep at least one subject")
        exam["subjects"] = remaining
        store["exam"].update_one({"_id": exam["_id"]}, {"$set": {"subjects": remaining, "updated_at": now()}},
                                 session=session)
        initialize_exam_marks(store, exam, session=session)
    return {"msg": "Subject removed successfully", "exam": _with_teachers(store, exam)}


@router.get("/my-exams")
def my_exams(current=Depends(require_teacher), store: Store = Depends(get_store)):
    docs = list(store["exam"].find({"subjects.teacher_id": current["_id"], "is_active": True}).sort("exam_date", 1))
    classes = {c["_id"]: c for c in store["class"].find({"_id": {"$in": list({d["class_id"] for d in docs})}})}
    items = []
    for doc in docs:
        item = serialize(doc)
        item["subjects"] = [serialize(s) for s in doc["subjects"] if s["teacher_id"] == current["_id"]]
        cls = classes.get(doc["class_id"])
        item["class_info"] = class_info(cls) if cls else None
        items.append(item)
    return {"items": items}
