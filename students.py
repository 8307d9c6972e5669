import logging

from fastapi import APIRouter, Depends, HTTPException

from accounts import create_student, find_school
from database import Store, get_store, now, parse_id, serialize
from roster import brief, move_student
from schemas import LoginRequest, ProfileUpdate, SelectClass, StudentRegister, Token
from security import login, require_student, token_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/student", tags=["student"])


@router.post("/register", status_code=201, response_model=Token)
def register_student(req: StudentRegister, store: Store = Depends(get_store)):
    with store.transaction() as session:
        school = find_school(store, req.school_code, session=session)
        cls = store["class"].find_one(
            {"school_id": school["_id"], "name": req.class_name.strip(), "section": req.section.strip()},
            session=session,
        )
        if not cls:
            raise HTTPException(status_code=400, detail="Class not found in this school")
        student = create_student(store, school, cls, name=req.name, email=req.email, password=req.password,
                                 phone=req.phone, student_number=req.student_number, session=session)
    return token_response(student, "student")


@router.post("/login", response_model=Token)
def login_student(payload: LoginRequest, store: Store = Depends(get_store)):
    return login(store, "student", payload.email, payload.password)


@router.get("/validate")
def validate_student_token(current=Depends(require_student)):
    return {"valid": True, "user": serialize(current)}


@router.get("/profile")
def get_profile(current=Depends(require_student), store: Store = Depends(get_store)):
    profile = serialize(current)
    school = store["school"].find_one({"_id": current["school_id"]}, {"name": 1, "code": 1})
    profile["school"] = serialize(school)
    return profile


@router.put("/profile")
def update_profile(payload: ProfileUpdate, current=Depends(require_student), store: Store = Depends(get_store)):
    changes = {k: v for k, v in payload.model_dump().items() if v is not None}
    if changes:
        changes["updated_at"] = now()
        store["student"].update_one({"_id": current["_id"]}, {"$set": changes})
    return serialize(store["student"].find_one({"_id": current["_id"]}))


@router.get("/class")
def get_class(current=Depends(require_student), store: Store = Depends(get_store)):
    if not current.get("class_id"):
        raise HTTPException(status_code=404, detail="No class assigned to this student")
    cls = store["class"].find_one({"_id": current["class_id"]})
    if not cls:
        raise HTTPException(status_code=404, detail="Class not found")
    return {
        "id": str(cls["_id"]),
        "name": cls["name"],
        "section": cls.get("section", ""),
        "teachers": brief(store, "teacher", cls.get("teacher_ids", []), ["name", "email"]),
    }


@router.get("/classes/{school_code}")
def list_available_classes(school_code: str, store: Store = Depends(get_store)):
    school = store["school"].find_one({"code": school_code})
    if not school:
        raise HTTPException(status_code=404, detail="School not found with this code")
    docs = store["class"].find({"school_id": school["_id"]}, {"name": 1, "section": 1}) \
        .sort([("name", 1), ("section", 1)])
    return {"items": [serialize(d) for d in docs]}


@router.post("/select-class")
def select_class(payload: SelectClass, current=Depends(require_student), store: Store = Depends(get_store)):
    with store.transaction() as session:
        cls = store["class"].find_one({"_id": parse_id(payload.class_id, "class ID"),
                                       "school_id": current["school_id"]}, session=session)
        if not cls:
            raise HTTPException(status_code=404, detail="Class not found or not available in your school")
        move_student(store, current, cls, session=session)
    logger.info("Student %s selected class %s", current["_id"], cls["_id"])
    return {
        "msg": "Class selected successfully",
        "class_details": {"id": str(cls["_id"]), "name": cls["name"], "section": cls.get("section", "")},
    }
