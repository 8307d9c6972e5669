import logging

from fastapi import APIRouter, Depends, HTTPException

from accounts import create_teacher, find_school
from database import Store, get_store, now, parse_id, serialize
from roster import populate_class
from schemas import ChangePassword, LoginRequest, ProfileUpdate, TeacherRegister, Token
from security import get_password_hash, login, require_teacher, token_response, verify_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/teacher", tags=["teacher"])


@router.post("/register", status_code=201, response_model=Token)
def register_teacher(req: TeacherRegister, store: Store = Depends(get_store)):
    with store.transaction() as session:
        school = find_school(store, req.school_code, session=session)
        teacher = create_teacher(store, school, name=req.name, email=req.email, password=req.password,
                                 unique_code=req.unique_code, phone=req.phone, session=session)
    return token_response(teacher, "teacher")


@router.post("/login", response_model=Token)
def login_teacher(payload: LoginRequest, store: Store = Depends(get_store)):
    return login(store, "teacher", payload.email, payload.password)


@router.get("/validate-token")
def validate_teacher_token(current=Depends(require_teacher)):
    return {"valid": True, "user": serialize(current)}


@router.get("/profile")
def get_profile(current=Depends(require_teacher), store: Store = Depends(get_store)):
    profile = serialize(current)
    school = store["school"].find_one({"_id": current["school_id"]}, {"name": 1, "code": 1})
    profile["school"] = serialize(school)
    return profile


@router.put("/profile")
def update_profile(payload: ProfileUpdate, current=Depends(require_teacher), store: Store = Depends(get_store)):
    changes = {k: v for k, v in payload.model_dump().items() if v is not None}
    if changes:
        changes["updated_at"] = now()
        store["teacher"].update_one({"_id": current["_id"]}, {"$set": changes})
    return serialize(store["teacher"].find_one({"_id": current["_id"]}))


@router.put("/change-password")
def change_password(payload: ChangePassword, current=Depends(require_teacher), store: Store = Depends(get_store)):
    if not verify_password(payload.current_password, current.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    store["teacher"].update_one(
        {"_id": current["_id"]},
        {"$set": {"password_hash": get_password_hash(payload.new_password), "updated_at": now()}},
    )
    logger.info("Teacher %s changed password", current["_id"])
    return {"msg": "Password updated successfully"}


@router.get("/classes")
def list_classes(current=Depends(require_teacher), store: Store = Depends(get_store)):
    docs = store["class"].find({"_id": {"$in": current.get("class_ids", [])}}).sort([("name", 1), ("section", 1)])
    items = []
    for d in docs:
        item = serialize(d)
        item["is_class_admin"] = current.get("admin_class_id") == d["_id"]
        items.append(item)
    return {"items": items}


@router.get("/class/{class_id}/students")
def list_class_students(class_id: str, current=Depends(require_teacher), store: Store = Depends(get_store)):
    cid = parse_id(class_id, "class ID")
    if cid not in current.get("class_ids", []):
        raise HTTPException(status_code=403, detail="Not authorized to access this class")
    docs = store["student"].find({"class_id": cid}).sort("name", 1)
    return {"items": [serialize(d) for d in docs]}


@router.get("/admin-class")
def get_admin_class(current=Depends(require_teacher), store: Store = Depends(get_store)):
    cid = current.get("admin_class_id")
    if not cid:
        raise HTTPException(status_code=404, detail="You are not a class admin of any class")
    cls = store["class"].find_one({"_id": cid})
    if not cls:
        raise HTTPException(status_code=404, detail="Class not found")
    return populate_class(store, cls)


@router.get("/student/{student_id}/profile")
def get_student_profile(student_id: str, current=Depends(require_teacher), store: Store = Depends(get_store)):
    student = store["student"].find_one({"_id": parse_id(student_id, "student ID")})
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    class_id = student.get("class_id")
    if not class_id or (class_id not in current.get("class_ids", []) and class_id != current.get("admin_class_id")):
        raise HTTPException(status_code=403, detail="Not authorized to view this student")
    return serialize(student)
