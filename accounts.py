import logging
import random
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError

from database import Store, get_store, now, parse_id, serialize
from roster import find_or_create_class, move_student
from schemas import (
    AdminRegister,
    BulkStudentsIn,
    BulkTeachersIn,
    LoginRequest,
    StudentAccountIn,
    TeacherAccountIn,
    Token,
)
from security import get_password_hash, login, require_admin, token_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])
accounts_router = APIRouter(prefix="/api/admin/accounts", tags=["admin-accounts"])


# ----------------------- Account helpers -----------------------

def generate_student_number(school_code: str) -> str:
    stamp = str(int(time.time() * 1000))[-6:]
    return f"{school_code}-STD-{stamp}{random.randint(0, 999):03d}"


def find_school(store: Store, school_code: str, session=None) -> dict:
    school = store["school"].find_one({"code": school_code.strip()}, session=session)
    if not school:
        raise HTTPException(status_code=400, detail="Invalid school code")
    return school


def create_teacher(store: Store, school: dict, *, name: str, email: str, password: str,
                   unique_code: str, phone: Optional[str] = None, session=None) -> dict:
    email = email.lower()
    if store["teacher"].find_one({"email": email}, session=session):
        raise HTTPException(status_code=400, detail="Teacher with this email already exists")
    if store["teacher"].find_one({"unique_code": unique_code}, session=session):
        raise HTTPException(status_code=400, detail="Unique code already in use")
    teacher = {
        "name": name.strip(),
        "email": email,
        "phone": phone or "",
        "unique_code": unique_code,
        "password_hash": get_password_hash(password),
        "school_code": school["code"],
        "school_id": school["_id"],
        "class_ids": [],
        "created_at": now(),
        "updated_at": now(),
    }
    res = store["teacher"].insert_one(teacher, session=session)
    teacher["_id"] = res.inserted_id
    store["school"].update_one({"_id": school["_id"]}, {"$addToSet": {"teacher_ids": res.inserted_id}},
                               session=session)
    logger.info("Created teacher %s for school %s", res.inserted_id, school["code"])
    return teacher


def create_student(store: Store, school: dict, cls: dict, *, name: str, email: str, password: str,
                   phone: Optional[str] = None, student_number: Optional[str] = None, session=None) -> dict:
    email = email.lower()
    if store["student"].find_one({"email": email}, session=session):
        raise HTTPException(status_code=400, detail="Student with this email already exists")
    student_number = student_number or generate_student_number(school["code"])
    if store["student"].find_one({"student_number": student_number}, session=session):
        raise HTTPException(status_code=400, detail="Student number already in use")
    student = {
        "name": name.strip(),
        "email": email,
        "phone": phone or "",
        "student_number": student_number,
        "password_hash": get_password_hash(password),
        "school_id": school["_id"],
        "class_name": "",
        "section": "",
        "is_active": True,
        "created_at": now(),
        "updated_at": now(),
    }
    res = store["student"].insert_one(student, session=session)
    student["_id"] = res.inserted_id
    store["school"].update_one({"_id": school["_id"]}, {"$addToSet": {"student_ids": res.inserted_id}},
                               session=session)
    move_student(store, student, cls, session=session)
    logger.info("Created student %s in class %s", res.inserted_id, cls["_id"])
    return student


def _admin_school(store: Store, admin: dict, school_code: str) -> dict:
    if admin.get("school_code") != school_code.strip():
        raise HTTPException(status_code=403, detail="School code does not match your school")
    school = store["school"].find_one({"_id": admin["school_id"]})
    if not school:
        raise HTTPException(status_code=404, detail="School not found")
    return school


def _public_student(student: dict) -> dict:
    return {
        "id": str(student["_id"]),
        "name": student["name"],
        "email": student["email"],
        "student_number": student["student_number"],
        "class_name": student.get("class_name", ""),
        "section": student.get("section", ""),
    }


def _public_teacher(teacher: dict) -> dict:
    return {
        "id": str(teacher["_id"]),
        "name": teacher["name"],
        "email": teacher["email"],
        "unique_code": teacher["unique_code"],
    }


# ----------------------- Admin Auth Endpoints -----------------------
@router.post("/register", status_code=201, response_model=Token)
def register_admin(req: AdminRegister, store: Store = Depends(get_store)):
    email = req.email.lower()
    code = req.school_code.strip()
    if store["admin"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Admin already exists")
    if store["school"].find_one({"code": code}):
        raise HTTPException(status_code=400, detail="School code already in use")

    with store.transaction() as session:
        school = {
            "name": req.school_name.strip(),
            "code": code,
            "teacher_ids": [],
            "student_ids": [],
            "class_ids": [],
            "created_at": now(),
            "updated_at": now(),
        }
        school["_id"] = store["school"].insert_one(school, session=session).inserted_id
        admin = {
            "name": req.name.strip(),
            "email": email,
            "password_hash": get_password_hash(req.password),
            "school_code": code,
            "school_id": school["_id"],
            "created_at": now(),
            "updated_at": now(),
        }
        admin["_id"] = store["admin"].insert_one(admin, session=session).inserted_id
        store["school"].update_one({"_id": school["_id"]}, {"$set": {"admin_id": admin["_id"]}}, session=session)

    logger.info("Registered school %s with admin %s", code, admin["_id"])
    return token_response(admin, "admin")


@router.post("/login", response_model=Token)
def login_admin(payload: LoginRequest, store: Store = Depends(get_store)):
    return login(store, "admin", payload.email, payload.password)


@router.get("/validate")
def validate_admin_token(current=Depends(require_admin)):
    return {"valid": True, "user": serialize(current)}


# ----------------------- Admin Endpoints -----------------------
@router.get("/profile")
def get_profile(current=Depends(require_admin)):
    return serialize(current)


@router.get("/school")
def get_school(current=Depends(require_admin), store: Store = Depends(get_store)):
    school = store["school"].find_one({"_id": current["school_id"]})
    if not school:
        raise HTTPException(status_code=404, detail="School not found")
    return serialize(school)


@router.get("/teachers")
def list_teachers(current=Depends(require_admin), store: Store = Depends(get_store)):
    docs = store["teacher"].find({"school_id": current["school_id"]}).sort("name", 1)
    return {"items": [serialize(d) for d in docs]}


@router.get("/students")
def list_students(class_id: Optional[str] = None, current=Depends(require_admin),
                  store: Store = Depends(get_store)):
    query = {"school_id": current["school_id"]}
    if class_id:
        query["class_id"] = parse_id(class_id, "class ID")
    docs = store["student"].find(query).sort("name", 1)
    return {"items": [serialize(d) for d in docs]}


# ----------------------- Account Creation -----------------------
@accounts_router.post("/create-student", status_code=201)
def create_student_manual(payload: StudentAccountIn, current=Depends(require_admin),
                          store: Store = Depends(get_store)):
    school = _admin_school(store, current, payload.school_code)
    with store.transaction() as session:
        cls = find_or_create_class(store, school["_id"], payload.class_name.strip(), payload.section.strip(),
                                   session=session)
        student = create_student(store, school, cls, name=payload.name, email=payload.email,
                                 password=payload.password, phone=payload.phone, session=session)
    return {"msg": "Student account created successfully", "student": _public_student(student)}


@accounts_router.post("/bulk-create-students")
def create_students_bulk(payload: BulkStudentsIn, current=Depends(require_admin),
                         store: Store = Depends(get_store)):
    school = _admin_school(store, current, current["school_code"])
    results = []
    for index, row in enumerate(payload.students):
        try:
            data = StudentAccountIn.model_validate({"school_code": school["code"], **row})
            if data.school_code != school["code"]:
                raise HTTPException(status_code=403, detail="School code does not match your school")
            with store.transaction() as session:
                cls = find_or_create_class(store, school["_id"], data.class_name.strip(), data.section.strip(),
                                           session=session)
                student = create_student(store, school, cls, name=data.name, email=data.email,
                                         password=data.password, phone=data.phone, session=session)
            results.append({"row": index, "status": "created", "student": _public_student(student)})
        except ValidationError as e:
            results.append({"row": index, "status": "failed", "error": e.errors(include_url=False)[0]["msg"]})
        except HTTPException as e:
            results.append({"row": index, "status": "failed", "error": e.detail})

    created = sum(1 for r in results if r["status"] == "created")
    logger.info("Bulk student creation: %d created, %d failed", created, len(results) - created)
    return {
        "msg": f"{created} of {len(results)} student accounts created",
        "created_count": created,
        "failed_count": len(results) - created,
        "results": results,
    }


@accounts_router.post("/create-teacher", status_code=201)
def create_teacher_manual(payload: TeacherAccountIn, current=Depends(require_admin),
                          store: Store = Depends(get_store)):
    school = _admin_school(store, current, payload.school_code)
    with store.transaction() as session:
        teacher = create_teacher(store, school, name=payload.name, email=payload.email,
                                 password=payload.password, unique_code=payload.unique_code,
                                 phone=payload.phone, session=session)
    return {"msg": "Teacher account created successfully", "teacher": _public_teacher(teacher)}


@accounts_router.post("/bulk-create-teachers")
def create_teachers_bulk(payload: BulkTeachersIn, current=Depends(require_admin),
                         store: Store = Depends(get_store)):
    school = _admin_school(store, current, current["school_code"])
    results = []
    for index, row in enumerate(payload.teachers):
        try:
            data = TeacherAccountIn.model_validate({"school_code": school["code"], **row})
            if data.school_code != school["code"]:
                raise HTTPException(status_code=403, detail="School code does not match your school")
            with store.transaction() as session:
                teacher = create_teacher(store, school, name=data.name, email=data.email,
                                         password=data.password, unique_code=data.unique_code,
                                         phone=data.phone, session=session)
            results.append({"row": index, "status": "created", "teacher": _public_teacher(teacher)})
        except ValidationError as e:
            results.append({"row": index, "status": "failed", "error": e.errors(include_url=False)[0]["msg"]})
        except HTTPException as e:
            results.append({"row": index, "status": "failed", "error": e.detail})

    created = sum(1 for r in results if r["status"] == "created")
    logger.info("Bulk teacher creation: %d created, %d failed", created, len(results) - created)
    return {
        "msg": f"{created} of {len(results)} teacher accounts created",
        "created_count": created,
        "failed_count": len(results) - created,
        "results": results,
    }
