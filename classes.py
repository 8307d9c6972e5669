from fastapi import APIRouter, Depends, HTTPException

import roster
from database import Store, get_store, parse_id, serialize
from schemas import AssignStudents, AssignTeacher, AssignTeachers, ClassIn, ClassUpdate, RemoveStudent
from security import get_current_user, require_admin

router = APIRouter(prefix="/api/admin/classes", tags=["classes"])
details_router = APIRouter(prefix="/api/class", tags=["classes"])


@router.get("")
def list_classes(current=Depends(require_admin), store: Store = Depends(get_store)):
    docs = store["class"].find({"school_id": current["school_id"]}).sort([("name", 1), ("section", 1)])
    return {"items": [roster.populate_class(store, d) for d in docs]}


@router.post("", status_code=201)
def create_class(payload: ClassIn, current=Depends(require_admin), store: Store = Depends(get_store)):
    return serialize(roster.create_class(store, current, payload.name, payload.section))


@router.put("/{class_id}")
def update_class(class_id: str, payload: ClassUpdate, current=Depends(require_admin),
                 store: Store = Depends(get_store)):
    return serialize(roster.update_class(store, current, class_id, payload.name, payload.section))


@router.delete("/{class_id}")
def delete_class(class_id: str, current=Depends(require_admin), store: Store = Depends(get_store)):
    roster.delete_class(store, current, class_id)
    return {"msg": "Class deleted successfully"}


@router.post("/assign-teacher")
def assign_teacher(payload: AssignTeacher, current=Depends(require_admin), store: Store = Depends(get_store)):
    result = roster.assign_teachers(store, current, payload.class_id, [payload.teacher_id])
    result["msg"] = "Teacher assigned to class successfully"
    return result


@router.post("/assign-teachers")
def assign_teachers(payload: AssignTeachers, current=Depends(require_admin), store: Store = Depends(get_store)):
    return roster.assign_teachers(store, current, payload.class_id, payload.teacher_ids)


@router.post("/assign-class-admin")
def assign_class_admin(payload: AssignTeacher, current=Depends(require_admin),
                       store: Store = Depends(get_store)):
    return roster.assign_class_admin(store, current, payload.class_id, payload.teacher_id)


@router.post("/remove-teacher")
def remove_teacher(payload: AssignTeacher, current=Depends(require_admin), store: Store = Depends(get_store)):
    return roster.remove_teacher(store, current, payload.class_id, payload.teacher_id)


@router.post("/assign-students")
def assign_students(payload: AssignStudents, current=Depends(require_admin), store: Store = Depends(get_store)):
    return roster.assign_students(store, current, payload.class_id, payload.student_ids)


@router.post("/remove-student")
def remove_student(payload: RemoveStudent, current=Depends(require_admin), store: Store = Depends(get_store)):
    return roster.remove_student(store, current, payload.class_id, payload.student_id)


@details_router.get("/{class_id}")
def get_class_details(class_id: str, current=Depends(get_current_user), store: Store = Depends(get_store)):
    cls = store["class"].find_one({"_id": parse_id(class_id, "class ID")})
    if not cls or cls["school_id"] != current["school_id"]:
        raise HTTPException(status_code=404, detail="Class not found")
    return roster.populate_class(store, cls)
