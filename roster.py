"""
Class rosters: the links between classes, teachers and students.

A class keeps ``teacher_ids`` and ``student_ids``; the mirrored back-references
live on ``teacher.class_ids`` and ``student.class_id`` (a student belongs to
at most one class at a time). Every function here updates both sides inside
one ``Store.transaction()`` and uses ``$addToSet``/``$pull`` so that a
repeated assignment never duplicates list entries.
"""

import logging
from typing import Iterable, List, Optional

from bson import ObjectId
from fastapi import HTTPException

from database import Store, now, parse_id, serialize

logger = logging.getLogger(__name__)


def _unique_ids(values: Iterable[str], label: str) -> List[ObjectId]:
    ids = []
    for value in values:
        oid = parse_id(value, label)
        if oid not in ids:
            ids.append(oid)
    return ids


def school_class(store: Store, school_id: ObjectId, class_id, session=None) -> dict:
    cls = store["class"].find_one({"_id": parse_id(class_id, "class ID"), "school_id": school_id},
                                  session=session)
    if not cls:
        raise HTTPException(status_code=404, detail="Class not found or not authorized")
    return cls


def school_member(store: Store, collection: str, school_id: ObjectId, member_id, session=None) -> dict:
    doc = store[collection].find_one({"_id": parse_id(member_id, f"{collection} ID"), "school_id": school_id},
                                     session=session)
    if not doc:
        raise HTTPException(status_code=404, detail=f"{collection.capitalize()} not found or not authorized")
    return doc


# ----------------------- Classes -----------------------

def find_or_create_class(store: Store, school_id: ObjectId, name: str, section: str, session=None) -> dict:
    cls = store["class"].find_one({"school_id": school_id, "name": name, "section": section}, session=session)
    if cls:
        return cls
    cls = {
        "name": name,
        "section": section,
        "school_id": school_id,
        "teacher_ids": [],
        "student_ids": [],
        "created_at": now(),
        "updated_at": now(),
    }
    res = store["class"].insert_one(cls, session=session)
    cls["_id"] = res.inserted_id
    store["school"].update_one({"_id": school_id}, {"$addToSet": {"class_ids": res.inserted_id}}, session=session)
    logger.info("Created class %s %s (%s)", name, section, res.inserted_id)
    return cls


def create_class(store: Store, admin: dict, name: str, section: str) -> dict:
    name, section = name.strip(), section.strip()
    with store.transaction() as session:
        if store["class"].find_one({"school_id": admin["school_id"], "name": name, "section": section},
                                   session=session):
            raise HTTPException(status_code=400, detail="Class with this name and section already exists")
        return find_or_create_class(store, admin["school_id"], name, section, session=session)


def update_class(store: Store, admin: dict, class_id: str, name: Optional[str], section: Optional[str]) -> dict:
    changes = {}
    if name and name.strip():
        changes["name"] = name.strip()
    if section is not None and section.strip():
        changes["section"] = section.strip()
    with store.transaction() as session:
        cls = school_class(store, admin["school_id"], class_id, session=session)
        if not changes:
            return cls
        clash = store["class"].find_one({
            "school_id": admin["school_id"],
            "name": changes.get("name", cls["name"]),
            "section": changes.get("section", cls.get("section", "")),
            "_id": {"$ne": cls["_id"]},
        }, {"_id": 1}, session=session)
        if clash:
            raise HTTPException(status_code=400, detail="Class with this name and section already exists")
        changes["updated_at"] = now()
        store["class"].update_one({"_id": cls["_id"]}, {"$set": changes}, session=session)
        denormalized = {}
        if "name" in changes:
            denormalized["class_name"] = changes["name"]
        if "section" in changes:
            denormalized["section"] = changes["section"]
        if denormalized:
            store["student"].update_many({"class_id": cls["_id"]}, {"$set": denormalized}, session=session)
        cls.update(changes)
    return cls


def delete_class(store: Store, admin: dict, class_id: str) -> None:
    with store.transaction() as session:
        cls = school_class(store, admin["school_id"], class_id, session=session)
        cid = cls["_id"]
        store["school"].update_one({"_id": admin["school_id"]}, {"$pull": {"class_ids": cid}}, session=session)
        store["teacher"].update_many({"class_ids": cid}, {"$pull": {"class_ids": cid}}, session=session)
        store["teacher"].update_many({"admin_class_id": cid}, {"$unset": {"admin_class_id": ""}}, session=session)
        store["student"].update_many(
            {"class_id": cid},
            {"$unset": {"class_id": ""}, "$set": {"class_name": "", "section": "", "updated_at": now()}},
            session=session,
        )
        store["class"].delete_one({"_id": cid}, session=session)
    logger.info("Deleted class %s", cid)


# ----------------------- Teachers -----------------------

def assign_teachers(store: Store, admin: dict, class_id: str, teacher_ids: List[str]) -> dict:
    if not class_id or not teacher_ids:
        raise HTTPException(status_code=400, detail="Class ID and teacher IDs array are required")
    tids = _unique_ids(teacher_ids, "teacher ID")

    with store.transaction() as session:
        cls = school_class(store, admin["school_id"], class_id, session=session)
        cid = cls["_id"]
        teachers = list(store["teacher"].find({"_id": {"$in": tids}, "school_id": admin["school_id"]},
                                              session=session))
        if len(teachers) != len(tids):
            raise HTTPException(status_code=404, detail="One or more teachers not found or not authorized")

        on_class = set(cls.get("teacher_ids", []))
        newly_linked = [t["_id"] for t in teachers
                        if cid not in t.get("class_ids", []) or t["_id"] not in on_class]
        store["class"].update_one(
            {"_id": cid},
            {"$addToSet": {"teacher_ids": {"$each": tids}}, "$set": {"updated_at": now()}},
            session=session,
        )
        store["teacher"].update_many({"_id": {"$in": tids}}, {"$addToSet": {"class_ids": cid}}, session=session)

    count = len(newly_linked)
    logger.info("Assigned %d teacher(s) to class %s", count, cid)
    noun = "teacher" if count == 1 else "teachers"
    return {
        "msg": f"{count} {noun} assigned to class successfully",
        "assigned_count": count,
        "total_requested": len(tids),
    }


def remove_teacher(store: Store, admin: dict, class_id: str, teacher_id: str) -> dict:
    with store.transaction() as session:
        cls = school_class(store, admin["school_id"], class_id, session=session)
        teacher = school_member(store, "teacher", admin["school_id"], teacher_id, session=session)
        cid, tid = cls["_id"], teacher["_id"]

        store["class"].update_one({"_id": cid}, {"$pull": {"teacher_ids": tid}, "$set": {"updated_at": now()}},
                                  session=session)
        update = {"$pull": {"class_ids": cid}}
        was_admin = teacher.get("admin_class_id") == cid
        if was_admin:
            update["$unset"] = {"admin_class_id": ""}
        store["teacher"].update_one({"_id": tid}, update, session=session)

    logger.info("Removed teacher %s from class %s", tid, cid)
    return {"msg": "Teacher removed from class successfully", "class_admin_cleared": was_admin}


def assign_class_admin(store: Store, admin: dict, class_id: str, teacher_id: str) -> dict:
    with store.transaction() as session:
        cls = school_class(store, admin["school_id"], class_id, session=session)
        teacher = school_member(store, "teacher", admin["school_id"], teacher_id, session=session)
        cid, tid = cls["_id"], teacher["_id"]
        if cid not in teacher.get("class_ids", []) or tid not in cls.get("teacher_ids", []):
            raise HTTPException(status_code=400, detail="Teacher must be assigned to the class first")

        store["teacher"].update_many({"admin_class_id": cid, "_id": {"$ne": tid}},
                                     {"$unset": {"admin_class_id": ""}}, session=session)
        store["teacher"].update_one({"_id": tid}, {"$set": {"admin_class_id": cid}}, session=session)

    logger.info("Teacher %s is now class admin of %s", tid, cid)
    return {"msg": "Class admin assigned successfully"}


# ----------------------- Students -----------------------

def move_student(store: Store, student: dict, cls: dict, session=None) -> Optional[ObjectId]:
    """Link ``student`` to ``cls``, unlinking it from its previous class.

    Returns the id of the class the student left, if any.
    """
    previous = student.get("class_id")
    if previous and previous != cls["_id"]:
        store["class"].update_one({"_id": previous}, {"$pull": {"student_ids": student["_id"]}}, session=session)
    else:
        previous = None
    store["student"].update_one(
        {"_id": student["_id"]},
        {"$set": {
            "class_id": cls["_id"],
            "class_name": cls["name"],
            "section": cls.get("section", ""),
            "updated_at": now(),
        }},
        session=session,
    )
    store["class"].update_one({"_id": cls["_id"]}, {"$addToSet": {"student_ids": student["_id"]}},
                              session=session)
    student.update({"class_id": cls["_id"], "class_name": cls["name"], "section": cls.get("section", "")})
    return previous


def assign_students(store: Store, admin: dict, class_id: str, student_ids: List[str]) -> dict:
    if not class_id:
        raise HTTPException(status_code=400, detail="Class ID is required")
    if not student_ids:
        raise HTTPException(status_code=400, detail="Student IDs array is required and cannot be empty")
    sids = _unique_ids(student_ids, "student ID")

    results = []
    assigned = already = 0
    with store.transaction() as session:
        cls = school_class(store, admin["school_id"], class_id, session=session)
        cid = cls["_id"]
        found = {s["_id"]: s for s in store["student"].find(
            {"_id": {"$in": sids}, "school_id": admin["school_id"]}, session=session)}
        if not found:
            raise HTTPException(status_code=404, detail="No valid students found for this school")

        members = set(cls.get("student_ids", []))
        for sid in sids:
            student = found.get(sid)
            if student is None:
                results.append({"student_id": str(sid), "status": "not_found"})
                continue
            if student.get("class_id") == cid and sid in members:
                already += 1
                results.append({"student_id": str(sid), "student_name": student["name"],
                                "status": "already_assigned"})
                continue
            previous = move_student(store, student, cls, session=session)
            assigned += 1
            results.append({
                "student_id": str(sid),
                "student_name": student["name"],
                "status": "assigned",
                "previous_class_id": str(previous) if previous else None,
            })

    if assigned and already:
        msg = f"{assigned} student(s) newly assigned, {already} already assigned"
    elif assigned:
        msg = f"{assigned} student{'' if assigned == 1 else 's'} assigned to class successfully"
    elif already:
        msg = f"All {already} student(s) were already assigned to this class"
    else:
        msg = "No students were assigned"
    logger.info("Class %s: %d student(s) assigned, %d already assigned", cid, assigned, already)
    return {
        "msg": msg,
        "assigned_count": assigned,
        "already_assigned_count": already,
        "total_requested": len(sids),
        "total_found": len(found),
        "results": results,
    }


def remove_student(store: Store, admin: dict, class_id: str, student_id: str) -> dict:
    with store.transaction() as session:
        cls = school_class(store, admin["school_id"], class_id, session=session)
        student = school_member(store, "student", admin["school_id"], student_id, session=session)
        cid, sid = cls["_id"], student["_id"]

        in_class = sid in cls.get("student_ids", [])
        linked = student.get("class_id") == cid
        if not in_class and not linked:
            raise HTTPException(status_code=400, detail="Student is not assigned to this class")
        if in_class:
            store["class"].update_one({"_id": cid}, {"$pull": {"student_ids": sid}}, session=session)
        if linked:
            store["student"].update_one(
                {"_id": sid},
                {"$unset": {"class_id": ""}, "$set": {"class_name": "", "section": "", "updated_at": now()}},
                session=session,
            )

    logger.info("Removed student %s from class %s", sid, cid)
    return {
        "msg": "Student removed from class successfully",
        "removed_from_class": in_class,
        "removed_from_student": linked,
    }


# ----------------------- Read helpers -----------------------

def brief(store: Store, collection: str, ids: List[ObjectId], fields: List[str]) -> List[dict]:
    if not ids:
        return []
    projection = {f: 1 for f in fields}
    return [serialize(d) for d in store[collection].find({"_id": {"$in": list(ids)}}, projection)]


def populate_class(store: Store, cls: dict) -> dict:
    out = serialize(cls)
    out["teachers"] = brief(store, "teacher", cls.get("teacher_ids", []), ["name", "email"])
    out["students"] = brief(store, "student", cls.get("student_ids", []), ["name", "email", "student_number"])
    class_admin = store["teacher"].find_one({"admin_class_id": cls["_id"]}, {"name": 1, "email": 1})
    out["class_admin"] = serialize(class_admin)
    return out


# ----------------------- Access checks -----------------------

def class_for_admin(store: Store, teacher: dict, class_id) -> dict:
    """The class ``teacher`` administers, or 403/404."""
    cid = parse_id(class_id, "class ID")
    if teacher.get("admin_class_id") != cid:
        raise HTTPException(status_code=403, detail="Not authorized as class admin for this class")
    cls = store["class"].find_one({"_id": cid})
    if not cls:
        raise HTTPException(status_code=404, detail="Class not found")
    return cls


def class_for_teacher(store: Store, teacher: dict, class_id) -> dict:
    """A class ``teacher`` teaches in or administers, or 403/404."""
    cid = parse_id(class_id, "class ID")
    cls = store["class"].find_one({"_id": cid})
    if not cls:
        raise HTTPException(status_code=404, detail="Class not found")
    if teacher.get("admin_class_id") != cid and teacher["_id"] not in cls.get("teacher_ids", []):
        raise HTTPException(status_code=403, detail="Not authorized to access this class")
    return cls


def class_info(cls: dict) -> dict:
    return {"id": str(cls["_id"]), "name": cls["name"], "section": cls.get("section", "")}
