import logging
from datetime import date, datetime, time, timedelta
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from database import Store, get_store, now, parse_id, serialize
from roster import class_for_admin, class_info
from schemas import AttendanceRecordIn, TakeAttendanceIn, UpdateAttendanceIn
from security import get_current_user, require_student, require_teacher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/attendance", tags=["attendance"])

TIMEFRAME_DAYS = {"week": 7, "month": 30, "semester": 182, "year": 365}


def recompute_counts(doc: dict) -> dict:
    records = doc.get("records", [])
    doc["total_students"] = len(records)
    doc["present_count"] = sum(1 for r in records if r["status"] == "present")
    doc["absent_count"] = sum(1 for r in records if r["status"] == "absent")
    doc["late_count"] = sum(1 for r in records if r["status"] == "late")
    return doc


def attendance_percentage(doc: dict) -> int:
    total = doc.get("total_students", 0)
    return round(doc.get("present_count", 0) / total * 100) if total else 0


def _percent(part: int, total: int) -> int:
    return round(part / total * 100) if total else 0


def _day(value: date) -> datetime:
    return datetime.combine(value, time())


def _build_records(store: Store, cls: dict, records: List[AttendanceRecordIn], session=None) -> List[dict]:
    ids = [parse_id(r.student_id, "student ID") for r in records]
    if len(ids) != len(set(ids)):
        raise HTTPException(status_code=400, detail="Duplicate student in attendance records")
    students = {
        s["_id"]: s for s in store["student"].find({"_id": {"$in": ids}, "class_id": cls["_id"]},
                                                    {"name": 1}, session=session)
    }
    missing = [str(i) for i in ids if i not in students]
    if missing:
        raise HTTPException(status_code=400, detail=f"Students not in this class: {', '.join(missing)}")
    return [
        {
            "student_id": sid,
            "student_name": students[sid]["name"],
            "status": r.status,
            "remarks": r.remarks,
        }
        for sid, r in zip(ids, records)
    ]


def _output(doc: dict) -> dict:
    out = serialize(doc)
    out["attendance_percentage"] = attendance_percentage(doc)
    return out


def _get_attendance(store: Store, cls: dict, attendance_id: str, session=None) -> dict:
    doc = store["attendance"].find_one({"_id": parse_id(attendance_id, "attendance ID"), "class_id": cls["_id"]},
                                       session=session)
    if not doc:
        raise HTTPException(status_code=404, detail="Attendance record not found")
    return doc


def _date_range(start_date: Optional[date], end_date: Optional[date]) -> dict:
    query = {}
    if start_date:
        query["$gte"] = _day(start_date)
    if end_date:
        query["$lte"] = _day(end_date)
    return {"date": query} if query else {}


# ----------------------- Class admin -----------------------
@router.get("/class/{class_id}/students")
def class_students(class_id: str, current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    docs = store["student"].find({"class_id": cls["_id"], "is_active": True},
                                 {"name": 1, "email": 1, "student_number": 1}).sort("name", 1)
    return {"class_info": class_info(cls), "items": [serialize(d) for d in docs]}


@router.post("/class/{class_id}/take", status_code=201)
def take_attendance(class_id: str, payload: TakeAttendanceIn, current=Depends(require_teacher),
                    store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    date_string = payload.date.isoformat()
    with store.transaction() as session:
        if store["attendance"].find_one({"class_id": cls["_id"], "date_string": date_string}, {"_id": 1},
                                        session=session):
            raise HTTPException(status_code=400, detail="Attendance already taken for this date")
        doc = {
            "school_id": cls["school_id"],
            "class_id": cls["_id"],
            "class_admin_id": current["_id"],
            "date": _day(payload.date),
            "date_string": date_string,
            "records": _build_records(store, cls, payload.records, session=session),
            "created_at": now(),
            "updated_at": now(),
        }
        recompute_counts(doc)
        doc["_id"] = store["attendance"].insert_one(doc, session=session).inserted_id
    logger.info("Attendance for class %s on %s taken by %s (%d present of %d)",
                cls["_id"], date_string, current["_id"], doc["present_count"], doc["total_students"])
    return {"msg": "Attendance taken successfully", "attendance": _output(doc)}


@router.get("/class/{class_id}/date")
def attendance_by_date(class_id: str, day: date = Query(..., alias="date"), current=Depends(require_teacher),
                       store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    doc = store["attendance"].find_one({"class_id": cls["_id"], "date_string": day.isoformat()})
    if not doc:
        raise HTTPException(status_code=404, detail="No attendance found for this date")
    return _output(doc)


@router.put("/class/{class_id}/attendance/{attendance_id}")
def update_attendance(class_id: str, attendance_id: str, payload: UpdateAttendanceIn,
                      current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    with store.transaction() as session:
        doc = _get_attendance(store, cls, attendance_id, session=session)
        doc["records"] = _build_records(store, cls, payload.records, session=session)
        doc["updated_at"] = now()
        recompute_counts(doc)
        store["attendance"].update_one({"_id": doc["_id"]}, {"$set": {
            key: doc[key] for key in
            ("records", "total_students", "present_count", "absent_count", "late_count", "updated_at")
        }}, session=session)
    logger.info("Attendance %s updated by %s", doc["_id"], current["_id"])
    return {"msg": "Attendance updated successfully", "attendance": _output(doc)}


@router.get("/class/{class_id}/history")
def attendance_history(class_id: str, start_date: Optional[date] = None, end_date: Optional[date] = None,
                       limit: int = Query(30, ge=1, le=365), current=Depends(require_teacher),
                       store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    query = {"class_id": cls["_id"], **_date_range(start_date, end_date)}
    docs = store["attendance"].find(query, {"records": 0}).sort("date", -1).limit(limit)
    return {"class_info": class_info(cls), "items": [_output(d) for d in docs]}


@router.delete("/class/{class_id}/attendance/{attendance_id}")
def delete_attendance(class_id: str, attendance_id: str, current=Depends(require_teacher),
                      store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    doc = _get_attendance(store, cls, attendance_id)
    store["attendance"].delete_one({"_id": doc["_id"]})
    logger.info("Attendance %s deleted by %s", doc["_id"], current["_id"])
    return {"msg": "Attendance deleted successfully"}


@router.get("/class/{class_id}/summary")
def class_summary(class_id: str, start_date: Optional[date] = None, end_date: Optional[date] = None,
                  current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    docs = list(store["attendance"].find({"class_id": cls["_id"], **_date_range(start_date, end_date)}))
    totals = {}
    for doc in docs:
        for record in doc.get("records", []):
            row = totals.setdefault(record["student_id"], {
                "student_id": str(record["student_id"]),
                "student_name": record.get("student_name", ""),
                "present": 0, "absent": 0, "late": 0, "total": 0,
            })
            row[record["status"]] += 1
            row["total"] += 1
    students = sorted(totals.values(), key=lambda r: r["student_name"].lower())
    for row in students:
        row["attendance_percentage"] = _percent(row["present"], row["total"])
    return {
        "class_info": class_info(cls),
        "total_days": len(docs),
        "students": students,
    }


# ----------------------- Student statistics -----------------------
def _stats_window(timeframe: str, start_date: Optional[date], end_date: Optional[date]) -> dict:
    if start_date and end_date:
        return _date_range(start_date, end_date)
    days = TIMEFRAME_DAYS.get(timeframe)
    if days is None:
        return {}
    today = now()
    return {"date": {"$gte": today - timedelta(days=days), "$lte": today}}


def _streaks(statuses: List[str]) -> dict:
    current = longest_present = longest_absent = 0
    run_present = run_absent = 0
    for status in statuses:
        # late still counts as attending for the present streak
        if status == "absent":
            run_absent += 1
            run_present = 0
        else:
            run_present += 1
            run_absent = 0
        longest_present = max(longest_present, run_present)
        longest_absent = max(longest_absent, run_absent)
    if statuses:
        current = run_absent if statuses[-1] == "absent" else run_present
    return {
        "current_streak": current,
        "current_streak_type": ("absent" if statuses[-1] == "absent" else "present") if statuses else None,
        "longest_present_streak": longest_present,
        "longest_absent_streak": longest_absent,
    }


def student_stats(store: Store, student: dict, timeframe: str = "all", start_date: Optional[date] = None,
                  end_date: Optional[date] = None) -> dict:
    query = {"records.student_id": student["_id"], **_stats_window(timeframe, start_date, end_date)}
    docs = store["attendance"].find(query, {"date": 1, "date_string": 1, "records": 1, "total_students": 1}) \
        .sort("date", 1)

    history = []
    monthly = {}
    counts = {"present": 0, "absent": 0, "late": 0}
    for doc in docs:
        record = next((r for r in doc["records"] if r["student_id"] == student["_id"]), None)
        if record is None:
            continue
        counts[record["status"]] += 1
        month = monthly.setdefault(doc["date"].strftime("%Y-%m"), {
            "month": doc["date"].strftime("%B %Y"), "present": 0, "absent": 0, "late": 0, "total": 0,
        })
        month[record["status"]] += 1
        month["total"] += 1
        history.append({
            "date": doc["date_string"],
            "status": record["status"],
            "remarks": record.get("remarks", ""),
            "class_size": doc.get("total_students", 0),
        })

    total = len(history)
    for month in monthly.values():
        month["attendance_percentage"] = _percent(month["present"], month["total"])
    return {
        "student_info": {
            "id": str(student["_id"]),
            "name": student["name"],
            "student_number": student.get("student_number", ""),
            "class_name": student.get("class_name", ""),
            "section": student.get("section", ""),
        },
        "overall_stats": {
            "total_days_recorded": total,
            "present_days": counts["present"],
            "absent_days": counts["absent"],
            "late_days": counts["late"],
            "attendance_percentage": _percent(counts["present"], total),
            "absent_percentage": _percent(counts["absent"], total),
            "late_percentage": _percent(counts["late"], total),
        },
        "streaks": _streaks([h["status"] for h in history]),
        "monthly_breakdown": [monthly[key] for key in sorted(monthly)],
        "recent_attendance": history[-10:],
        "date_range": {"start_date": history[0]["date"], "end_date": history[-1]["date"]} if history else None,
        "filters": {"timeframe": timeframe, "start_date": start_date, "end_date": end_date},
    }


Timeframe = Literal["week", "month", "semester", "year", "all"]


@router.get("/student/stats")
def my_stats(timeframe: Timeframe = "all", start_date: Optional[date] = None, end_date: Optional[date] = None,
             current=Depends(require_student), store: Store = Depends(get_store)):
    return student_stats(store, current, timeframe, start_date, end_date)


@router.get("/student/{student_id}/stats")
def stats_for_student(student_id: str, timeframe: Timeframe = "all", start_date: Optional[date] = None,
                      end_date: Optional[date] = None, current=Depends(get_current_user),
                      store: Store = Depends(get_store)):
    student = store["student"].find_one({"_id": parse_id(student_id, "student ID")})
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    role = current["role"]
    if role == "student":
        allowed = current["_id"] == student["_id"]
    elif role == "teacher":
        class_id = student.get("class_id")
        allowed = class_id is not None and (class_id in current.get("class_ids", [])
                                            or class_id == current.get("admin_class_id"))
    else:
        allowed = current.get("school_id") == student.get("school_id")
    if not allowed:
        raise HTTPException(status_code=403, detail="Not authorized to view this student's attendance")
    return student_stats(store, student, timeframe, start_date, end_date)
