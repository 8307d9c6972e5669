import logging
import re
from typing import Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query, Response

from database import Store, get_store, now, parse_id, serialize
from reports import (
    academic_sheet_rows,
    calculate_grade,
    exam_totals,
    find_exam_entry,
    report_card_pdf,
    rows_to_csv,
    rows_to_pdf,
)
from roster import class_for_admin, class_for_teacher, class_info
from schemas import MarksIn
from security import require_student, require_teacher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/marks", tags=["marks"])


# ----------------------- Mark records -----------------------

def build_exam_entry(exam: dict, existing: Optional[dict] = None) -> dict:
    """Mark entry for ``exam``; scores already in ``existing`` are kept for subjects still on the exam."""
    previous = {s["subject_id"]: s for s in (existing or {}).get("subjects", [])}
    subjects = []
    for subject in exam.get("subjects", []):
        old = previous.get(subject["subject_id"], {})
        subjects.append({
            "subject_id": subject["subject_id"],
            "subject_name": subject["subject_name"],
            "teacher_id": subject["teacher_id"],
            "full_marks": subject["full_marks"],
            "marks_scored": old.get("marks_scored"),
            "scored_by": old.get("scored_by"),
            "scored_at": old.get("scored_at"),
        })
    return {
        "exam_id": exam["_id"],
        "exam_name": exam["exam_name"],
        "exam_code": exam["exam_code"],
        "exam_date": exam["exam_date"],
        "subjects": subjects,
    }


def upsert_exam_marks(store: Store, exam: dict, student_id: ObjectId, session=None) -> dict:
    mark = store["mark"].find_one({"student_id": student_id, "class_id": exam["class_id"]}, session=session)
    if mark is None:
        mark = {
            "school_id": exam["school_id"],
            "student_id": student_id,
            "class_id": exam["class_id"],
            "class_admin_id": exam["class_admin_id"],
            "exams": [build_exam_entry(exam)],
            "created_at": now(),
            "updated_at": now(),
        }
        mark["_id"] = store["mark"].insert_one(mark, session=session).inserted_id
        return mark

    exams = []
    replaced = False
    for entry in mark.get("exams", []):
        if entry["exam_id"] == exam["_id"]:
            entry = build_exam_entry(exam, entry)
            replaced = True
        exams.append(entry)
    if not replaced:
        exams.append(build_exam_entry(exam))
    store["mark"].update_one({"_id": mark["_id"]}, {"$set": {"exams": exams, "updated_at": now()}},
                             session=session)
    mark["exams"] = exams
    return mark


def initialize_exam_marks(store: Store, exam: dict, session=None) -> int:
    students = list(store["student"].find({"class_id": exam["class_id"], "is_active": True}, {"_id": 1},
                                          session=session))
    for student in students:
        upsert_exam_marks(store, exam, student["_id"], session=session)
    logger.info("Marks initialized for %d students for exam %s", len(students), exam["exam_name"])
    return len(students)


def remove_exam_marks(store: Store, exam: dict, session=None) -> None:
    store["mark"].update_many({"class_id": exam["class_id"]},
                              {"$pull": {"exams": {"exam_id": exam["_id"]}}}, session=session)


def _exam_with_totals(entry: dict) -> dict:
    out = serialize(entry)
    out.update(exam_totals(entry))
    return out


def _find_exam(store: Store, cls: dict, exam_id: str, session=None) -> dict:
    exam = store["exam"].find_one({"_id": parse_id(exam_id, "exam ID"), "class_id": cls["_id"]}, session=session)
    if not exam:
        raise HTTPException(status_code=404, detail="Exam not found")
    return exam


# ----------------------- Scoring -----------------------
@router.post("/class/{class_id}/student/{student_id}/exam/{exam_id}/subject/{subject_id}")
def submit_marks(class_id: str, student_id: str, exam_id: str, subject_id: str, payload: MarksIn,
                 current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_teacher(store, current, class_id)
    sid = parse_id(student_id, "student ID")
    subject_oid = parse_id(subject_id, "subject ID")

    with store.transaction() as session:
        exam = _find_exam(store, cls, exam_id, session=session)
        subject = next((s for s in exam["subjects"] if s["subject_id"] == subject_oid), None)
        if subject is None:
            raise HTTPException(status_code=404, detail="Subject not found in this exam")
        if subject["teacher_id"] != current["_id"]:
            raise HTTPException(status_code=403, detail="Not authorized to score this subject")
        if payload.marks_scored > subject["full_marks"]:
            raise HTTPException(status_code=400, detail=f"Marks cannot exceed full marks ({subject['full_marks']})")

        student = store["student"].find_one({"_id": sid}, session=session)
        mark = store["mark"].find_one({"student_id": sid, "class_id": cls["_id"]}, session=session)
        entry = find_exam_entry(mark, exam["_id"])
        if entry is None or all(s["subject_id"] != subject_oid for s in entry["subjects"]):
            # students who joined after the exam was created get their entry on first scoring
            if not student or student.get("class_id") != cls["_id"]:
                raise HTTPException(status_code=404, detail="Mark record not found for this student")
            mark = upsert_exam_marks(store, exam, sid, session=session)

        scored_at = now()
        for entry in mark["exams"]:
            if entry["exam_id"] != exam["_id"]:
                continue
            for s in entry["subjects"]:
                if s["subject_id"] == subject_oid:
                    s.update({"marks_scored": payload.marks_scored, "scored_by": current["_id"],
                              "scored_at": scored_at})
        store["mark"].update_one({"_id": mark["_id"]}, {"$set": {"exams": mark["exams"], "updated_at": scored_at}},
                                 session=session)

    logger.info("Teacher %s scored %s for student %s (exam %s, subject %s)",
                current["_id"], payload.marks_scored, sid, exam["_id"], subject_oid)
    return {
        "msg": "Marks submitted successfully",
        "student_name": student["name"] if student else "Unknown",
        "marks_scored": payload.marks_scored,
        "scored_at": scored_at,
    }


@router.get("/class/{class_id}/students")
def students_for_scoring(class_id: str, current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_teacher(store, current, class_id)
    exams = list(store["exam"].find({"class_id": cls["_id"], "is_active": True,
                                     "subjects.teacher_id": current["_id"]}).sort("exam_date", 1))
    my_subjects = {
        exam["_id"]: [s for s in exam["subjects"] if s["teacher_id"] == current["_id"]] for exam in exams
    }
    students = list(store["student"].find({"class_id": cls["_id"]}).sort("name", 1))
    marks = {m["student_id"]: m for m in store["mark"].find({"class_id": cls["_id"]})}

    rows = []
    for student in students:
        scores = []
        for exam in exams:
            entry = find_exam_entry(marks.get(student["_id"]), exam["_id"])
            entered = {s["subject_id"]: s for s in (entry or {}).get("subjects", [])}
            for subject in my_subjects[exam["_id"]]:
                got = entered.get(subject["subject_id"], {})
                scores.append({
                    "exam_id": str(exam["_id"]),
                    "subject_id": str(subject["subject_id"]),
                    "full_marks": subject["full_marks"],
                    "marks_scored": got.get("marks_scored"),
                    "scored_at": got.get("scored_at"),
                })
        rows.append({
            "id": str(student["_id"]),
            "name": student["name"],
            "student_number": student.get("student_number", ""),
            "marks": scores,
        })

    return {
        "class_info": class_info(cls),
        "exams": [
            {
                "id": str(exam["_id"]),
                "exam_name": exam["exam_name"],
                "exam_code": exam["exam_code"],
                "exam_date": exam["exam_date"],
                "subjects": [serialize(s) for s in my_subjects[exam["_id"]]],
            }
            for exam in exams
        ],
        "students": rows,
    }


# ----------------------- Summaries -----------------------
@router.get("/class/{class_id}/student/{student_id}/details")
def student_detailed_marks(class_id: str, student_id: str, current=Depends(require_teacher),
                           store: Store = Depends(get_store)):
    cls = class_for_teacher(store, current, class_id)
    sid = parse_id(student_id, "student ID")
    mark = store["mark"].find_one({"student_id": sid, "class_id": cls["_id"]})
    if not mark:
        raise HTTPException(status_code=404, detail="No marks found for this student")
    student = store["student"].find_one({"_id": sid}) or {}
    exams = [_exam_with_totals(e) for e in mark.get("exams", [])]
    return {
        "student_info": {
            "id": str(sid),
            "name": student.get("name", "Unknown"),
            "student_number": student.get("student_number", "Unknown"),
        },
        "class_info": class_info(cls),
        "exams": exams,
        "total_exams": len(exams),
    }


@router.get("/class/{class_id}/summary")
def class_marks_summary(class_id: str, current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    records = list(store["mark"].find({"class_id": cls["_id"]}))
    students = {s["_id"]: s for s in store["student"].find({"_id": {"$in": [r["student_id"] for r in records]}})}

    summary = []
    for record in records:
        student = students.get(record["student_id"], {})
        exams = []
        for entry in record.get("exams", []):
            totals = exam_totals(entry)
            totals.update({
                "exam_id": str(entry["exam_id"]),
                "exam_name": entry["exam_name"],
                "exam_code": entry["exam_code"],
                "exam_date": entry["exam_date"],
            })
            exams.append(totals)
        summary.append({
            "student_id": str(record["student_id"]),
            "student_name": student.get("name", "Unknown"),
            "student_number": student.get("student_number", ""),
            "exams": exams,
        })
    summary.sort(key=lambda s: s["student_name"].lower())
    return {"class_info": class_info(cls), "students": summary, "total_students": len(summary)}


@router.get("/class/{class_id}/subject-report")
def teacher_subject_report(class_id: str, current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_teacher(store, current, class_id)
    exams = list(store["exam"].find({"class_id": cls["_id"], "subjects.teacher_id": current["_id"]})
                 .sort("exam_date", 1))
    records = list(store["mark"].find({"class_id": cls["_id"]}))

    report = []
    for exam in exams:
        for subject in exam["subjects"]:
            if subject["teacher_id"] != current["_id"]:
                continue
            scores = []
            enrolled = 0
            for record in records:
                entry = find_exam_entry(record, exam["_id"])
                if entry is None:
                    continue
                enrolled += 1
                for s in entry["subjects"]:
                    if s["subject_id"] == subject["subject_id"] and s.get("marks_scored") is not None:
                        scores.append(s["marks_scored"])
            passed = sum(1 for m in scores if calculate_grade(m / subject["full_marks"] * 100) != "F")
            report.append({
                "exam_id": str(exam["_id"]),
                "exam_name": exam["exam_name"],
                "exam_code": exam["exam_code"],
                "subject_id": str(subject["subject_id"]),
                "subject_name": subject["subject_name"],
                "full_marks": subject["full_marks"],
                "total_students": enrolled,
                "scored_count": len(scores),
                "average": round(sum(scores) / len(scores), 2) if scores else None,
                "highest": max(scores) if scores else None,
                "lowest": min(scores) if scores else None,
                "pass_count": passed,
            })
    return {"class_info": class_info(cls), "subjects": report}


@router.get("/student/academic-report")
def student_academic_report(current=Depends(require_student), store: Store = Depends(get_store)):
    if not current.get("class_id"):
        raise HTTPException(status_code=404, detail="Student is not assigned to any class")
    cls = store["class"].find_one({"_id": current["class_id"]}) or {"_id": current["class_id"],
                                                                      "name": current.get("class_name", ""),
                                                                      "section": current.get("section", "")}
    mark = store["mark"].find_one({"student_id": current["_id"], "class_id": current["class_id"]})
    exams = []
    for entry in (mark or {}).get("exams", []):
        out = _exam_with_totals(entry)
        for subject in out["subjects"]:
            scored = subject.get("marks_scored")
            subject["grade"] = None if scored is None else calculate_grade(scored / subject["full_marks"] * 100)
        exams.append(out)
    exams.sort(key=lambda e: e["exam_date"])
    completed = [e["percentage"] for e in exams if e["completed_subjects"]]
    return {
        "student_info": {"id": str(current["_id"]), "name": current["name"],
                         "student_number": current.get("student_number", "")},
        "class_info": class_info(cls),
        "exams": exams,
        "overall_percentage": round(sum(completed) / len(completed), 2) if completed else 0,
    }


# ----------------------- Downloads -----------------------
def _download(content, media_type: str, filename: str) -> Response:
    return Response(content=content, media_type=media_type,
                    headers={"Content-Disposition": f'attachment; filename="{filename}"'})


@router.get("/class/{class_id}/exam/{exam_id}/export")
def export_academic_sheet(class_id: str, exam_id: str,
                          fmt: Literal["csv", "pdf"] = Query("csv", alias="format"),
                          current=Depends(require_teacher), store: Store = Depends(get_store)):
    cls = class_for_admin(store, current, class_id)
    exam = _find_exam(store, cls, exam_id)
    students = list(store["student"].find({"class_id": cls["_id"]}).sort("name", 1))
    marks = {m["student_id"]: m for m in store["mark"].find({"class_id": cls["_id"]})}
    rows = academic_sheet_rows(exam, students, marks)

    filename = f"{re.sub(r'[^A-Za-z0-9]', '_', exam['exam_name'])}_{exam['exam_code']}_Academic_Report.{fmt}"
    if fmt == "csv":
        return _download(rows_to_csv(rows), "text/csv", filename)
    subtitle = f"Class {cls['name']} {cls.get('section', '')} - {exam['exam_date']:%Y-%m-%d}"
    pdf = rows_to_pdf(f"{exam['exam_name']} ({exam['exam_code']}) Academic Report", rows, subtitle)
    return _download(pdf, "application/pdf", filename)


@router.get("/student/report-card/{exam_id}")
def student_report_card(exam_id: str, current=Depends(require_student), store: Store = Depends(get_store)):
    mark = store["mark"].find_one({"student_id": current["_id"], "class_id": current.get("class_id")})
    entry = find_exam_entry(mark, parse_id(exam_id, "exam ID"))
    if entry is None:
        raise HTTPException(status_code=404, detail="No marks found for this exam")
    cls = store["class"].find_one({"_id": current["class_id"]}) or {"name": current.get("class_name", "")}
    pdf = report_card_pdf(current, cls, entry)
    return _download(pdf, "application/pdf", f"{entry['exam_code']}_Report_Card.pdf")
