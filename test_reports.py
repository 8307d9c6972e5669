import csv
import io
from datetime import datetime

import pytest
from bson import ObjectId

from reports import (
    academic_sheet_rows,
    calculate_grade,
    exam_totals,
    format_marks,
    report_card_pdf,
    rows_to_csv,
    rows_to_pdf,
)


@pytest.mark.parametrize("percentage,grade", [
    (100, "A+"), (90, "A+"), (89.99, "A"), (80, "A"), (70, "B+"), (60, "B"),
    (50, "C+"), (40, "C"), (33, "D"), (32.99, "F"), (0, "F"),
])
def test_calculate_grade(percentage, grade):
    assert calculate_grade(percentage) == grade


def test_exam_totals_counts_unscored_subjects_in_full_marks():
    entry = {"subjects": [
        {"full_marks": 100, "marks_scored": 45},
        {"full_marks": 50, "marks_scored": None},
    ]}
    totals = exam_totals(entry)
    assert totals == {
        "total_marks_scored": 45,
        "total_full_marks": 150,
        "percentage": 30.0,
        "completed_subjects": 1,
        "total_subjects": 2,
        "is_completed": False,
        "grade": "F",
    }


def test_exam_totals_without_subjects():
    totals = exam_totals({"subjects": []})
    assert totals["percentage"] == 0
    assert totals["is_completed"] is True


def test_format_marks():
    assert format_marks(None) == "-"
    assert format_marks(42.0) == "42"
    assert format_marks(42.5) == "42.5"


def _exam():
    return {
        "_id": ObjectId(),
        "exam_name": "Finals",
        "exam_code": "FIN",
        "exam_date": datetime(2026, 6, 1),
        "subjects": [
            {"subject_id": ObjectId(), "subject_name": "English", "full_marks": 80},
            {"subject_id": ObjectId(), "subject_name": "Physics", "full_marks": 20},
        ],
    }


def test_academic_sheet_and_csv():
    exam = _exam()
    english, physics = exam["subjects"]
    scored, missing = {"_id": ObjectId(), "name": "Lin", "student_number": "GWH-1"}, \
        {"_id": ObjectId(), "name": "Noor", "student_number": "GWH-2"}
    marks = {scored["_id"]: {"exams": [{
        "exam_id": exam["_id"],
        "subjects": [dict(english, marks_scored=72), dict(physics, marks_scored=19.5)],
    }]}}

    rows = academic_sheet_rows(exam, [scored, missing], marks)
    assert rows[0] == ["Student", "Student No.", "English (80)", "Physics (20)",
                       "Total", "Full Marks", "Percentage", "Grade"]
    assert rows[1] == ["Lin", "GWH-1", "72", "19.5", "91.5", "100", "91.50", "A+"]
    assert rows[2] == ["Noor", "GWH-2", "-", "-", "0", "100", "0.00", "F"]

    parsed = list(csv.reader(io.StringIO(rows_to_csv(rows))))
    assert parsed == rows


def test_pdf_outputs():
    rows = [["Student", "Total"], ["R&D <Team>", "10"]]
    assert rows_to_pdf("Finals & Retakes", rows, subtitle="Class 5 A").startswith(b"%PDF")

    exam = _exam()
    entry = {
        "exam_id": exam["_id"],
        "exam_name": exam["exam_name"],
        "exam_code": exam["exam_code"],
        "exam_date": exam["exam_date"],
        "subjects": [dict(s, marks_scored=None) for s in exam["subjects"]],
    }
    pdf = report_card_pdf({"name": "Lin", "student_number": "GWH-1"}, {"name": "Grade 5", "section": "A"}, entry)
    assert pdf.startswith(b"%PDF")
