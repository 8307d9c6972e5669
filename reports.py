"""
Grades, exam totals and downloadable academic reports (CSV and PDF).
"""

import csv
import io
from typing import Dict, Iterable, List, Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

# (minimum percentage, grade), highest first
GRADE_THRESHOLDS = [
    (90, "A+"),
    (80, "A"),
    (70, "B+"),
    (60, "B"),
    (50, "C+"),
    (40, "C"),
    (33, "D"),
]
FAIL_GRADE = "F"


def calculate_grade(percentage: float) -> str:
    for minimum, grade in GRADE_THRESHOLDS:
        if percentage >= minimum:
            return grade
    return FAIL_GRADE


def exam_totals(entry: dict) -> dict:
    """Totals for one exam entry of a mark record.

    Unscored subjects count towards the full marks but not the score.
    """
    subjects = entry.get("subjects", [])
    total_full = sum(s["full_marks"] for s in subjects)
    scored = [s["marks_scored"] for s in subjects if s.get("marks_scored") is not None]
    total_scored = sum(scored)
    percentage = round(total_scored / total_full * 100, 2) if total_full else 0
    return {
        "total_marks_scored": total_scored,
        "total_full_marks": total_full,
        "percentage": percentage,
        "completed_subjects": len(scored),
        "total_subjects": len(subjects),
        "is_completed": len(scored) == len(subjects),
        "grade": calculate_grade(percentage),
    }


def format_marks(value) -> str:
    if value is None:
        return "-"
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.2f}".rstrip("0").rstrip(".")


def find_exam_entry(mark: Optional[dict], exam_id) -> Optional[dict]:
    if not mark:
        return None
    for entry in mark.get("exams", []):
        if entry["exam_id"] == exam_id:
            return entry
    return None


def academic_sheet_rows(exam: dict, students: Iterable[dict], marks_by_student: Dict) -> List[list]:
    subjects = exam.get("subjects", [])
    header = ["Student", "Student No."]
    header += [f"{s['subject_name']} ({s['full_marks']})" for s in subjects]
    header += ["Total", "Full Marks", "Percentage", "Grade"]
    rows = [header]
    for student in students:
        entry = find_exam_entry(marks_by_student.get(student["_id"]), exam["_id"])
        scored = {}
        if entry:
            scored = {s["subject_id"]: s.get("marks_scored") for s in entry.get("subjects", [])}
            totals = exam_totals(entry)
        else:
            totals = exam_totals({"subjects": [dict(s, marks_scored=None) for s in subjects]})
        row = [student["name"], student.get("student_number", "")]
        row += [format_marks(scored.get(s["subject_id"])) for s in subjects]
        row += [
            format_marks(totals["total_marks_scored"]),
            format_marks(totals["total_full_marks"]),
            f"{totals['percentage']:.2f}",
            totals["grade"],
        ]
        rows.append(row)
    return rows


def rows_to_csv(rows: List[list]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerows(rows)
    return buffer.getvalue()


def _title_style():
    styles = getSampleStyleSheet()
    return styles, ParagraphStyle(
        "ReportTitle",
        parent=styles["Heading1"],
        fontSize=20,
        textColor=colors.HexColor("#1a1a1a"),
        spaceAfter=12,
        alignment=TA_CENTER,
    )


def _table(rows: List[list]) -> Table:
    table = Table(rows, repeatRows=1)
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#4472C4")),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("ALIGN", (0, 0), (-1, -1), "CENTER"),
        ("ALIGN", (0, 1), (0, -1), "LEFT"),
        ("BOTTOMPADDING", (0, 0), (-1, 0), 8),
        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#F2F2F2")]),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
    ]))
    return table


def rows_to_pdf(title: str, rows: List[list], subtitle: Optional[str] = None) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=landscape(A4), title=title)
    styles, title_style = _title_style()
    elements = [Paragraph(escape(title), title_style)]
    if subtitle:
        elements.append(Paragraph(escape(subtitle), styles["Normal"]))
    elements.append(Spacer(1, 16))
    elements.append(_table(rows))
    doc.build(elements)
    return buffer.getvalue()


def report_card_pdf(student: dict, cls: dict, entry: dict) -> bytes:
    totals = exam_totals(entry)
    rows = [["Subject", "Full Marks", "Marks Scored", "Percentage", "Grade"]]
    for subject in entry.get("subjects", []):
        scored = subject.get("marks_scored")
        if scored is None:
            rows.append([subject["subject_name"], format_marks(subject["full_marks"]), "-", "-", "-"])
            continue
        pct = round(scored / subject["full_marks"] * 100, 2)
        rows.append([subject["subject_name"], format_marks(subject["full_marks"]), format_marks(scored),
                     f"{pct:.2f}", calculate_grade(pct)])
    rows.append(["Total", format_marks(totals["total_full_marks"]), format_marks(totals["total_marks_scored"]),
                 f"{totals['percentage']:.2f}", totals["grade"]])

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, title="Report Card")
    styles, title_style = _title_style()
    exam_date = entry.get("exam_date")
    elements = [
        Paragraph(escape(f"Report Card: {entry['exam_name']} ({entry['exam_code']})"), title_style),
        Paragraph(escape(f"Student: {student['name']} ({student.get('student_number', '')})"), styles["Normal"]),
        Paragraph(escape(f"Class: {cls['name']} {cls.get('section', '')}".rstrip()), styles["Normal"]),
    ]
    if exam_date:
        elements.append(Paragraph(f"Exam date: {exam_date:%Y-%m-%d}", styles["Normal"]))
    elements.append(Spacer(1, 16))
    elements.append(_table(rows))
    doc.build(elements)
    return buffer.getvalue()
