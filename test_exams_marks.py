import csv
import io

import pytest
from bson import ObjectId


@pytest.fixture
def exam_setup(client, admin, class_admin, make_teacher, make_student, make_subject):
    class_id = class_admin["class_id"]
    head = class_admin["teacher"]
    science = make_teacher("Marie Curie")
    client.post("/api/admin/classes/assign-teacher", headers=admin["headers"],
                json={"class_id": class_id, "teacher_id": science["id"]})
    students = [make_student(name="Alan Turing"), make_student(name="Barbara Liskov")]
    math_id = make_subject("Mathematics", head["id"], credits=3)
    science_id = make_subject("Science", science["id"], credits=2)

    r = client.post(f"/api/exams/class/{class_id}", headers=head["headers"], json={
        "exam_name": "Midterm",
        "exam_code": " mt-1 ",
        "exam_date": "2026-03-10",
        "duration": 90,
        "subjects": [
            {"subject_id": math_id, "full_marks": 100},
            {"subject_id": science_id, "full_marks": 50},
        ],
    })
    assert r.status_code == 201, r.text
    exam = r.json()["exam"]
    return {
        "class_id": class_id,
        "head": head,
        "science": science,
        "students": students,
        "exam": exam,
        "math_id": math_id,
        "science_id": science_id,
    }


def _score(client, setup, teacher, student, subject_id, marks):
    path = (f"/api/marks/class/{setup['class_id']}/student/{student['id']}"
            f"/exam/{setup['exam']['id']}/subject/{subject_id}")
    return client.post(path, headers=teacher["headers"], json={"marks_scored": marks})


def test_create_exam_initializes_marks(client, store, exam_setup):
    exam = exam_setup["exam"]
    assert exam["exam_code"] == "MT-1"
    assert exam["subjects"][1]["teacher_name"] == "Marie Curie"
    records = list(store["mark"].find({"class_id": ObjectId(exam_setup["class_id"])}))
    assert len(records) == 2
    for record in records:
        subjects = record["exams"][0]["subjects"]
        assert [s["marks_scored"] for s in subjects] == [None, None]


def test_exam_subjects_resolve_from_catalogue(client, exam_setup, make_subject):
    math, science = exam_setup["exam"]["subjects"]
    assert math["subject_name"] == "Mathematics"
    assert math["credits"] == 3
    assert science["teacher_id"] == exam_setup["science"]["id"]

    art_id = make_subject("Art")
    payload = {"exam_name": "Quiz", "exam_code": "Q-1", "exam_date": "2026-04-01", "duration": 30}
    path = f"/api/exams/class/{exam_setup['class_id']}"
    headers = exam_setup["head"]["headers"]

    r = client.post(path, headers=headers, json={**payload, "subjects": [{"subject_id": art_id, "full_marks": 10}]})
    assert r.status_code == 400
    assert r.json()["detail"] == "No teacher assigned to subject Art"

    blank = {"subject_id": exam_setup["math_id"], "full_marks": 10, "subject_name": "   "}
    r = client.post(path, headers=headers, json={**payload, "subjects": [blank]})
    assert r.status_code == 400

    missing = {"subject_id": str(ObjectId()), "full_marks": 10}
    r = client.post(path, headers=headers, json={**payload, "subjects": [missing]})
    assert r.status_code == 404

    r = client.post(path, headers=headers, json={**payload, "subjects": [
        {"subject_id": art_id, "full_marks": 10, "teacher_id": exam_setup["head"]["id"], "subject_name": "Drawing"},
        {"subject_id": exam_setup["math_id"], "full_marks": 10},
        {"subject_id": exam_setup["math_id"], "full_marks": 20},
    ]})
    assert r.status_code == 400
    assert r.json()["detail"] == "Duplicate subjects are not allowed"


def test_duplicate_exam_code_rejected(client, exam_setup):
    r = client.post(f"/api/exams/class/{exam_setup['class_id']}", headers=exam_setup["head"]["headers"], json={
        "exam_name": "Another",
        "exam_code": "MT-1",
        "exam_date": "2026-04-01",
        "duration": 60,
        "subjects": [{"subject_id": exam_setup["math_id"], "full_marks": 20}],
    })
    assert r.status_code == 400


def test_only_class_admin_manages_exams(client, exam_setup):
    r = client.get(f"/api/exams/class/{exam_setup['class_id']}", headers=exam_setup["science"]["headers"])
    assert r.status_code == 403
    r = client.get(f"/api/exams/class/{exam_setup['class_id']}", headers=exam_setup["head"]["headers"])
    assert [e["exam_code"] for e in r.json()["items"]] == ["MT-1"]


def test_submit_marks_bounds_and_ownership(client, store, exam_setup):
    head, science = exam_setup["head"], exam_setup["science"]
    student = exam_setup["students"][0]

    assert _score(client, exam_setup, head, student, exam_setup["math_id"], 101).status_code == 400
    assert _score(client, exam_setup, head, student, exam_setup["math_id"], -1).status_code == 400
    r = _score(client, exam_setup, science, student, exam_setup["math_id"], 50)
    assert r.status_code == 403
    assert r.json()["detail"] == "Not authorized to score this subject"

    r = _score(client, exam_setup, head, student, exam_setup["math_id"], 100)
    assert r.status_code == 200
    assert r.json()["student_name"] == "Alan Turing"

    record = store["mark"].find_one({"student_id": ObjectId(student["id"])})
    math = record["exams"][0]["subjects"][0]
    assert math["marks_scored"] == 100
    assert math["scored_by"] == ObjectId(head["id"])
    assert math["scored_at"] is not None


def test_late_student_gets_entry_on_first_scoring(client, store, exam_setup, make_student):
    late = make_student(name="Late Joiner")
    assert store["mark"].find_one({"student_id": ObjectId(late["id"])}) is None
    r = _score(client, exam_setup, exam_setup["science"], late, exam_setup["science_id"], 45)
    assert r.status_code == 200
    record = store["mark"].find_one({"student_id": ObjectId(late["id"])})
    assert [s["marks_scored"] for s in record["exams"][0]["subjects"]] == [None, 45]


def test_summary_and_subject_report(client, exam_setup):
    head, science = exam_setup["head"], exam_setup["science"]
    alan, barbara = exam_setup["students"]
    _score(client, exam_setup, head, alan, exam_setup["math_id"], 85)
    _score(client, exam_setup, science, alan, exam_setup["science_id"], 40)
    _score(client, exam_setup, head, barbara, exam_setup["math_id"], 20)

    r = client.get(f"/api/marks/class/{exam_setup['class_id']}/summary", headers=head["headers"])
    assert r.status_code == 200
    rows = {s["student_name"]: s["exams"][0] for s in r.json()["students"]}
    assert rows["Alan Turing"]["total_marks_scored"] == 125
    assert rows["Alan Turing"]["percentage"] == 83.33
    assert rows["Alan Turing"]["grade"] == "A"
    assert rows["Alan Turing"]["is_completed"] is True
    assert rows["Barbara Liskov"]["completed_subjects"] == 1
    assert rows["Barbara Liskov"]["grade"] == "F"

    r = client.get(f"/api/marks/class/{exam_setup['class_id']}/summary", headers=science["headers"])
    assert r.status_code == 403

    r = client.get(f"/api/marks/class/{exam_setup['class_id']}/subject-report", headers=head["headers"])
    math = r.json()["subjects"][0]
    assert math["subject_name"] == "Mathematics"
    assert math["scored_count"] == 2
    assert math["average"] == 52.5
    assert math["highest"] == 85
    assert math["pass_count"] == 1


def test_export_csv_and_pdf(client, exam_setup):
    head = exam_setup["head"]
    _score(client, exam_setup, head, exam_setup["students"][0], exam_setup["math_id"], 90)
    base = f"/api/marks/class/{exam_setup['class_id']}/exam/{exam_setup['exam']['id']}/export"

    r = client.get(base, headers=head["headers"], params={"format": "csv"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert "Midterm_MT-1_Academic_Report.csv" in r.headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(r.text)))
    assert rows[0] == ["Student", "Student No.", "Mathematics (100)", "Science (50)",
                       "Total", "Full Marks", "Percentage", "Grade"]
    assert rows[1][0] == "Alan Turing"
    assert rows[1][2:] == ["90", "-", "90", "150", "60.00", "B"]

    r = client.get(base, headers=head["headers"], params={"format": "pdf"})
    assert r.status_code == 200
    assert r.content.startswith(b"%PDF")

    r = client.get(base, headers=head["headers"], params={"format": "xlsx"})
    assert r.status_code == 400


def test_student_views_own_results(client, exam_setup):
    alan = exam_setup["students"][0]
    _score(client, exam_setup, exam_setup["head"], alan, exam_setup["math_id"], 70)

    r = client.get("/api/marks/student/academic-report", headers=alan["headers"])
    assert r.status_code == 200
    exam = r.json()["exams"][0]
    assert exam["subjects"][0]["grade"] == "B+"
    assert exam["subjects"][1]["grade"] is None

    r = client.get(f"/api/marks/student/report-card/{exam_setup['exam']['id']}", headers=alan["headers"])
    assert r.status_code == 200
    assert r.content.startswith(b"%PDF")


def test_add_and_remove_subject_keeps_scores(client, store, exam_setup, make_subject):
    head = exam_setup["head"]
    history_id = make_subject("History", head["id"])
    alan = exam_setup["students"][0]
    _score(client, exam_setup, head, alan, exam_setup["math_id"], 77)
    base = f"/api/exams/class/{exam_setup['class_id']}/exam/{exam_setup['exam']['id']}"

    r = client.post(f"{base}/subjects", headers=head["headers"], json={"subjects": [
        {"subject_id": history_id, "full_marks": 25},
    ]})
    assert r.status_code == 200
    r = client.post(f"{base}/subjects", headers=head["headers"], json={"subjects": [
        {"subject_id": history_id, "full_marks": 30},
    ]})
    assert r.status_code == 400
    assert r.json()["detail"] == "Subject History already exists in this exam"

    r = client.delete(f"{base}/subject/{exam_setup['science_id']}", headers=head["headers"])
    assert r.status_code == 200

    record = store["mark"].find_one({"student_id": ObjectId(alan["id"])})
    subjects = record["exams"][0]["subjects"]
    assert [s["subject_name"] for s in subjects] == ["Mathematics", "History"]
    assert subjects[0]["marks_scored"] == 77


def test_delete_exam_removes_mark_entries(client, store, exam_setup):
    base = f"/api/exams/class/{exam_setup['class_id']}/exam/{exam_setup['exam']['id']}"
    r = client.delete(base, headers=exam_setup["head"]["headers"])
    assert r.status_code == 200
    for record in store["mark"].find():
        assert record["exams"] == []
    assert client.get(base, headers=exam_setup["head"]["headers"]).status_code == 404


def test_my_exams_lists_only_own_subjects(client, exam_setup):
    r = client.get("/api/exams/my-exams", headers=exam_setup["science"]["headers"])
    items = r.json()["items"]
    assert len(items) == 1
    assert [s["subject_name"] for s in items[0]["subjects"]] == ["Science"]
