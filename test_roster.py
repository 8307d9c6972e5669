from bson import ObjectId


def _class(store, class_id):
    return store["class"].find_one({"_id": ObjectId(class_id)})


def _teacher(store, teacher_id):
    return store["teacher"].find_one({"_id": ObjectId(teacher_id)})


def _student(store, student_id):
    return store["student"].find_one({"_id": ObjectId(student_id)})


def _assign_teacher(client, admin, class_id, teacher_id):
    return client.post("/api/admin/classes/assign-teacher", headers=admin["headers"],
                       json={"class_id": class_id, "teacher_id": teacher_id})


def test_class_lifecycle_scenario(client, store, admin, make_class, make_teacher):
    class_id = make_class("Grade 5", "A")
    t1 = make_teacher()

    r = _assign_teacher(client, admin, class_id, t1["id"])
    assert r.status_code == 200
    assert r.json()["msg"] == "Teacher assigned to class successfully"
    assert _class(store, class_id)["teacher_ids"] == [ObjectId(t1["id"])]
    assert ObjectId(class_id) in _teacher(store, t1["id"])["class_ids"]

    r = client.post("/api/admin/classes/assign-class-admin", headers=admin["headers"],
                    json={"class_id": class_id, "teacher_id": t1["id"]})
    assert r.status_code == 200
    assert _teacher(store, t1["id"])["admin_class_id"] == ObjectId(class_id)

    r = client.post("/api/admin/classes/remove-teacher", headers=admin["headers"],
                    json={"class_id": class_id, "teacher_id": t1["id"]})
    assert r.status_code == 200
    assert r.json()["class_admin_cleared"] is True
    assert _class(store, class_id)["teacher_ids"] == []
    teacher = _teacher(store, t1["id"])
    assert teacher["class_ids"] == []
    assert "admin_class_id" not in teacher


def test_assign_teachers_is_idempotent(client, store, admin, make_class, make_teacher):
    class_id = make_class()
    t1, t2 = make_teacher(), make_teacher()
    body = {"class_id": class_id, "teacher_ids": [t1["id"], t2["id"], t1["id"]]}

    first = client.post("/api/admin/classes/assign-teachers", headers=admin["headers"], json=body).json()
    assert first["assigned_count"] == 2
    assert first["total_requested"] == 2

    second = client.post("/api/admin/classes/assign-teachers", headers=admin["headers"], json=body).json()
    assert second["assigned_count"] == 0
    cls = _class(store, class_id)
    assert sorted(cls["teacher_ids"]) == sorted([ObjectId(t1["id"]), ObjectId(t2["id"])])
    for t in (t1, t2):
        assert _teacher(store, t["id"])["class_ids"] == [ObjectId(class_id)]


def test_assign_teachers_rejects_unknown_teacher(client, store, admin, make_class, make_teacher):
    class_id = make_class()
    t1 = make_teacher()
    r = client.post("/api/admin/classes/assign-teachers", headers=admin["headers"],
                    json={"class_id": class_id, "teacher_ids": [t1["id"], str(ObjectId())]})
    assert r.status_code == 404
    assert _class(store, class_id)["teacher_ids"] == []


def test_only_one_class_admin_per_class(client, store, admin, make_class, make_teacher):
    class_id = make_class()
    t1, t2 = make_teacher(), make_teacher()
    for t in (t1, t2):
        _assign_teacher(client, admin, class_id, t["id"])
        r = client.post("/api/admin/classes/assign-class-admin", headers=admin["headers"],
                        json={"class_id": class_id, "teacher_id": t["id"]})
        assert r.status_code == 200

    holders = list(store["teacher"].find({"admin_class_id": ObjectId(class_id)}))
    assert [h["_id"] for h in holders] == [ObjectId(t2["id"])]


def test_class_admin_must_teach_the_class(client, admin, make_class, make_teacher):
    class_id = make_class()
    teacher = make_teacher()
    r = client.post("/api/admin/classes/assign-class-admin", headers=admin["headers"],
                    json={"class_id": class_id, "teacher_id": teacher["id"]})
    assert r.status_code == 400
    assert r.json()["detail"] == "Teacher must be assigned to the class first"


def test_reassigning_students_is_a_noop(client, store, admin, make_class, make_student):
    class_id = make_class("Grade 5", "A")
    other_id = make_class("Grade 5", "B")
    s1 = make_student("Grade 5", "B")
    s2 = make_student("Grade 5", "B")
    body = {"class_id": class_id, "student_ids": [s1["id"], s2["id"]]}

    first = client.post("/api/admin/classes/assign-students", headers=admin["headers"], json=body).json()
    assert first["assigned_count"] == 2
    assert {r["previous_class_id"] for r in first["results"]} == {other_id}

    second = client.post("/api/admin/classes/assign-students", headers=admin["headers"], json=body).json()
    assert second["assigned_count"] == 0
    assert second["already_assigned_count"] == 2
    assert {r["status"] for r in second["results"]} == {"already_assigned"}

    assert len(_class(store, class_id)["student_ids"]) == 2
    assert _class(store, other_id)["student_ids"] == []
    student = _student(store, s1["id"])
    assert student["class_id"] == ObjectId(class_id)
    assert student["section"] == "A"


def test_assign_students_reports_missing_ids(client, admin, make_class, make_student):
    class_id = make_class()
    s1 = make_student("Grade 6", "A")
    missing = str(ObjectId())
    r = client.post("/api/admin/classes/assign-students", headers=admin["headers"],
                    json={"class_id": class_id, "student_ids": [s1["id"], missing]})
    body = r.json()
    assert body["total_found"] == 1
    assert [res["status"] for res in body["results"]] == ["assigned", "not_found"]


def test_remove_student(client, store, admin, make_class, make_student):
    class_id = make_class()
    student = make_student()
    body = {"class_id": class_id, "student_id": student["id"]}

    r = client.post("/api/admin/classes/remove-student", headers=admin["headers"], json=body)
    assert r.json() == {"msg": "Student removed from class successfully",
                        "removed_from_class": True, "removed_from_student": True}
    assert "class_id" not in _student(store, student["id"])

    r = client.post("/api/admin/classes/remove-student", headers=admin["headers"], json=body)
    assert r.status_code == 400


def test_delete_class_clears_all_references(client, store, admin, make_class, make_teacher, make_student):
    class_id = make_class()
    teacher = make_teacher()
    student = make_student()
    _assign_teacher(client, admin, class_id, teacher["id"])
    client.post("/api/admin/classes/assign-class-admin", headers=admin["headers"],
                json={"class_id": class_id, "teacher_id": teacher["id"]})

    r = client.delete(f"/api/admin/classes/{class_id}", headers=admin["headers"])
    assert r.status_code == 200

    cid = ObjectId(class_id)
    assert _class(store, class_id) is None
    assert cid not in store["school"].find_one({"code": "GWH"})["class_ids"]
    t = _teacher(store, teacher["id"])
    assert cid not in t["class_ids"]
    assert "admin_class_id" not in t
    s = _student(store, student["id"])
    assert "class_id" not in s
    assert s["class_name"] == ""


def test_update_class_refreshes_student_copies(client, store, admin, make_class, make_student):
    class_id = make_class("Grade 5", "A")
    student = make_student("Grade 5", "A")
    r = client.put(f"/api/admin/classes/{class_id}", headers=admin["headers"], json={"section": "C"})
    assert r.status_code == 200
    assert _student(store, student["id"])["section"] == "C"


def test_duplicate_class_rejected(client, admin, make_class):
    make_class("Grade 5", "A")
    r = client.post("/api/admin/classes", json={"name": "Grade 5", "section": "A"}, headers=admin["headers"])
    assert r.status_code == 400


def test_update_class_rejects_existing_name_and_section(client, store, admin, make_class):
    make_class("Grade 5", "A")
    other = make_class("Grade 5", "B")
    r = client.put(f"/api/admin/classes/{other}", json={"section": "A"}, headers=admin["headers"])
    assert r.status_code == 400
    assert r.json()["detail"] == "Class with this name and section already exists"
    assert store["class"].count_documents({"name": "Grade 5", "section": "A"}) == 1

    r = client.put(f"/api/admin/classes/{other}", json={"name": "Grade 5", "section": "B"}, headers=admin["headers"])
    assert r.status_code == 200


def test_blank_class_name_rejected(client, admin, make_class):
    r = client.post("/api/admin/classes", json={"name": "   ", "section": "A"}, headers=admin["headers"])
    assert r.status_code == 400
    assert r.json()["detail"].startswith("name:")
    class_id = make_class("Grade 6", "A")
    r = client.put(f"/api/admin/classes/{class_id}", json={"name": " "}, headers=admin["headers"])
    assert r.status_code == 400


def test_student_select_class_moves_roster(client, store, make_class, make_student):
    first = make_class("Grade 8", "A")
    second = make_class("Grade 8", "B")
    student = make_student("Grade 8", "A")

    r = client.post("/api/student/select-class", headers=student["headers"], json={"class_id": second})
    assert r.status_code == 200
    assert ObjectId(student["id"]) not in _class(store, first)["student_ids"]
    assert _class(store, second)["student_ids"] == [ObjectId(student["id"])]


def test_class_details_visible_within_school(client, admin, make_class, make_teacher):
    class_id = make_class()
    teacher = make_teacher()
    _assign_teacher(client, admin, class_id, teacher["id"])
    r = client.get(f"/api/class/{class_id}", headers=teacher["headers"])
    assert r.status_code == 200
    assert [t["id"] for t in r.json()["teachers"]] == [teacher["id"]]


def test_teacher_sees_assigned_classes(client, admin, class_admin):
    teacher = class_admin["teacher"]
    items = client.get("/api/teacher/classes", headers=teacher["headers"]).json()["items"]
    assert [(c["id"], c["is_class_admin"]) for c in items] == [(class_admin["class_id"], True)]
