import pytest

import ai_flows


@pytest.fixture
def student(make_user):
    return make_user("student", name="Marie Curie", student_id="ET-B-007")


def test_upsert_is_idempotent_per_student_and_course(client, db, faculty, student):
    _, headers = faculty
    stu, _ = student
    body = {"studentId": stu["id"], "courseName": "Organic  Chemistry", "grade": "B", "maxMarks": 100}

    first = client.put("/grades", json=body, headers=headers)
    assert first.status_code == 200
    assert first.json()["grade"]["id"] == f"{stu['id']}_Organic-Chemistry"

    body["grade"] = "A"
    second = client.put("/grades", json=body, headers=headers)
    assert second.status_code == 200

    grades = db.get_grades_for_student(stu["id"])
    assert len(grades) == 1
    assert grades[0]["grade"] == "A"
    assert grades[0]["maxMarks"] == 100


def test_grade_for_unknown_student_rejected(client, faculty):
    _, headers = faculty
    resp = client.put("/grades", json={"studentId": "nobody", "courseName": "Math", "grade": "A"}, headers=headers)
    assert resp.status_code == 404


def test_students_cannot_write_grades(client, student):
    stu, headers = student
    resp = client.put("/grades", json={"studentId": stu["id"], "courseName": "Math", "grade": "A+"}, headers=headers)
    assert resp.status_code == 403


def test_student_reads_own_grades_and_course_names(client, faculty, student):
    _, fac_headers = faculty
    stu, stu_headers = student
    for course in ("Physics", "Algebra"):
        client.put("/grades", json={"studentId": stu["id"], "courseName": course, "grade": "A"}, headers=fac_headers)

    resp = client.get("/grades/me", headers=stu_headers)
    assert resp.status_code == 200
    assert {g["courseName"] for g in resp.json()["grades"]} == {"Physics", "Algebra"}

    resp = client.get("/grades/courses", headers=fac_headers)
    assert resp.json()["courses"] == ["Algebra", "Physics"]


def test_classroom_grades_with_empty_list(client, faculty):
    _, headers = faculty
    resp = client.post("/grades/classroom", json={"studentUids": []}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["grades"] == []


def test_delete_grade(client, db, faculty, student):
    _, headers = faculty
    stu, _ = student
    grade_id = client.put(
        "/grades", json={"studentId": stu["id"], "courseName": "Art", "grade": "C"}, headers=headers
    ).json()["grade"]["id"]

    assert client.delete(f"/grades/{grade_id}", headers=headers).status_code == 200
    assert db.get_grade(grade_id) is None
    assert client.delete(f"/grades/{grade_id}", headers=headers).status_code == 404


def test_grade_analysis_without_grades_returns_empty_payload(client, student, monkeypatch):
    monkeypatch.setattr(ai_flows, "generate_structured", lambda *a: pytest.fail("AI must not be called"))
    _, headers = student
    resp = client.post("/grades/me/analysis", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["analysis"] == ai_flows.GRADES_EMPTY.model_dump()


def test_grade_analysis_returns_model_output(client, faculty, student, monkeypatch):
    _, headers = faculty
    stu, _ = student
    client.put("/grades", json={"studentId": stu["id"], "courseName": "Physics", "grade": "A"}, headers=headers)

    canned = ai_flows.GradeAnalysisOutput(overallSummary="Great", strengths=["Physics"], areasForImprovement=[])
    monkeypatch.setattr(ai_flows, "generate_structured", lambda prompt, model: canned)

    resp = client.post(f"/grades/student/{stu['id']}/analysis", headers=headers)
    assert resp.json()["analysis"]["strengths"] == ["Physics"]


def test_classroom_grade_export(client, faculty, student):
    _, headers = faculty
    stu, _ = student
    client.put("/grades", json={"studentId": stu["id"], "courseName": "Physics", "grade": "A"}, headers=headers)

    resp = client.post("/grades/classroom/export.csv", json={"studentUids": [stu["id"]]}, headers=headers)
    assert resp.status_code == 200
    lines = resp.text.split("\r\n")
    assert lines[0] == "Student ID,Student Name,Course,Grade,Max Marks,Updated At"
    assert lines[1].startswith("ET-B-007,Marie Curie,Physics,A,")
