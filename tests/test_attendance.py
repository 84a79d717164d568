import pytest

from security import create_user_token


def make_records(faculty_id, classroom_id, students, lecture="Thermo", date="2024-05-01", status="present"):
    return [
        {
            "facultyId": faculty_id,
            "facultyName": "Ada Lovelace",
            "classroomId": classroom_id,
            "classroomName": "Thermodynamics",
            "date": date,
            "lectureName": lecture,
            "studentId": s["id"],
            "studentName": s["name"],
            "studentIdNumber": s.get("studentId"),
            "status": status,
        }
        for s in students
    ]


@pytest.fixture
def students(make_user):
    return [make_user("student", name=f"Student {i}", student_id=f"ET-A-00{i}")[0] for i in range(1, 4)]


def test_resubmission_replaces_all_rows_for_key(client, db, faculty, classroom, students):
    fac, headers = faculty
    first = make_records(fac["id"], classroom["id"], students[:2])
    resp = client.post("/attendance/submit", json=first, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["inserted"] == 2

    second = make_records(fac["id"], classroom["id"], students, lecture="Thermo-retake", status="absent")
    resp = client.post("/attendance/submit", json=second, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["deleted"] == 2
    assert resp.json()["inserted"] == 3

    stored = db.get_lecture_attendance(classroom["id"], "2024-05-01")
    assert len(stored) == 3
    assert {r["lectureName"] for r in stored} == {"Thermo-retake"}
    assert {r["status"] for r in stored} == {"absent"}


def test_other_dates_are_untouched(client, db, faculty, classroom, students):
    fac, headers = faculty
    client.post("/attendance/submit", json=make_records(fac["id"], classroom["id"], students, date="2024-04-30"), headers=headers)
    client.post("/attendance/submit", json=make_records(fac["id"], classroom["id"], students[:1]), headers=headers)

    assert len(db.get_lecture_attendance(classroom["id"], "2024-04-30")) == 3
    assert len(db.get_lecture_attendance(classroom["id"], "2024-05-01")) == 1


def test_empty_submission_is_a_no_op(client, db, faculty, classroom, students):
    fac, headers = faculty
    client.post("/attendance/submit", json=make_records(fac["id"], classroom["id"], students), headers=headers)

    resp = client.post("/attendance/submit", json=[], headers=headers)
    assert resp.status_code == 200
    assert resp.json()["inserted"] == 0
    assert len(db.get_lecture_attendance(classroom["id"], "2024-05-01")) == 3


def test_missing_required_field_rejected_before_storage(client, db, faculty, classroom, students, monkeypatch):
    fac, headers = faculty
    records = make_records(fac["id"], classroom["id"], students)
    records[1]["lectureName"] = ""

    def fail(*args, **kwargs):
        raise AssertionError("storage must not be touched")

    monkeypatch.setattr(db, "replace_lecture_attendance", fail)
    resp = client.post("/attendance/submit", json=records, headers=headers)
    assert resp.status_code == 400
    assert "are required for each attendance record" in resp.json()["detail"]


@pytest.mark.parametrize(
    "mutate",
    [
        lambda rs: rs[1].update(date="2024-05-02"),
        lambda rs: rs[1].update(status="late"),
        lambda rs: rs[1].update(studentId=rs[0]["studentId"]),
        lambda rs: [r.update(date="05/01/2024") for r in rs],
        lambda rs: [r.update(date="2024-5-1") for r in rs],
    ],
)
def test_invalid_submission_rejected(client, db, faculty, classroom, students, mutate):
    fac, headers = faculty
    records = make_records(fac["id"], classroom["id"], students)
    mutate(records)
    resp = client.post("/attendance/submit", json=records, headers=headers)
    assert resp.status_code == 400
    assert db.get_lecture_attendance_range(classroom["id"], "2024-01-01", "2024-12-31") == []


def test_non_member_faculty_cannot_submit(client, db, make_user, classroom, students):
    outsider, headers = make_user("faculty", name="Grace Hopper")
    records = make_records(outsider["id"], classroom["id"], students)
    resp = client.post("/attendance/submit", json=records, headers=headers)
    assert resp.status_code == 403
    assert db.get_lecture_attendance(classroom["id"], "2024-05-01") == []


def test_student_cannot_submit(client, make_user, faculty, classroom, students):
    fac, _ = faculty
    _, student_headers = make_user("student", name="Sneaky Student")
    records = make_records(fac["id"], classroom["id"], students)
    resp = client.post("/attendance/submit", json=records, headers=student_headers)
    assert resp.status_code == 403


def test_unauthenticated_submit_rejected(client, faculty, classroom, students):
    fac, _ = faculty
    resp = client.post("/attendance/submit", json=make_records(fac["id"], classroom["id"], students))
    assert resp.status_code == 401


def test_range_query_and_student_view(client, faculty, classroom, students, make_user):
    fac, headers = faculty
    client.post("/attendance/submit", json=make_records(fac["id"], classroom["id"], students, date="2024-05-01"), headers=headers)
    client.post("/attendance/submit", json=make_records(fac["id"], classroom["id"], students, date="2024-05-03", status="absent"), headers=headers)

    resp = client.get(f"/attendance/{classroom['id']}/range", params={"start": "2024-05-01", "end": "2024-05-31"}, headers=headers)
    assert resp.status_code == 200
    dates = [r["date"] for r in resp.json()["records"]]
    assert dates == sorted(dates, reverse=True)
    assert len(dates) == 6

    student_headers = {"Authorization": f"Bearer {create_user_token(students[0])}"}
    resp = client.get("/attendance/me", headers=student_headers)
    assert resp.status_code == 200
    assert [r["status"] for r in resp.json()["records"]] == ["absent", "present"]

    resp = client.get(f"/attendance/{classroom['id']}/range", params={"start": "2024-06-01", "end": "2024-05-01"}, headers=headers)
    assert resp.status_code == 400


def test_export_csv(client, faculty, classroom, students):
    fac, headers = faculty
    records = make_records(fac["id"], classroom["id"], students)
    records[0]["studentName"] = 'Doe, "JD" John'
    client.post("/attendance/submit", json=records, headers=headers)

    resp = client.get(f"/attendance/{classroom['id']}/export.csv", params={"start": "2024-05-01", "end": "2024-05-01"}, headers=headers)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert '"Doe, ""JD"" John"' in resp.text
    assert resp.text.splitlines()[0].startswith("Date,Lecture")


def test_attendance_analysis_uses_fallback(client, faculty, classroom, students, monkeypatch):
    import ai_flows

    def broken(prompt, model):
        raise RuntimeError("no key")

    monkeypatch.setattr(ai_flows, "generate_structured", broken)
    fac, headers = faculty
    client.post("/attendance/submit", json=make_records(fac["id"], classroom["id"], students), headers=headers)

    resp = client.post(f"/attendance/{classroom['id']}/analysis", params={"start": "2024-05-01", "end": "2024-05-01"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["analysis"] == ai_flows.ATTENDANCE_UNAVAILABLE.model_dump()


def test_unpadded_date_cannot_open_a_second_key_for_the_same_day(client, db, faculty, classroom, students):
    fac, headers = faculty
    client.post("/attendance/submit", json=make_records(fac["id"], classroom["id"], students[:2]), headers=headers)

    retake = make_records(fac["id"], classroom["id"], students[:1], lecture="Thermo-retake", date="2024-5-1")
    assert client.post("/attendance/submit", json=retake, headers=headers).status_code == 400

    stored = db.get_lecture_attendance_range(classroom["id"], "2024-01-01", "2024-12-31")
    assert len(stored) == 2
    assert {r["lectureName"] for r in stored} == {"Thermo"}

    resp = client.get(f"/attendance/{classroom['id']}/range", params={"start": "2024-5-1", "end": "2024-05-31"}, headers=headers)
    assert resp.status_code == 400
    resp = client.get(f"/attendance/{classroom['id']}", params={"date": "2024-5-1"}, headers=headers)
    assert resp.status_code == 400


def test_faculty_identity_is_stamped_from_caller(client, db, faculty, classroom, students, make_user):
    fac, headers = faculty
    someone_else, _ = make_user("faculty", name="Grace Hopper")
    records = make_records(someone_else["id"], classroom["id"], students)
    for r in records:
        r["facultyName"] = "Grace Hopper"

    assert client.post("/attendance/submit", json=records, headers=headers).status_code == 200

    stored = db.get_lecture_attendance(classroom["id"], "2024-05-01")
    assert {r["facultyId"] for r in stored} == {fac["id"]}
    assert {r["facultyName"] for r in stored} == {"Ada Lovelace"}
