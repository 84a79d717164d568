import json

import pytest

from db_manager import DatabaseManager


def test_replace_lecture_attendance_is_scoped_to_key(db):
    db.replace_lecture_attendance("C1", "2024-05-01", [{"classroomId": "C1", "date": "2024-05-01", "studentId": "s1"}])
    db.replace_lecture_attendance("C1", "2024-05-02", [{"classroomId": "C1", "date": "2024-05-02", "studentId": "s1"}])
    db.replace_lecture_attendance("C2", "2024-05-01", [{"classroomId": "C2", "date": "2024-05-01", "studentId": "s1"}])

    result = db.replace_lecture_attendance("C1", "2024-05-01", [
        {"classroomId": "C1", "date": "2024-05-01", "studentId": "s1"},
        {"classroomId": "C1", "date": "2024-05-01", "studentId": "s2"},
    ])
    assert result == {"deleted": 1, "inserted": 2}
    assert len(db.get_lecture_attendance("C1", "2024-05-01")) == 2
    assert len(db.get_lecture_attendance("C1", "2024-05-02")) == 1
    assert len(db.get_lecture_attendance("C2", "2024-05-01")) == 1
    assert all(r["submittedAt"] for r in db.get_student_attendance("s1"))


def test_failed_batch_writes_nothing(db, monkeypatch):
    db.create_user({"email": "keep@campus.edu", "name": "Keep", "role": "student"})
    before = open(db.db_file, encoding="utf-8").read()

    with pytest.raises(ValueError):
        db.approve_profile_change_request("pcr_missing", "user_x", "name", "New", "notes")
    assert open(db.db_file, encoding="utf-8").read() == before


def test_state_survives_a_new_manager(db):
    user = db.create_user({"email": "persist@campus.edu", "name": "Persist", "role": "faculty"})
    reopened = DatabaseManager(base_dir=db.base_dir)
    assert reopened.get_user(user["id"])["email"] == "persist@campus.edu"


def test_corrupt_file_is_an_error(db):
    with open(db.db_file, "w", encoding="utf-8") as f:
        f.write("{not json")
    with pytest.raises(json.JSONDecodeError):
        db.get_all_users()


def test_duplicate_email_rejected(db):
    db.create_user({"email": "one@campus.edu", "name": "One", "role": "student"})
    with pytest.raises(ValueError):
        db.create_user({"email": "one@campus.edu", "name": "Two", "role": "student"})


def test_upsert_grade_merges(db):
    db.upsert_grade("s1_Math", {"studentId": "s1", "courseName": "Math", "grade": "B", "maxMarks": 50})
    merged = db.upsert_grade("s1_Math", {"grade": "A"})
    assert merged == {"id": "s1_Math", "studentId": "s1", "courseName": "Math", "grade": "A", "maxMarks": 50}


def test_change_request_resolution_is_single_shot(db):
    user = db.create_user({"email": "pcr@campus.edu", "name": "Old", "role": "student"})
    request_id = db.create_profile_change_request({
        "userId": user["id"], "fieldName": "name", "newValue": "New",
        "requestedAt": "2024-05-01T00:00:00+00:00", "status": "pending",
    })
    db.approve_profile_change_request(request_id, user["id"], "name", "New", "ok")
    assert db.get_user(user["id"])["name"] == "New"
    with pytest.raises(ValueError):
        db.deny_profile_change_request(request_id, "too late")


def test_approve_email_change_rejects_address_in_use(db):
    taken = db.create_user({"email": "taken@campus.edu", "name": "Taken", "role": "student"})
    user = db.create_user({"email": "mine@campus.edu", "name": "Mine", "role": "student"})
    request_id = db.create_profile_change_request({
        "userId": user["id"], "fieldName": "email", "newValue": taken["email"],
        "requestedAt": "2024-05-01T00:00:00+00:00", "status": "pending",
    })

    with pytest.raises(ValueError):
        db.approve_profile_change_request(request_id, user["id"], "email", taken["email"], "ok")
    assert db.get_user(user["id"])["email"] == "mine@campus.edu"
    assert db.get_profile_change_request(request_id)["status"] == "pending"
