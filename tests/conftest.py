import pytest
from fastapi.testclient import TestClient

import main
from db_manager import DatabaseManager
from security import create_user_token, get_password_hash


@pytest.fixture
def db(tmp_path):
    return DatabaseManager(base_dir=str(tmp_path / "data"))


@pytest.fixture
def client(db):
    main.app.state.db = db
    main.app.state.db_error = None
    yield TestClient(main.app)
    main.app.state.db = None


@pytest.fixture
def make_user(db):
    """Create a stored user and return (user, auth headers)"""

    def _make_user(role="student", name=None, email=None, student_id=None):
        name = name or f"{role.title()} User"
        email = email or f"{name.lower().replace(' ', '.')}@campus.edu"
        data = {"email": email, "name": name, "role": role, "password": get_password_hash("password123")}
        if student_id:
            data["studentId"] = student_id
        user = db.create_user(data)
        return user, {"Authorization": f"Bearer {create_user_token(user)}"}

    return _make_user


@pytest.fixture
def faculty(make_user):
    return make_user("faculty", name="Ada Lovelace")


@pytest.fixture
def admin(make_user):
    return make_user("admin", name="Root Admin")


@pytest.fixture
def classroom(client, faculty):
    _, headers = faculty
    resp = client.post("/classrooms", json={"name": "Thermodynamics", "subject": "ME201"}, headers=headers)
    assert resp.status_code == 200
    return resp.json()["classroom"]
