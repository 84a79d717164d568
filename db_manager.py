import json
import logging
import os
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

COLLECTIONS = (
    "users",
    "classrooms",
    "lecture_attendance",
    "grades",
    "messages",
    "profile_change_requests",
)


def utc_now_iso() -> str:
    """Server timestamp as a fixed-width ISO-8601 string (sortable lexicographically)"""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def _sort_attendance_desc(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(records, key=lambda r: (r.get("date") or "", r.get("submittedAt") or ""), reverse=True)


class DatabaseManager:
    """Manages file-based database operations for the Campus ERP backend.

    Every collection lives in one JSON document so that a batch touching
    several documents (or several collections) lands in a single atomic
    file replace.
    """

    def __init__(self, base_dir: str = "data"):
        self.base_dir = base_dir
        self.db_file = os.path.join(base_dir, "database.json")
        self._lock = threading.RLock()
        self._ensure_directories()

    def _ensure_directories(self):
        """Ensure the base directory and database file exist"""
        os.makedirs(self.base_dir, exist_ok=True)
        if not os.path.exists(self.db_file):
            self.write_json(self.db_file, {name: {} for name in COLLECTIONS})
            logger.info(f"✅ Created file database at {self.db_file}")

    def read_json(self, file_path: str) -> Optional[Dict[str, Any]]:
        """Read JSON file; a missing file is None, a corrupt one is an error"""
        if not os.path.exists(file_path):
            return None
        with open(file_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def write_json(self, file_path: str, data: Dict[str, Any]):
        """Write JSON file atomically (temp file + rename)"""
        os.makedirs(os.path.dirname(file_path) or ".", exist_ok=True)
        tmp_path = f"{file_path}.{os.getpid()}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, file_path)
        except Exception as e:
            logger.error(f"Error writing {file_path}: {e}")
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _load(self) -> Dict[str, Dict[str, Any]]:
        data = self.read_json(self.db_file) or {}
        for name in COLLECTIONS:
            data.setdefault(name, {})
        return data

    @contextmanager
    def _batch(self) -> Iterator[Dict[str, Dict[str, Any]]]:
        """Load, mutate, commit. If the body raises, nothing is written."""
        with self._lock:
            data = self._load()
            yield data
            self.write_json(self.db_file, data)

    def _all(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._load()[collection].values())

    def _get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._load()[collection].get(doc_id)

    # ==================== USER OPERATIONS ====================

    def create_user(self, user_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a new user (any role)"""
        with self._batch() as data:
            users = data["users"]
            email = user_data["email"]
            if any(u.get("email") == email for u in users.values()):
                raise ValueError("User with this email already exists")

            user = {
                **user_data,
                "id": user_data.get("id") or new_id("user"),
                "created_at": utc_now_iso(),
            }
            users[user["id"]] = user
        return user

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Get user data by user_id"""
        return self._get("users", user_id)

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """Get user by email"""
        for user in self._all("users"):
            if user.get("email") == email:
                return user
        return None

    def update_user(self, user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Update user data (shallow merge)"""
        with self._batch() as data:
            user = data["users"].get(user_id)
            if not user:
                raise ValueError(f"User {user_id} not found")
            user.update(updates)
            user["updated_at"] = utc_now_iso()
        return user

    def get_users_by_role(self, role: str) -> List[Dict[str, Any]]:
        return [u for u in self._all("users") if u.get("role") == role]

    def get_all_users(self) -> List[Dict[str, Any]]:
        return self._all("users")

    # ==================== CLASSROOM OPERATIONS ====================

    def create_classroom(self, classroom_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a new classroom"""
        classroom = {
            **classroom_data,
            "id": new_id("class"),
            "createdAt": utc_now_iso(),
        }
        with self._batch() as data:
            data["classrooms"][classroom["id"]] = classroom
        logger.info(f"[CREATE_CLASSROOM] Classroom {classroom['id']} created")
        return classroom

    def get_classroom(self, classroom_id: str) -> Optional[Dict[str, Any]]:
        return self._get("classrooms", classroom_id)

    def get_classrooms_for_faculty(self, faculty_id: str) -> List[Dict[str, Any]]:
        """Owned and invited classrooms, newest first"""
        classrooms = [
            c for c in self._all("classrooms")
            if c.get("ownerFacultyId") == faculty_id or faculty_id in (c.get("invitedFacultyIds") or [])
        ]
        return sorted(classrooms, key=lambda c: c.get("createdAt") or "", reverse=True)

    def get_classrooms_for_student(self, student_id: str) -> List[Dict[str, Any]]:
        return [
            c for c in self._all("classrooms")
            if any(s.get("userId") == student_id for s in c.get("students") or [])
        ]

    def update_classroom_students(self, classroom_id: str, students: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Replace the embedded student roster"""
        with self._batch() as data:
            classroom = data["classrooms"].get(classroom_id)
            if not classroom:
                raise ValueError(f"Classroom {classroom_id} not found")
            classroom["students"] = students
        return classroom

    def add_student_to_classroom(self, classroom_id: str, student_entry: Dict[str, Any]) -> bool:
        """Array-union on the roster, keyed by userId. False if already enrolled."""
        with self._batch() as data:
            classroom = data["classrooms"].get(classroom_id)
            if not classroom:
                raise ValueError(f"Classroom {classroom_id} not found")
            students = classroom.setdefault("students", [])
            if any(s.get("userId") == student_entry["userId"] for s in students):
                return False
            students.append(student_entry)
        return True

    def add_invited_faculty(self, classroom_id: str, faculty_id: str) -> bool:
        with self._batch() as data:
            classroom = data["classrooms"].get(classroom_id)
            if not classroom:
                raise ValueError(f"Classroom {classroom_id} not found")
            invited = classroom.setdefault("invitedFacultyIds", [])
            if faculty_id in invited:
                return False
            invited.append(faculty_id)
        return True

    def delete_classroom(self, classroom_id: str) -> bool:
        """Delete a classroom and its chat messages. Attendance history is kept."""
        with self._batch() as data:
            if classroom_id not in data["classrooms"]:
                return False
            del data["classrooms"][classroom_id]
            data["messages"] = {
                mid: m for mid, m in data["messages"].items() if m.get("classroomId") != classroom_id
            }
        return True

    # ==================== ATTENDANCE OPERATIONS ====================

    def get_lecture_attendance(self, classroom_id: str, date: str) -> List[Dict[str, Any]]:
        return [
            r for r in self._all("lecture_attendance")
            if r.get("classroomId") == classroom_id and r.get("date") == date
        ]

    def get_lecture_attendance_range(self, classroom_id: str, start_date: str, end_date: str) -> List[Dict[str, Any]]:
        records = [
            r for r in self._all("lecture_attendance")
            if r.get("classroomId") == classroom_id and start_date <= (r.get("date") or "") <= end_date
        ]
        return _sort_attendance_desc(records)

    def get_student_attendance(self, student_id: str) -> List[Dict[str, Any]]:
        records = [r for r in self._all("lecture_attendance") if r.get("studentId") == student_id]
        return _sort_attendance_desc(records)

    def replace_lecture_attendance(
        self, classroom_id: str, date: str, records: List[Dict[str, Any]]
    ) -> Dict[str, int]:
        """Delete every row for (classroom_id, date) and insert `records`, all in one commit"""
        submitted_at = utc_now_iso()
        with self._batch() as data:
            attendance = data["lecture_attendance"]
            stale_ids = [
                rid for rid, r in attendance.items()
                if r.get("classroomId") == classroom_id and r.get("date") == date
            ]
            if stale_ids:
                logger.info(
                    f"[REPLACE_ATTENDANCE] Found {len(stale_ids)} existing records for "
                    f"classroom {classroom_id} on {date}. Deleting them."
                )
            for rid in stale_ids:
                del attendance[rid]

            for record in records:
                rid = new_id("att")
                attendance[rid] = {**record, "id": rid, "submittedAt": submitted_at}

        return {"deleted": len(stale_ids), "inserted": len(records)}

    # ==================== GRADE OPERATIONS ====================

    def upsert_grade(self, grade_id: str, grade_data: Dict[str, Any]) -> Dict[str, Any]:
        """Set-with-merge on a grade document"""
        with self._batch() as data:
            grade = data["grades"].setdefault(grade_id, {})
            grade.update(grade_data)
            grade["id"] = grade_id
        return grade

    def get_grade(self, grade_id: str) -> Optional[Dict[str, Any]]:
        return self._get("grades", grade_id)

    def get_grades_for_student(self, student_id: str) -> List[Dict[str, Any]]:
        grades = [g for g in self._all("grades") if g.get("studentId") == student_id]
        return sorted(grades, key=lambda g: g.get("updatedAt") or "", reverse=True)

    def get_grades_for_students(self, student_ids: List[str]) -> List[Dict[str, Any]]:
        wanted = set(student_ids)
        return [g for g in self._all("grades") if g.get("studentId") in wanted]

    def get_unique_course_names(self) -> List[str]:
        return sorted({g["courseName"] for g in self._all("grades") if g.get("courseName")})

    def delete_grade(self, grade_id: str) -> bool:
        with self._batch() as data:
            return data["grades"].pop(grade_id, None) is not None

    # ==================== CHAT OPERATIONS ====================

    def add_message(self, classroom_id: str, message_data: Dict[str, Any]) -> Dict[str, Any]:
        message = {**message_data, "id": new_id("msg"), "classroomId": classroom_id}
        with self._batch() as data:
            data["messages"][message["id"]] = message
        return message

    def get_messages(self, classroom_id: str) -> List[Dict[str, Any]]:
        messages = [m for m in self._all("messages") if m.get("classroomId") == classroom_id]
        return sorted(messages, key=lambda m: m.get("timestamp") or "")

    # ==================== PROFILE CHANGE REQUEST OPERATIONS ====================

    def create_profile_change_request(self, request_data: Dict[str, Any]) -> str:
        request_id = new_id("pcr")
        with self._batch() as data:
            data["profile_change_requests"][request_id] = {**request_data, "id": request_id}
        return request_id

    def get_profile_change_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        return self._get("profile_change_requests", request_id)

    def get_profile_change_requests(self) -> List[Dict[str, Any]]:
        requests = self._all("profile_change_requests")
        return sorted(requests, key=lambda r: r.get("requestedAt") or "", reverse=True)

    def approve_profile_change_request(
        self, request_id: str, user_id: str, field_name: str, new_value: Any, admin_notes: str
    ) -> None:
        """Update the user's field and resolve the request in one commit"""
        with self._batch() as data:
            request = data["profile_change_requests"].get(request_id)
            if not request:
                raise ValueError(f"Profile change request {request_id} not found")
            if request.get("status") != "pending":
                raise ValueError("Profile change request has already been resolved")
            user = data["users"].get(user_id)
            if not user:
                raise ValueError(f"User {user_id} not found")
            if field_name == "email" and any(
                u.get("email") == new_value and uid != user_id for uid, u in data["users"].items()
            ):
                raise ValueError("Email is already in use by another account")

            now = utc_now_iso()
            user[field_name] = new_value
            user["updated_at"] = now
            request.update({"status": "approved", "resolvedAt": now, "adminNotes": admin_notes})

    def deny_profile_change_request(self, request_id: str, admin_notes: str) -> None:
        with self._batch() as data:
            request = data["profile_change_requests"].get(request_id)
            if not request:
                raise ValueError(f"Profile change request {request_id} not found")
            if request.get("status") != "pending":
                raise ValueError("Profile change request has already been resolved")
            request.update({"status": "denied", "resolvedAt": utc_now_iso(), "adminNotes": admin_notes})

    # ==================== DATABASE STATS ====================

    def get_database_stats(self) -> Dict[str, Any]:
        with self._lock:
            data = self._load()
        return {
            "database": "file",
            "users": len(data["users"]),
            "classrooms": len(data["classrooms"]),
            "lecture_attendance": len(data["lecture_attendance"]),
            "grades": len(data["grades"]),
            "messages": len(data["messages"]),
            "pending_profile_change_requests": sum(
                1 for r in data["profile_change_requests"].values() if r.get("status") == "pending"
            ),
        }
