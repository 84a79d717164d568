import logging
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError

from db_manager import new_id, utc_now_iso

logger = logging.getLogger(__name__)


class MongoDBManager:
    """Manages MongoDB database operations for the Campus ERP backend.

    Multi-document writes (attendance replace, change-request approval)
    run inside a client-session transaction, which requires a replica set
    or a sharded cluster (MongoDB Atlas is one).
    """

    def __init__(self, mongo_uri: str, db_name: str = "campus_erp"):
        """
        Initialize MongoDB connection

        Args:
            mongo_uri: MongoDB connection URI
            db_name: Name of the database to use
        """
        try:
            self.client = MongoClient(mongo_uri)
            self.db = self.client[db_name]

            # Collections
            self.users = self.db["users"]
            self.classrooms = self.db["classrooms"]
            self.lecture_attendance = self.db["lecture_attendance"]
            self.grades = self.db["grades"]
            self.messages = self.db["messages"]
            self.profile_change_requests = self.db["profile_change_requests"]

            self._create_indexes()

            logger.info("✅ MongoDB connection established successfully")
        except Exception as e:
            logger.error(f"❌ Failed to connect to MongoDB: {e}")
            raise

    def _create_indexes(self):
        """Create database indexes for efficient queries"""
        def _ensure_index(collection, keys, *, unique: bool = False):
            try:
                collection.create_index(keys, unique=unique)
            except Exception as create_err:
                # If uniqueness fails due to existing duplicates, don't crash the app.
                logger.warning(f"⚠️ Could not create index {keys} (unique={unique}): {create_err}")

        _ensure_index(self.users, [("id", ASCENDING)], unique=True)
        _ensure_index(self.users, [("email", ASCENDING)], unique=True)
        _ensure_index(self.users, [("role", ASCENDING)])

        _ensure_index(self.classrooms, [("id", ASCENDING)], unique=True)
        _ensure_index(self.classrooms, [("ownerFacultyId", ASCENDING)])
        _ensure_index(self.classrooms, [("invitedFacultyIds", ASCENDING)])
        _ensure_index(self.classrooms, [("students.userId", ASCENDING)])

        _ensure_index(self.lecture_attendance, [("classroomId", ASCENDING), ("date", ASCENDING)])
        _ensure_index(self.lecture_attendance, [("studentId", ASCENDING), ("date", DESCENDING)])

        _ensure_index(self.grades, [("id", ASCENDING)], unique=True)
        _ensure_index(self.grades, [("studentId", ASCENDING), ("updatedAt", DESCENDING)])

        _ensure_index(self.messages, [("classroomId", ASCENDING), ("timestamp", ASCENDING)])

        _ensure_index(self.profile_change_requests, [("id", ASCENDING)], unique=True)
        _ensure_index(self.profile_change_requests, [("requestedAt", DESCENDING)])

        logger.info("✅ MongoDB indexes ensured")

    # ==================== USER OPERATIONS ====================

    def create_user(self, user_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a new user (any role)"""
        user = {
            **user_data,
            "id": user_data.get("id") or new_id("user"),
            "created_at": utc_now_iso(),
        }
        try:
            self.users.insert_one(user)
            user.pop("_id", None)  # Remove MongoDB _id field
            return user
        except DuplicateKeyError:
            raise ValueError("User with this email already exists")

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Get user data by user_id"""
        return self.users.find_one({"id": user_id}, {"_id": 0})

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """Get user by email"""
        return self.users.find_one({"email": email}, {"_id": 0})

    def update_user(self, user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Update user data (shallow merge)"""
        updates = {**updates, "updated_at": utc_now_iso()}
        result = self.users.update_one({"id": user_id}, {"$set": updates})
        if result.matched_count == 0:
            raise ValueError(f"User {user_id} not found")
        return self.get_user(user_id)

    def get_users_by_role(self, role: str) -> List[Dict[str, Any]]:
        return list(self.users.find({"role": role}, {"_id": 0}))

    def get_all_users(self) -> List[Dict[str, Any]]:
        return list(self.users.find({}, {"_id": 0}))

    # ==================== CLASSROOM OPERATIONS ====================

    def create_classroom(self, classroom_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a new classroom"""
        classroom = {
            **classroom_data,
            "id": new_id("class"),
            "createdAt": utc_now_iso(),
        }
        self.classrooms.insert_one(classroom)
        classroom.pop("_id", None)
        logger.info(f"[CREATE_CLASSROOM] Classroom {classroom['id']} created")
        return classroom

    def get_classroom(self, classroom_id: str) -> Optional[Dict[str, Any]]:
        return self.classrooms.find_one({"id": classroom_id}, {"_id": 0})

    def get_classrooms_for_faculty(self, faculty_id: str) -> List[Dict[str, Any]]:
        """Owned and invited classrooms, newest first"""
        cursor = self.classrooms.find(
            {"$or": [{"ownerFacultyId": faculty_id}, {"invitedFacultyIds": faculty_id}]},
            {"_id": 0},
        ).sort("createdAt", DESCENDING)
        return list(cursor)

    def get_classrooms_for_student(self, student_id: str) -> List[Dict[str, Any]]:
        return list(self.classrooms.find({"students.userId": student_id}, {"_id": 0}))

    def update_classroom_students(self, classroom_id: str, students: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Replace the embedded student roster"""
        result = self.classrooms.update_one({"id": classroom_id}, {"$set": {"students": students}})
        if result.matched_count == 0:
            raise ValueError(f"Classroom {classroom_id} not found")
        return self.get_classroom(classroom_id)

    def add_student_to_classroom(self, classroom_id: str, student_entry: Dict[str, Any]) -> bool:
        """Array-union on the roster, keyed by userId. False if already enrolled."""
        result = self.classrooms.update_one(
            {"id": classroom_id, "students.userId": {"$ne": student_entry["userId"]}},
            {"$push": {"students": student_entry}},
        )
        if result.matched_count:
            return True
        if not self.get_classroom(classroom_id):
            raise ValueError(f"Classroom {classroom_id} not found")
        return False

    def add_invited_faculty(self, classroom_id: str, faculty_id: str) -> bool:
        result = self.classrooms.update_one(
            {"id": classroom_id},
            {"$addToSet": {"invitedFacultyIds": faculty_id}},
        )
        if result.matched_count == 0:
            raise ValueError(f"Classroom {classroom_id} not found")
        return result.modified_count > 0

    def delete_classroom(self, classroom_id: str) -> bool:
        """Delete a classroom and its chat messages. Attendance history is kept."""
        result = self.classrooms.delete_one({"id": classroom_id})
        if result.deleted_count == 0:
            return False
        self.messages.delete_many({"classroomId": classroom_id})
        return True

    # ==================== ATTENDANCE OPERATIONS ====================

    def get_lecture_attendance(self, classroom_id: str, date: str) -> List[Dict[str, Any]]:
        return list(self.lecture_attendance.find({"classroomId": classroom_id, "date": date}, {"_id": 0}))

    def get_lecture_attendance_range(self, classroom_id: str, start_date: str, end_date: str) -> List[Dict[str, Any]]:
        cursor = self.lecture_attendance.find(
            {"classroomId": classroom_id, "date": {"$gte": start_date, "$lte": end_date}},
            {"_id": 0},
        ).sort([("date", DESCENDING), ("submittedAt", DESCENDING)])
        return list(cursor)

    def get_student_attendance(self, student_id: str) -> List[Dict[str, Any]]:
        cursor = self.lecture_attendance.find(
            {"studentId": student_id},
            {"_id": 0},
        ).sort([("date", DESCENDING), ("submittedAt", DESCENDING)])
        return list(cursor)

    def replace_lecture_attendance(
        self, classroom_id: str, date: str, records: List[Dict[str, Any]]
    ) -> Dict[str, int]:
        """Delete every row for (classroom_id, date) and insert `records`, in one transaction"""
        submitted_at = utc_now_iso()
        docs = []
        for record in records:
            docs.append({**record, "id": new_id("att"), "submittedAt": submitted_at})

        key = {"classroomId": classroom_id, "date": date}
        with self.client.start_session() as session:
            with session.start_transaction():
                stale_ids = [
                    d["id"] for d in self.lecture_attendance.find(key, {"_id": 0, "id": 1}, session=session)
                ]
                if stale_ids:
                    logger.info(
                        f"[REPLACE_ATTENDANCE] Found {len(stale_ids)} existing records for "
                        f"classroom {classroom_id} on {date}. Deleting them."
                    )
                    self.lecture_attendance.delete_many({"id": {"$in": stale_ids}}, session=session)
                if docs:
                    self.lecture_attendance.insert_many(docs, session=session)

        return {"deleted": len(stale_ids), "inserted": len(docs)}

    # ==================== GRADE OPERATIONS ====================

    def upsert_grade(self, grade_id: str, grade_data: Dict[str, Any]) -> Dict[str, Any]:
        """Set-with-merge on a grade document"""
        self.grades.update_one(
            {"id": grade_id},
            {"$set": {**grade_data, "id": grade_id}},
            upsert=True,
        )
        return self.get_grade(grade_id)

    def get_grade(self, grade_id: str) -> Optional[Dict[str, Any]]:
        return self.grades.find_one({"id": grade_id}, {"_id": 0})

    def get_grades_for_student(self, student_id: str) -> List[Dict[str, Any]]:
        cursor = self.grades.find({"studentId": student_id}, {"_id": 0}).sort("updatedAt", DESCENDING)
        return list(cursor)

    def get_grades_for_students(self, student_ids: List[str]) -> List[Dict[str, Any]]:
        if not student_ids:
            return []
        return list(self.grades.find({"studentId": {"$in": list(student_ids)}}, {"_id": 0}))

    def get_unique_course_names(self) -> List[str]:
        return sorted(name for name in self.grades.distinct("courseName") if name)

    def delete_grade(self, grade_id: str) -> bool:
        return self.grades.delete_one({"id": grade_id}).deleted_count > 0

    # ==================== CHAT OPERATIONS ====================

    def add_message(self, classroom_id: str, message_data: Dict[str, Any]) -> Dict[str, Any]:
        message = {**message_data, "id": new_id("msg"), "classroomId": classroom_id}
        self.messages.insert_one(message)
        message.pop("_id", None)
        return message

    def get_messages(self, classroom_id: str) -> List[Dict[str, Any]]:
        cursor = self.messages.find({"classroomId": classroom_id}, {"_id": 0}).sort(
            [("timestamp", ASCENDING), ("_id", ASCENDING)]
        )
        return list(cursor)

    # ==================== PROFILE CHANGE REQUEST OPERATIONS ====================

    def create_profile_change_request(self, request_data: Dict[str, Any]) -> str:
        request_id = new_id("pcr")
        self.profile_change_requests.insert_one({**request_data, "id": request_id})
        return request_id

    def get_profile_change_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        return self.profile_change_requests.find_one({"id": request_id}, {"_id": 0})

    def get_profile_change_requests(self) -> List[Dict[str, Any]]:
        cursor = self.profile_change_requests.find({}, {"_id": 0}).sort("requestedAt", DESCENDING)
        return list(cursor)

    def approve_profile_change_request(
        self, request_id: str, user_id: str, field_name: str, new_value: Any, admin_notes: str
    ) -> None:
        """Update the user's field and resolve the request in one transaction"""
        now = utc_now_iso()
        with self.client.start_session() as session:
            with session.start_transaction():
                resolved = self.profile_change_requests.update_one(
                    {"id": request_id, "status": "pending"},
                    {"$set": {"status": "approved", "resolvedAt": now, "adminNotes": admin_notes}},
                    session=session,
                )
                if resolved.matched_count == 0:
                    raise ValueError("Profile change request has already been resolved")

                if field_name == "email" and self.users.find_one(
                    {"email": new_value, "id": {"$ne": user_id}}, {"_id": 0, "id": 1}, session=session
                ):
                    raise ValueError("Email is already in use by another account")

                try:
                    updated = self.users.update_one(
                        {"id": user_id},
                        {"$set": {field_name: new_value, "updated_at": now}},
                        session=session,
                    )
                except DuplicateKeyError:
                    raise ValueError("Email is already in use by another account")
                if updated.matched_count == 0:
                    raise ValueError(f"User {user_id} not found")

    def deny_profile_change_request(self, request_id: str, admin_notes: str) -> None:
        result = self.profile_change_requests.update_one(
            {"id": request_id, "status": "pending"},
            {"$set": {"status": "denied", "resolvedAt": utc_now_iso(), "adminNotes": admin_notes}},
        )
        if result.matched_count == 0:
            raise ValueError("Profile change request has already been resolved")

    # ==================== DATABASE STATS ====================

    def get_database_stats(self) -> Dict[str, Any]:
        """Get database statistics"""
        return {
            "database": "mongodb",
            "users": self.users.count_documents({}),
            "classrooms": self.classrooms.count_documents({}),
            "lecture_attendance": self.lecture_attendance.count_documents({}),
            "grades": self.grades.count_documents({}),
            "messages": self.messages.count_documents({}),
            "pending_profile_change_requests": self.profile_change_requests.count_documents({"status": "pending"}),
        }
