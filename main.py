import asyncio
import logging
import re
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter, ValidationError, field_validator
from starlette.middleware.base import BaseHTTPMiddleware

import config
from ai_flows import analyze_attendance, analyze_grades, draft_bulk_email
from csv_exporter import csv_response
from database import build_database, get_db
from db_manager import utc_now_iso
from email_service import EmailConfigurationError, EmailDeliveryError, ensure_email_configured, send_email
from permissions import (
    ensure_chat_member,
    ensure_classroom_access,
    ensure_classroom_owner,
    ensure_enrolled,
    ensure_student_access,
    require_role,
)
from schemas import (
    PROFILE_FIELDS,
    PROTECTED_PROFILE_FIELDS,
    AttendanceRecord,
    ChatMessage,
    Classroom,
    ClassmateInfo,
    FacultyUser,
    Grade,
    LectureAttendanceRecord,
    ProfileChangeRequest,
    Role,
    SendBulkEmailInput,
    SendBulkEmailOutput,
    StudentClassroomEnrollmentInfo,
    StudentProfile,
    StudentSearchResultItem,
)
from security import (
    create_user_token,
    ensure_bootstrap_admin,
    get_current_user,
    get_password_hash,
    verify_password,
)

config.configure_logging()
logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

GLOBAL_SEARCH = "__GLOBAL_SEARCH__"

EMAIL_ADAPTER = TypeAdapter(EmailStr)
ROLE_ADAPTER = TypeAdapter(Role)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # The storage adapter is built once per process; tests may pre-populate app.state.db.
    if getattr(app.state, "db", None) is None:
        try:
            app.state.db = build_database()
            app.state.db_error = None
        except Exception as e:
            logger.error(f"❌ Storage initialization failed: {e}")
            app.state.db = None
            app.state.db_error = str(e)
    if app.state.db is not None:
        ensure_bootstrap_admin(app.state.db)
    yield


app = FastAPI(title="Campus ERP API", version="1.0.0", lifespan=lifespan)

# CORS Configuration
cors_kwargs: Dict[str, Any] = {
    "allow_credentials": True,
    "allow_methods": ["*"],
    "allow_headers": ["*"],
}

if config.CORS_ORIGINS:
    # Strict allow-list
    cors_kwargs["allow_origins"] = config.CORS_ORIGINS
else:
    # Dev-friendly defaults (localhost + LAN IPs for phone/tablet testing)
    cors_kwargs["allow_origins"] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:9002",
        "http://127.0.0.1:9002",
    ]
    cors_kwargs["allow_origin_regex"] = r"https?://(localhost|127\.0\.0\.1|\d+\.\d+\.\d+\.\d+)(:\d+)?$"

app.add_middleware(CORSMiddleware, **cors_kwargs)

# ==================== MIDDLEWARE ====================


class TimeoutMiddleware(BaseHTTPMiddleware):
    """
    Middleware to enforce request timeouts
    Prevents requests from hanging indefinitely
    """

    def __init__(self, app, timeout: int = 30):
        super().__init__(app)
        self.timeout = timeout

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        try:
            response = await asyncio.wait_for(call_next(request), timeout=self.timeout)

            duration = time.time() - start_time
            if duration > 5:
                logger.warning(f"⚠️ Slow request: {request.method} {request.url.path} took {duration:.2f}s")
            return response

        except asyncio.TimeoutError:
            duration = time.time() - start_time
            logger.error(f"⏱️ Request timeout: {request.method} {request.url.path} after {duration:.2f}s")
            return JSONResponse(
                status_code=504,
                content={
                    "detail": f"Request timeout - operation took longer than {self.timeout} seconds",
                    "error": "GATEWAY_TIMEOUT",
                    "path": str(request.url.path),
                    "method": request.method,
                },
            )


app.add_middleware(TimeoutMiddleware, timeout=config.REQUEST_TIMEOUT_SECONDS)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log all requests with timing"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            logger.error(f"❌ {request.method} {request.url.path} - ERROR ({duration:.2f}s): {e}")
            raise

        duration = time.time() - start_time
        status_icon = "✅" if response.status_code < 400 else "❌"
        logger.info(f"{status_icon} {request.method} {request.url.path} - {response.status_code} ({duration:.2f}s)")
        response.headers["X-Process-Time"] = f"{duration:.4f}"
        return response


app.add_middleware(RequestLoggingMiddleware)

# ==================== PYDANTIC MODELS ====================


class SignupRequest(BaseModel):
    email: EmailStr
    password: str
    name: str = Field(min_length=1)
    role: str = "student"
    studentId: Optional[str] = None

    @field_validator("role")
    @classmethod
    def role_must_be_self_service(cls, v: str) -> str:
        if v not in ("student", "faculty"):
            raise ValueError("role must be 'student' or 'faculty'")
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    role: str
    studentId: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse


class CreateClassroomRequest(BaseModel):
    name: str = Field(min_length=1)
    subject: str = ""


class AddStudentRequest(BaseModel):
    studentUid: str


class UpdateBatchRequest(BaseModel):
    batch: str = ""


class InviteFacultyRequest(BaseModel):
    facultyUid: str


class LectureAttendanceSubmission(BaseModel):
    facultyId: str = ""
    facultyName: Optional[str] = None
    classroomId: str = ""
    classroomName: Optional[str] = None
    date: str = ""
    lectureName: str = ""
    studentId: str = ""
    studentName: Optional[str] = None
    studentIdNumber: Optional[str] = None
    status: str = ""
    batch: Optional[str] = None


class GradeUpdateRequest(BaseModel):
    studentId: str
    courseName: str
    grade: str
    maxMarks: Optional[float] = None


class StudentListRequest(BaseModel):
    studentUids: List[str] = Field(default_factory=list)


class SendMessageRequest(BaseModel):
    text: str = ""


class StudentProfileUpdate(StudentProfile):
    model_config = ConfigDict(extra="forbid")


class CreateProfileChangeRequest(BaseModel):
    fieldName: str
    oldValue: Any = None
    newValue: Any = None


class ApproveChangeRequest(BaseModel):
    adminNotes: Optional[str] = None


class DenyChangeRequest(BaseModel):
    adminNotes: str = ""


class DraftEmailRequest(BaseModel):
    topic: str = Field(min_length=1)
    audience: Optional[str] = None


# ==================== HELPERS ====================


def load_model(model: Type[M], doc: Dict[str, Any]) -> M:
    """Validate a stored document; malformed documents are a server error, not a default."""
    try:
        return model.model_validate(doc)
    except ValidationError as e:
        logger.error(f"❌ Malformed {model.__name__} document {doc.get('id')}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stored data is malformed. Please contact the administrator.",
        )


def public_user(user: Dict[str, Any]) -> UserResponse:
    return UserResponse(
        id=user["id"],
        email=user["email"],
        name=user["name"],
        role=user["role"],
        studentId=user.get("studentId"),
    )


def get_classroom_or_404(db, classroom_id: str) -> Dict[str, Any]:
    classroom = db.get_classroom(classroom_id)
    if not classroom:
        raise HTTPException(status_code=404, detail=f"Classroom with ID {classroom_id} not found.")
    return classroom


def get_student_or_404(db, student_id: str) -> Dict[str, Any]:
    student = db.get_user(student_id)
    if not student or student.get("role") != "student":
        raise HTTPException(status_code=404, detail="Student not found or user is not a student role.")
    return student


ISO_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")


def is_iso_date(value: str) -> bool:
    """Zero-padded YYYY-MM-DD naming a real calendar day. Dates are stored and compared as strings."""
    if not ISO_DATE_RE.fullmatch(value or ""):
        return False
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return False
    return True


def parse_date_param(value: str, name: str) -> str:
    if not is_iso_date(value):
        raise HTTPException(status_code=400, detail=f"Invalid {name}: expected YYYY-MM-DD")
    return value


def parse_date_range(start: str, end: str) -> Tuple[str, str]:
    parse_date_param(start, "start date")
    parse_date_param(end, "end date")
    if start > end:
        raise HTTPException(status_code=400, detail="Start date must not be after end date")
    return start, end


def derive_batch(student_id_number: Optional[str]) -> Optional[str]:
    """Batch from a BRANCH-BATCH-ROLL student ID such as 'ET-A-001'"""
    if not student_id_number:
        return None
    parts = student_id_number.split("-")
    if len(parts) == 3 and parts[1].strip():
        return parts[1].strip().upper()
    return None


def grade_doc_id(student_id: str, course_name: str) -> str:
    """One grade per student per course: '<studentId>_<course-name>'"""
    course_key = re.sub(r"\s+", "-", course_name.strip())
    return f"{student_id}_{course_key}"


def validate_attendance_submission(records: List[Dict[str, Any]]) -> Optional[Tuple[str, str]]:
    """
    Check a submission before anything touches storage.

    Returns the shared (classroomId, date) key, or None for an empty
    submission. Raises ValueError describing the first problem found.
    """
    if not records:
        return None

    required = ("facultyId", "classroomId", "studentId", "lectureName", "date")
    key = (records[0].get("classroomId"), records[0].get("date"))
    seen_students = set()

    for record in records:
        if any(not (record.get(field) or "").strip() for field in required):
            raise ValueError(
                "Faculty ID, Classroom ID, Student ID, Lecture Name, and Date are required for each attendance record."
            )
        if (record["classroomId"], record["date"]) != key:
            raise ValueError("All attendance records in one submission must share the same classroom and date.")
        if record.get("status") not in ("present", "absent"):
            raise ValueError(f"Invalid status '{record.get('status')}': must be 'present' or 'absent'.")
        if record["studentId"] in seen_students:
            raise ValueError(f"Student {record['studentId']} appears more than once in the submission.")
        seen_students.add(record["studentId"])

    if not is_iso_date(key[1]):
        raise ValueError(f"Invalid date '{key[1]}': expected YYYY-MM-DD.")
    return key


def build_student_profile(user: Dict[str, Any]) -> StudentProfile:
    doc = {field: user.get(field) for field in PROFILE_FIELDS if user.get(field) is not None}
    doc["studentId"] = user.get("studentId") or user["id"]
    doc["enrollmentNumber"] = user.get("enrollmentNumber") or user.get("studentId") or user["id"]
    doc["courseProgram"] = user.get("courseProgram") or user.get("major")
    return load_model(StudentProfile, doc)


# ==================== API ENDPOINTS ====================


@app.get("/")
def read_root():
    return {
        "message": "Campus ERP API",
        "version": "1.0.0",
        "status": "online",
        "database": config.DB_TYPE,
    }


@app.get("/stats")
async def get_stats(user: dict = Depends(get_current_user), db=Depends(get_db)):
    """Get database statistics"""
    require_role(user, "admin")
    return db.get_database_stats()


# ==================== AUTH ENDPOINTS ====================


@app.post("/auth/signup", response_model=TokenResponse)
async def signup(request: SignupRequest, db=Depends(get_db)):
    """Sign up a student or faculty account. Admin accounts are provisioned, not self-registered."""
    email = request.email.lower()
    if db.get_user_by_email(email):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User with this email already exists")

    if len(request.password) < 8:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Password must be at least 8 characters long",
        )

    user_data = {
        "email": email,
        "name": request.name.strip(),
        "role": request.role,
        "password": get_password_hash(request.password),
    }
    if request.role == "student" and request.studentId and request.studentId.strip():
        user_data["studentId"] = request.studentId.strip()

    try:
        user = db.create_user(user_data)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info(f"✅ SIGNUP: {email} ({request.role})")
    return TokenResponse(access_token=create_user_token(user), user=public_user(user))


@app.post("/auth/login", response_model=TokenResponse)
async def login(request: LoginRequest, db=Depends(get_db)):
    user = db.get_user_by_email(request.email.lower())
    if not user or not verify_password(request.password, user.get("password", "")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    logger.info(f"✅ LOGIN: {user['email']} ({user['role']})")
    return TokenResponse(access_token=create_user_token(user), user=public_user(user))


@app.get("/auth/me", response_model=UserResponse)
async def get_me(user: dict = Depends(get_current_user)):
    return public_user(user)


# ==================== CLASSROOM ENDPOINTS ====================


@app.post("/classrooms")
async def create_classroom(request: CreateClassroomRequest, user: dict = Depends(get_current_user), db=Depends(get_db)):
    """Create a classroom owned by the calling faculty member"""
    require_role(user, "faculty")
    classroom = db.create_classroom({
        "name": request.name.strip(),
        "subject": request.subject.strip(),
        "ownerFacultyId": user["id"],
        "invitedFacultyIds": [],
        "students": [],
    })
    return {"success": True, "classroomId": classroom["id"], "classroom": load_model(Classroom, classroom)}


@app.get("/classrooms")
async def get_classrooms(user: dict = Depends(get_current_user), db=Depends(get_db)):
    """Classrooms the caller owns or was invited to, newest first"""
    require_role(user, "faculty")
    classrooms = db.get_classrooms_for_faculty(user["id"])
    return {"classrooms": [load_model(Classroom, c) for c in classrooms]}


@app.get("/faculty")
async def get_all_faculty_users(user: dict = Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "faculty", "admin")
    faculty = [
        FacultyUser(uid=f["id"], name=f.get("name") or "Unknown Faculty", email=f.get("email") or "No email")
        for f in db.get_users_by_role("faculty")
    ]
    return {"faculty": faculty}


@app.get("/classrooms/{classroom_id}/students")
async def get_students_in_classroom(classroom_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    classroom = get_classroom_or_404(db, classroom_id)
    ensure_classroom_access(user, classroom)
    return {"students": load_model(Classroom, classroom).students}


@app.get("/classrooms/{classroom_id}/students/search")
async def search_students(
    classroom_id: str,
    q: str = "",
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    """
    Search student accounts by name, email or student ID.

    Within a classroom, students already on the roster are left out. The
    special classroom id __GLOBAL_SEARCH__ searches every student.
    """
    require_role(user, "faculty", "admin")
    already_enrolled = set()
    if classroom_id != GLOBAL_SEARCH:
        classroom = get_classroom_or_404(db, classroom_id)
        ensure_classroom_access(user, classroom)
        already_enrolled = {s.get("userId") for s in classroom.get("students") or []}

    term = q.strip().lower()
    results = []
    for student in db.get_users_by_role("student"):
        if student["id"] in already_enrolled:
            continue
        haystack = (student.get("name"), student.get("email"), student.get("studentId"))
        if any(value and term in value.lower() for value in haystack):
            results.append(StudentSearchResultItem(
                uid=student["id"],
                name=student.get("name") or "N/A",
                studentId=student.get("studentId") or "N/A",
                email=student.get("email") or "N/A",
            ))
    return {"results": results}


@app.post("/classrooms/{classroom_id}/students")
async def add_student_to_classroom(
    classroom_id: str,
    request: AddStudentRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    classroom = get_classroom_or_404(db, classroom_id)
    ensure_classroom_access(user, classroom)

    student = db.get_user(request.studentUid)
    if not student or student.get("role") != "student":
        raise HTTPException(status_code=404, detail="Student not found or user is not a student role.")

    entry = {
        "userId": student["id"],
        "studentIdNumber": student.get("studentId") or "N/A",
        "name": student.get("name") or "N/A",
        "email": student.get("email") or "N/A",
    }
    batch = derive_batch(student.get("studentId"))
    if batch:
        entry["batch"] = batch

    added = db.add_student_to_classroom(classroom_id, entry)
    if added:
        logger.info(f"[ADD_STUDENT] {student['id']} added to classroom {classroom_id} (batch={batch})")
    return {"success": True, "added": added, "student": entry}


@app.delete("/classrooms/{classroom_id}/students/{student_uid}")
async def remove_student_from_classroom(
    classroom_id: str,
    student_uid: str,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    classroom = get_classroom_or_404(db, classroom_id)
    ensure_classroom_access(user, classroom)

    students = classroom.get("students") or []
    remaining = [s for s in students if s.get("userId") != student_uid]
    db.update_classroom_students(classroom_id, remaining)
    return {"success": True, "removed": len(remaining) != len(students)}


@app.put("/classrooms/{classroom_id}/students/{student_uid}/batch")
async def update_student_batch(
    classroom_id: str,
    student_uid: str,
    request: UpdateBatchRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    """Set a student's batch within one classroom; an empty batch clears it"""
    classroom = get_classroom_or_404(db, classroom_id)
    ensure_classroom_access(user, classroom)

    students = [dict(s) for s in classroom.get("students") or []]
    index = next((i for i, s in enumerate(students) if s.get("userId") == student_uid), None)
    if index is None:
        raise HTTPException(status_code=404, detail="Student not found in this classroom roster.")

    new_batch = request.batch.strip()
    if new_batch:
        students[index]["batch"] = new_batch
    else:
        students[index].pop("batch", None)

    db.update_classroom_students(classroom_id, students)
    logger.info(f"[UPDATE_BATCH] Batch for student {student_uid} in classroom {classroom_id} updated to '{new_batch}'")
    return {"success": True, "student": students[index]}


@app.post("/classrooms/{classroom_id}/invite")
async def invite_faculty(
    classroom_id: str,
    request: InviteFacultyRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    classroom = get_classroom_or_404(db, classroom_id)
    ensure_classroom_owner(user, classroom, detail="Only the classroom owner can invite other faculty.")

    if request.facultyUid == classroom["ownerFacultyId"]:
        raise HTTPException(status_code=400, detail="Owner cannot invite themselves.")
    if request.facultyUid in (classroom.get("invitedFacultyIds") or []):
        return {"success": True, "invited": False}

    invitee = db.get_user(request.facultyUid)
    if not invitee or invitee.get("role") != "faculty":
        raise HTTPException(status_code=404, detail="Faculty member to invite not found or is not a faculty.")

    invited = db.add_invited_faculty(classroom_id, request.facultyUid)
    return {"success": True, "invited": invited}


@app.delete("/classrooms/{classroom_id}")
async def delete_classroom(classroom_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    classroom = get_classroom_or_404(db, classroom_id)
    ensure_classroom_owner(user, classroom)

    if not db.delete_classroom(classroom_id):
        raise HTTPException(status_code=404, detail=f"Classroom with ID {classroom_id} not found.")
    return {"success": True, "message": "Classroom deleted successfully"}


@app.get("/student/classrooms")
async def get_student_classrooms(user: dict = Depends(get_current_user), db=Depends(get_db)):
    """Classrooms the calling student is enrolled in, with their batch in each"""
    require_role(user, "student")
    enrolled = []
    for classroom in db.get_classrooms_for_student(user["id"]):
        entry = next(s for s in classroom.get("students") or [] if s.get("userId") == user["id"])
        enrolled.append(StudentClassroomEnrollmentInfo(
            classroomId=classroom["id"],
            classroomName=classroom.get("name", ""),
            classroomSubject=classroom.get("subject", ""),
            studentBatchInClassroom=entry.get("batch"),
        ))
    return {"classrooms": enrolled}


@app.get("/classrooms/{classroom_id}/classmates")
async def get_classmates(classroom_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    classroom = get_classroom_or_404(db, classroom_id)
    ensure_enrolled(user, classroom)

    roster = load_model(Classroom, classroom).students
    classmates = [
        ClassmateInfo(userId=s.userId, name=s.name, studentIdNumber=s.studentIdNumber, batch=s.batch)
        for s in roster
        if s.userId != user["id"]
    ]
    return {"classmates": classmates}


# ==================== CHAT ENDPOINTS ====================


@app.post("/classrooms/{classroom_id}/messages")
async def send_message(
    classroom_id: str,
    request: SendMessageRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    text = request.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Message text cannot be empty.")

    classroom = get_classroom_or_404(db, classroom_id)
    ensure_chat_member(user, classroom)

    claims = user.get("_claims") or {}
    sender_name = user.get("name") or claims.get("name") or claims.get("email") or "Anonymous"
    try:
        message = db.add_message(classroom_id, {
            "senderId": user["id"],
            "senderName": sender_name,
            "text": text,
            "timestamp": utc_now_iso(),
        })
    except Exception as e:
        logger.error(f"[SEND_MESSAGE] ❌ Error sending message to classroom {classroom_id}: {e}")
        raise HTTPException(status_code=500, detail="Could not send message. Please try again.")
    return {"success": True, "message": load_model(ChatMessage, message)}


@app.get("/classrooms/{classroom_id}/messages")
async def get_messages(classroom_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    classroom = get_classroom_or_404(db, classroom_id)
    ensure_chat_member(user, classroom)
    return {"messages": [load_model(ChatMessage, m) for m in db.get_messages(classroom_id)]}


# ==================== ATTENDANCE ENDPOINTS ====================


@app.get("/attendance/me")
async def get_my_attendance(user: dict = Depends(get_current_user), db=Depends(get_db)):
    """The calling student's attendance, newest date first"""
    require_role(user, "student")
    records = [
        load_model(AttendanceRecord, {
            "date": r.get("date"),
            "status": r.get("status"),
            "lectureName": r.get("lectureName"),
            "classroomName": r.get("classroomName"),
            "facultyName": r.get("facultyName"),
        })
        for r in db.get_student_attendance(user["id"])
    ]
    return {"records": records}


@app.get("/attendance/student/{student_id}")
async def get_attendance_for_student(student_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    """One student's attendance across all classrooms, for faculty who teach them"""
    require_role(user, "faculty", "admin")
    get_student_or_404(db, student_id)
    ensure_student_access(user, db.get_classrooms_for_student(student_id))
    records = db.get_student_attendance(student_id)
    return {"records": [load_model(LectureAttendanceRecord, r) for r in records]}


@app.post("/attendance/submit")
async def submit_lecture_attendance(
    submission: List[LectureAttendanceSubmission],
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    """
    Submit a whole day's lecture attendance for one classroom.

    Every stored row for the (classroomId, date) key is replaced by the
    submitted rows in a single atomic batch. An empty submission leaves
    existing rows untouched.
    """
    require_role(user, "faculty", "admin")
    records = [r.model_dump() for r in submission]
    try:
        key = validate_attendance_submission(records)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if key is None:
        logger.warning("[SUBMIT_ATTENDANCE] Called with an empty records array. No action taken.")
        return {"success": True, "deleted": 0, "inserted": 0, "message": "No attendance records submitted."}

    classroom_id, date = key
    classroom = get_classroom_or_404(db, classroom_id)
    ensure_classroom_access(user, classroom)

    for record in records:
        record["facultyId"] = user["id"]
        record["facultyName"] = user.get("name") or record.get("facultyName")

    try:
        result = db.replace_lecture_attendance(classroom_id, date, records)
    except Exception as e:
        logger.error(f"[SUBMIT_ATTENDANCE] ❌ Error committing attendance batch for {classroom_id} on {date}: {e}")
        raise HTTPException(status_code=500, detail="Failed to submit attendance. No changes were saved.")

    logger.info(
        f"[SUBMIT_ATTENDANCE] ✅ {result['inserted']} records committed for classroom {classroom_id} on {date} "
        f"({result['deleted']} replaced)"
    )
    return {
        "success": True,
        "deleted": result["deleted"],
        "inserted": result["inserted"],
        "message": f"Attendance saved for {date}.",
    }


@app.get("/attendance/{classroom_id}")
async def get_lecture_attendance_for_date(
    classroom_id: str,
    date: str = Query(...),
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    parse_date_param(date, "date")
    classroom = get_classroom_or_404(db, classroom_id)
    ensure_classroom_access(user, classroom)
    records = db.get_lecture_attendance(classroom_id, date)
    return {"records": [load_model(LectureAttendanceRecord, r) for r in records]}


@app.get("/attendance/{classroom_id}/range")
async def get_lecture_attendance_for_range(
    classroom_id: str,
    start: str = Query(...),
    end: str = Query(...),
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    parse_date_range(start, end)
    classroom = get_classroom_or_404(db, classroom_id)
    ensure_classroom_access(user, classroom)
    records = db.get_lecture_attendance_range(classroom_id, start, end)
    return {"records": [load_model(LectureAttendanceRecord, r) for r in records]}


@app.post("/attendance/{classroom_id}/analysis")
def analyze_classroom_attendance(
    classroom_id: str,
    start: str = Query(...),
    end: str = Query(...),
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    parse_date_range(start, end)
    classroom = get_classroom_or_404(db, classroom_id)
    ensure_classroom_access(user, classroom)
    records = db.get_lecture_attendance_range(classroom_id, start, end)
    return {"analysis": analyze_attendance(records)}


@app.get("/attendance/{classroom_id}/export.csv")
async def export_attendance_csv(
    classroom_id: str,
    start: str = Query(...),
    end: str = Query(...),
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    parse_date_range(start, end)
    classroom = get_classroom_or_404(db, classroom_id)
    ensure_classroom_access(user, classroom)

    rows = [
        {
            "Date": r.get("date"),
            "Lecture": r.get("lectureName"),
            "Student ID": r.get("studentIdNumber"),
            "Student Name": r.get("studentName"),
            "Batch": r.get("batch"),
            "Status": r.get("status"),
            "Faculty": r.get("facultyName"),
        }
        for r in db.get_lecture_attendance_range(classroom_id, start, end)
    ]
    return csv_response(rows, f"attendance_{classroom_id}_{start}_{end}.csv")


# ==================== GRADE ENDPOINTS ====================


@app.get("/grades/me")
async def get_my_grades(user: dict = Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "student")
    return {"grades": [load_model(Grade, g) for g in db.get_grades_for_student(user["id"])]}


@app.get("/grades/courses")
async def get_unique_course_names(user: dict = Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "faculty", "admin")
    return {"courses": db.get_unique_course_names()}


@app.get("/grades/student/{student_id}")
async def get_grades_for_student(student_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "faculty", "admin")
    return {"grades": [load_model(Grade, g) for g in db.get_grades_for_student(student_id)]}


@app.post("/grades/classroom")
async def get_grades_for_classroom(
    request: StudentListRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    require_role(user, "faculty", "admin")
    if not request.studentUids:
        return {"grades": []}
    return {"grades": [load_model(Grade, g) for g in db.get_grades_for_students(request.studentUids)]}


@app.put("/grades")
async def update_student_grade(request: GradeUpdateRequest, user: dict = Depends(get_current_user), db=Depends(get_db)):
    """Create or update the grade for one (student, course) pair"""
    require_role(user, "faculty", "admin")
    if not request.studentId.strip() or not request.courseName.strip() or not request.grade.strip():
        raise HTTPException(status_code=400, detail="Student ID, course name and grade are required.")

    student = db.get_user(request.studentId)
    if not student or student.get("role") != "student":
        raise HTTPException(status_code=404, detail="Student not found or user is not a student role.")

    grade_id = grade_doc_id(request.studentId, request.courseName)
    try:
        grade = db.upsert_grade(grade_id, {
            "studentId": request.studentId,
            "courseName": request.courseName.strip(),
            "grade": request.grade.strip(),
            "maxMarks": request.maxMarks,
            "facultyId": user["id"],
            "updatedAt": utc_now_iso(),
        })
    except Exception as e:
        logger.error(f"[UPDATE_GRADE] ❌ Error updating grade {grade_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to save the grade.")
    return {"success": True, "grade": load_model(Grade, grade)}


@app.delete("/grades/{grade_id}")
async def delete_student_grade(grade_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "faculty", "admin")
    if not db.delete_grade(grade_id):
        raise HTTPException(status_code=404, detail="Grade not found")
    return {"success": True}


@app.post("/grades/me/analysis")
def analyze_my_grades(user: dict = Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "student")
    return {"analysis": analyze_grades(db.get_grades_for_student(user["id"]))}


@app.post("/grades/student/{student_id}/analysis")
def analyze_student_grades(student_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "faculty", "admin")
    return {"analysis": analyze_grades(db.get_grades_for_student(student_id))}


@app.post("/grades/classroom/export.csv")
async def export_classroom_grades_csv(
    request: StudentListRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    require_role(user, "faculty", "admin")
    names = {}
    rows = []
    for g in db.get_grades_for_students(request.studentUids):
        if g["studentId"] not in names:
            student = db.get_user(g["studentId"]) or {}
            names[g["studentId"]] = (student.get("name"), student.get("studentId"))
        name, number = names[g["studentId"]]
        rows.append({
            "Student ID": number,
            "Student Name": name,
            "Course": g.get("courseName"),
            "Grade": g.get("grade"),
            "Max Marks": g.get("maxMarks"),
            "Updated At": g.get("updatedAt"),
        })
    return csv_response(rows, "classroom_grades.csv")


# ==================== PROFILE ENDPOINTS ====================


@app.get("/profile")
async def get_profile(user: dict = Depends(get_current_user)):
    return {"profile": build_student_profile(user)}


@app.get("/students/{student_id}/profile")
async def get_student_profile(student_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "faculty", "admin")
    student = get_student_or_404(db, student_id)
    ensure_student_access(user, db.get_classrooms_for_student(student_id))
    return {"profile": build_student_profile(student)}


@app.patch("/profile")
async def update_profile(request: StudentProfileUpdate, user: dict = Depends(get_current_user), db=Depends(get_db)):
    """Self-service profile update. Protected fields go through change requests instead."""
    updates = {k: v for k, v in request.model_dump(exclude_unset=True).items() if k not in PROTECTED_PROFILE_FIELDS}
    if not updates:
        raise HTTPException(status_code=400, detail="No editable profile fields provided.")

    try:
        updated = db.update_user(user["id"], updates)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    logger.info(f"[UPDATE_PROFILE] Profile updated for {user['id']}: {sorted(updates)}")
    return {"success": True, "profile": build_student_profile(updated)}


def normalize_change_value(db, user: Dict[str, Any], field_name: str, value: Any) -> Any:
    """
    Validate a requested profile value and return it in stored form.

    Emails are lower-cased and must not belong to another account; roles
    must be a known role. Everything else is checked against the profile model.
    """
    try:
        if field_name == "email":
            value = EMAIL_ADAPTER.validate_python(value).lower()
        elif field_name == "role":
            value = ROLE_ADAPTER.validate_python(value)
        else:
            StudentProfile.model_validate({field_name: value})
    except ValidationError:
        raise HTTPException(status_code=400, detail=f"Invalid value for profile field '{field_name}'.")

    if field_name == "email":
        owner = db.get_user_by_email(value)
        if owner and owner["id"] != user["id"]:
            raise HTTPException(status_code=409, detail="Email is already in use by another account.")
    return value


@app.post("/profile/change-requests")
async def create_profile_change_request(
    request: CreateProfileChangeRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    if request.fieldName not in PROFILE_FIELDS:
        raise HTTPException(status_code=400, detail=f"Unknown profile field '{request.fieldName}'.")
    new_value = normalize_change_value(db, user, request.fieldName, request.newValue)

    claims = user.get("_claims") or {}
    request_id = db.create_profile_change_request({
        "userId": user["id"],
        "userName": user.get("name") or "User (name field missing in DB)",
        "userEmail": user.get("email") or claims.get("email") or "N/A",
        "fieldName": request.fieldName,
        "oldValue": request.oldValue,
        "newValue": new_value,
        "requestedAt": utc_now_iso(),
        "status": "pending",
    })
    logger.info(f"[PROFILE_CHANGE_REQUEST] {request_id} created by {user['id']} for field {request.fieldName}")
    return {"success": True, "requestId": request_id}


@app.get("/admin/profile-change-requests")
async def get_profile_change_requests(user: dict = Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "admin")
    return {"requests": [load_model(ProfileChangeRequest, r) for r in db.get_profile_change_requests()]}


def get_pending_request_or_error(db, request_id: str) -> Dict[str, Any]:
    change_request = db.get_profile_change_request(request_id)
    if not change_request:
        raise HTTPException(status_code=404, detail="Profile change request not found")
    if change_request.get("status") != "pending":
        raise HTTPException(status_code=409, detail="Profile change request has already been resolved")
    return change_request


@app.post("/admin/profile-change-requests/{request_id}/approve")
async def approve_profile_change_request(
    request_id: str,
    request: ApproveChangeRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    """Apply the requested field change to the user and mark the request approved, atomically"""
    require_role(user, "admin")
    change_request = get_pending_request_or_error(db, request_id)

    notes = (request.adminNotes or "").strip() or f"Approved by admin ({user['email']})."
    try:
        db.approve_profile_change_request(
            request_id,
            change_request["userId"],
            change_request["fieldName"],
            change_request.get("newValue"),
            notes,
        )
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

    logger.info(
        f"[APPROVE_CHANGE_REQUEST] {request_id} approved. User {change_request['userId']} "
        f"field {change_request['fieldName']} updated."
    )
    return {"success": True}


@app.post("/admin/profile-change-requests/{request_id}/deny")
async def deny_profile_change_request(
    request_id: str,
    request: DenyChangeRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    require_role(user, "admin")
    notes = request.adminNotes.strip()
    if not notes:
        raise HTTPException(status_code=400, detail="Admin notes are required for denying a request.")
    get_pending_request_or_error(db, request_id)

    try:
        db.deny_profile_change_request(request_id, notes)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    logger.info(f"[DENY_CHANGE_REQUEST] {request_id} denied by admin ({user['email']})")
    return {"success": True}


# ==================== ADMIN / NOTIFICATION ENDPOINTS ====================


@app.get("/admin/users")
async def get_all_users(user: dict = Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "admin")
    users = [
        {"uid": u["id"], "name": u.get("name"), "email": u.get("email"), "role": u.get("role")}
        for u in db.get_all_users()
    ]
    return {"users": users}


@app.post("/admin/notifications/email", response_model=SendBulkEmailOutput)
def send_bulk_email(request: SendBulkEmailInput, user: dict = Depends(get_current_user)):
    """Send one announcement email to many recipients (Bcc)"""
    require_role(user, "admin")
    logger.info(f"[BULK_EMAIL] Request to send '{request.subject}' to {len(request.recipients)} recipients")

    try:
        ensure_email_configured()
    except EmailConfigurationError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Email service is not configured on the server. Please contact the administrator.",
        )

    recipients = [str(r) for r in request.recipients]
    try:
        send_email(recipients, request.subject, request.body, bcc=True)
    except EmailDeliveryError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return SendBulkEmailOutput(
        success=True,
        message=f"Successfully dispatched emails to {len(recipients)} recipients.",
        sentCount=len(recipients),
    )


@app.post("/admin/notifications/draft")
def draft_notification_email(request: DraftEmailRequest, user: dict = Depends(get_current_user)):
    require_role(user, "admin")
    return {"draft": draft_bulk_email(request.topic, request.audience)}
