"""
Database Schemas for the Campus ERP backend

Each Pydantic model below describes a stored document (or an API-facing
projection of one). Documents read back from storage are validated against
these models, so a malformed document fails loudly instead of being
patched with placeholder values.
"""

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

Role = Literal["admin", "faculty", "student"]
AttendanceStatus = Literal["present", "absent"]
RequestStatus = Literal["pending", "approved", "denied"]


# ==================== USERS ====================

class UserRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    email: str
    name: str
    role: Role
    studentId: Optional[str] = None
    created_at: Optional[str] = None


class FacultyUser(BaseModel):
    uid: str
    name: str
    email: str


class StudentProfile(BaseModel):
    """Student profile as shown on the profile page. Unset fields are None."""

    studentId: Optional[str] = None
    name: Optional[str] = None

    # Personal information
    profilePhotoUrl: Optional[str] = None
    dateOfBirth: Optional[str] = None
    gender: Optional[str] = None
    contactNumber: Optional[str] = None
    email: Optional[str] = None
    permanentAddress: Optional[str] = None
    currentAddress: Optional[str] = None
    bloodGroup: Optional[str] = None
    emergencyContactName: Optional[str] = None
    emergencyContactNumber: Optional[str] = None

    # Academic details
    enrollmentNumber: Optional[str] = None
    courseProgram: Optional[str] = None
    department: Optional[str] = None
    currentYear: Optional[int] = None
    currentSemester: Optional[int] = None
    academicAdvisorName: Optional[str] = None
    sectionOrBatch: Optional[str] = None
    admissionDate: Optional[str] = None
    modeOfAdmission: Optional[str] = None

    # Documents
    idCardUrl: Optional[str] = None
    admissionLetterUrl: Optional[str] = None
    marksheet10thUrl: Optional[str] = None
    marksheet12thUrl: Optional[str] = None
    migrationCertificateUrl: Optional[str] = None
    bonafideCertificateUrl: Optional[str] = None
    uploadedPhotoUrl: Optional[str] = None
    uploadedSignatureUrl: Optional[str] = None

    # Exam details
    examRegistrationStatus: Optional[str] = None
    admitCardUrl: Optional[str] = None
    internalExamTimetableUrl: Optional[str] = None
    externalExamTimetableUrl: Optional[str] = None
    resultsAndGradeCardsUrl: Optional[str] = None
    revaluationRequestStatus: Optional[str] = None
    revaluationRequestLink: Optional[str] = None

    role: Optional[str] = None
    parentEmail: Optional[str] = None


PROFILE_FIELDS = set(StudentProfile.model_fields)
PROTECTED_PROFILE_FIELDS = {"role", "email", "name", "studentId"}


# ==================== CLASSROOMS ====================

class ClassroomStudentInfo(BaseModel):
    userId: str
    studentIdNumber: str
    name: str
    email: Optional[str] = None
    batch: Optional[str] = None


class Classroom(BaseModel):
    id: str
    name: str
    subject: str
    ownerFacultyId: str
    invitedFacultyIds: List[str] = Field(default_factory=list)
    students: List[ClassroomStudentInfo] = Field(default_factory=list)
    createdAt: Optional[str] = None


class StudentSearchResultItem(BaseModel):
    uid: str
    name: str
    studentId: str
    email: str


class StudentClassroomEnrollmentInfo(BaseModel):
    classroomId: str
    classroomName: str
    classroomSubject: str
    studentBatchInClassroom: Optional[str] = None


class ClassmateInfo(BaseModel):
    userId: str
    name: str
    studentIdNumber: str
    batch: Optional[str] = None


# ==================== ATTENDANCE ====================

class LectureAttendanceRecord(BaseModel):
    id: Optional[str] = None
    classroomId: str
    classroomName: Optional[str] = None
    facultyId: str
    facultyName: Optional[str] = None
    date: str
    lectureName: str
    studentId: str
    studentName: Optional[str] = None
    studentIdNumber: Optional[str] = None
    status: AttendanceStatus
    batch: Optional[str] = None
    submittedAt: Optional[str] = None


class AttendanceRecord(BaseModel):
    """A student's own view of one attendance row."""

    date: str
    status: AttendanceStatus
    lectureName: Optional[str] = None
    classroomName: Optional[str] = None
    facultyName: Optional[str] = None


# ==================== GRADES ====================

class Grade(BaseModel):
    id: Optional[str] = None
    studentId: str
    courseName: str
    grade: str
    maxMarks: Optional[float] = None
    facultyId: str
    updatedAt: str


# ==================== CHAT ====================

class ChatMessage(BaseModel):
    id: Optional[str] = None
    classroomId: str
    senderId: str
    senderName: str
    text: str
    timestamp: str


# ==================== PROFILE CHANGE REQUESTS ====================

class ProfileChangeRequest(BaseModel):
    id: str
    userId: str
    userName: str = "Unknown User"
    userEmail: str = "N/A"
    fieldName: str
    oldValue: Any = None
    newValue: Any = None
    requestedAt: str
    status: RequestStatus = "pending"
    adminNotes: str = ""
    resolvedAt: Optional[str] = None


# ==================== AI ANALYSIS ====================

class GradeAnalysisInputItem(BaseModel):
    courseName: str
    grade: str


class GradeAnalysisOutput(BaseModel):
    overallSummary: str = Field(description="A brief, encouraging overall summary of the student's performance based on the grades.")
    strengths: List[str] = Field(description="A list of subjects or areas where the student is performing well.")
    areasForImprovement: List[str] = Field(description="A list of subjects or areas where the student could focus on improving.")


class AttendanceAnalysisInputItem(BaseModel):
    date: str
    studentName: str
    status: AttendanceStatus


class AttendanceAnalysisOutput(BaseModel):
    overallSummary: str = Field(description="A brief, encouraging overall summary of the classroom's attendance for the period.")
    keyObservations: List[str] = Field(description="Specific, data-driven observations about attendance patterns.")
    actionableSuggestions: List[str] = Field(description="Concrete, supportive suggestions for the faculty to act upon.")


class EmailDraftOutput(BaseModel):
    subject: str = Field(description="The subject line of the email.")
    body: str = Field(description="The HTML body of the email.")


# ==================== NOTIFICATIONS ====================

class SendBulkEmailInput(BaseModel):
    subject: str = Field(min_length=1)
    body: str = Field(min_length=1)
    recipients: List[EmailStr] = Field(min_length=1)


class SendBulkEmailOutput(BaseModel):
    success: bool
    message: str
    sentCount: int
