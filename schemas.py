"""
Request and response models for the School Management API.

Stored documents are plain dicts in MongoDB (collection name is the lowercase
entity name: school, admin, teacher, student, class, subject, exam, mark,
attendance); the models below describe what clients send and what the token
endpoints return.
"""

from datetime import date
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, StringConstraints, field_validator

AttendanceStatus = Literal["present", "absent", "late"]

# whitespace is stripped before the length check, so "   " is rejected
Text = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class Token(BaseModel):
    token: str
    token_type: str = "bearer"
    role: str
    user_id: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


# ----------------------- Registration -----------------------
class AdminRegister(BaseModel):
    name: Text
    email: EmailStr
    password: str = Field(min_length=6)
    school_name: Text
    school_code: Text


class TeacherRegister(BaseModel):
    name: Text
    email: EmailStr
    password: str = Field(min_length=6)
    unique_code: Text
    school_code: Text
    phone: Optional[str] = None


class StudentRegister(BaseModel):
    name: Text
    email: EmailStr
    password: str = Field(min_length=6)
    school_code: Text
    class_name: Text
    section: str = ""
    phone: Optional[str] = None
    student_number: Optional[str] = None


class StudentAccountIn(BaseModel):
    name: Text
    email: EmailStr
    password: str = Field(min_length=6)
    school_code: Text
    class_name: Text
    section: Text
    phone: Text


class TeacherAccountIn(BaseModel):
    name: Text
    email: EmailStr
    password: str = Field(min_length=6)
    school_code: Text
    unique_code: Text
    phone: Text


class BulkStudentsIn(BaseModel):
    # rows are validated one by one so a single bad row does not fail the batch
    students: List[dict] = Field(min_length=1)


class BulkTeachersIn(BaseModel):
    teachers: List[dict] = Field(min_length=1)


class ProfileUpdate(BaseModel):
    name: Optional[Text] = None
    phone: Optional[str] = None


class ChangePassword(BaseModel):
    current_password: str
    new_password: str = Field(min_length=6)


# ----------------------- Classes & roster -----------------------
class ClassIn(BaseModel):
    name: Text
    section: str = ""


class ClassUpdate(BaseModel):
    name: Optional[Text] = None
    section: Optional[str] = None


class AssignTeacher(BaseModel):
    class_id: str
    teacher_id: str


class AssignTeachers(BaseModel):
    class_id: str
    teacher_ids: List[str]


class AssignStudents(BaseModel):
    class_id: str
    student_ids: List[str]


class RemoveStudent(BaseModel):
    class_id: str
    student_id: str


class SelectClass(BaseModel):
    class_id: str


# ----------------------- Subject catalogue -----------------------
class CatalogueSubjectIn(BaseModel):
    name: Text
    code: Optional[str] = None
    description: str = ""
    credits: int = Field(default=1, ge=0, le=10)


class CatalogueSubjectUpdate(BaseModel):
    name: Optional[Text] = None
    code: Optional[Text] = None
    description: Optional[str] = None
    credits: Optional[int] = Field(default=None, ge=0, le=10)
    is_active: Optional[bool] = None


class SubjectTeacherIn(BaseModel):
    teacher_id: str


# ----------------------- Exams & marks -----------------------
class ExamSubjectIn(BaseModel):
    """A catalogue subject placed on an exam; name, teacher and credits default to the catalogue's."""
    subject_id: str
    full_marks: int = Field(ge=1, le=200)
    subject_name: Optional[Text] = None
    teacher_id: Optional[str] = None
    credits: Optional[int] = Field(default=None, ge=1)


class ExamCreate(BaseModel):
    exam_name: Text
    exam_code: Text
    exam_date: date
    duration: int = Field(ge=30)
    subjects: List[ExamSubjectIn] = Field(min_length=1)

    @field_validator("exam_code")
    @classmethod
    def upper_code(cls, value: str) -> str:
        return value.upper()


class ExamUpdate(BaseModel):
    exam_name: Optional[Text] = None
    exam_code: Optional[Text] = None
    exam_date: Optional[date] = None
    duration: Optional[int] = Field(default=None, ge=30)
    is_active: Optional[bool] = None


class ExamSubjectsIn(BaseModel):
    subjects: List[ExamSubjectIn] = Field(min_length=1)


class MarksIn(BaseModel):
    marks_scored: float = Field(ge=0)


# ----------------------- Attendance -----------------------
class AttendanceRecordIn(BaseModel):
    student_id: str
    status: AttendanceStatus
    remarks: str = ""
    student_name: Optional[str] = None


class TakeAttendanceIn(BaseModel):
    date: date
    records: List[AttendanceRecordIn]


class UpdateAttendanceIn(BaseModel):
    records: List[AttendanceRecordIn]
