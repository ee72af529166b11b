from pydantic import BaseModel, Field, EmailStr, ConfigDict, AfterValidator, field_validator, model_validator
from typing import Optional, List, Dict, Any, Literal, Annotated
from datetime import datetime, date
import uuid

from config import get_settings
from models import (
    PILLARS, GOAL_CATEGORY_TITLES, ACHIEVEMENT_CATEGORIES,
    NOTIFICATION_TYPES, NOTIFICATION_CATEGORIES, UserRole, as_utc, utcnow
)

# Base Schemas
class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, str_strip_whitespace=True)

class TimestampMixin(BaseModel):
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

def _naive_utc(value):
    return as_utc(value) if isinstance(value, datetime) else value

UtcDatetime = Annotated[datetime, AfterValidator(_naive_utc)]

def check_password_strength(v: str) -> str:
    min_length = get_settings().PASSWORD_MIN_LENGTH
    if len(v) < min_length:
        raise ValueError(f"Паролата трябва да е поне {min_length} символа")
    if not any(c.isupper() for c in v):
        raise ValueError("Паролата трябва да съдържа поне една главна буква")
    if not any(c.islower() for c in v):
        raise ValueError("Паролата трябва да съдържа поне една малка буква")
    if not any(c.isdigit() for c in v):
        raise ValueError("Паролата трябва да съдържа поне една цифра")
    return v

# User Schemas

class StudentInfo(BaseSchema):
    grade: Optional[int] = Field(None, ge=8, le=12)
    specialization: Optional[str] = Field(None, max_length=200)
    averageGrade: Optional[float] = Field(None, ge=2, le=6)

class TeacherInfo(BaseSchema):
    subjects: List[str] = []
    qualification: Optional[str] = Field(None, max_length=200)
    yearsOfExperience: Optional[int] = Field(None, ge=0, le=60)

class UserBase(BaseSchema):
    email: EmailStr
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)

class UserCreate(UserBase):
    password: str = Field(..., max_length=128)
    role: Literal["student", "teacher"] = "student"
    student_info: Optional[StudentInfo] = None
    teacher_info: Optional[TeacherInfo] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        return v.lower()

    @field_validator("password")
    @classmethod
    def validate_password(cls, v):
        return check_password_strength(v)

class UserLogin(BaseSchema):
    email: EmailStr
    password: str

class UserResponse(UserBase):
    email: str
    id: uuid.UUID
    role: UserRole
    is_active: bool = True
    account_locked: bool = False
    student_info: Optional[Dict[str, Any]] = None
    teacher_info: Optional[Dict[str, Any]] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None

class UserBrief(BaseSchema):
    id: uuid.UUID
    email: str
    first_name: str
    last_name: str
    role: UserRole

class UserWithToken(UserResponse):
    access_token: str
    token_type: str = "bearer"
    refresh_token: Optional[str] = None

class TokenRefresh(BaseSchema):
    refresh_token: str

class PasswordChange(BaseSchema):
    current_password: str
    new_password: str = Field(..., max_length=128)

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, v):
        return check_password_strength(v)

class ForgotPassword(BaseSchema):
    email: EmailStr

class ResetPassword(BaseSchema):
    token: str = Field(..., min_length=16)
    new_password: str = Field(..., max_length=128)

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, v):
        return check_password_strength(v)

class UserStatusUpdate(BaseSchema):
    is_active: Optional[bool] = None
    account_locked: Optional[bool] = None

class AdminUserCreate(UserCreate):
    role: UserRole = UserRole.STUDENT

class AdminUserUpdate(BaseSchema):
    email: Optional[EmailStr] = None
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    student_info: Optional[StudentInfo] = None
    teacher_info: Optional[TeacherInfo] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        return v.lower() if v else v

class UserRoleUpdate(BaseSchema):
    role: UserRole

# Student Schemas
class StudentBase(BaseSchema):
    grade: int = Field(..., ge=8, le=12)
    specialization: str = Field(..., min_length=1, max_length=200)
    average_grade: float = Field(..., ge=2, le=6)
    image_url: Optional[str] = Field(None, max_length=500)

class StudentCreate(StudentBase):
    pass

class StudentUpdate(BaseSchema):
    grade: Optional[int] = Field(None, ge=8, le=12)
    specialization: Optional[str] = Field(None, min_length=1, max_length=200)
    average_grade: Optional[float] = Field(None, ge=2, le=6)
    image_url: Optional[str] = Field(None, max_length=500)

class StudentResponse(StudentBase, TimestampMixin):
    id: uuid.UUID
    user_id: uuid.UUID
    user: Optional[UserBrief] = None

class UserDetailResponse(BaseSchema):
    user: UserResponse
    student: Optional[StudentResponse] = None

# Credit Schemas
class CreditCategoryCreate(BaseSchema):
    pillar: Literal[PILLARS]
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)

class CreditCategoryUpdate(BaseSchema):
    pillar: Optional[Literal[PILLARS]] = None
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)

class CreditCategoryResponse(CreditCategoryCreate):
    id: uuid.UUID
    created_at: Optional[datetime] = None

class CreditCreate(BaseSchema):
    pillar: Literal[PILLARS]
    activity: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=1000)

class CreditValidate(BaseSchema):
    status: Literal["validated", "rejected"]
    note: Optional[str] = Field(None, max_length=500)

class CreditBulkValidate(BaseSchema):
    credit_ids: List[uuid.UUID] = Field(..., min_length=1, max_length=200)
    status: Literal["validated", "rejected"]
    note: Optional[str] = Field(None, max_length=500)

class CreditResponse(BaseSchema, TimestampMixin):
    id: uuid.UUID
    student_id: uuid.UUID
    pillar: str
    activity: str
    description: str
    status: str
    validated_by_id: Optional[uuid.UUID] = None
    validation_date: Optional[datetime] = None
    validation_note: Optional[str] = None

# Goal Schemas
GoalCategory = Literal[tuple(GOAL_CATEGORY_TITLES)]

class GoalUpdate(BaseSchema):
    description: str = Field(..., min_length=1, max_length=1000)
    activities: List[str] = Field(..., min_length=1)

    @field_validator("activities")
    @classmethod
    def clean_activities(cls, v):
        cleaned = [a.strip() for a in v if a and a.strip()]
        if not cleaned:
            raise ValueError("Трябва да има поне една дейност")
        if any(len(a) > 200 for a in cleaned):
            raise ValueError("Всяка дейност трябва да е до 200 символа")
        return cleaned

class GoalResponse(BaseSchema, TimestampMixin):
    id: uuid.UUID
    student_id: uuid.UUID
    category: str
    title: str
    description: str
    activities: List[str]

# Interest Schemas
class InterestItem(BaseSchema):
    category: str = Field(..., min_length=1, max_length=100)
    subcategory: str = Field(..., min_length=1, max_length=100)

class InterestUpdate(BaseSchema):
    interests: List[InterestItem] = Field(default_factory=list, max_length=20)
    hobbies: List[str] = Field(default_factory=list, max_length=15)

    @field_validator("hobbies")
    @classmethod
    def clean_hobbies(cls, v):
        cleaned = [h.strip() for h in v]
        if any(not h for h in cleaned):
            raise ValueError("Хобито не може да е празно")
        if any(len(h) > 100 for h in cleaned):
            raise ValueError("Всяко хоби трябва да е до 100 символа")
        return cleaned

class InterestResponse(BaseSchema):
    id: Optional[uuid.UUID] = None
    student_id: uuid.UUID
    interests: List[InterestItem] = []
    hobbies: List[str] = []
    updated_at: Optional[datetime] = None

# Achievement Schemas
def _not_in_future(v):
    if v > utcnow().date():
        raise ValueError("Датата не може да е в бъдещето")
    return v

PastDate = Annotated[date, AfterValidator(_not_in_future)]

class AchievementCreate(BaseSchema):
    category: Literal[ACHIEVEMENT_CATEGORIES]
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    date: PastDate
    place: Optional[str] = Field(None, max_length=100)
    issuer: Optional[str] = Field(None, max_length=200)

class AchievementUpdate(BaseSchema):
    category: Optional[Literal[ACHIEVEMENT_CATEGORIES]] = None
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    date: Optional[PastDate] = None
    place: Optional[str] = Field(None, max_length=100)
    issuer: Optional[str] = Field(None, max_length=200)

class AchievementResponse(BaseSchema, TimestampMixin):
    id: uuid.UUID
    student_id: uuid.UUID
    category: str
    title: str
    description: Optional[str] = None
    date: date
    place: Optional[str] = None
    issuer: Optional[str] = None

# Sanction Schemas
class AbsencesUpdate(BaseSchema):
    excused: Optional[int] = Field(None, ge=0)
    unexcused: Optional[int] = Field(None, ge=0)
    max_allowed: Optional[int] = Field(None, ge=0)

class RemarksUpdate(BaseSchema):
    schoolo_remarks: int = Field(..., ge=0)

class ActiveSanctionCreate(BaseSchema):
    type: str = Field(..., min_length=1, max_length=100)
    reason: str = Field(..., min_length=1, max_length=500)
    start_date: UtcDatetime
    end_date: Optional[UtcDatetime] = None
    issued_by: str = Field(..., min_length=1, max_length=200)

    @model_validator(mode="after")
    def end_after_start(self):
        if self.end_date is not None and self.end_date <= self.start_date:
            raise ValueError("Крайната дата трябва да е след началната")
        return self

class ActiveSanctionResponse(BaseSchema):
    id: uuid.UUID
    type: str
    reason: str
    start_date: UtcDatetime
    end_date: Optional[UtcDatetime] = None
    issued_by: str

class AbsencesResponse(BaseSchema):
    excused: int = 0
    unexcused: int = 0
    max_allowed: int = 150

class SanctionResponse(BaseSchema):
    id: Optional[uuid.UUID] = None
    student_id: uuid.UUID
    absences: AbsencesResponse
    schoolo_remarks: int = 0
    active_sanctions: List[ActiveSanctionResponse] = []
    updated_at: Optional[datetime] = None

class BulkAbsenceItem(AbsencesUpdate):
    student_id: uuid.UUID

class BulkAbsenceUpdate(BaseSchema):
    updates: List[BulkAbsenceItem] = Field(..., min_length=1, max_length=500)

# Event Schemas
class EventBase(BaseSchema):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    start_date: UtcDatetime
    end_date: Optional[UtcDatetime] = None
    location: str = Field(..., min_length=1, max_length=200)
    organizer: str = Field(..., min_length=1, max_length=200)
    feedback_url: Optional[str] = Field(None, max_length=500)

class EventCreate(EventBase):
    @model_validator(mode="after")
    def end_after_start(self):
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("Крайната дата не може да е преди началната")
        return self

class EventUpdate(BaseSchema):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    start_date: Optional[UtcDatetime] = None
    end_date: Optional[UtcDatetime] = None
    location: Optional[str] = Field(None, min_length=1, max_length=200)
    organizer: Optional[str] = Field(None, min_length=1, max_length=200)
    feedback_url: Optional[str] = Field(None, max_length=500)

class EventResponse(EventBase):
    id: uuid.UUID
    created_by_id: uuid.UUID
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class ParticipationResponse(BaseSchema):
    id: uuid.UUID
    event_id: uuid.UUID
    student_id: uuid.UUID
    status: str
    registered_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    attended_at: Optional[datetime] = None
    feedback: Optional[str] = None
    feedback_date: Optional[datetime] = None

class FeedbackCreate(BaseSchema):
    feedback: str = Field(..., min_length=1, max_length=1000)


# Portfolio Schemas
class PortfolioUpdate(BaseSchema):
    experience: Optional[str] = Field(None, max_length=5000)
    projects: Optional[str] = Field(None, max_length=5000)
    mentor_id: Optional[uuid.UUID] = None

class RecommendationCreate(BaseSchema):
    text: str = Field(..., min_length=1, max_length=1000)
    author: str = Field(..., min_length=1, max_length=100)

class RecommendationResponse(BaseSchema):
    id: uuid.UUID
    text: str
    author: str
    date: Optional[datetime] = None

class PortfolioResponse(BaseSchema):
    id: Optional[uuid.UUID] = None
    student_id: uuid.UUID
    experience: str = ""
    projects: str = ""
    mentor_id: Optional[uuid.UUID] = None
    mentor: Optional[UserBrief] = None
    recommendations: List[RecommendationResponse] = []
    updated_at: Optional[datetime] = None

# Notification Schemas
class NotificationCreate(BaseSchema):
    recipient_id: uuid.UUID
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1, max_length=2000)
    type: Literal[NOTIFICATION_TYPES] = "info"
    category: Literal[NOTIFICATION_CATEGORIES] = "system"
    related_model: Optional[str] = Field(None, max_length=50)
    related_id: Optional[str] = Field(None, max_length=64)
    send_email: bool = False

class NotificationBulkCreate(BaseSchema):
    recipient_ids: List[uuid.UUID] = []
    role: Optional[UserRole] = None
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1, max_length=2000)
    type: Literal[NOTIFICATION_TYPES] = "info"
    category: Literal[NOTIFICATION_CATEGORIES] = "system"
    send_email: bool = False

    @model_validator(mode="after")
    def recipients_given(self):
        if not self.recipient_ids and self.role is None:
            raise ValueError("Посочете получатели или роля")
        return self

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    recipient_id: uuid.UUID
    title: str
    message: str
    type: str
    category: str
    related_model: Optional[str] = None
    related_id: Optional[str] = None
    is_read: bool = False
    is_email_sent: bool = False
    read_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

class NotificationList(BaseSchema):
    notifications: List[NotificationResponse]
    total: int
    unread_count: int
    page: int
    limit: int

# Audit
class AuditLogResponse(BaseSchema):
    id: int
    user_id: Optional[uuid.UUID] = None
    action: str
    entity: Optional[str] = None
    entity_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None

# General Schemas
class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    limit: int
    pages: int

class SuccessResponse(BaseSchema):
    success: bool = True
    message: str
    data: Optional[Dict[str, Any]] = None

class ErrorResponse(BaseSchema):
    success: bool = False
    error: str
    code: str
    details: Optional[Dict[str, Any]] = None
