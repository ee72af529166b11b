from sqlalchemy import (
    Column, Integer, String, Float, Boolean, DateTime, Date,
    ForeignKey, Text, JSON, Uuid, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship, backref
from sqlalchemy.ext.mutable import MutableDict, MutableList
import uuid
import enum
from datetime import datetime, timezone
from database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value):
    """Normalize an aware or naive datetime to naive UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class UserRole(str, enum.Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"


PILLARS = ("Аз и другите", "Мислене", "Професия")

CREDIT_STATUSES = ("pending", "validated", "rejected")

GOAL_CATEGORY_TITLES = {
    "personalDevelopment": "Личностно развитие",
    "academicDevelopment": "Академично развитие",
    "profession": "Професия",
    "extracurricular": "Извънкласна дейност",
    "community": "Общност",
    "internship": "Стаж",
}

ACHIEVEMENT_CATEGORIES = ("competition", "olympiad", "tournament", "certificate", "award", "other")

PARTICIPATION_STATUSES = ("registered", "confirmed", "attended", "cancelled")

NOTIFICATION_TYPES = ("info", "success", "warning", "error")
NOTIFICATION_CATEGORIES = ("event", "credit", "absence", "sanction", "system")

AUDIT_ACTIONS = (
    "create", "read", "update", "delete", "login", "logout",
    "register", "password_change", "password_reset",
)


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    role = Column(String(20), nullable=False, default=UserRole.STUDENT.value)
    is_active = Column(Boolean, default=True)

    # {"grade": int, "specialization": str, "averageGrade": float}
    student_info = Column(MutableDict.as_mutable(JSON), nullable=True)
    # {"subjects": [str], "qualification": str, "yearsOfExperience": int}
    teacher_info = Column(MutableDict.as_mutable(JSON), nullable=True)

    # Account security
    account_locked = Column(Boolean, default=False)
    failed_login_attempts = Column(Integer, default=0)
    last_login_attempt = Column(DateTime)
    reset_password_token = Column(String(128), index=True)
    reset_password_expires = Column(DateTime)
    two_factor_enabled = Column(Boolean, default=False)
    two_factor_secret = Column(String(64))

    last_login = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    student = relationship("Student", back_populates="user", uselist=False)
    notifications = relationship("Notification", back_populates="recipient")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Student(Base):
    __tablename__ = "students"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), unique=True, nullable=False)
    grade = Column(Integer, nullable=False)
    specialization = Column(String(200), nullable=False)
    average_grade = Column(Float, nullable=False)
    image_url = Column(String(500))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="student")
    credits = relationship("Credit", back_populates="student", cascade="all, delete-orphan")
    goals = relationship("Goal", back_populates="student", cascade="all, delete-orphan")
    interest = relationship("Interest", back_populates="student", uselist=False, cascade="all, delete-orphan")
    achievements = relationship("Achievement", back_populates="student", cascade="all, delete-orphan")
    sanction = relationship("Sanction", back_populates="student", uselist=False, cascade="all, delete-orphan")
    portfolio = relationship("Portfolio", back_populates="student", uselist=False, cascade="all, delete-orphan")
    participations = relationship("EventParticipation", back_populates="student", cascade="all, delete-orphan")


class CreditCategory(Base):
    __tablename__ = "credit_categories"
    __table_args__ = (UniqueConstraint("pillar", "name", name="uq_credit_category_pillar_name"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    pillar = Column(String(50), nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Credit(Base):
    __tablename__ = "credits"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id"), nullable=False, index=True)
    pillar = Column(String(50), nullable=False)
    activity = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # "pending", "validated", "rejected"
    validated_by_id = Column(Uuid, ForeignKey("users.id"), nullable=True)
    validation_date = Column(DateTime)
    validation_note = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    student = relationship("Student", back_populates="credits")
    validated_by = relationship("User", foreign_keys=[validated_by_id])


class Goal(Base):
    __tablename__ = "goals"
    __table_args__ = (UniqueConstraint("student_id", "category", name="uq_goal_student_category"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id"), nullable=False)
    category = Column(String(50), nullable=False)
    title = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)
    activities = Column(MutableList.as_mutable(JSON), default=list)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    student = relationship("Student", back_populates="goals")


class Interest(Base):
    __tablename__ = "interests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id"), unique=True, nullable=False)
    # [{"category": str, "subcategory": str}]
    interests = Column(MutableList.as_mutable(JSON), default=list)
    hobbies = Column(MutableList.as_mutable(JSON), default=list)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    student = relationship("Student", back_populates="interest")


class Achievement(Base):
    __tablename__ = "achievements"
    __table_args__ = (UniqueConstraint("student_id", "title", "date", name="uq_achievement_student_title_date"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id"), nullable=False, index=True)
    category = Column(String(50), nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text)
    date = Column(Date, nullable=False)
    place = Column(String(100))
    issuer = Column(String(200))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    student = relationship("Student", back_populates="achievements")


class Sanction(Base):
    __tablename__ = "sanctions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id"), unique=True, nullable=False)
    excused = Column(Integer, nullable=False, default=0)
    unexcused = Column(Integer, nullable=False, default=0)
    max_allowed = Column(Integer, nullable=False, default=150)
    schoolo_remarks = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    student = relationship("Student", back_populates="sanction")
    active_sanctions = relationship(
        "ActiveSanction", back_populates="sanction",
        order_by="ActiveSanction.created_at", cascade="all, delete-orphan"
    )

    @property
    def total_absences(self) -> int:
        return (self.excused or 0) + (self.unexcused or 0)


class ActiveSanction(Base):
    __tablename__ = "active_sanctions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    sanction_id = Column(Uuid, ForeignKey("sanctions.id"), nullable=False)
    type = Column(String(100), nullable=False)
    reason = Column(Text, nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime)
    issued_by = Column(String(200), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    sanction = relationship("Sanction", back_populates="active_sanctions")


class Event(Base):
    __tablename__ = "events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(String(200), nullable=False)
    description = Column(Text)
    start_date = Column(DateTime, nullable=False, index=True)
    end_date = Column(DateTime)
    location = Column(String(200), nullable=False)
    organizer = Column(String(200), nullable=False)
    feedback_url = Column(String(500))
    created_by_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    created_by = relationship("User")
    participations = relationship("EventParticipation", back_populates="event", cascade="all, delete-orphan")


class EventParticipation(Base):
    __tablename__ = "event_participations"
    __table_args__ = (UniqueConstraint("event_id", "student_id", name="uq_participation_event_student"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id = Column(Uuid, ForeignKey("events.id"), nullable=False)
    student_id = Column(Uuid, ForeignKey("students.id"), nullable=False)
    status = Column(String(20), nullable=False, default="registered")
    registered_at = Column(DateTime, default=utcnow)
    confirmed_at = Column(DateTime)
    attended_at = Column(DateTime)
    feedback = Column(Text)
    feedback_date = Column(DateTime)

    event = relationship("Event", back_populates="participations")
    student = relationship("Student", back_populates="participations")


class Portfolio(Base):
    __tablename__ = "portfolios"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id"), unique=True, nullable=False)
    experience = Column(Text, default="")
    projects = Column(Text, default="")
    mentor_id = Column(Uuid, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    student = relationship("Student", back_populates="portfolio")
    mentor = relationship("User", foreign_keys=[mentor_id])
    recommendations = relationship(
        "Recommendation", back_populates="portfolio",
        order_by="Recommendation.created_at", cascade="all, delete-orphan"
    )


class Recommendation(Base):
    __tablename__ = "recommendations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    portfolio_id = Column(Uuid, ForeignKey("portfolios.id"), nullable=False)
    text = Column(Text, nullable=False)
    author = Column(String(100), nullable=False)
    date = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)

    portfolio = relationship("Portfolio", back_populates="recommendations")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    recipient_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(20), nullable=False, default="info")  # "info", "success", "warning", "error"
    category = Column(String(20), nullable=False, default="system")

    related_model = Column(String(50))
    related_id = Column(String(64))

    is_read = Column(Boolean, default=False)
    read_at = Column(DateTime)
    is_email_sent = Column(Boolean, default=False)

    expires_at = Column(DateTime, index=True)
    created_at = Column(DateTime, default=utcnow)

    recipient = relationship("User", back_populates="notifications")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=True)
    action = Column(String(30), nullable=False)
    entity = Column(String(50))
    entity_id = Column(String(64))
    details = Column(JSON, default=dict)
    ip_address = Column(String(45))
    user_agent = Column(Text)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", backref=backref("audit_logs", lazy="dynamic"))


Index("idx_credit_status", Credit.status)
Index("idx_notification_recipient_read", Notification.recipient_id, Notification.is_read)
Index("idx_participation_status", EventParticipation.status)
