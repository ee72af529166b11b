import itertools
import unittest
from datetime import timedelta

from fastapi.testclient import TestClient

from app import app
from auth import AuthService, get_password_hash
from database import Base, SessionLocal, engine
from mailer import get_mailer
import models
from models import utcnow

PASSWORD = "Parola123"

_counter = itertools.count(1)


class RecordingMailer:
    """Stands in for SMTP and remembers what would have been sent."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []
        self.resets = []

    def send_notification(self, user, notification):
        if self.fail:
            raise ConnectionError("SMTP server unavailable")
        self.sent.append((user.email, notification.title))
        return True

    def send_password_reset(self, user, token):
        if self.fail:
            raise ConnectionError("SMTP server unavailable")
        self.resets.append((user.email, token))
        return True


class ApiTestCase(unittest.TestCase):

    def setUp(self):
        Base.metadata.create_all(bind=engine)
        self.mailer = RecordingMailer()
        app.dependency_overrides[get_mailer] = lambda: self.mailer
        self.client = TestClient(app)
        self.db = SessionLocal()

    def tearDown(self):
        self.db.close()
        app.dependency_overrides.clear()
        Base.metadata.drop_all(bind=engine)

    # Fixtures
    def create_user(self, role="student", first_name="Иван", last_name="Петров", email=None, password=PASSWORD):
        n = next(_counter)
        user = models.User(
            email=email or f"{role}{n}@school.bg",
            hashed_password=get_password_hash(password),
            first_name=first_name,
            last_name=last_name,
            role=role,
        )
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user

    def create_student(self, user=None, grade=10, specialization="Приложно програмиране", average_grade=5.5):
        user = user or self.create_user("student")
        student = models.Student(
            user_id=user.id,
            grade=grade,
            specialization=specialization,
            average_grade=average_grade,
        )
        self.db.add(student)
        self.db.commit()
        self.db.refresh(student)
        return student

    def create_event(self, creator, days_ahead=7, title="Ден на отворените врати"):
        event = models.Event(
            title=title,
            start_date=utcnow() + timedelta(days=days_ahead),
            location="Актова зала",
            organizer="Училищен съвет",
            created_by_id=creator.id,
        )
        self.db.add(event)
        self.db.commit()
        self.db.refresh(event)
        return event

    def auth(self, user):
        token = AuthService(self.db).create_access_token(user)
        return {"Authorization": f"Bearer {token}"}

    def notifications_for(self, user, **filters):
        self.db.expire_all()
        query = self.db.query(models.Notification).filter(models.Notification.recipient_id == user.id)
        for field, value in filters.items():
            query = query.filter(getattr(models.Notification, field) == value)
        return query.order_by(models.Notification.created_at).all()
