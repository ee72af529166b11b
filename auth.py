from datetime import timedelta
from typing import Optional, Dict, Any
import hashlib
import logging
import secrets
import uuid

import jwt
from passlib.context import CryptContext
from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal, get_db
from errors import ConflictError, ForbiddenError, UnauthorizedError, ValidationFailedError
import models
from models import utcnow
from schemas import UserCreate

logger = logging.getLogger(__name__)
settings = get_settings()

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.BCRYPT_ROUNDS)

# OAuth2 scheme
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

# Rate limiting for the credential endpoints
limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)

INVALID_CREDENTIALS = "Невалиден имейл или парола"


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class AuthService:
    def __init__(self, db: Session, mailer=None):
        self.db = db
        self.mailer = mailer

    def get_user_by_email(self, email: str) -> Optional[models.User]:
        return self.db.query(models.User).filter(models.User.email == email.lower()).first()

    def create_user(self, user_data: UserCreate, role: Optional[str] = None) -> models.User:
        """Create new user with hashed password"""
        if self.get_user_by_email(user_data.email):
            raise ConflictError("Потребител с този имейл вече съществува")

        role = role or user_data.role
        user = models.User(
            email=user_data.email.lower(),
            first_name=user_data.first_name,
            last_name=user_data.last_name,
            hashed_password=get_password_hash(user_data.password),
            role=role,
            student_info=user_data.student_info.model_dump(exclude_none=True) if role == "student" and user_data.student_info else None,
            teacher_info=user_data.teacher_info.model_dump(exclude_none=True) if role == "teacher" and user_data.teacher_info else None,
        )

        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        logger.info("Registered %s account %s", role, user.email)
        return user

    def authenticate_user(self, email: str, password: str) -> models.User:
        """Check credentials, counting failures towards the account lock."""
        user = self.get_user_by_email(email)
        if not user:
            raise UnauthorizedError(INVALID_CREDENTIALS)

        if user.account_locked:
            raise UnauthorizedError("Акаунтът е заключен. Използвайте възстановяване на паролата.")

        if not user.is_active:
            raise UnauthorizedError("Акаунтът е деактивиран")

        user.last_login_attempt = utcnow()
        if not verify_password(password, user.hashed_password):
            user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
            if user.failed_login_attempts >= settings.MAX_LOGIN_ATTEMPTS:
                user.account_locked = True
                logger.warning("Account %s locked after %d failed logins", user.email, user.failed_login_attempts)
            else:
                logger.warning("Failed login for %s (%d)", user.email, user.failed_login_attempts)
            self.db.commit()
            raise UnauthorizedError(INVALID_CREDENTIALS)

        user.failed_login_attempts = 0
        user.last_login = utcnow()
        self.db.commit()
        return user

    def create_access_token(self, user: models.User, expires_delta: Optional[timedelta] = None) -> str:
        """Create JWT access token"""
        to_encode = {
            "sub": str(user.id),
            "email": user.email,
            "role": user.role,
            "type": "access",
            "exp": utcnow() + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)),
        }
        return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def create_refresh_token(self, user: models.User) -> str:
        to_encode = {
            "sub": str(user.id),
            "type": "refresh",
            "exp": utcnow() + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
        }
        return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def create_tokens(self, user: models.User) -> Dict[str, str]:
        return {
            "access_token": self.create_access_token(user),
            "refresh_token": self.create_refresh_token(user),
            "token_type": "bearer",
        }

    def verify_token(self, token: str, token_type: str = "access") -> Dict[str, Any]:
        """Decode a JWT and check its type claim"""
        try:
            payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        except jwt.ExpiredSignatureError:
            raise UnauthorizedError("Токенът е изтекъл")
        except jwt.InvalidTokenError:
            raise UnauthorizedError("Невалиден токен")

        if payload.get("type") != token_type:
            raise UnauthorizedError("Невалиден токен")
        return payload

    def get_user_from_payload(self, payload: Dict[str, Any]) -> models.User:
        try:
            user_id = uuid.UUID(payload.get("sub"))
        except (TypeError, ValueError):
            raise UnauthorizedError("Невалиден токен")

        user = self.db.get(models.User, user_id)
        if not user or not user.is_active:
            raise UnauthorizedError("Потребителят не е намерен или е деактивиран")
        return user

    def refresh_access_token(self, refresh_token: str) -> Dict[str, str]:
        """Refresh access token using refresh token"""
        payload = self.verify_token(refresh_token, token_type="refresh")
        user = self.get_user_from_payload(payload)
        return {"access_token": self.create_access_token(user), "token_type": "bearer"}

    def change_password(self, user: models.User, current_password: str, new_password: str) -> None:
        if not verify_password(current_password, user.hashed_password):
            raise ValidationFailedError.for_field("current_password", "Текущата парола е грешна")
        user.hashed_password = get_password_hash(new_password)
        self.db.commit()

    def request_password_reset(self, email: str, background_tasks=None) -> Optional[str]:
        """Issue a reset token for an existing account; unknown emails are ignored silently.

        The email goes out after the response when ``background_tasks`` is given.
        """
        user = self.get_user_by_email(email)
        if not user:
            logger.info("Password reset requested for unknown email")
            return None

        token = secrets.token_urlsafe(32)
        user.reset_password_token = _hash_token(token)
        user.reset_password_expires = utcnow() + timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES)
        self.db.commit()

        if self.mailer is not None:
            if background_tasks is not None:
                background_tasks.add_task(send_password_reset_email, user.id, token, self.mailer)
            else:
                _send_password_reset(self.mailer, user, token)
        return token

    def reset_password(self, token: str, new_password: str) -> models.User:
        user = self.db.query(models.User).filter(
            models.User.reset_password_token == _hash_token(token),
            models.User.reset_password_expires > utcnow(),
        ).first()
        if not user:
            raise ValidationFailedError.for_field("token", "Невалиден или изтекъл токен")

        user.hashed_password = get_password_hash(new_password)
        user.reset_password_token = None
        user.reset_password_expires = None
        user.account_locked = False
        user.failed_login_attempts = 0
        self.db.commit()
        return user


def _send_password_reset(mailer, user: models.User, token: str) -> bool:
    try:
        return bool(mailer.send_password_reset(user, token))
    except Exception:
        logger.exception("Could not send password reset email to %s", user.email)
        return False


def send_password_reset_email(user_id, token: str, mailer) -> bool:
    """Background task: load the account on its own session and mail the reset link"""
    db = SessionLocal()
    try:
        user = db.get(models.User, user_id)
        if user is None:
            return False
        return _send_password_reset(mailer, user, token)
    finally:
        db.close()


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> models.User:
    """Resolve the bearer token to an active user"""
    auth_service = AuthService(db)
    payload = auth_service.verify_token(token)
    return auth_service.get_user_from_payload(payload)


def require_role(*roles: str):
    """Dependency factory admitting only the given roles"""
    def role_checker(current_user: models.User = Depends(get_current_user)) -> models.User:
        if current_user.role not in roles:
            raise ForbiddenError("Нямате права за тази операция")
        return current_user
    return role_checker


# Password utilities
def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


# Audit logging
def log_audit_event(
    db: Session,
    user: Optional[models.User],
    action: str,
    entity: str = None,
    entity_id: Any = None,
    details: Dict[str, Any] = None,
    request: Optional[Request] = None,
):
    """Append an audit record"""
    if action not in models.AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    audit_log = models.AuditLog(
        user_id=user.id if user is not None else None,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        details=details or {},
        ip_address=request.client.host if request is not None and request.client else None,
        user_agent=request.headers.get("user-agent") if request is not None else None,
    )

    db.add(audit_log)
    db.commit()
