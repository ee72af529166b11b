from fastapi import FastAPI, BackgroundTasks, Depends, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import or_
from sqlalchemy.orm import Session
from datetime import date
from typing import List, Optional
import io
import logging
import uuid

from config import get_settings
from database import get_db, engine, Base, SessionLocal
import models
from schemas import (
    # User schemas
    UserCreate, UserLogin, UserResponse, UserWithToken, TokenRefresh,
    PasswordChange, ForgotPassword, ResetPassword, UserStatusUpdate,
    AdminUserCreate, AdminUserUpdate, UserRoleUpdate, UserDetailResponse,
    # Student schemas
    StudentCreate, StudentUpdate, StudentResponse,
    # Credit schemas
    CreditCreate, CreditValidate, CreditBulkValidate, CreditResponse,
    CreditCategoryCreate, CreditCategoryUpdate, CreditCategoryResponse,
    # Goal / interest / achievement schemas
    GoalUpdate, GoalResponse, InterestUpdate, InterestResponse,
    AchievementCreate, AchievementUpdate, AchievementResponse,
    # Sanction schemas
    AbsencesUpdate, RemarksUpdate, ActiveSanctionCreate, SanctionResponse, BulkAbsenceUpdate,
    # Event schemas
    EventCreate, EventUpdate, EventResponse, ParticipationResponse, FeedbackCreate,
    # Portfolio schemas
    PortfolioUpdate, PortfolioResponse, RecommendationCreate,
    # Notification schemas
    NotificationCreate, NotificationBulkCreate, NotificationResponse, NotificationList,
    # General schemas
    AuditLogResponse, PaginatedResponse, SuccessResponse, ErrorResponse
)

from auth import AuthService, get_current_user, require_role, get_password_hash, limiter, log_audit_event
from crud import StudentService, GoalService, InterestService, AchievementService, PortfolioService, UserService
from exports import ExportService
from credits import CreditService
from sanctions import SanctionService
from events import EventService
from notifications import NotificationService, build_event_bus
from analytics import StatisticsAggregator
from reports import ReportService, content_disposition
from mailer import get_mailer
from errors import AppError, ConflictError, NotFoundError, HTTP_STATUS_CODES
from policy import enforce

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("technofolio")

# Initialize FastAPI app
app = FastAPI(
    title="Технофолио API",
    description="""School record-keeping platform.

    Features:
    - Student profiles, goals, interests and portfolios
    - Credits by pillar with teacher validation
    - Absences, Schoolo remarks and active sanctions
    - Events with participant registration and attendance
    - In-app and email notifications
    - Statistics and Excel/PDF reports
    """,
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


def get_event_bus(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    mailer=Depends(get_mailer)
):
    """Domain event bus whose notification subscriber shares the request session.

    Notification emails are queued on the response background tasks.
    """
    return build_event_bus(db, mailer, background_tasks)


def paginated(items, total: int, page: int, limit: int, schema) -> PaginatedResponse:
    return PaginatedResponse(
        items=[schema.model_validate(item) for item in items],
        total=total,
        page=page,
        limit=limit,
        pages=(total + limit - 1) // limit
    )

# ========== AUTHENTICATION ENDPOINTS ==========

@app.post("/api/auth/register", response_model=UserWithToken, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.LOGIN_RATE_LIMIT)
async def register_user(
    request: Request,
    user_data: UserCreate,
    db: Session = Depends(get_db)
):
    """Register new student or teacher account"""
    auth_service = AuthService(db)
    user = auth_service.create_user(user_data)
    tokens = auth_service.create_tokens(user)

    log_audit_event(
        db, user, "register", "User", user.id,
        details={"email": user.email, "role": user.role}, request=request
    )

    return {**UserResponse.model_validate(user).model_dump(), **tokens}

@app.post("/api/auth/login", response_model=UserWithToken)
@limiter.limit(settings.LOGIN_RATE_LIMIT)
async def login(
    request: Request,
    credentials: UserLogin,
    db: Session = Depends(get_db)
):
    """User login"""
    auth_service = AuthService(db)
    user = auth_service.authenticate_user(credentials.email, credentials.password)
    tokens = auth_service.create_tokens(user)

    log_audit_event(db, user, "login", "User", user.id, request=request)

    return {**UserResponse.model_validate(user).model_dump(), **tokens}

@app.post("/api/auth/refresh")
async def refresh_token(
    data: TokenRefresh,
    db: Session = Depends(get_db)
):
    """Exchange a refresh token for a new access token"""
    return AuthService(db).refresh_access_token(data.refresh_token)

@app.get("/api/auth/me", response_model=UserResponse)
async def get_current_user_info(
    current_user: models.User = Depends(get_current_user)
):
    """Get current user information"""
    return UserResponse.model_validate(current_user)

@app.post("/api/auth/logout", response_model=SuccessResponse)
async def logout(
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    log_audit_event(db, current_user, "logout", "User", current_user.id, request=request)
    return SuccessResponse(message="Успешно излизане от системата")

@app.post("/api/auth/change-password", response_model=SuccessResponse)
async def change_password(
    request: Request,
    data: PasswordChange,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    AuthService(db).change_password(current_user, data.current_password, data.new_password)
    log_audit_event(db, current_user, "password_change", "User", current_user.id, request=request)
    return SuccessResponse(message="Паролата е променена успешно")

@app.post("/api/auth/forgot-password", response_model=SuccessResponse)
@limiter.limit(settings.LOGIN_RATE_LIMIT)
async def forgot_password(
    request: Request,
    data: ForgotPassword,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    mailer=Depends(get_mailer)
):
    """Always answers the same way so that registered emails cannot be probed"""
    AuthService(db, mailer).request_password_reset(data.email, background_tasks)
    return SuccessResponse(message="Ако имейлът съществува, ще получите инструкции за възстановяване на паролата")

@app.post("/api/auth/reset-password", response_model=SuccessResponse)
async def reset_password(
    request: Request,
    data: ResetPassword,
    db: Session = Depends(get_db)
):
    user = AuthService(db).reset_password(data.token, data.new_password)
    log_audit_event(db, user, "password_reset", "User", user.id, request=request)
    return SuccessResponse(message="Паролата е възстановена успешно")

# ========== USER ADMINISTRATION ENDPOINTS ==========

@app.get("/api/users", response_model=PaginatedResponse)
async def get_users(
    role: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: models.User = Depends(require_role("admin")),
    db: Session = Depends(get_db)
):
    """List accounts with role and name/email filters"""
    query = db.query(models.User)
    if role:
        query = query.filter(models.User.role == role)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            models.User.first_name.ilike(pattern),
            models.User.last_name.ilike(pattern),
            models.User.email.ilike(pattern),
        ))

    total = query.count()
    users = query.order_by(models.User.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return paginated(users, total, page, limit, UserResponse)

@app.get("/api/users/stats")
async def get_user_statistics(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return UserService(db).statistics(current_user)

@app.post("/api/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    data: AdminUserCreate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create an account of any role, admins included"""
    user = UserService(db).create_user(current_user, data)
    log_audit_event(db, current_user, "create", "User", user.id, details={"role": user.role}, request=request)
    return UserResponse.model_validate(user)

@app.get("/api/users/{user_id}", response_model=UserDetailResponse)
async def get_user(
    user_id: uuid.UUID,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    user, student = UserService(db).get_user(current_user, user_id)
    return UserDetailResponse(
        user=UserResponse.model_validate(user),
        student=StudentResponse.model_validate(student) if student else None,
    )

@app.put("/api/users/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: uuid.UUID,
    data: AdminUserUpdate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    user = UserService(db).update_user(current_user, user_id, data)
    log_audit_event(
        db, current_user, "update", "User", user.id,
        details={"fields": sorted(data.model_dump(exclude_unset=True))}, request=request
    )
    return UserResponse.model_validate(user)

@app.patch("/api/users/{user_id}/role", response_model=UserResponse)
async def change_user_role(
    user_id: uuid.UUID,
    data: UserRoleUpdate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    user = UserService(db).change_role(current_user, user_id, data.role.value)
    log_audit_event(db, current_user, "update", "User", user.id, details={"role": user.role}, request=request)
    return UserResponse.model_validate(user)

@app.patch("/api/users/{user_id}/status", response_model=UserResponse)
async def update_user_status(
    user_id: uuid.UUID,
    data: UserStatusUpdate,
    request: Request,
    current_user: models.User = Depends(require_role("admin")),
    db: Session = Depends(get_db)
):
    """Activate, deactivate or unlock an account"""
    user = db.get(models.User, user_id)
    if not user:
        raise NotFoundError("Потребителят не е намерен")
    if user.id == current_user.id and data.is_active is False:
        raise ConflictError("Не можете да деактивирате собствения си акаунт")

    if data.is_active is not None:
        user.is_active = data.is_active
    if data.account_locked is not None:
        user.account_locked = data.account_locked
        if not data.account_locked:
            user.failed_login_attempts = 0
    db.commit()
    db.refresh(user)

    log_audit_event(
        db, current_user, "update", "User", user.id,
        details=data.model_dump(exclude_none=True), request=request
    )
    return UserResponse.model_validate(user)

@app.get("/api/audit-logs", response_model=PaginatedResponse)
async def get_audit_logs(
    user_id: Optional[uuid.UUID] = None,
    action: Optional[str] = None,
    entity: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "audit", "read")
    query = db.query(models.AuditLog)
    if user_id:
        query = query.filter(models.AuditLog.user_id == user_id)
    if action:
        query = query.filter(models.AuditLog.action == action)
    if entity:
        query = query.filter(models.AuditLog.entity == entity)

    total = query.count()
    logs = query.order_by(models.AuditLog.created_at.desc(), models.AuditLog.id.desc()) \
        .offset((page - 1) * limit).limit(limit).all()
    return paginated(logs, total, page, limit, AuditLogResponse)

# ========== STUDENT ENDPOINTS ==========

@app.post("/api/students", response_model=StudentResponse, status_code=status.HTTP_201_CREATED)
async def create_student(
    student_data: StudentCreate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create the student profile of the current account"""
    student = StudentService(db).create_student(current_user, student_data)
    log_audit_event(db, current_user, "create", "Student", student.id, request=request)
    return StudentResponse.model_validate(student)

@app.get("/api/students", response_model=PaginatedResponse)
async def get_students(
    grade: Optional[int] = Query(None, ge=8, le=12),
    specialization: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get students with filtering and pagination"""
    enforce(current_user, "student", "list")
    students, total = StudentService(db).get_students(grade, specialization, search, page, limit)
    return paginated(students, total, page, limit, StudentResponse)

@app.get("/api/students/me", response_model=StudentResponse)
async def get_my_student_profile(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return StudentResponse.model_validate(StudentService(db).get_me(current_user))

@app.get("/api/students/search", response_model=List[StudentResponse])
async def search_students(
    query: Optional[str] = Query(None, min_length=2),
    min_average: Optional[float] = Query(None, ge=2, le=6),
    max_average: Optional[float] = Query(None, ge=2, le=6),
    limit: int = Query(50, ge=1, le=100),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Search students by name, email or specialization"""
    enforce(current_user, "student", "list")
    students = StudentService(db).search_students(query, min_average, max_average, limit)
    return [StudentResponse.model_validate(s) for s in students]

@app.get("/api/students/statistics")
async def get_student_statistics(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "statistics", "read")
    return StatisticsAggregator(db).student_statistics()

@app.get("/api/students/{user_id}", response_model=StudentResponse)
async def get_student_by_user(
    user_id: uuid.UUID,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get the student profile that belongs to a user account"""
    return StudentResponse.model_validate(StudentService(db).get_by_user_id(current_user, user_id))

@app.put("/api/students/{student_id}", response_model=StudentResponse)
async def update_student(
    student_id: uuid.UUID,
    student_data: StudentUpdate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    student = StudentService(db).update_student(current_user, student_id, student_data)
    log_audit_event(
        db, current_user, "update", "Student", student.id,
        details=student_data.model_dump(exclude_unset=True), request=request
    )
    return StudentResponse.model_validate(student)

@app.delete("/api/students/{student_id}", response_model=SuccessResponse)
async def delete_student(
    student_id: uuid.UUID,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    StudentService(db).delete_student(current_user, student_id)
    log_audit_event(db, current_user, "delete", "Student", student_id, request=request)
    return SuccessResponse(message="Ученическият профил е изтрит успешно")

# ========== GOAL ENDPOINTS ==========

@app.get("/api/students/{student_id}/goals", response_model=List[GoalResponse])
async def get_goals(
    student_id: uuid.UUID,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return [GoalResponse.model_validate(g) for g in GoalService(db).get_goals(current_user, student_id)]

@app.put("/api/students/{student_id}/goals/{category}", response_model=GoalResponse)
async def upsert_goal(
    student_id: uuid.UUID,
    category: str,
    data: GoalUpdate,
    request: Request,
    response: Response,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create or replace the goal of one category"""
    goal, created = GoalService(db).upsert_goal(current_user, student_id, category, data)
    if created:
        response.status_code = status.HTTP_201_CREATED
    log_audit_event(
        db, current_user, "create" if created else "update", "Goal", goal.id,
        details={"category": category}, request=request
    )
    return GoalResponse.model_validate(goal)

@app.delete("/api/students/{student_id}/goals/{category}", response_model=SuccessResponse)
async def delete_goal(
    student_id: uuid.UUID,
    category: str,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    GoalService(db).delete_goal(current_user, student_id, category)
    log_audit_event(
        db, current_user, "delete", "Goal", None,
        details={"student_id": str(student_id), "category": category}, request=request
    )
    return SuccessResponse(message="Целта е изтрита успешно")

@app.get("/api/goals", response_model=PaginatedResponse)
async def get_all_goals(
    grade: Optional[int] = Query(None, ge=8, le=12),
    category: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "goal", "list")
    goals, total = GoalService(db).get_all_goals(grade, category, page, limit)
    return paginated(goals, total, page, limit, GoalResponse)

@app.get("/api/goals/export")
async def export_goals(
    grade: Optional[int] = Query(None, ge=8, le=12),
    category: Optional[str] = None,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return ExportService(db).goals(current_user, grade, category)

@app.get("/api/goals/statistics")
async def get_goal_statistics(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "statistics", "read")
    return StatisticsAggregator(db).goal_statistics()

# ========== INTEREST ENDPOINTS ==========

@app.get("/api/students/{student_id}/interests", response_model=InterestResponse)
async def get_interests(
    student_id: uuid.UUID,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return InterestResponse.model_validate(InterestService(db).get_interests(current_user, student_id))

@app.put("/api/students/{student_id}/interests", response_model=InterestResponse)
async def update_interests(
    student_id: uuid.UUID,
    data: InterestUpdate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    interest = InterestService(db).update_interests(current_user, student_id, data)
    log_audit_event(db, current_user, "update", "Interest", interest.id, request=request)
    return InterestResponse.model_validate(interest)

@app.get("/api/interests", response_model=PaginatedResponse)
async def get_all_interests(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "interest", "list")
    interests, total = InterestService(db).get_all_interests(page, limit)
    return paginated(interests, total, page, limit, InterestResponse)

@app.get("/api/interests/export")
async def export_interests(
    grade: Optional[int] = Query(None, ge=8, le=12),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return ExportService(db).interests(current_user, grade)

@app.get("/api/interests/statistics")
async def get_interest_statistics(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "statistics", "read")
    return StatisticsAggregator(db).interest_statistics()

@app.get("/api/interests/popular")
async def get_popular_interests(
    limit: int = Query(20, ge=1, le=100),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "statistics", "read")
    return StatisticsAggregator(db).popular_interests(limit)

# ========== ACHIEVEMENT ENDPOINTS ==========

@app.get("/api/students/{student_id}/achievements", response_model=List[AchievementResponse])
async def get_achievements(
    student_id: uuid.UUID,
    category: Optional[str] = None,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    achievements = AchievementService(db).get_achievements(current_user, student_id, category)
    return [AchievementResponse.model_validate(a) for a in achievements]

@app.post("/api/students/{student_id}/achievements", response_model=AchievementResponse,
          status_code=status.HTTP_201_CREATED)
async def create_achievement(
    student_id: uuid.UUID,
    data: AchievementCreate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    achievement = AchievementService(db).create_achievement(current_user, student_id, data)
    log_audit_event(
        db, current_user, "create", "Achievement", achievement.id,
        details={"title": achievement.title}, request=request
    )
    return AchievementResponse.model_validate(achievement)

@app.put("/api/students/{student_id}/achievements/{achievement_id}", response_model=AchievementResponse)
async def update_achievement(
    student_id: uuid.UUID,
    achievement_id: uuid.UUID,
    data: AchievementUpdate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    achievement = AchievementService(db).update_achievement(current_user, student_id, achievement_id, data)
    log_audit_event(
        db, current_user, "update", "Achievement", achievement.id,
        details={"fields": sorted(data.model_dump(exclude_unset=True))}, request=request
    )
    return AchievementResponse.model_validate(achievement)

@app.delete("/api/students/{student_id}/achievements/{achievement_id}", response_model=SuccessResponse)
async def delete_achievement(
    student_id: uuid.UUID,
    achievement_id: uuid.UUID,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    AchievementService(db).delete_achievement(current_user, student_id, achievement_id)
    log_audit_event(db, current_user, "delete", "Achievement", achievement_id, request=request)
    return SuccessResponse(message="Постижението е изтрито успешно")

@app.get("/api/achievements", response_model=PaginatedResponse)
async def get_all_achievements(
    category: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "achievement", "list")
    achievements, total = AchievementService(db).get_all_achievements(category, search, page, limit)
    return paginated(achievements, total, page, limit, AchievementResponse)

@app.get("/api/achievements/export")
async def export_achievements(
    grade: Optional[int] = Query(None, ge=8, le=12),
    category: Optional[str] = None,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return ExportService(db).achievements(current_user, grade, category)

@app.get("/api/achievements/statistics")
async def get_achievement_statistics(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "statistics", "read")
    return StatisticsAggregator(db).achievement_statistics()

# ========== SANCTION ENDPOINTS ==========

@app.get("/api/students/{student_id}/sanctions", response_model=SanctionResponse)
async def get_sanctions(
    student_id: uuid.UUID,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return SanctionService(db).get_sanctions(current_user, student_id)

@app.put("/api/students/{student_id}/sanctions/absences", response_model=SanctionResponse)
async def update_absences(
    student_id: uuid.UUID,
    data: AbsencesUpdate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus)
):
    """Set absence counters; increases and critical totals notify the student"""
    sanction = SanctionService(db, bus).update_absences(current_user, student_id, data)
    log_audit_event(
        db, current_user, "update", "Sanction", sanction["id"],
        details=data.model_dump(exclude_none=True), request=request
    )
    return sanction

@app.put("/api/students/{student_id}/sanctions/schoolo-remarks", response_model=SanctionResponse)
async def update_schoolo_remarks(
    student_id: uuid.UUID,
    data: RemarksUpdate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus)
):
    sanction = SanctionService(db, bus).update_remarks(current_user, student_id, data)
    log_audit_event(
        db, current_user, "update", "Sanction", sanction["id"],
        details={"schoolo_remarks": data.schoolo_remarks}, request=request
    )
    return sanction

@app.post("/api/students/{student_id}/sanctions/active", response_model=SanctionResponse,
          status_code=status.HTTP_201_CREATED)
async def add_active_sanction(
    student_id: uuid.UUID,
    data: ActiveSanctionCreate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus)
):
    sanction = SanctionService(db, bus).add_active_sanction(current_user, student_id, data)
    log_audit_event(
        db, current_user, "create", "Sanction", sanction["id"],
        details={"type": data.type}, request=request
    )
    return sanction

@app.delete("/api/students/{student_id}/sanctions/active/{active_id}", response_model=SanctionResponse)
async def remove_active_sanction(
    student_id: uuid.UUID,
    active_id: uuid.UUID,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus)
):
    sanction = SanctionService(db, bus).remove_active_sanction(current_user, student_id, active_id)
    log_audit_event(
        db, current_user, "delete", "Sanction", sanction["id"],
        details={"active_sanction_id": str(active_id)}, request=request
    )
    return sanction

@app.get("/api/sanctions/export")
async def export_sanctions(
    grade: Optional[int] = Query(None, ge=8, le=12),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Absences, remarks and active sanctions of every student in one list"""
    return ExportService(db).sanctions(current_user, grade)

@app.get("/api/sanctions/statistics")
async def get_sanction_statistics(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "statistics", "read")
    return StatisticsAggregator(db).sanction_statistics()

@app.get("/api/sanctions/high-absences")
async def get_high_absence_students(
    threshold: float = Query(0.8, gt=0, le=1),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Students whose absences reached the given share of their limit"""
    enforce(current_user, "sanction", "list")
    students = StatisticsAggregator(db).high_absence_students(threshold)
    return {"threshold": threshold, "count": len(students), "students": students}

@app.post("/api/sanctions/bulk-absences")
async def bulk_update_absences(
    data: BulkAbsenceUpdate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus)
):
    result = SanctionService(db, bus).bulk_update_absences(current_user, data)
    log_audit_event(
        db, current_user, "update", "Sanction", None,
        details={"bulk": True, "success": result["success"], "failed": result["failed"]}, request=request
    )
    return result

# ========== EVENT ENDPOINTS ==========

@app.get("/api/events", response_model=PaginatedResponse)
async def get_events(
    upcoming: Optional[bool] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "event", "read")
    events, total = EventService(db).get_events(upcoming, search, page, limit)
    return paginated(events, total, page, limit, EventResponse)

@app.post("/api/events", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def create_event(
    data: EventCreate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus)
):
    """Create an event and announce it to every student"""
    event = EventService(db, bus).create_event(current_user, data)
    log_audit_event(db, current_user, "create", "Event", event.id, details={"title": event.title}, request=request)
    return EventResponse.model_validate(event)

@app.get("/api/events/statistics")
async def get_event_statistics(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "statistics", "read")
    return StatisticsAggregator(db).event_statistics()

@app.get("/api/events/{event_id}", response_model=EventResponse)
async def get_event(
    event_id: uuid.UUID,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "event", "read")
    return EventResponse.model_validate(EventService(db).get_event(event_id))

@app.put("/api/events/{event_id}", response_model=EventResponse)
async def update_event(
    event_id: uuid.UUID,
    data: EventUpdate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus)
):
    event = EventService(db, bus).update_event(current_user, event_id, data)
    log_audit_event(
        db, current_user, "update", "Event", event.id,
        details={"fields": sorted(data.model_dump(exclude_unset=True))}, request=request
    )
    return EventResponse.model_validate(event)

@app.delete("/api/events/{event_id}", response_model=SuccessResponse)
async def delete_event(
    event_id: uuid.UUID,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus)
):
    """Delete an event with its participations; active participants are notified"""
    EventService(db, bus).delete_event(current_user, event_id)
    log_audit_event(db, current_user, "delete", "Event", event_id, request=request)
    return SuccessResponse(message="Събитието е изтрито успешно")

@app.get("/api/events/{event_id}/participants")
async def get_event_participants(
    event_id: uuid.UUID,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    data = EventService(db).get_participants(current_user, event_id)
    participants = []
    for p in data["participants"]:
        item = ParticipationResponse.model_validate(p).model_dump()
        item["student"] = {
            "id": p.student.id,
            "name": p.student.user.full_name,
            "email": p.student.user.email,
            "grade": p.student.grade,
            "specialization": p.student.specialization,
        }
        participants.append(item)
    return {
        "event": EventResponse.model_validate(data["event"]).model_dump(),
        "participants": participants,
        "counts": data["counts"],
        "total": len(participants),
    }

@app.post("/api/events/{event_id}/participate", response_model=ParticipationResponse,
          status_code=status.HTTP_201_CREATED)
async def participate_in_event(
    event_id: uuid.UUID,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus)
):
    """Register the current student for an event that has not started yet"""
    participation = EventService(db, bus).participate(current_user, event_id)
    return ParticipationResponse.model_validate(participation)

@app.post("/api/participations/{participation_id}/confirm", response_model=ParticipationResponse)
async def confirm_participation(
    participation_id: uuid.UUID,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus)
):
    participation = EventService(db, bus).confirm(current_user, participation_id)
    return ParticipationResponse.model_validate(participation)

@app.post("/api/participations/{participation_id}/cancel", response_model=ParticipationResponse)
async def cancel_participation(
    participation_id: uuid.UUID,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus)
):
    participation = EventService(db, bus).cancel(current_user, participation_id)
    return ParticipationResponse.model_validate(participation)

@app.post("/api/participations/{participation_id}/attend", response_model=ParticipationResponse)
async def mark_attendance(
    participation_id: uuid.UUID,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus)
):
    participation = EventService(db, bus).mark_attendance(current_user, participation_id)
    return ParticipationResponse.model_validate(participation)

@app.post("/api/participations/{participation_id}/feedback", response_model=ParticipationResponse)
async def submit_feedback(
    participation_id: uuid.UUID,
    data: FeedbackCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus)
):
    participation = EventService(db, bus).submit_feedback(current_user, participation_id, data)
    return ParticipationResponse.model_validate(participation)

@app.get("/api/students/{student_id}/participations", response_model=List[ParticipationResponse])
async def get_student_participations(
    student_id: uuid.UUID,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    participations = EventService(db).get_student_participations(current_user, student_id)
    return [ParticipationResponse.model_validate(p) for p in participations]

# ========== CREDIT ENDPOINTS ==========

@app.get("/api/credits/categories", response_model=List[CreditCategoryResponse])
async def get_credit_categories(
    pillar: Optional[str] = None,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "credit_category", "read")
    return [CreditCategoryResponse.model_validate(c) for c in CreditService(db).get_categories(pillar)]

@app.get("/api/credits/categories/by-pillar")
async def get_credit_categories_by_pillar(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "credit_category", "read")
    grouped = CreditService(db).get_categories_by_pillar()
    return {
        pillar: [CreditCategoryResponse.model_validate(c).model_dump() for c in categories]
        for pillar, categories in grouped.items()
    }

@app.post("/api/credits/categories", response_model=CreditCategoryResponse, status_code=status.HTTP_201_CREATED)
async def create_credit_category(
    data: CreditCategoryCreate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    category = CreditService(db).create_category(current_user, data)
    log_audit_event(db, current_user, "create", "CreditCategory", category.id, details={"name": category.name}, request=request)
    return CreditCategoryResponse.model_validate(category)

@app.put("/api/credits/categories/{category_id}", response_model=CreditCategoryResponse)
async def update_credit_category(
    category_id: uuid.UUID,
    data: CreditCategoryUpdate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    category = CreditService(db).update_category(current_user, category_id, data)
    log_audit_event(db, current_user, "update", "CreditCategory", category.id, request=request)
    return CreditCategoryResponse.model_validate(category)

@app.delete("/api/credits/categories/{category_id}", response_model=SuccessResponse)
async def delete_credit_category(
    category_id: uuid.UUID,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    CreditService(db).delete_category(current_user, category_id)
    log_audit_event(db, current_user, "delete", "CreditCategory", category_id, request=request)
    return SuccessResponse(message="Категорията е изтрита успешно")

@app.get("/api/credits")
async def get_all_credits(
    status_filter: Optional[str] = Query(None, alias="status"),
    pillar: Optional[str] = None,
    student_id: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """All credits with filters, pagination and per-status counts"""
    enforce(current_user, "credit", "list")
    credits, total, counts = CreditService(db).get_all_credits(status_filter, pillar, student_id, search, page, limit)
    return {**paginated(credits, total, page, limit, CreditResponse).model_dump(), "counts": counts}

@app.post("/api/credits", response_model=CreditResponse, status_code=status.HTTP_201_CREATED)
async def create_credit(
    data: CreditCreate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus)
):
    """Submit a credit for validation"""
    credit = CreditService(db, bus).create_credit(current_user, data)
    log_audit_event(
        db, current_user, "create", "Credit", credit.id,
        details={"pillar": credit.pillar, "activity": credit.activity}, request=request
    )
    return CreditResponse.model_validate(credit)

@app.get("/api/credits/statistics")
async def get_credit_statistics(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "statistics", "read")
    return StatisticsAggregator(db).credit_statistics()

@app.post("/api/credits/bulk-validate")
async def bulk_validate_credits(
    data: CreditBulkValidate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus)
):
    result = CreditService(db, bus).bulk_validate(current_user, data)
    log_audit_event(
        db, current_user, "update", "Credit", None,
        details={"bulk": True, "status": data.status, "processed": result["processed"]}, request=request
    )
    return result

@app.get("/api/students/{student_id}/credits", response_model=List[CreditResponse])
async def get_student_credits(
    student_id: uuid.UUID,
    status_filter: Optional[str] = Query(None, alias="status"),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    credits = CreditService(db).get_student_credits(current_user, student_id, status_filter)
    return [CreditResponse.model_validate(c) for c in credits]

@app.get("/api/credits/{credit_id}", response_model=CreditResponse)
async def get_credit(
    credit_id: uuid.UUID,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return CreditResponse.model_validate(CreditService(db).get_credit(current_user, credit_id))

@app.patch("/api/credits/{credit_id}/validate", response_model=CreditResponse)
async def validate_credit(
    credit_id: uuid.UUID,
    data: CreditValidate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus)
):
    """Validate or reject a pending credit"""
    credit = CreditService(db, bus).validate_credit(current_user, credit_id, data)
    log_audit_event(
        db, current_user, "update", "Credit", credit.id,
        details={"status": credit.status}, request=request
    )
    return CreditResponse.model_validate(credit)

@app.delete("/api/credits/{credit_id}", response_model=SuccessResponse)
async def delete_credit(
    credit_id: uuid.UUID,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    CreditService(db).delete_credit(current_user, credit_id)
    log_audit_event(db, current_user, "delete", "Credit", credit_id, request=request)
    return SuccessResponse(message="Кредитът е изтрит успешно")

# ========== PORTFOLIO ENDPOINTS ==========

@app.get("/api/students/{student_id}/portfolio", response_model=PortfolioResponse)
async def get_portfolio(
    student_id: uuid.UUID,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return PortfolioResponse.model_validate(PortfolioService(db).get_portfolio(current_user, student_id))

@app.put("/api/students/{student_id}/portfolio", response_model=PortfolioResponse)
async def update_portfolio(
    student_id: uuid.UUID,
    data: PortfolioUpdate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    portfolio = PortfolioService(db).update_portfolio(current_user, student_id, data)
    log_audit_event(db, current_user, "update", "Portfolio", portfolio.id, request=request)
    return PortfolioResponse.model_validate(portfolio)

@app.post("/api/students/{student_id}/portfolio/recommendations", response_model=PortfolioResponse,
          status_code=status.HTTP_201_CREATED)
async def add_recommendation(
    student_id: uuid.UUID,
    data: RecommendationCreate,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    portfolio = PortfolioService(db).add_recommendation(current_user, student_id, data)
    log_audit_event(
        db, current_user, "update", "Portfolio", portfolio.id,
        details={"recommendation_author": data.author}, request=request
    )
    return PortfolioResponse.model_validate(portfolio)

@app.delete("/api/students/{student_id}/portfolio/recommendations/{recommendation_id}",
            response_model=PortfolioResponse)
async def remove_recommendation(
    student_id: uuid.UUID,
    recommendation_id: uuid.UUID,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    portfolio = PortfolioService(db).remove_recommendation(current_user, student_id, recommendation_id)
    log_audit_event(
        db, current_user, "update", "Portfolio", portfolio.id,
        details={"removed_recommendation": str(recommendation_id)}, request=request
    )
    return PortfolioResponse.model_validate(portfolio)

@app.get("/api/portfolios", response_model=PaginatedResponse)
async def get_all_portfolios(
    has_mentor: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "portfolio", "list")
    portfolios, total = PortfolioService(db).get_all_portfolios(has_mentor, page, limit)
    return paginated(portfolios, total, page, limit, PortfolioResponse)

@app.get("/api/portfolios/statistics")
async def get_portfolio_statistics(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "statistics", "read")
    return StatisticsAggregator(db).portfolio_statistics()

# ========== NOTIFICATION ENDPOINTS ==========

@app.get("/api/notifications", response_model=NotificationList)
async def get_notifications(
    unread_only: bool = False,
    category: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Own notifications, newest first"""
    items, total, unread = NotificationService(db).list_for_user(
        current_user.id, unread_only, category, page, limit
    )
    return NotificationList(
        notifications=[NotificationResponse.model_validate(n) for n in items],
        total=total,
        unread_count=unread,
        page=page,
        limit=limit
    )

@app.get("/api/notifications/unread-count")
async def get_unread_count(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return {"unread_count": NotificationService(db).unread_count(current_user.id)}

@app.patch("/api/notifications/read-all", response_model=SuccessResponse)
async def mark_all_notifications_read(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    updated = NotificationService(db).mark_all_read(current_user.id)
    return SuccessResponse(message="Всички известия са маркирани като прочетени", data={"updated": updated})

@app.patch("/api/notifications/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_read(
    notification_id: uuid.UUID,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return NotificationResponse.model_validate(NotificationService(db).mark_read(notification_id, current_user.id))

@app.delete("/api/notifications/{notification_id}", response_model=SuccessResponse)
async def delete_notification(
    notification_id: uuid.UUID,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    NotificationService(db).delete(notification_id, current_user.id)
    return SuccessResponse(message="Известието е изтрито успешно")

@app.post("/api/notifications", response_model=NotificationResponse, status_code=status.HTTP_201_CREATED)
async def create_notification(
    data: NotificationCreate,
    background_tasks: BackgroundTasks,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    mailer=Depends(get_mailer)
):
    enforce(current_user, "notification", "send")
    notification = NotificationService(db, mailer, background_tasks=background_tasks).create_notification(data)
    return NotificationResponse.model_validate(notification)

@app.post("/api/notifications/bulk", response_model=SuccessResponse, status_code=status.HTTP_201_CREATED)
async def create_bulk_notifications(
    data: NotificationBulkCreate,
    background_tasks: BackgroundTasks,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    mailer=Depends(get_mailer)
):
    """Send the same notification to a list of users or to a whole role"""
    enforce(current_user, "notification", "bulk_send")
    notifications = NotificationService(db, mailer, background_tasks=background_tasks).create_bulk(data)
    return SuccessResponse(
        message=f"Изпратени {len(notifications)} известия",
        data={"count": len(notifications)}
    )

# ========== REPORT & ANALYTICS ENDPOINTS ==========

def _attachment(content: bytes, media_type: str, filename: str) -> StreamingResponse:
    return StreamingResponse(
        io.BytesIO(content),
        media_type=media_type,
        headers={"Content-Disposition": content_disposition(filename)}
    )

@app.get("/api/reports/absences")
async def get_absences_report(
    format: str = Query("excel"),
    grade: Optional[int] = Query(None, ge=8, le=12),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Absences per student; the date range applies to the last sanction update"""
    return _attachment(*ReportService(db).absences_report(current_user, format, grade, start_date, end_date))

@app.get("/api/reports/events")
async def get_events_report(
    format: str = Query("excel"),
    event_id: Optional[uuid.UUID] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Participations, filtered by registration date when a range is given"""
    return _attachment(*ReportService(db).events_report(
        current_user, format, event_id, status_filter, start_date, end_date
    ))

@app.get("/api/reports/user/{user_id}/{format}")
async def get_user_report(
    user_id: uuid.UUID,
    format: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Full record of one student as a spreadsheet or PDF"""
    return _attachment(*ReportService(db).user_report(current_user, user_id, format))

@app.get("/api/analytics/dashboard")
async def get_dashboard(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    enforce(current_user, "statistics", "read")
    return StatisticsAggregator(db).dashboard()

# ========== ROOT & HEALTH ENDPOINTS ==========

@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "message": "Технофолио API",
        "version": app.version,
        "documentation": "/api/docs",
        "health_check": "/api/health"
    }

@app.get("/api/health")
async def health_check(db: Session = Depends(get_db)):
    """Database connectivity check"""
    try:
        db.query(models.User.id).limit(1).all()
        database = "connected"
    except Exception:
        logger.exception("Health check could not reach the database")
        database = "unavailable"
    return {
        "status": "healthy" if database == "connected" else "degraded",
        "database": database,
        "environment": settings.ENVIRONMENT,
        "version": app.version
    }

# ========== ERROR HANDLERS ==========

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render operational errors with their machine-readable code"""
    code = exc.code if isinstance(exc, AppError) else HTTP_STATUS_CODES.get(exc.status_code, "ERROR")
    details = {"path": request.url.path}
    if isinstance(exc, AppError) and exc.errors:
        details["errors"] = exc.errors
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=str(exc.detail), code=code, details=details).model_dump(),
        headers=getattr(exc, "headers", None)
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = []
    for error in exc.errors():
        location = [str(part) for part in error["loc"] if part not in ("body", "query", "path")]
        errors.append({"field": ".".join(location), "message": error["msg"]})
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error="Невалидни данни",
            code="VALIDATION_FAILED",
            details={"path": request.url.path, "errors": errors}
        ).model_dump()
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Unexpected errors are logged in full and hidden outside development"""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    details = {"path": request.url.path}
    if settings.ENVIRONMENT == "development":
        details["message"] = str(exc)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="Вътрешна грешка на сървъра",
            code="INTERNAL_ERROR",
            details=details
        ).model_dump()
    )

# ========== STARTUP & SHUTDOWN EVENTS ==========

def bootstrap_admin(db: Session) -> Optional[models.User]:
    """Create the configured administrator account if it does not exist yet"""
    if not settings.ADMIN_EMAIL or not settings.ADMIN_PASSWORD:
        return None
    email = settings.ADMIN_EMAIL.lower()
    admin = db.query(models.User).filter(models.User.email == email).first()
    if admin:
        return admin
    admin = models.User(
        email=email,
        hashed_password=get_password_hash(settings.ADMIN_PASSWORD),
        first_name="Администратор",
        last_name="Технофолио",
        role=models.UserRole.ADMIN.value,
    )
    db.add(admin)
    db.commit()
    logger.info("Created bootstrap administrator %s", email)
    return admin

@app.on_event("startup")
async def startup_event():
    """Create tables, the bootstrap admin and reference data"""
    logger.info("Технофолио API starting up (%s)", settings.ENVIRONMENT)
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        bootstrap_admin(db)
        if settings.SEED_CREDIT_CATEGORIES:
            CreditService(db).seed_default_categories()
        NotificationService(db).purge_expired()
    finally:
        db.close()

@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Технофолио API shutting down")
    engine.dispose()

# ========== MAIN EXECUTION ==========

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
