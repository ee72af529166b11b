from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from sqlalchemy import func, or_
from typing import List, Optional, Any, Tuple
import logging

import models
from config import get_settings
from auth import AuthService
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailedError
from models import utcnow, GOAL_CATEGORY_TITLES
from policy import enforce, enforce_on, is_privileged
from schemas import (
    StudentCreate, StudentUpdate, GoalUpdate, InterestUpdate,
    AchievementCreate, AchievementUpdate, PortfolioUpdate, RecommendationCreate,
    AdminUserCreate, AdminUserUpdate
)

logger = logging.getLogger(__name__)


def get_student_or_404(db: Session, student_id) -> models.Student:
    student = db.get(models.Student, student_id)
    if not student:
        raise NotFoundError("Ученикът не е намерен")
    return student


def commit_or_conflict(db: Session, message: str) -> None:
    """Commit, turning a uniqueness violation raised by the store into a Conflict."""
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(message)


def paginate(query, page: int = 1, limit: int = 20) -> Tuple[List[Any], int]:
    total = query.count()
    return query.offset((page - 1) * limit).limit(limit).all(), total


class StudentService:
    def __init__(self, db: Session):
        self.db = db

    def create_student(self, user: models.User, data: StudentCreate) -> models.Student:
        """Create the student profile of the calling account"""
        enforce(user, "student", "create")
        if self.db.query(models.Student).filter(models.Student.user_id == user.id).first():
            raise ConflictError("Ученическият профил вече съществува")

        student = models.Student(user_id=user.id, **data.model_dump())
        self.db.add(student)
        self._sync_student_info(user, student)
        commit_or_conflict(self.db, "Ученическият профил вече съществува")
        self.db.refresh(student)
        return student

    def get_me(self, user: models.User) -> models.Student:
        student = self.db.query(models.Student).filter(models.Student.user_id == user.id).first()
        if not student:
            raise NotFoundError("Ученическият профил не е намерен")
        return student

    def get_by_user_id(self, user: models.User, user_id) -> models.Student:
        student = self.db.query(models.Student).filter(models.Student.user_id == user_id).first()
        if not student:
            raise NotFoundError("Ученическият профил не е намерен")
        enforce_on(user, student, "student", "read")
        return student

    def update_student(self, user: models.User, student_id, data: StudentUpdate) -> models.Student:
        student = get_student_or_404(self.db, student_id)
        enforce_on(user, student, "student", "update")

        for field, value in data.model_dump(exclude_unset=True).items():
            if value is None and field != "image_url":
                continue
            setattr(student, field, value)
        self._sync_student_info(student.user, student)
        self.db.commit()
        self.db.refresh(student)
        return student

    def delete_student(self, user: models.User, student_id) -> None:
        """Delete a profile together with everything the student owns"""
        student = get_student_or_404(self.db, student_id)
        enforce_on(user, student, "student", "delete")

        self.db.delete(student)
        if student.user is not None:
            student.user.student_info = None
        self.db.commit()
        logger.info("Deleted student profile %s", student_id)

    def get_students(
        self,
        grade: Optional[int] = None,
        specialization: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[models.Student], int]:
        query = self.db.query(models.Student).join(models.User, models.Student.user_id == models.User.id)

        if grade:
            query = query.filter(models.Student.grade == grade)
        if specialization:
            query = query.filter(models.Student.specialization.ilike(f"%{specialization}%"))
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(
                models.User.first_name.ilike(pattern),
                models.User.last_name.ilike(pattern),
                models.User.email.ilike(pattern),
            ))

        query = query.order_by(models.Student.grade, models.User.last_name, models.User.first_name)
        return paginate(query, page, limit)

    def search_students(
        self,
        query_text: Optional[str] = None,
        min_average: Optional[float] = None,
        max_average: Optional[float] = None,
        limit: int = 50,
    ) -> List[models.Student]:
        query = self.db.query(models.Student).join(models.User, models.Student.user_id == models.User.id)
        if query_text:
            pattern = f"%{query_text}%"
            query = query.filter(or_(
                models.User.first_name.ilike(pattern),
                models.User.last_name.ilike(pattern),
                models.User.email.ilike(pattern),
                models.Student.specialization.ilike(pattern),
            ))
        if min_average is not None:
            query = query.filter(models.Student.average_grade >= min_average)
        if max_average is not None:
            query = query.filter(models.Student.average_grade <= max_average)
        return query.order_by(models.Student.average_grade.desc()).limit(limit).all()

    @staticmethod
    def _sync_student_info(user: Optional[models.User], student: models.Student) -> None:
        if user is None:
            return
        user.student_info = {
            "grade": student.grade,
            "specialization": student.specialization,
            "averageGrade": student.average_grade,
        }


class GoalService:
    def __init__(self, db: Session):
        self.db = db

    def get_goals(self, user: models.User, student_id) -> List[models.Goal]:
        student = get_student_or_404(self.db, student_id)
        enforce_on(user, student, "goal", "read")
        return self.db.query(models.Goal).filter(models.Goal.student_id == student.id) \
            .order_by(models.Goal.category).all()

    def upsert_goal(self, user: models.User, student_id, category: str, data: GoalUpdate) -> Tuple[models.Goal, bool]:
        """Create or update the single goal of a (student, category) pair"""
        if category not in GOAL_CATEGORY_TITLES:
            raise ValidationFailedError.for_field("category", "Невалидна категория")
        student = get_student_or_404(self.db, student_id)
        enforce_on(user, student, "goal", "update")

        goal = self.db.query(models.Goal).filter(
            models.Goal.student_id == student.id,
            models.Goal.category == category,
        ).first()
        created = goal is None
        if created:
            goal = models.Goal(student_id=student.id, category=category)
            self.db.add(goal)

        goal.title = GOAL_CATEGORY_TITLES[category]
        goal.description = data.description
        goal.activities = list(data.activities)
        commit_or_conflict(self.db, "Целта за тази категория вече съществува")
        self.db.refresh(goal)
        return goal, created

    def delete_goal(self, user: models.User, student_id, category: str) -> None:
        student = get_student_or_404(self.db, student_id)
        goal = self.db.query(models.Goal).filter(
            models.Goal.student_id == student.id,
            models.Goal.category == category,
        ).first()
        if not goal:
            raise NotFoundError("Целта не е намерена")
        enforce_on(user, goal, "goal", "delete", path_student_id=student_id)
        self.db.delete(goal)
        self.db.commit()

    def get_all_goals(
        self,
        grade: Optional[int] = None,
        category: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[models.Goal], int]:
        query = self.db.query(models.Goal).join(models.Student)
        if grade:
            query = query.filter(models.Student.grade == grade)
        if category:
            query = query.filter(models.Goal.category == category)
        return paginate(query.order_by(models.Goal.updated_at.desc()), page, limit)


class InterestService:
    def __init__(self, db: Session):
        self.db = db

    def get_interests(self, user: models.User, student_id) -> models.Interest:
        """Stored interests, or an unsaved empty record when the student has none yet"""
        student = get_student_or_404(self.db, student_id)
        enforce_on(user, student, "interest", "read")
        interest = self.db.query(models.Interest).filter(models.Interest.student_id == student.id).first()
        return interest or models.Interest(student_id=student.id, interests=[], hobbies=[])

    def update_interests(self, user: models.User, student_id, data: InterestUpdate) -> models.Interest:
        student = get_student_or_404(self.db, student_id)
        enforce_on(user, student, "interest", "update")

        pairs = set()
        for item in data.interests:
            key = (item.category.casefold(), item.subcategory.casefold())
            if key in pairs:
                raise ConflictError(f'Интересът "{item.category} / {item.subcategory}" е повторен')
            pairs.add(key)

        hobbies = set()
        for hobby in data.hobbies:
            if hobby.casefold() in hobbies:
                raise ConflictError(f'Хобито "{hobby}" е повторено')
            hobbies.add(hobby.casefold())

        interest = self.db.query(models.Interest).filter(models.Interest.student_id == student.id).first()
        if interest is None:
            interest = models.Interest(student_id=student.id)
            self.db.add(interest)
        interest.interests = [item.model_dump() for item in data.interests]
        interest.hobbies = list(data.hobbies)
        commit_or_conflict(self.db, "Интересите вече съществуват")
        self.db.refresh(interest)
        return interest

    def get_all_interests(self, page: int = 1, limit: int = 50) -> Tuple[List[models.Interest], int]:
        query = self.db.query(models.Interest).order_by(models.Interest.updated_at.desc())
        return paginate(query, page, limit)


class AchievementService:
    def __init__(self, db: Session):
        self.db = db

    def get_achievements(self, user: models.User, student_id, category: Optional[str] = None) -> List[models.Achievement]:
        student = get_student_or_404(self.db, student_id)
        enforce_on(user, student, "achievement", "read")
        query = self.db.query(models.Achievement).filter(models.Achievement.student_id == student.id)
        if category:
            query = query.filter(models.Achievement.category == category)
        return query.order_by(models.Achievement.date.desc()).all()

    def create_achievement(self, user: models.User, student_id, data: AchievementCreate) -> models.Achievement:
        student = get_student_or_404(self.db, student_id)
        enforce_on(user, student, "achievement", "create")

        duplicate = self.db.query(models.Achievement).filter(
            models.Achievement.student_id == student.id,
            models.Achievement.title == data.title,
            models.Achievement.date == data.date,
        ).first()
        if duplicate:
            raise ConflictError("Постижение със същото заглавие и дата вече съществува")

        achievement = models.Achievement(student_id=student.id, **data.model_dump())
        self.db.add(achievement)
        commit_or_conflict(self.db, "Постижение със същото заглавие и дата вече съществува")
        self.db.refresh(achievement)
        return achievement

    def update_achievement(
        self, user: models.User, student_id, achievement_id, data: AchievementUpdate
    ) -> models.Achievement:
        get_student_or_404(self.db, student_id)
        achievement = self.db.get(models.Achievement, achievement_id)
        if not achievement:
            raise NotFoundError("Постижението не е намерено")
        enforce_on(user, achievement, "achievement", "update", path_student_id=student_id)

        changes = data.model_dump(exclude_unset=True)
        for field in ("category", "title", "date"):
            if field in changes and changes[field] is None:
                del changes[field]
        title = changes.get("title", achievement.title)
        day = changes.get("date", achievement.date)
        duplicate = self.db.query(models.Achievement).filter(
            models.Achievement.student_id == achievement.student_id,
            models.Achievement.title == title,
            models.Achievement.date == day,
            models.Achievement.id != achievement.id,
        ).first()
        if duplicate:
            raise ConflictError("Постижение със същото заглавие и дата вече съществува")

        for field, value in changes.items():
            setattr(achievement, field, value)
        commit_or_conflict(self.db, "Постижение със същото заглавие и дата вече съществува")
        self.db.refresh(achievement)
        return achievement

    def delete_achievement(self, user: models.User, student_id, achievement_id) -> None:
        get_student_or_404(self.db, student_id)
        achievement = self.db.get(models.Achievement, achievement_id)
        if not achievement:
            raise NotFoundError("Постижението не е намерено")
        enforce_on(user, achievement, "achievement", "delete", path_student_id=student_id)
        self.db.delete(achievement)
        self.db.commit()

    def get_all_achievements(
        self,
        category: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[models.Achievement], int]:
        query = self.db.query(models.Achievement)
        if category:
            query = query.filter(models.Achievement.category == category)
        if search:
            query = query.filter(models.Achievement.title.ilike(f"%{search}%"))
        return paginate(query.order_by(models.Achievement.date.desc()), page, limit)


class PortfolioService:
    def __init__(self, db: Session, settings=None):
        self.db = db
        self.settings = settings or get_settings()

    def _find(self, student_id) -> Optional[models.Portfolio]:
        return self.db.query(models.Portfolio).filter(models.Portfolio.student_id == student_id).first()

    def get_portfolio(self, user: models.User, student_id) -> models.Portfolio:
        """Stored portfolio, or an unsaved empty one"""
        student = get_student_or_404(self.db, student_id)
        enforce_on(user, student, "portfolio", "read")
        return self._find(student.id) or models.Portfolio(
            student_id=student.id, experience="", projects="", recommendations=[]
        )

    def _get_or_create(self, student: models.Student) -> models.Portfolio:
        portfolio = self._find(student.id)
        if portfolio is None:
            portfolio = models.Portfolio(student_id=student.id, experience="", projects="")
            self.db.add(portfolio)
        return portfolio

    def update_portfolio(self, user: models.User, student_id, data: PortfolioUpdate) -> models.Portfolio:
        student = get_student_or_404(self.db, student_id)
        enforce_on(user, student, "portfolio", "update")

        changes = data.model_dump(exclude_unset=True)
        if changes.get("mentor_id") is not None:
            mentor = self.db.get(models.User, changes["mentor_id"])
            if not mentor or not is_privileged(mentor.role):
                raise ValidationFailedError.for_field("mentor_id", "Менторът трябва да е учител или администратор")

        portfolio = self._get_or_create(student)
        for field, value in changes.items():
            if field in ("experience", "projects") and value is None:
                value = ""
            setattr(portfolio, field, value)
        commit_or_conflict(self.db, "Портфолиото вече съществува")
        self.db.refresh(portfolio)
        return portfolio

    def add_recommendation(self, user: models.User, student_id, data: RecommendationCreate) -> models.Portfolio:
        student = get_student_or_404(self.db, student_id)
        enforce_on(user, student, "portfolio", "recommend")

        portfolio = self._get_or_create(student)
        if len(portfolio.recommendations) >= self.settings.MAX_RECOMMENDATIONS:
            raise ConflictError(f"Максималният брой препоръки ({self.settings.MAX_RECOMMENDATIONS}) е достигнат")
        author = data.author.casefold()
        if any(r.author.strip().casefold() == author for r in portfolio.recommendations):
            raise ConflictError("Вече има препоръка от този автор")

        portfolio.recommendations.append(models.Recommendation(text=data.text, author=data.author, date=utcnow()))
        commit_or_conflict(self.db, "Портфолиото вече съществува")
        self.db.refresh(portfolio)
        return portfolio

    def remove_recommendation(self, user: models.User, student_id, recommendation_id) -> models.Portfolio:
        student = get_student_or_404(self.db, student_id)
        recommendation = self.db.get(models.Recommendation, recommendation_id)
        if not recommendation:
            raise NotFoundError("Препоръката не е намерена")
        portfolio = recommendation.portfolio
        enforce(
            user, "portfolio", "remove_recommendation",
            owner_user_id=student.user_id,
            path_student_id=student.id,
            resource_student_id=portfolio.student_id,
        )
        portfolio.recommendations.remove(recommendation)
        self.db.commit()
        self.db.refresh(portfolio)
        return portfolio

    def get_all_portfolios(self, has_mentor: Optional[bool] = None, page: int = 1, limit: int = 50) -> Tuple[List[models.Portfolio], int]:
        query = self.db.query(models.Portfolio)
        if has_mentor is True:
            query = query.filter(models.Portfolio.mentor_id != None)
        elif has_mentor is False:
            query = query.filter(models.Portfolio.mentor_id == None)
        return paginate(query.order_by(models.Portfolio.updated_at.desc()), page, limit)


class UserService:
    """Account administration; every method is admin-only."""

    def __init__(self, db: Session):
        self.db = db

    def _get(self, user_id) -> models.User:
        user = self.db.get(models.User, user_id)
        if not user:
            raise NotFoundError("Потребителят не е намерен")
        return user

    def _guard_other_admin(self, current_user: models.User, target: models.User, action: str) -> None:
        if target.role == "admin" and target.id != current_user.id:
            raise ForbiddenError(f"Администратор не може да {action} друг администратор")

    def get_user(self, current_user: models.User, user_id) -> Tuple[models.User, Optional[models.Student]]:
        enforce(current_user, "user", "manage")
        user = self._get(user_id)
        return user, user.student

    def create_user(self, current_user: models.User, data: AdminUserCreate) -> models.User:
        enforce(current_user, "user", "manage")
        user = AuthService(self.db).create_user(data, role=data.role.value)
        logger.info("Admin %s created %s account %s", current_user.email, user.role, user.email)
        return user

    def update_user(self, current_user: models.User, user_id, data: AdminUserUpdate) -> models.User:
        enforce(current_user, "user", "manage")
        user = self._get(user_id)
        self._guard_other_admin(current_user, user, "променя данните на")

        changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
        if "email" in changes and changes["email"] != user.email:
            if self.db.query(models.User).filter(models.User.email == changes["email"]).first():
                raise ConflictError("Потребител с този имейл вече съществува")
        for field, value in changes.items():
            setattr(user, field, value)
        commit_or_conflict(self.db, "Потребител с този имейл вече съществува")
        self.db.refresh(user)
        return user

    def change_role(self, current_user: models.User, user_id, role: str) -> models.User:
        enforce(current_user, "user", "manage")
        user = self._get(user_id)
        self._guard_other_admin(current_user, user, "променя ролята на")
        if user.id == current_user.id and role != "admin":
            raise ConflictError("Не можете да премахнете собствените си администраторски права")

        previous, user.role = user.role, role
        self.db.commit()
        self.db.refresh(user)
        logger.info("Role of %s changed from %s to %s", user.email, previous, role)
        return user

    def statistics(self, current_user: models.User) -> dict:
        enforce(current_user, "user", "manage")
        month_start = utcnow().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        by_role = dict(
            self.db.query(models.User.role, func.count(models.User.id)).group_by(models.User.role).all()
        )
        return {
            "total_users": sum(by_role.values()),
            "total_students": by_role.get("student", 0),
            "total_teachers": by_role.get("teacher", 0),
            "total_admins": by_role.get("admin", 0),
            "active_users": self.db.query(models.User).filter(models.User.is_active == True).count(),
            "locked_users": self.db.query(models.User).filter(models.User.account_locked == True).count(),
            "registrations_this_month": self.db.query(models.User).filter(
                models.User.created_at >= month_start
            ).count(),
        }
