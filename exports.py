from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.orm import Session, joinedload

from config import get_settings
from errors import ValidationFailedError
import models
from models import GOAL_CATEGORY_TITLES, ACHIEVEMENT_CATEGORIES
from policy import enforce

logger = logging.getLogger(__name__)


def _day(value) -> str:
    return value.strftime("%d.%m.%Y") if value else ""


def _student_columns(student: models.Student) -> Dict[str, Any]:
    return {
        "student_name": student.user.full_name,
        "grade": student.grade,
        "specialization": student.specialization,
    }


def _envelope(rows: List[Dict[str, Any]], **filters) -> Dict[str, Any]:
    return {
        "success": True,
        "count": len(rows),
        "filters": {k: v for k, v in filters.items() if v is not None},
        "data": rows,
    }


class ExportService:
    """Flat, staff-only data dumps sorted by grade and student name."""

    def __init__(self, db: Session):
        self.db = db
        self.settings = get_settings()

    def _students(self, grade: Optional[int] = None):
        query = self.db.query(models.Student).options(joinedload(models.Student.user))
        if grade is not None:
            query = query.filter(models.Student.grade == grade)
        return query

    def goals(self, user: models.User, grade: Optional[int] = None, category: Optional[str] = None) -> Dict[str, Any]:
        enforce(user, "goal", "export")
        if category and category not in GOAL_CATEGORY_TITLES:
            raise ValidationFailedError.for_field("category", "Невалидна категория")

        query = self.db.query(models.Goal).join(models.Student).options(
            joinedload(models.Goal.student).joinedload(models.Student.user)
        )
        if grade is not None:
            query = query.filter(models.Student.grade == grade)
        if category:
            query = query.filter(models.Goal.category == category)

        rows = [
            dict(
                _student_columns(goal.student),
                category=goal.category,
                category_title=GOAL_CATEGORY_TITLES.get(goal.category, goal.category),
                description=goal.description,
                activities="; ".join(goal.activities or []),
                activities_count=len(goal.activities or []),
                last_updated=_day(goal.updated_at),
            )
            for goal in query.all()
        ]
        rows.sort(key=lambda r: (r["grade"], r["student_name"], r["category"]))
        return _envelope(rows, grade=grade, category=category)

    def interests(self, user: models.User, grade: Optional[int] = None) -> Dict[str, Any]:
        enforce(user, "interest", "export")
        query = self.db.query(models.Interest).join(models.Student).options(
            joinedload(models.Interest.student).joinedload(models.Student.user)
        )
        if grade is not None:
            query = query.filter(models.Student.grade == grade)

        rows = []
        for interest in query.all():
            items = [f"{i['category']} - {i['subcategory']}" for i in interest.interests or []]
            hobbies = list(interest.hobbies or [])
            rows.append(dict(
                _student_columns(interest.student),
                interests=items,
                interests_text="; ".join(items),
                hobbies=hobbies,
                hobbies_text="; ".join(hobbies),
                interests_count=len(items),
                hobbies_count=len(hobbies),
                last_updated=_day(interest.updated_at),
            ))
        rows.sort(key=lambda r: (r["grade"], r["student_name"]))
        return _envelope(rows, grade=grade)

    def achievements(
        self, user: models.User, grade: Optional[int] = None, category: Optional[str] = None
    ) -> Dict[str, Any]:
        enforce(user, "achievement", "export")
        if category and category not in ACHIEVEMENT_CATEGORIES:
            raise ValidationFailedError.for_field("category", "Невалидна категория")

        query = self.db.query(models.Achievement).join(models.Student).options(
            joinedload(models.Achievement.student).joinedload(models.Student.user)
        )
        if grade is not None:
            query = query.filter(models.Student.grade == grade)
        if category:
            query = query.filter(models.Achievement.category == category)

        # Newest achievement first within each student
        achievements = sorted(query.all(), key=lambda a: a.date, reverse=True)
        rows = [
            dict(
                _student_columns(a.student),
                category=a.category,
                title=a.title,
                description=a.description or "",
                date=_day(a.date),
                place=a.place or "",
                issuer=a.issuer or "",
                created_at=_day(a.created_at),
            )
            for a in achievements
        ]
        rows.sort(key=lambda r: (r["grade"], r["student_name"]))
        return _envelope(rows, grade=grade, category=category)

    def sanctions(self, user: models.User, grade: Optional[int] = None) -> Dict[str, Any]:
        """One row per student; students without a sanction record get zeros."""
        enforce(user, "sanction", "export")
        query = self._students(grade).options(
            joinedload(models.Student.sanction).joinedload(models.Sanction.active_sanctions)
        )

        rows = []
        for student in query.all():
            s = student.sanction
            excused = s.excused if s else 0
            unexcused = s.unexcused if s else 0
            active = s.active_sanctions if s else []
            rows.append(dict(
                _student_columns(student),
                excused_absences=excused,
                unexcused_absences=unexcused,
                total_absences=excused + unexcused,
                max_allowed=s.max_allowed if s else self.settings.DEFAULT_MAX_ABSENCES,
                schoolo_remarks=s.schoolo_remarks if s else 0,
                active_sanctions="; ".join(
                    f"{a.type} ({a.reason}) от {_day(a.start_date)}" for a in active
                ),
            ))
        rows.sort(key=lambda r: (r["grade"], r["student_name"]))
        logger.info("Exported sanctions for %d students", len(rows))
        return _envelope(rows, grade=grade)
