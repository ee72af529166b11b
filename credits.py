from typing import Dict, List, Optional, Tuple, Any
import logging

from sqlalchemy import or_, func
from sqlalchemy.orm import Session

import domain_events as de
import models
from crud import commit_or_conflict, get_student_or_404, paginate
from errors import ConflictError, NotFoundError
from models import utcnow, PILLARS
from policy import ADMIN, enforce, enforce_on, is_privileged
from schemas import CreditCreate, CreditValidate, CreditBulkValidate, CreditCategoryCreate, CreditCategoryUpdate

logger = logging.getLogger(__name__)

DEFAULT_CREDIT_CATEGORIES = [
    ("Аз и другите", "Ученически парламент", "Участие в ученическото самоуправление"),
    ("Аз и другите", "Доброволчество", "Доброволческа дейност в училище или общността"),
    ("Аз и другите", "Менторство", "Помощ и подкрепа на други ученици"),
    ("Аз и другите", "Организиране на събития", "Организиране на училищни мероприятия"),
    ("Аз и другите", "Лидерство в проекти", "Ръководене на ученически проекти"),
    ("Мислене", "Участие в олимпиада", "Участие в предметни олимпиади"),
    ("Мислене", "Научен проект", "Разработка на научен или изследователски проект"),
    ("Мислене", "Иновативно решение", "Създаване на иновативно решение на проблем"),
    ("Мислене", "Публикация/презентация", "Публикуване на статия или изнасяне на презентация"),
    ("Мислене", "Изследователска дейност", "Провеждане на изследване или експеримент"),
    ("Професия", "Стаж", "Стаж в компания или организация"),
    ("Професия", "Професионален проект", "Работа по професионален проект"),
    ("Професия", "Сертификат", "Получаване на професионален сертификат"),
    ("Професия", "Участие в конкурс", "Участие в професионален конкурс или състезание"),
    ("Професия", "Професионално обучение", "Завършване на професионален курс или обучение"),
]

ACTIVE_CREDIT_STATUSES = ("pending", "validated")


class CreditService:
    def __init__(self, db: Session, bus: Optional[de.EventBus] = None):
        self.db = db
        self.bus = bus or de.EventBus()

    # Categories
    def get_categories(self, pillar: Optional[str] = None) -> List[models.CreditCategory]:
        query = self.db.query(models.CreditCategory)
        if pillar:
            query = query.filter(models.CreditCategory.pillar == pillar)
        return query.order_by(models.CreditCategory.pillar, models.CreditCategory.name).all()

    def get_categories_by_pillar(self) -> Dict[str, List[models.CreditCategory]]:
        grouped = {pillar: [] for pillar in PILLARS}
        for category in self.get_categories():
            grouped.setdefault(category.pillar, []).append(category)
        return grouped

    def create_category(self, user: models.User, data: CreditCategoryCreate) -> models.CreditCategory:
        enforce(user, "credit_category", "manage")
        if self._category_exists(data.pillar, data.name):
            raise ConflictError("Категорията вече съществува в този стълб")
        category = models.CreditCategory(**data.model_dump())
        self.db.add(category)
        commit_or_conflict(self.db, "Категорията вече съществува в този стълб")
        self.db.refresh(category)
        return category

    def update_category(self, user: models.User, category_id, data: CreditCategoryUpdate) -> models.CreditCategory:
        category = self.db.get(models.CreditCategory, category_id)
        if not category:
            raise NotFoundError("Категорията не е намерена")
        enforce(user, "credit_category", "manage")

        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        pillar = changes.get("pillar", category.pillar)
        name = changes.get("name", category.name)
        if (pillar, name) != (category.pillar, category.name) and self._category_exists(pillar, name):
            raise ConflictError("Категорията вече съществува в този стълб")
        for field, value in changes.items():
            setattr(category, field, value)
        commit_or_conflict(self.db, "Категорията вече съществува в този стълб")
        self.db.refresh(category)
        return category

    def delete_category(self, user: models.User, category_id) -> None:
        category = self.db.get(models.CreditCategory, category_id)
        if not category:
            raise NotFoundError("Категорията не е намерена")
        enforce(user, "credit_category", "manage")

        in_use = self.db.query(models.Credit).filter(
            models.Credit.pillar == category.pillar,
            models.Credit.activity == category.name,
        ).first()
        if in_use:
            raise ConflictError("Тази категория не може да бъде изтрита, защото се използва в кредити")
        self.db.delete(category)
        self.db.commit()

    def seed_default_categories(self) -> int:
        created = 0
        for pillar, name, description in DEFAULT_CREDIT_CATEGORIES:
            if not self._category_exists(pillar, name):
                self.db.add(models.CreditCategory(pillar=pillar, name=name, description=description))
                created += 1
        self.db.commit()
        if created:
            logger.info("Seeded %d credit categories", created)
        return created

    def _category_exists(self, pillar: str, name: str) -> bool:
        return self.db.query(models.CreditCategory).filter(
            models.CreditCategory.pillar == pillar,
            func.lower(models.CreditCategory.name) == name.lower(),
        ).first() is not None

    # Credits
    def get_credit(self, user: models.User, credit_id) -> models.Credit:
        credit = self.db.get(models.Credit, credit_id)
        if not credit:
            raise NotFoundError("Кредитът не е намерен")
        enforce_on(user, credit, "credit", "read")
        return credit

    def get_student_credits(self, user: models.User, student_id, status: Optional[str] = None) -> List[models.Credit]:
        student = get_student_or_404(self.db, student_id)
        enforce_on(user, student, "credit", "read")
        query = self.db.query(models.Credit).filter(models.Credit.student_id == student.id)
        if status:
            query = query.filter(models.Credit.status == status)
        return query.order_by(models.Credit.created_at.desc()).all()

    def get_all_credits(
        self,
        status: Optional[str] = None,
        pillar: Optional[str] = None,
        student_id=None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[models.Credit], int, Dict[str, int]]:
        query = self.db.query(models.Credit)
        if status:
            query = query.filter(models.Credit.status == status)
        if pillar:
            query = query.filter(models.Credit.pillar == pillar)
        if student_id:
            query = query.filter(models.Credit.student_id == student_id)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(models.Credit.activity.ilike(pattern), models.Credit.description.ilike(pattern)))

        items, total = paginate(query.order_by(models.Credit.created_at.desc()), page, limit)
        counts = {s: 0 for s in models.CREDIT_STATUSES}
        for status_value, count in self.db.query(models.Credit.status, func.count(models.Credit.id)) \
                .group_by(models.Credit.status).all():
            counts[status_value] = count
        return items, total, counts

    def create_credit(self, user: models.User, data: CreditCreate) -> models.Credit:
        """Submit a credit for the calling student's own profile"""
        student = self.db.query(models.Student).filter(models.Student.user_id == user.id).first()
        if not student:
            raise NotFoundError("Ученическият профил не е намерен")
        enforce_on(user, student, "credit", "create")

        duplicate = self.db.query(models.Credit).filter(
            models.Credit.student_id == student.id,
            models.Credit.activity == data.activity,
            models.Credit.status.in_(ACTIVE_CREDIT_STATUSES),
        ).first()
        if duplicate:
            raise ConflictError("Вече имате заявен или одобрен кредит за тази дейност")

        credit = models.Credit(
            student_id=student.id,
            pillar=data.pillar,
            activity=data.activity,
            description=data.description,
            status="pending",
        )
        self.db.add(credit)
        self.db.commit()
        self.db.refresh(credit)

        self.bus.publish(de.CreditSubmitted(credit.id, user.full_name, credit.activity))
        return credit

    def validate_credit(self, user: models.User, credit_id, data: CreditValidate) -> models.Credit:
        credit = self.db.get(models.Credit, credit_id)
        if not credit:
            raise NotFoundError("Кредитът не е намерен")
        enforce_on(user, credit, "credit", "validate")
        if credit.status != "pending":
            raise ConflictError("Само чакащи кредити могат да бъдат валидирани")

        self._apply_validation(credit, user, data.status, data.note)
        self.db.commit()
        self.db.refresh(credit)

        self.bus.publish(de.CreditValidated(credit.id, credit.student.user_id, credit.activity, credit.status))
        return credit

    def bulk_validate(self, user: models.User, data: CreditBulkValidate) -> Dict[str, Any]:
        enforce(user, "credit", "validate")
        ids = list(dict.fromkeys(data.credit_ids))
        credits = self.db.query(models.Credit).filter(
            models.Credit.id.in_(ids),
            models.Credit.status == "pending",
        ).all()
        for credit in credits:
            self._apply_validation(credit, user, data.status, data.note)
        self.db.commit()

        for credit in credits:
            self.bus.publish(de.CreditValidated(credit.id, credit.student.user_id, credit.activity, credit.status))

        processed = {c.id for c in credits}
        return {
            "processed": len(processed),
            "skipped": [str(i) for i in ids if i not in processed],
            "status": data.status,
        }

    def delete_credit(self, user: models.User, credit_id) -> None:
        credit = self.db.get(models.Credit, credit_id)
        if not credit:
            raise NotFoundError("Кредитът не е намерен")
        enforce_on(user, credit, "credit", "delete")
        if credit.status == "validated" and not is_privileged(user.role, (ADMIN,)):
            raise ConflictError("Валидиран кредит не може да бъде изтрит")
        self.db.delete(credit)
        self.db.commit()

    @staticmethod
    def _apply_validation(credit: models.Credit, user: models.User, status: str, note: Optional[str]) -> None:
        credit.status = status
        credit.validated_by_id = user.id
        credit.validation_date = utcnow()
        credit.validation_note = note
