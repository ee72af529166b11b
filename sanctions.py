from decimal import Decimal
from typing import Any, Dict, Optional
import logging

from sqlalchemy.orm import Session

from config import get_settings
import domain_events as de
import models
from crud import get_student_or_404
from errors import AppError, NotFoundError
from policy import enforce, enforce_on
from schemas import AbsencesUpdate, RemarksUpdate, ActiveSanctionCreate, BulkAbsenceUpdate

logger = logging.getLogger(__name__)


def is_critical(total: int, max_allowed: int, ratio: float) -> bool:
    """True when total absences exceed ratio * max_allowed."""
    return Decimal(total) > Decimal(str(ratio)) * Decimal(max_allowed)


class SanctionService:
    def __init__(self, db: Session, bus: Optional[de.EventBus] = None, settings=None):
        self.db = db
        self.bus = bus or de.EventBus()
        self.settings = settings or get_settings()

    def default_shape(self, student_id) -> Dict[str, Any]:
        return {
            "id": None,
            "student_id": student_id,
            "absences": {"excused": 0, "unexcused": 0, "max_allowed": self.settings.DEFAULT_MAX_ABSENCES},
            "schoolo_remarks": 0,
            "active_sanctions": [],
            "updated_at": None,
        }

    @staticmethod
    def to_dict(sanction: models.Sanction) -> Dict[str, Any]:
        return {
            "id": sanction.id,
            "student_id": sanction.student_id,
            "absences": {
                "excused": sanction.excused,
                "unexcused": sanction.unexcused,
                "max_allowed": sanction.max_allowed,
            },
            "schoolo_remarks": sanction.schoolo_remarks,
            "active_sanctions": list(sanction.active_sanctions),
            "updated_at": sanction.updated_at,
        }

    def _find(self, student_id) -> Optional[models.Sanction]:
        return self.db.query(models.Sanction).filter(models.Sanction.student_id == student_id).first()

    def _get_or_create(self, student: models.Student) -> models.Sanction:
        sanction = self._find(student.id)
        if sanction is None:
            sanction = models.Sanction(
                student_id=student.id,
                excused=0,
                unexcused=0,
                max_allowed=self.settings.DEFAULT_MAX_ABSENCES,
                schoolo_remarks=0,
            )
            self.db.add(sanction)
        return sanction

    def get_sanctions(self, user: models.User, student_id) -> Dict[str, Any]:
        """Read-only: a student without a record gets the default shape, nothing is stored."""
        student = get_student_or_404(self.db, student_id)
        enforce_on(user, student, "sanction", "read")
        sanction = self._find(student.id)
        return self.to_dict(sanction) if sanction else self.default_shape(student.id)

    def update_absences(self, user: models.User, student_id, data: AbsencesUpdate) -> Dict[str, Any]:
        student = get_student_or_404(self.db, student_id)
        enforce_on(user, student, "sanction", "update")

        sanction = self._get_or_create(student)
        old_excused, old_unexcused = sanction.excused or 0, sanction.unexcused or 0
        if data.excused is not None:
            sanction.excused = data.excused
        if data.unexcused is not None:
            sanction.unexcused = data.unexcused
        if data.max_allowed is not None:
            sanction.max_allowed = data.max_allowed
        self.db.commit()
        self.db.refresh(sanction)

        excused_added = sanction.excused - old_excused
        unexcused_added = sanction.unexcused - old_unexcused
        if excused_added > 0 or unexcused_added > 0:
            self.bus.publish(de.AbsencesRecorded(
                sanction.id, student.user_id, max(excused_added, 0), max(unexcused_added, 0)
            ))

        total = sanction.total_absences
        if is_critical(total, sanction.max_allowed, self.settings.CRITICAL_ABSENCE_RATIO):
            logger.info("Student %s reached critical absences (%d/%d)", student.id, total, sanction.max_allowed)
            self.bus.publish(de.AbsencesCritical(sanction.id, student.user_id, total, sanction.max_allowed))

        return self.to_dict(sanction)

    def bulk_update_absences(self, user: models.User, data: BulkAbsenceUpdate) -> Dict[str, Any]:
        enforce(user, "sanction", "update")
        results = []
        for item in data.updates:
            try:
                self.update_absences(user, item.student_id, item)
                results.append({"student_id": str(item.student_id), "success": True})
            except AppError as exc:
                self.db.rollback()
                results.append({"student_id": str(item.student_id), "success": False, "error": exc.detail})
        succeeded = sum(1 for r in results if r["success"])
        return {"success": succeeded, "failed": len(results) - succeeded, "results": results}

    def update_remarks(self, user: models.User, student_id, data: RemarksUpdate) -> Dict[str, Any]:
        student = get_student_or_404(self.db, student_id)
        enforce_on(user, student, "sanction", "update")

        sanction = self._get_or_create(student)
        old_remarks = sanction.schoolo_remarks or 0
        sanction.schoolo_remarks = data.schoolo_remarks
        self.db.commit()
        self.db.refresh(sanction)

        if sanction.schoolo_remarks > old_remarks:
            self.bus.publish(de.RemarksIncreased(sanction.id, student.user_id, sanction.schoolo_remarks))
        return self.to_dict(sanction)

    def add_active_sanction(self, user: models.User, student_id, data: ActiveSanctionCreate) -> Dict[str, Any]:
        student = get_student_or_404(self.db, student_id)
        enforce_on(user, student, "sanction", "update")

        sanction = self._get_or_create(student)
        active = models.ActiveSanction(**data.model_dump())
        sanction.active_sanctions.append(active)
        self.db.commit()
        self.db.refresh(sanction)

        self.bus.publish(de.SanctionAdded(sanction.id, student.user_id, active.type, active.reason))
        return self.to_dict(sanction)

    def remove_active_sanction(self, user: models.User, student_id, active_id) -> Dict[str, Any]:
        student = get_student_or_404(self.db, student_id)
        sanction = self._find(student.id)
        if sanction is None:
            raise NotFoundError("Няма санкции за този ученик")
        active = self.db.get(models.ActiveSanction, active_id)
        if active is None:
            raise NotFoundError("Активната санкция не е намерена")
        enforce(
            user, "sanction", "update",
            owner_user_id=student.user_id,
            path_student_id=student.id,
            resource_student_id=active.sanction.student_id,
        )

        removed_type = active.type
        sanction.active_sanctions.remove(active)
        self.db.commit()
        self.db.refresh(sanction)

        self.bus.publish(de.SanctionRemoved(sanction.id, student.user_id, removed_type))
        return self.to_dict(sanction)
