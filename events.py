from typing import Any, Dict, List, Optional, Tuple
import logging

from sqlalchemy.orm import Session

import domain_events as de
import models
from crud import commit_or_conflict, get_student_or_404, paginate
from errors import ConflictError, NotFoundError, ValidationFailedError
from models import utcnow
from policy import enforce, enforce_on
from schemas import EventCreate, EventUpdate, FeedbackCreate

logger = logging.getLogger(__name__)

ACTIVE_PARTICIPATION_STATUSES = ("registered", "confirmed")


class EventService:
    def __init__(self, db: Session, bus: Optional[de.EventBus] = None):
        self.db = db
        self.bus = bus or de.EventBus()

    def get_event(self, event_id) -> models.Event:
        event = self.db.get(models.Event, event_id)
        if not event:
            raise NotFoundError("Събитието не е намерено")
        return event

    def get_events(
        self,
        upcoming: Optional[bool] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[models.Event], int]:
        query = self.db.query(models.Event)
        now = utcnow()
        if upcoming is True:
            query = query.filter(models.Event.start_date > now).order_by(models.Event.start_date.asc())
        elif upcoming is False:
            query = query.filter(models.Event.start_date <= now).order_by(models.Event.start_date.desc())
        else:
            query = query.order_by(models.Event.start_date.desc())
        if search:
            query = query.filter(models.Event.title.ilike(f"%{search}%"))
        return paginate(query, page, limit)

    def _active_participant_user_ids(self, event: models.Event) -> Tuple[Any, ...]:
        return tuple(
            p.student.user_id for p in event.participations
            if p.status in ACTIVE_PARTICIPATION_STATUSES and p.student is not None
        )

    def create_event(self, user: models.User, data: EventCreate) -> models.Event:
        enforce(user, "event", "create")
        event = models.Event(created_by_id=user.id, **data.model_dump())
        self.db.add(event)
        self.db.commit()
        self.db.refresh(event)

        self.bus.publish(de.EventCreated(event.id, event.title, event.start_date, event.location))
        return event

    def update_event(self, user: models.User, event_id, data: EventUpdate) -> models.Event:
        event = self.get_event(event_id)
        enforce_on(user, event, "event", "update")

        changes = data.model_dump(exclude_unset=True)
        for field in ("title", "start_date", "location", "organizer"):
            if field in changes and changes[field] is None:
                del changes[field]
        start_date = changes.get("start_date", event.start_date)
        end_date = changes.get("end_date", event.end_date)
        if end_date is not None and end_date < start_date:
            raise ValidationFailedError.for_field("end_date", "Крайната дата не може да е преди началната")

        date_changed = "start_date" in changes and changes["start_date"] != event.start_date
        for field, value in changes.items():
            setattr(event, field, value)
        self.db.commit()
        self.db.refresh(event)

        if date_changed:
            self.bus.publish(de.EventRescheduled(
                event.id, event.title, event.start_date, self._active_participant_user_ids(event)
            ))
        return event

    def delete_event(self, user: models.User, event_id) -> None:
        """Delete an event with its participations and tell the active participants"""
        event = self.get_event(event_id)
        enforce_on(user, event, "event", "delete")

        cancelled = de.EventCancelled(
            event.id, event.title, event.start_date, self._active_participant_user_ids(event)
        )
        self.db.delete(event)
        self.db.commit()
        logger.info("Deleted event %s with %d active participants", cancelled.event_id, len(cancelled.participant_user_ids))

        self.bus.publish(cancelled)

    def get_participants(self, user: models.User, event_id) -> Dict[str, Any]:
        event = self.get_event(event_id)
        enforce_on(user, event, "event", "participants")
        participations = sorted(event.participations, key=lambda p: p.registered_at or utcnow())
        counts = {status: 0 for status in models.PARTICIPATION_STATUSES}
        for p in participations:
            counts[p.status] = counts.get(p.status, 0) + 1
        return {"event": event, "participants": participations, "counts": counts}

    def participate(self, user: models.User, event_id) -> models.EventParticipation:
        event = self.get_event(event_id)
        enforce(user, "event", "participate")
        student = self.db.query(models.Student).filter(models.Student.user_id == user.id).first()
        if not student:
            raise NotFoundError("Ученическият профил не е намерен")

        if utcnow() >= event.start_date:
            raise ConflictError("Не можете да се регистрирате за събитие, което вече е започнало")

        existing = self.db.query(models.EventParticipation).filter(
            models.EventParticipation.event_id == event.id,
            models.EventParticipation.student_id == student.id,
        ).first()
        if existing:
            raise ConflictError("Вече сте регистрирани за това събитие")

        participation = models.EventParticipation(event_id=event.id, student_id=student.id, status="registered")
        self.db.add(participation)
        commit_or_conflict(self.db, "Вече сте регистрирани за това събитие")
        self.db.refresh(participation)

        self.bus.publish(de.ParticipationRegistered(
            participation.id, event.id, event.title, event.created_by_id, user.full_name
        ))
        return participation

    def _get_participation(self, participation_id) -> models.EventParticipation:
        participation = self.db.get(models.EventParticipation, participation_id)
        if not participation:
            raise NotFoundError("Регистрацията не е намерена")
        return participation

    def _changed(self, event_type, participation: models.EventParticipation):
        return event_type(
            participation.id,
            participation.event_id,
            participation.event.title,
            participation.event.created_by_id,
            participation.student.user.full_name,
        )

    def confirm(self, user: models.User, participation_id) -> models.EventParticipation:
        participation = self._get_participation(participation_id)
        enforce_on(user, participation, "participation", "confirm")
        if participation.status != "registered":
            raise ConflictError("Само регистрирани участия могат да бъдат потвърдени")

        participation.status = "confirmed"
        participation.confirmed_at = utcnow()
        self.db.commit()
        self.db.refresh(participation)

        self.bus.publish(self._changed(de.ParticipationConfirmed, participation))
        return participation

    def cancel(self, user: models.User, participation_id) -> models.EventParticipation:
        participation = self._get_participation(participation_id)
        enforce_on(user, participation, "participation", "cancel")
        if participation.status != "registered":
            raise ConflictError("Само регистрирани участия могат да бъдат отменени")
        if utcnow() >= participation.event.start_date:
            raise ConflictError("Не можете да отмените регистрация за събитие, което вече е започнало")

        participation.status = "cancelled"
        self.db.commit()
        self.db.refresh(participation)

        self.bus.publish(self._changed(de.ParticipationCancelled, participation))
        return participation

    def mark_attendance(self, user: models.User, participation_id) -> models.EventParticipation:
        participation = self._get_participation(participation_id)
        enforce_on(user, participation, "participation", "attend")
        if participation.status != "confirmed":
            raise ConflictError("Присъствие може да се отбележи само за потвърдено участие")

        participation.status = "attended"
        participation.attended_at = utcnow()
        self.db.commit()
        self.db.refresh(participation)

        self.bus.publish(de.AttendanceMarked(
            participation.id, participation.event.title, participation.student.user_id
        ))
        return participation

    def submit_feedback(self, user: models.User, participation_id, data: FeedbackCreate) -> models.EventParticipation:
        participation = self._get_participation(participation_id)
        enforce_on(user, participation, "participation", "feedback")
        if participation.status != "attended":
            raise ConflictError("Не можете да предоставите обратна връзка за непосетено събитие")

        participation.feedback = data.feedback
        participation.feedback_date = utcnow()
        self.db.commit()
        self.db.refresh(participation)

        self.bus.publish(self._changed(de.FeedbackSubmitted, participation))
        return participation

    def get_student_participations(self, user: models.User, student_id) -> List[models.EventParticipation]:
        student = get_student_or_404(self.db, student_id)
        enforce_on(user, student, "participation", "read")
        return self.db.query(models.EventParticipation).filter(
            models.EventParticipation.student_id == student.id
        ).order_by(models.EventParticipation.registered_at.desc()).all()
