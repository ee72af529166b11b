from datetime import timedelta
from typing import Iterable, List, Optional, Tuple
import logging

from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
import domain_events as de
from errors import NotFoundError
import models
from models import utcnow
from schemas import NotificationCreate, NotificationBulkCreate

logger = logging.getLogger(__name__)


def _bg_date(value) -> str:
    return value.strftime("%d.%m.%Y") if value else ""


class NotificationService:
    """In-app notifications with best-effort email delivery."""

    def __init__(self, db: Session, mailer=None, settings=None, background_tasks=None):
        self.db = db
        self.mailer = mailer
        self.settings = settings or get_settings()
        self.background_tasks = background_tasks

    def notify(
        self,
        recipient_ids: Iterable,
        title: str,
        message: str,
        type: str = "info",
        category: str = "system",
        related_to: Optional[Tuple[str, object]] = None,
        send_email: bool = False,
    ) -> List[models.Notification]:
        """Insert one notification per distinct recipient in a single commit, then email them.

        With ``background_tasks`` the emails are queued to run after the response
        is sent. Email failures are logged and leave ``is_email_sent`` false; they
        never affect the stored records.
        """
        seen = set()
        recipients = []
        for rid in recipient_ids:
            if rid is not None and str(rid) not in seen:
                seen.add(str(rid))
                recipients.append(rid)
        if not recipients:
            return []

        now = utcnow()
        expires_at = now + timedelta(days=self.settings.NOTIFICATION_RETENTION_DAYS)
        related_model, related_id = related_to if related_to else (None, None)
        notifications = [
            models.Notification(
                recipient_id=rid,
                title=title,
                message=message,
                type=type,
                category=category,
                related_model=related_model,
                related_id=str(related_id) if related_id is not None else None,
                created_at=now,
                expires_at=expires_at,
            )
            for rid in recipients
        ]
        self.db.add_all(notifications)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("Created %d %s notification(s): %s", len(notifications), category, title)

        if send_email and self.mailer is not None:
            if self.background_tasks is not None:
                self.background_tasks.add_task(deliver_emails, [n.id for n in notifications], self.mailer)
            else:
                for notification in notifications:
                    self.send_email(notification)
        return notifications

    def send_email(self, notification: models.Notification) -> bool:
        if self.mailer is None:
            return False
        user = notification.recipient
        if user is None or not user.email:
            logger.error("Notification %s has no recipient email", notification.id)
            return False
        try:
            sent = self.mailer.send_notification(user, notification)
        except Exception:
            logger.exception("Email for notification %s to %s failed", notification.id, user.email)
            return False
        if sent:
            notification.is_email_sent = True
            self.db.commit()
        return bool(sent)

    def create_notification(self, data: NotificationCreate) -> models.Notification:
        if not self.db.get(models.User, data.recipient_id):
            raise NotFoundError("Получателят не е намерен")
        related = (data.related_model, data.related_id) if data.related_model else None
        return self.notify(
            [data.recipient_id], data.title, data.message, data.type, data.category,
            related_to=related, send_email=data.send_email,
        )[0]

    def create_bulk(self, data: NotificationBulkCreate) -> List[models.Notification]:
        if data.recipient_ids:
            found = self.db.query(models.User.id).filter(models.User.id.in_(data.recipient_ids)).all()
            if len(found) != len(set(data.recipient_ids)):
                raise NotFoundError("Някои от получателите не са намерени")
            recipient_ids = list(data.recipient_ids)
        else:
            recipient_ids = self.active_user_ids(data.role.value)
        return self.notify(
            recipient_ids, data.title, data.message, data.type, data.category,
            send_email=data.send_email,
        )

    def active_user_ids(self, role: str) -> List:
        rows = self.db.query(models.User.id).filter(
            models.User.role == role, models.User.is_active == True
        ).all()
        return [row[0] for row in rows]

    def _visible(self, user_id):
        return self.db.query(models.Notification).filter(
            models.Notification.recipient_id == user_id,
            (models.Notification.expires_at == None) | (models.Notification.expires_at > utcnow()),
        )

    def list_for_user(
        self,
        user_id,
        unread_only: bool = False,
        category: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[models.Notification], int, int]:
        query = self._visible(user_id)
        if unread_only:
            query = query.filter(models.Notification.is_read == False)
        if category:
            query = query.filter(models.Notification.category == category)

        total = query.count()
        items = query.order_by(models.Notification.created_at.desc()) \
            .offset((page - 1) * limit).limit(limit).all()
        return items, total, self.unread_count(user_id)

    def unread_count(self, user_id) -> int:
        return self._visible(user_id).filter(models.Notification.is_read == False).count()

    def _get_own(self, notification_id, user_id) -> models.Notification:
        notification = self.db.query(models.Notification).filter(
            models.Notification.id == notification_id,
            models.Notification.recipient_id == user_id,
        ).first()
        if not notification:
            raise NotFoundError("Известието не е намерено")
        return notification

    def mark_read(self, notification_id, user_id) -> models.Notification:
        notification = self._get_own(notification_id, user_id)
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = utcnow()
            self.db.commit()
        return notification

    def mark_all_read(self, user_id) -> int:
        updated = self.db.query(models.Notification).filter(
            models.Notification.recipient_id == user_id,
            models.Notification.is_read == False,
        ).update({"is_read": True, "read_at": utcnow()}, synchronize_session=False)
        self.db.commit()
        return updated

    def delete(self, notification_id, user_id) -> None:
        self.db.delete(self._get_own(notification_id, user_id))
        self.db.commit()

    def purge_expired(self) -> int:
        removed = self.db.query(models.Notification).filter(
            models.Notification.expires_at != None,
            models.Notification.expires_at <= utcnow(),
        ).delete(synchronize_session=False)
        self.db.commit()
        if removed:
            logger.info("Purged %d expired notifications", removed)
        return removed


class NotificationSubscriber:
    """Turns domain events into notifications."""

    def __init__(self, service: NotificationService):
        self.service = service

    def register(self, bus: de.EventBus) -> de.EventBus:
        bus.subscribe(de.CreditSubmitted, self.on_credit_submitted)
        bus.subscribe(de.CreditValidated, self.on_credit_validated)
        bus.subscribe(de.AbsencesRecorded, self.on_absences_recorded)
        bus.subscribe(de.AbsencesCritical, self.on_absences_critical)
        bus.subscribe(de.RemarksIncreased, self.on_remarks_increased)
        bus.subscribe(de.SanctionAdded, self.on_sanction_added)
        bus.subscribe(de.SanctionRemoved, self.on_sanction_removed)
        bus.subscribe(de.EventCreated, self.on_event_created)
        bus.subscribe(de.EventRescheduled, self.on_event_rescheduled)
        bus.subscribe(de.EventCancelled, self.on_event_cancelled)
        bus.subscribe(de.ParticipationRegistered, self.on_participation_registered)
        bus.subscribe(de.ParticipationConfirmed, self.on_participation_confirmed)
        bus.subscribe(de.ParticipationCancelled, self.on_participation_cancelled)
        bus.subscribe(de.FeedbackSubmitted, self.on_feedback_submitted)
        bus.subscribe(de.AttendanceMarked, self.on_attendance_marked)
        return bus

    # Credits
    def on_credit_submitted(self, event: de.CreditSubmitted):
        self.service.notify(
            self.service.active_user_ids("teacher"),
            "Нова заявка за кредит",
            f'Ученикът {event.student_name} заяви нов кредит за "{event.activity}".',
            "info", "credit", ("Credit", event.credit_id),
        )

    def on_credit_validated(self, event: de.CreditValidated):
        if event.status == "validated":
            title, verb, type_ = "Кредит одобрен", "одобрен", "success"
        else:
            title, verb, type_ = "Кредит отхвърлен", "отхвърлен", "warning"
        self.service.notify(
            [event.student_user_id], title,
            f'Вашият кредит за "{event.activity}" е {verb}.',
            type_, "credit", ("Credit", event.credit_id), send_email=True,
        )

    # Sanctions
    def on_absences_recorded(self, event: de.AbsencesRecorded):
        self.service.notify(
            [event.student_user_id], "Нови отсъствия",
            f"Имате нови отсъствия: {event.excused_added} извинени и {event.unexcused_added} неизвинени.",
            "warning", "absence", ("Sanction", event.sanction_id), send_email=True,
        )

    def on_absences_critical(self, event: de.AbsencesCritical):
        ratio = int(self.service.settings.CRITICAL_ABSENCE_RATIO * 100)
        self.service.notify(
            [event.student_user_id], "Критично ниво на отсъствия",
            f"Внимание! Достигнахте {event.total} отсъствия, което е над {ratio}% "
            f"от максимално допустимите {event.max_allowed}.",
            "error", "absence", ("Sanction", event.sanction_id), send_email=True,
        )

    def on_remarks_increased(self, event: de.RemarksIncreased):
        self.service.notify(
            [event.student_user_id], "Нови забележки в Школо",
            f"Имате нови забележки в Школо. Общ брой: {event.total}",
            "warning", "sanction", ("Sanction", event.sanction_id), send_email=True,
        )

    def on_sanction_added(self, event: de.SanctionAdded):
        self.service.notify(
            [event.student_user_id], "Нова санкция",
            f"Имате нова санкция: {event.type}. Причина: {event.reason}.",
            "error", "sanction", ("Sanction", event.sanction_id), send_email=True,
        )

    def on_sanction_removed(self, event: de.SanctionRemoved):
        self.service.notify(
            [event.student_user_id], "Премахната санкция",
            f'Санкцията от тип "{event.type}" е премахната.',
            "success", "sanction", ("Sanction", event.sanction_id),
        )

    # Events
    def on_event_created(self, event: de.EventCreated):
        self.service.notify(
            self.service.active_user_ids("student"), "Ново събитие",
            f'Ново събитие "{event.title}" е създадено. Датата на събитието е '
            f"{_bg_date(event.start_date)} в {event.location}.",
            "info", "event", ("Event", event.event_id), send_email=True,
        )

    def on_event_rescheduled(self, event: de.EventRescheduled):
        self.service.notify(
            event.participant_user_ids, "Промяна в дата на събитие",
            f'Датата на събитие "{event.title}" е променена на {_bg_date(event.start_date)}',
            "warning", "event", ("Event", event.event_id), send_email=True,
        )

    def on_event_cancelled(self, event: de.EventCancelled):
        self.service.notify(
            event.participant_user_ids, "Събитие отменено",
            f'Събитие "{event.title}", планирано за {_bg_date(event.start_date)}, беше отменено.',
            "error", "event", ("Event", event.event_id), send_email=True,
        )

    def on_participation_registered(self, event: de.ParticipationRegistered):
        self.service.notify(
            [event.organizer_user_id], "Нова регистрация за събитие",
            f'Ученикът {event.student_name} се регистрира за събитие "{event.event_title}"',
            "info", "event", ("Event", event.event_id),
        )

    def on_participation_confirmed(self, event: de.ParticipationConfirmed):
        self.service.notify(
            [event.organizer_user_id], "Потвърдено участие в събитие",
            f'Ученикът {event.student_name} потвърди участието си в събитие "{event.event_title}"',
            "success", "event", ("Event", event.event_id),
        )

    def on_participation_cancelled(self, event: de.ParticipationCancelled):
        self.service.notify(
            [event.organizer_user_id], "Отменена регистрация за събитие",
            f'{event.student_name} отмени регистрацията си за събитие "{event.event_title}".',
            "warning", "event", ("Event", event.event_id),
        )

    def on_feedback_submitted(self, event: de.FeedbackSubmitted):
        self.service.notify(
            [event.organizer_user_id], "Нова обратна връзка за събитие",
            f'Получена е нова обратна връзка за събитие "{event.event_title}".',
            "info", "event", ("Event", event.event_id),
        )

    def on_attendance_marked(self, event: de.AttendanceMarked):
        self.service.notify(
            [event.student_user_id], "Отбелязано присъствие на събитие",
            f'Вашето присъствие на събитие "{event.event_title}" беше отбелязано.',
            "success", "event", ("EventParticipation", event.participation_id),
        )


def build_event_bus(db: Session, mailer=None, background_tasks=None) -> de.EventBus:
    """Bus with the notification subscriber wired to the given session."""
    bus = de.EventBus()
    NotificationSubscriber(NotificationService(db, mailer, background_tasks=background_tasks)).register(bus)
    return bus


def deliver_emails(notification_ids: List, mailer) -> int:
    """Send the emails for already stored notifications on a fresh session.

    Runs as a background task, after the request session is closed.
    """
    db = SessionLocal()
    try:
        service = NotificationService(db, mailer)
        sent = 0
        for notification_id in notification_ids:
            notification = db.get(models.Notification, notification_id)
            if notification is None:
                logger.warning("Notification %s vanished before its email was sent", notification_id)
                continue
            sent += service.send_email(notification)
        return sent
    finally:
        db.close()
