"""Domain events emitted by the resource services after a state change is committed.

Services never talk to the notification layer directly; they publish one of
the events below on an :class:`EventBus` and subscribers decide what to do
with it. Delivery is synchronous and in subscription order. A failing
subscriber is logged and skipped so it can never undo or mask the mutation
that produced the event.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Tuple, Type
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    pass


@dataclass(frozen=True)
class CreditSubmitted(DomainEvent):
    credit_id: Any
    student_name: str
    activity: str


@dataclass(frozen=True)
class CreditValidated(DomainEvent):
    credit_id: Any
    student_user_id: Any
    activity: str
    status: str


@dataclass(frozen=True)
class AbsencesRecorded(DomainEvent):
    sanction_id: Any
    student_user_id: Any
    excused_added: int
    unexcused_added: int


@dataclass(frozen=True)
class AbsencesCritical(DomainEvent):
    sanction_id: Any
    student_user_id: Any
    total: int
    max_allowed: int


@dataclass(frozen=True)
class RemarksIncreased(DomainEvent):
    sanction_id: Any
    student_user_id: Any
    total: int


@dataclass(frozen=True)
class SanctionAdded(DomainEvent):
    sanction_id: Any
    student_user_id: Any
    type: str
    reason: str


@dataclass(frozen=True)
class SanctionRemoved(DomainEvent):
    sanction_id: Any
    student_user_id: Any
    type: str


@dataclass(frozen=True)
class EventCreated(DomainEvent):
    event_id: Any
    title: str
    start_date: datetime
    location: str


@dataclass(frozen=True)
class EventRescheduled(DomainEvent):
    event_id: Any
    title: str
    start_date: datetime
    participant_user_ids: Tuple[Any, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class EventCancelled(DomainEvent):
    event_id: Any
    title: str
    start_date: datetime
    participant_user_ids: Tuple[Any, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ParticipationChanged(DomainEvent):
    participation_id: Any
    event_id: Any
    event_title: str
    organizer_user_id: Any
    student_name: str


@dataclass(frozen=True)
class ParticipationRegistered(ParticipationChanged):
    pass


@dataclass(frozen=True)
class ParticipationConfirmed(ParticipationChanged):
    pass


@dataclass(frozen=True)
class ParticipationCancelled(ParticipationChanged):
    pass


@dataclass(frozen=True)
class FeedbackSubmitted(ParticipationChanged):
    pass


@dataclass(frozen=True)
class AttendanceMarked(DomainEvent):
    participation_id: Any
    event_title: str
    student_user_id: Any


Handler = Callable[[DomainEvent], Any]


class EventBus:
    def __init__(self):
        self._handlers: Dict[Type[DomainEvent], List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type[DomainEvent], handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def publish(self, event: DomainEvent) -> int:
        """Deliver to every handler subscribed to the event's type; returns successful deliveries."""
        delivered = 0
        for handler in list(self._handlers.get(type(event), ())):
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception("Handler %r failed for %s", handler, type(event).__name__)
        return delivered
