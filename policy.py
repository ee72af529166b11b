"""Ownership resolution and the access rule table shared by every service.

Every mutating or reading service call goes through :func:`enforce` after it
has loaded the entity it operates on. The precedence is fixed:

1. the entity must exist (callers raise ``NotFoundError`` before calling here);
2. when both a path student id and the entity's own student id are known they
   must match, otherwise ``MismatchError``;
3. the caller must hold one of the principals listed for the operation,
   otherwise ``ForbiddenError``.
"""
import uuid
from typing import Any, Iterable, Optional

import models
from errors import ForbiddenError, MismatchError

OWNER = "owner"
STUDENT = "student"
TEACHER = "teacher"
ADMIN = "admin"
AUTHENTICATED = "authenticated"

PRIVILEGED_ROLES = (TEACHER, ADMIN)

_OTA = frozenset({OWNER, TEACHER, ADMIN})
_OA = frozenset({OWNER, ADMIN})
_TA = frozenset({TEACHER, ADMIN})

POLICIES = {
    ("student", "read"): _OTA,
    ("student", "list"): _TA,
    ("student", "create"): frozenset({STUDENT}),
    ("student", "update"): _OTA,
    ("student", "delete"): _OA,

    ("credit", "read"): _OTA,
    ("credit", "list"): _TA,
    ("credit", "create"): frozenset({OWNER}),
    ("credit", "validate"): _TA,
    ("credit", "delete"): _OA,
    ("credit_category", "read"): frozenset({AUTHENTICATED}),
    ("credit_category", "manage"): frozenset({ADMIN}),

    ("goal", "read"): _OTA,
    ("goal", "list"): _TA,
    ("goal", "export"): _TA,
    ("goal", "update"): _OA,
    ("goal", "delete"): _OA,

    ("interest", "read"): _OTA,
    ("interest", "list"): _TA,
    ("interest", "export"): _TA,
    ("interest", "update"): _OA,

    ("achievement", "read"): _OTA,
    ("achievement", "list"): _TA,
    ("achievement", "export"): _TA,
    ("achievement", "create"): _OA,
    ("achievement", "update"): _OA,
    ("achievement", "delete"): _OA,

    ("sanction", "read"): _OTA,
    ("sanction", "list"): _TA,
    ("sanction", "export"): _TA,
    ("sanction", "update"): _TA,

    ("event", "read"): frozenset({AUTHENTICATED}),
    ("event", "create"): _TA,
    ("event", "update"): _OA,
    ("event", "delete"): _OA,
    ("event", "participants"): _OTA,
    ("event", "participate"): frozenset({STUDENT}),

    ("participation", "read"): _OTA,
    ("participation", "confirm"): _OA,
    ("participation", "cancel"): _OA,
    ("participation", "feedback"): frozenset({OWNER}),
    ("participation", "attend"): _TA,

    ("portfolio", "read"): _OTA,
    ("portfolio", "list"): _TA,
    ("portfolio", "update"): _OA,
    ("portfolio", "recommend"): _OTA,
    ("portfolio", "remove_recommendation"): _OA,

    ("statistics", "read"): _TA,
    ("report", "read"): _TA,
    ("report", "read_user"): _TA,

    ("notification", "send"): _TA,
    ("notification", "bulk_send"): frozenset({ADMIN}),

    ("user", "manage"): frozenset({ADMIN}),
    ("audit", "read"): frozenset({ADMIN}),
}

DENIED_MESSAGES = {
    ("credit", "create"): "Можете да заявявате кредити само за себе си",
    ("credit", "validate"): "Само учители и администратори могат да валидират кредити",
    ("credit", "delete"): "Нямате права да изтриете този кредит",
    ("sanction", "update"): "Само учители и администратори могат да променят санкции",
    ("event", "create"): "Нямате права да създавате събития",
    ("event", "update"): "Нямате права да обновявате това събитие",
    ("event", "delete"): "Нямате права да изтривате това събитие",
    ("event", "participate"): "Само ученици могат да се регистрират за събития",
    ("participation", "attend"): "Нямате права да отбелязвате присъствие",
}
DEFAULT_DENIED_MESSAGE = "Нямате права за тази операция"


def canonical_id(value: Any) -> Optional[str]:
    """Canonical string form of an identifier given as UUID, str or bytes."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, bytes) and len(value) == 16:
        return str(uuid.UUID(bytes=value))
    text = str(value).strip()
    try:
        return str(uuid.UUID(text))
    except ValueError:
        return text.lower()


def is_owner(owner_user_id: Any, requesting_user_id: Any) -> bool:
    owner = canonical_id(owner_user_id)
    return owner is not None and owner == canonical_id(requesting_user_id)


def is_privileged(role: str, allowed_roles: Iterable[str] = PRIVILEGED_ROLES) -> bool:
    return role in allowed_roles


def resolve_owner_user_id(resource: Any) -> Optional[Any]:
    """Follow a resource to the id of the User account that owns it."""
    if resource is None:
        return None
    if isinstance(resource, models.User):
        return resource.id
    if isinstance(resource, models.Student):
        return resource.user_id
    if isinstance(resource, models.Event):
        return resource.created_by_id
    if isinstance(resource, models.Notification):
        return resource.recipient_id
    student = getattr(resource, "student", None)
    if student is not None:
        return student.user_id
    return None


def resolve_student_id(resource: Any) -> Optional[Any]:
    if isinstance(resource, models.Student):
        return resource.id
    return getattr(resource, "student_id", None)


def can(user: models.User, resource: str, operation: str, owner_user_id: Any = None) -> bool:
    principals = POLICIES[(resource, operation)]
    if AUTHENTICATED in principals:
        return True
    if user.role in principals:
        return True
    return OWNER in principals and is_owner(owner_user_id, user.id)


def enforce(
    user: models.User,
    resource: str,
    operation: str,
    owner_user_id: Any = None,
    path_student_id: Any = None,
    resource_student_id: Any = None,
) -> None:
    if path_student_id is not None and resource_student_id is not None:
        if canonical_id(path_student_id) != canonical_id(resource_student_id):
            raise MismatchError("Ресурсът не принадлежи на този ученик")

    if not can(user, resource, operation, owner_user_id):
        raise ForbiddenError(DENIED_MESSAGES.get((resource, operation), DEFAULT_DENIED_MESSAGE))


def enforce_on(user: models.User, entity: Any, resource: str, operation: str, path_student_id: Any = None) -> None:
    """Enforce a rule against a loaded entity, resolving owner and student from it."""
    enforce(
        user, resource, operation,
        owner_user_id=resolve_owner_user_id(entity),
        path_student_id=path_student_id,
        resource_student_id=resolve_student_id(entity) if path_student_id is not None else None,
    )
