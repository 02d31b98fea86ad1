"""Role-default permissions and student-context rules."""

from __future__ import annotations

from typing import Any

from district_assistant.types import Permission, UserContext, UserRole

ROLE_PERMISSIONS: dict[UserRole, frozenset[Permission]] = {
    UserRole.PARENT: frozenset(
        {Permission.READ_OWN_STUDENT, Permission.READ_KNOWLEDGE, Permission.READ_CALENDAR}
    ),
    UserRole.STUDENT: frozenset(
        {Permission.READ_OWN_STUDENT, Permission.READ_KNOWLEDGE, Permission.READ_CALENDAR}
    ),
    UserRole.TEACHER: frozenset(
        {
            Permission.READ_ALL_STUDENTS,
            Permission.READ_KNOWLEDGE,
            Permission.READ_CALENDAR,
            Permission.SEND_MESSAGES,
        }
    ),
    UserRole.STAFF: frozenset(
        {
            Permission.READ_KNOWLEDGE,
            Permission.READ_CALENDAR,
            Permission.SEND_MESSAGES,
            Permission.CREATE_TICKETS,
        }
    ),
    UserRole.ADMIN: frozenset(Permission),
    UserRole.GUEST: frozenset({Permission.READ_KNOWLEDGE, Permission.READ_CALENDAR}),
}

# Roles allowed to look up any student without a family link.
STAFF_ROLES = frozenset({UserRole.TEACHER, UserRole.STAFF, UserRole.ADMIN})


def effective_permissions(user: UserContext) -> frozenset[Permission]:
    return ROLE_PERMISSIONS.get(user.role, frozenset()) | frozenset(user.permissions)


def has_permissions(user: UserContext, required: tuple[Permission, ...] | list[Permission]) -> bool:
    """True when nothing is required, the user is admin, or any requirement is held."""

    if not required:
        return True
    granted = effective_permissions(user)
    if Permission.ADMIN in granted:
        return True
    return any(permission in granted for permission in required)


def has_student_context(user: UserContext, entities: dict[str, Any] | None = None) -> bool:
    """Whether a student can be identified for this user and request."""

    entities = entities or {}
    if user.child_ids or user.own_student_id:
        return True
    if entities.get("student_id") or entities.get("student_name"):
        return True
    return user.role in (UserRole.TEACHER, UserRole.ADMIN)


def may_view_student(user: UserContext, student_id: str) -> bool:
    """Relationship check for a specific student's records."""

    if user.role in STAFF_ROLES or Permission.READ_ALL_STUDENTS in effective_permissions(user):
        return True
    if user.role is UserRole.PARENT:
        return student_id in user.child_ids
    if user.role is UserRole.STUDENT:
        return student_id == user.own_student_id
    return False
