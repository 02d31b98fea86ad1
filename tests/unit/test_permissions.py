from district_assistant.agent.permissions import has_permissions, has_student_context, may_view_student
from district_assistant.types import Permission, UserContext, UserRole


def _user(role: UserRole, **kwargs) -> UserContext:
    return UserContext(user_id=f"{role.value}-1", tenant_id="district-1", role=role, **kwargs)


def test_any_listed_permission_is_enough() -> None:
    required = (Permission.READ_OWN_STUDENT, Permission.READ_ALL_STUDENTS)

    assert has_permissions(_user(UserRole.PARENT), required)
    assert has_permissions(_user(UserRole.TEACHER), required)
    assert not has_permissions(_user(UserRole.GUEST), required)
    assert has_permissions(_user(UserRole.GUEST), ())


def test_explicit_grants_extend_role_defaults() -> None:
    staff = _user(UserRole.STAFF, permissions={Permission.READ_ALL_STUDENTS})

    assert has_permissions(staff, (Permission.READ_ALL_STUDENTS,))
    assert has_permissions(_user(UserRole.GUEST, permissions={Permission.ADMIN}), (Permission.CREATE_TICKETS,))


def test_student_context_sources() -> None:
    assert has_student_context(_user(UserRole.PARENT, child_ids=["stu-1"]))
    assert has_student_context(_user(UserRole.STUDENT))
    assert has_student_context(_user(UserRole.STAFF), {"student_name": "Ava"})
    assert has_student_context(_user(UserRole.TEACHER))
    assert not has_student_context(_user(UserRole.PARENT))
    assert not has_student_context(_user(UserRole.STAFF), {"student_id": ""})


def test_relationship_checks() -> None:
    parent = _user(UserRole.PARENT, child_ids=["stu-1"])
    student = _user(UserRole.STUDENT, student_id="stu-9")

    assert may_view_student(parent, "stu-1")
    assert not may_view_student(parent, "stu-2")
    assert may_view_student(student, "stu-9")
    assert not may_view_student(student, "stu-1")
    assert may_view_student(_user(UserRole.TEACHER), "stu-2")
    assert not may_view_student(_user(UserRole.GUEST), "stu-1")
