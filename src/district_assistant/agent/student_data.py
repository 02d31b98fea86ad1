"""Student record lookup with relationship checks."""

from __future__ import annotations

import asyncio
import re
from typing import Any, Literal

from pydantic import Field

from district_assistant.agent.permissions import may_view_student
from district_assistant.agent.registry import Tool, ToolParams
from district_assistant.agent.services import (
    AssignmentRecord,
    AttendanceSummary,
    GradeRecord,
    StudentDataService,
    StudentProfile,
)
from district_assistant.types import (
    IntentCategory,
    Permission,
    ToolCall,
    ToolDefinition,
    ToolResult,
    UserRole,
)

DataType = Literal["info", "grades", "attendance", "assignments"]

_DATA_TYPE_KEYWORDS: tuple[tuple[DataType, re.Pattern[str]], ...] = (
    ("grades", re.compile(r"\b(grades?|scores?|gpa|report card|marks?)\b", re.IGNORECASE)),
    ("attendance", re.compile(r"\b(attend\w*|absen\w*|tard\w*|late)\b", re.IGNORECASE)),
    ("assignments", re.compile(r"\b(assignments?|homework|due|projects?)\b", re.IGNORECASE)),
)


class StudentDataParams(ToolParams):
    student_id: str | None = None
    data_types: list[DataType] = Field(default_factory=list)


class StudentDataTool(Tool):
    """Fetches grades, attendance and assignments for one authorized student."""

    definition = ToolDefinition(
        name="student_data_fetch",
        description=(
            "Fetch a specific student's profile, grades, attendance or upcoming "
            "assignments. Only works for students the user is linked to."
        ),
        required_permissions=(Permission.READ_OWN_STUDENT, Permission.READ_ALL_STUDENTS),
        handled_intents=(IntentCategory.STUDENT_SPECIFIC, IntentCategory.ASSIGNMENT_HELP),
        requires_student_context=True,
        timeout_ms=8_000,
    )
    params_model = StudentDataParams

    def __init__(self, service: StudentDataService) -> None:
        self.service = service

    async def _execute(self, params: StudentDataParams, call: ToolCall) -> ToolResult:
        student_id = await self._resolve_student(params, call)
        if student_id is None:
            children = len(call.user.child_ids)
            hint = f" You have {children} linked students." if children > 1 else ""
            return self.failure(
                "NO_STUDENT_SPECIFIED: could not determine which student",
                f"Which student are you asking about?{hint}",
            )
        if not may_view_student(call.user, student_id):
            return self.failure(
                f"ACCESS_DENIED: user {call.user.user_id} is not linked to student {student_id}",
                "You don't have access to that student's records.",
            )

        tenant_id = call.user.tenant_id
        profile = await self.service.get_student(tenant_id, student_id)
        if profile is None:
            return self.failure(
                f"STUDENT_NOT_FOUND: {student_id}",
                "I couldn't find that student's records.",
            )

        data_types = params.data_types or infer_data_types(call.intent.original_query)
        wanted = [kind for kind in data_types if kind != "info"]
        fetched = await asyncio.gather(*(self._fetch(kind, tenant_id, student_id) for kind in wanted))
        sections: dict[str, Any] = dict(zip(wanted, fetched, strict=True))

        lines = [_format_profile(profile)]
        if "grades" in sections:
            lines.append(_format_grades(sections["grades"]))
        if "attendance" in sections:
            lines.append(_format_attendance(sections["attendance"]))
        if "assignments" in sections:
            lines.append(_format_assignments(sections["assignments"]))

        return self.success(
            "\n\n".join(lines),
            confidence=0.95,
            data={"student_id": student_id, "data_types": ["info", *wanted]},
            student_id=student_id,
        )

    async def _resolve_student(self, params: StudentDataParams, call: ToolCall) -> str | None:
        user = call.user
        entities = call.intent.entities
        if params.student_id:
            return params.student_id
        if isinstance(entities.get("student_id"), str) and entities["student_id"]:
            return entities["student_id"]
        name = entities.get("student_name")
        if isinstance(name, str) and name.strip():
            candidates = user.child_ids if user.role is UserRole.PARENT else None
            found = await self.service.find_student_by_name(user.tenant_id, name, candidates)
            if found:
                return found
        if call.active_child_id:
            return call.active_child_id
        if user.own_student_id:
            return user.own_student_id
        if user.role is UserRole.PARENT and len(user.child_ids) == 1:
            return user.child_ids[0]
        return None

    async def _fetch(self, kind: str, tenant_id: str, student_id: str) -> Any:
        if kind == "grades":
            return await self.service.get_grades(tenant_id, student_id)
        if kind == "attendance":
            return await self.service.get_attendance(tenant_id, student_id)
        return await self.service.get_assignments(tenant_id, student_id, upcoming_only=True)


def infer_data_types(query: str) -> list[DataType]:
    """Pick record types from the wording; default is profile plus grades."""

    kinds: list[DataType] = ["info"]
    kinds.extend(kind for kind, pattern in _DATA_TYPE_KEYWORDS if pattern.search(query))
    if len(kinds) == 1:
        kinds.append("grades")
    return kinds


def _format_profile(profile: StudentProfile) -> str:
    line = f"Student: {profile.full_name}, grade {profile.grade_level} at {profile.school_name}"
    if profile.homeroom_teacher:
        line += f" (homeroom: {profile.homeroom_teacher})"
    return line


def _format_grades(grades: list[GradeRecord]) -> str:
    if not grades:
        return "Grades: none posted yet."
    lines = ["Current grades:"]
    for record in grades:
        detail = f" ({record.percentage:.1f}%)" if record.percentage is not None else ""
        teacher = f", {record.teacher}" if record.teacher else ""
        lines.append(f"- {record.course}: {record.grade}{detail}{teacher}")
    return "\n".join(lines)


def _format_attendance(summary: AttendanceSummary) -> str:
    lines = [
        "Attendance:",
        f"- Present: {summary.days_present} days ({summary.attendance_rate:.0%})",
        f"- Absent: {summary.days_absent} days",
        f"- Tardy: {summary.days_tardy} times",
    ]
    if summary.recent_absences:
        recent = ", ".join(day.isoformat() for day in summary.recent_absences[:5])
        lines.append(f"- Recent absences: {recent}")
    return "\n".join(lines)


def _format_assignments(assignments: list[AssignmentRecord]) -> str:
    if not assignments:
        return "Upcoming assignments: none."
    lines = ["Upcoming assignments:"]
    for record in assignments[:10]:
        lines.append(
            f"- {record.title} ({record.course}) due {record.due_date.isoformat()} [{record.status}]"
        )
    return "\n".join(lines)
