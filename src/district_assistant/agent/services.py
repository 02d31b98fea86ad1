"""Contracts for the district systems tools talk to, with in-memory versions.

Production deployments plug in adapters for the student information system,
the district calendar and the help-desk; the in-memory classes back local
runs and tests.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Protocol

from district_assistant.types import EscalationReason, UrgencyLevel, UserRole


@dataclass(slots=True)
class CalendarEvent:
    event_id: str
    title: str
    start: date
    end: date | None = None
    event_type: str = "event"
    location: str | None = None
    description: str | None = None
    school_id: str | None = None


@dataclass(slots=True)
class StudentProfile:
    student_id: str
    first_name: str
    last_name: str
    grade_level: str
    school_name: str
    homeroom_teacher: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


@dataclass(slots=True)
class GradeRecord:
    course: str
    grade: str
    percentage: float | None = None
    teacher: str | None = None
    term: str | None = None


@dataclass(slots=True)
class AttendanceSummary:
    days_present: int
    days_absent: int
    days_tardy: int
    recent_absences: list[date] = field(default_factory=list)

    @property
    def attendance_rate(self) -> float:
        total = self.days_present + self.days_absent
        return self.days_present / total if total else 1.0


@dataclass(slots=True)
class AssignmentRecord:
    title: str
    course: str
    due_date: date
    status: str = "pending"
    score: str | None = None


@dataclass(slots=True)
class EscalationRequest:
    tenant_id: str
    user_id: str
    user_role: UserRole
    reason: EscalationReason
    urgency: UrgencyLevel
    target_role: str
    summary: str
    original_query: str
    conversation_excerpt: list[str] = field(default_factory=list)
    student_id: str | None = None


@dataclass(slots=True)
class EscalationTicket:
    ticket_id: str
    reference_number: str
    target_role: str
    urgency: UrgencyLevel
    estimated_wait_seconds: int | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class CalendarService(Protocol):
    async def list_events(
        self,
        tenant_id: str,
        start: date,
        end: date,
        *,
        event_types: list[str] | None = None,
        school_ids: list[str] | None = None,
    ) -> list[CalendarEvent]: ...


class StudentDataService(Protocol):
    async def get_student(self, tenant_id: str, student_id: str) -> StudentProfile | None: ...

    async def find_student_by_name(
        self, tenant_id: str, name: str, candidate_ids: list[str] | None = None
    ) -> str | None: ...

    async def get_grades(self, tenant_id: str, student_id: str) -> list[GradeRecord]: ...

    async def get_attendance(self, tenant_id: str, student_id: str) -> AttendanceSummary: ...

    async def get_assignments(
        self, tenant_id: str, student_id: str, *, upcoming_only: bool = True
    ) -> list[AssignmentRecord]: ...


class EscalationService(Protocol):
    async def create_escalation(self, request: EscalationRequest) -> EscalationTicket: ...

    async def notify_urgent(self, ticket: EscalationTicket, request: EscalationRequest) -> None: ...

    async def get_available_agents(self, tenant_id: str, target_role: str) -> int: ...


class InMemoryCalendarService:
    def __init__(self, events: dict[str, list[CalendarEvent]] | None = None) -> None:
        self._events = events or {}

    def add(self, tenant_id: str, event: CalendarEvent) -> None:
        self._events.setdefault(tenant_id, []).append(event)

    async def list_events(
        self,
        tenant_id: str,
        start: date,
        end: date,
        *,
        event_types: list[str] | None = None,
        school_ids: list[str] | None = None,
    ) -> list[CalendarEvent]:
        matches = []
        for event in self._events.get(tenant_id, []):
            event_end = event.end or event.start
            if event_end < start or event.start > end:
                continue
            if event_types and event.event_type not in event_types:
                continue
            if school_ids and event.school_id and event.school_id not in school_ids:
                continue
            matches.append(event)
        return sorted(matches, key=lambda event: event.start)


class InMemoryStudentDataService:
    def __init__(self) -> None:
        self._students: dict[tuple[str, str], StudentProfile] = {}
        self._grades: dict[tuple[str, str], list[GradeRecord]] = {}
        self._attendance: dict[tuple[str, str], AttendanceSummary] = {}
        self._assignments: dict[tuple[str, str], list[AssignmentRecord]] = {}

    def add_student(
        self,
        tenant_id: str,
        profile: StudentProfile,
        *,
        grades: list[GradeRecord] | None = None,
        attendance: AttendanceSummary | None = None,
        assignments: list[AssignmentRecord] | None = None,
    ) -> None:
        key = (tenant_id, profile.student_id)
        self._students[key] = profile
        self._grades[key] = grades or []
        self._attendance[key] = attendance or AttendanceSummary(0, 0, 0)
        self._assignments[key] = assignments or []

    async def get_student(self, tenant_id: str, student_id: str) -> StudentProfile | None:
        return self._students.get((tenant_id, student_id))

    async def find_student_by_name(
        self, tenant_id: str, name: str, candidate_ids: list[str] | None = None
    ) -> str | None:
        needle = name.strip().lower()
        for (owner, student_id), profile in self._students.items():
            if owner != tenant_id:
                continue
            if candidate_ids is not None and student_id not in candidate_ids:
                continue
            if needle in (profile.first_name.lower(), profile.full_name.lower()):
                return student_id
        return None

    async def get_grades(self, tenant_id: str, student_id: str) -> list[GradeRecord]:
        return list(self._grades.get((tenant_id, student_id), []))

    async def get_attendance(self, tenant_id: str, student_id: str) -> AttendanceSummary:
        return self._attendance.get((tenant_id, student_id), AttendanceSummary(0, 0, 0))

    async def get_assignments(
        self, tenant_id: str, student_id: str, *, upcoming_only: bool = True
    ) -> list[AssignmentRecord]:
        records = self._assignments.get((tenant_id, student_id), [])
        if upcoming_only:
            today = date.today()
            records = [record for record in records if record.due_date >= today]
        return sorted(records, key=lambda record: record.due_date)


class InMemoryEscalationService:
    """Records tickets and urgent notifications instead of paging anyone."""

    def __init__(self, available_agents: int = 1, estimated_wait_seconds: int = 300) -> None:
        self.tickets: list[tuple[EscalationTicket, EscalationRequest]] = []
        self.urgent_notifications: list[str] = []
        self._available_agents = available_agents
        self._estimated_wait_seconds = estimated_wait_seconds

    async def create_escalation(self, request: EscalationRequest) -> EscalationTicket:
        ticket_id = str(uuid.uuid4())
        ticket = EscalationTicket(
            ticket_id=ticket_id,
            reference_number=f"ESC-{ticket_id[:8].upper()}",
            target_role=request.target_role,
            urgency=request.urgency,
            estimated_wait_seconds=self._estimated_wait_seconds,
        )
        self.tickets.append((ticket, request))
        return ticket

    async def notify_urgent(self, ticket: EscalationTicket, request: EscalationRequest) -> None:
        self.urgent_notifications.append(ticket.ticket_id)

    async def get_available_agents(self, tenant_id: str, target_role: str) -> int:
        return self._available_agents
