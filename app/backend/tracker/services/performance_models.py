"""Typed records and summaries exchanged by the performance analytics layer.

Records are what the data source hands to the aggregation engine; they are
built from ORM rows at the repository edge. Summaries are the engine output,
serializable so the cache can persist them and the API can return them.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, ConfigDict

from tracker.models.entities import ProjectStatus, TaskState, UserRole


class DeadlineStatus(str, enum.Enum):
    ON_TIME = "on_time"
    AT_RISK = "at_risk"
    OVERDUE = "overdue"


# ---------- Records (data source -> engine) ----------
@dataclass(slots=True, frozen=True)
class UserRecord:
    id: UUID
    last_name: str
    first_name: str
    department: str | None
    role: UserRole = UserRole.USER
    job_title: str | None = None
    email: str | None = None


@dataclass(slots=True, frozen=True)
class ProjectRecord:
    id: UUID
    name: str
    status: ProjectStatus = ProjectStatus.ACTIVE
    responsible_id: UUID | None = None
    initial_budget: Decimal | None = None
    currency: str | None = None
    department: str | None = None
    start_date: date | None = None
    end_date: date | None = None


@dataclass(slots=True, frozen=True)
class TaskRecord:
    id: UUID
    name: str
    state: TaskState
    project_id: UUID
    created_at: datetime | None = None
    target_date: date | None = None
    # Joined from the owning project.
    project_responsible_id: UUID | None = None
    project_status: ProjectStatus | None = None
    assignee_ids: tuple[UUID, ...] = field(default_factory=tuple)


@dataclass(slots=True, frozen=True)
class TaskAssignmentRecord:
    """One assignment row: the same task appears once per assigned user."""

    user_id: UUID
    task: TaskRecord


@dataclass(slots=True, frozen=True)
class ExpenseRecord:
    amount: Decimal
    currency: str
    converted_amount: Decimal | None = None


# ---------- Summaries (engine -> cache / API) ----------
class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class UserRef(_Frozen):
    id: UUID
    last_name: str
    first_name: str
    department: str | None = None
    job_title: str | None = None
    role: UserRole = UserRole.USER

    @classmethod
    def from_record(cls, user: UserRecord) -> UserRef:
        return cls(
            id=user.id,
            last_name=user.last_name,
            first_name=user.first_name,
            department=user.department,
            job_title=user.job_title,
            role=user.role,
        )

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class ProjectRef(_Frozen):
    id: UUID
    name: str
    status: ProjectStatus
    department: str | None = None
    responsible_id: UUID | None = None
    initial_budget: Decimal | None = None
    currency: str | None = None
    start_date: date | None = None
    end_date: date | None = None

    @classmethod
    def from_record(cls, project: ProjectRecord) -> ProjectRef:
        return cls(
            id=project.id,
            name=project.name,
            status=project.status,
            department=project.department,
            responsible_id=project.responsible_id,
            initial_budget=project.initial_budget,
            currency=project.currency,
            start_date=project.start_date,
            end_date=project.end_date,
        )


class UserPerformanceSummary(_Frozen):
    user: UserRef
    total_tasks: int
    not_started_tasks: int
    in_progress_tasks: int
    completed_tasks: int
    completion_rate: int
    assigned_projects: int
    # Counts tasks whose project the user is responsible for, not projects.
    responsible_projects: int
    average_completion_days: int
    last_activity_at: datetime | None = None


class DepartmentPerformanceSummary(_Frozen):
    department: str
    user_count: int
    total_tasks: int
    not_started_tasks: int
    in_progress_tasks: int
    completed_tasks: int
    completion_rate: int
    average_completion_rate: int
    total_projects: int
    # Counts pooled tasks whose project is active, not projects.
    active_projects: int


class ProjectTaskStats(_Frozen):
    total_tasks: int
    not_started_tasks: int
    in_progress_tasks: int
    completed_tasks: int
    completion_rate: int


class ProjectPerformanceSummary(_Frozen):
    project: ProjectRef
    stats: ProjectTaskStats
    member_count: int
    responsible_user: UserRef | None = None
    budget_utilization: int = 0
    deadline_status: DeadlineStatus = DeadlineStatus.ON_TIME
    last_activity_at: datetime | None = None


class PerformanceSummaries(_Frozen):
    users: tuple[UserPerformanceSummary, ...] = ()
    departments: tuple[DepartmentPerformanceSummary, ...] = ()
    projects: tuple[ProjectPerformanceSummary, ...] = ()


class CacheEntry(_Frozen):
    summaries: PerformanceSummaries
    timestamp: AwareDatetime
    project_fingerprint: str
    user_fingerprint: str


@dataclass(slots=True, frozen=True)
class PerformanceSnapshot:
    """Pipeline output: summaries plus the id sets they were computed from."""

    summaries: PerformanceSummaries
    project_ids: tuple[UUID, ...]
    user_ids: tuple[UUID, ...]
