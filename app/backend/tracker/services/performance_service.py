"""Performance aggregation engine for users, departments, and projects."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Protocol
from uuid import UUID

from tracker.core.clock import Clock, SystemClock
from tracker.core.errors import AggregationError, DataSourceError, PerformanceError
from tracker.models.entities import ProjectStatus, TaskState
from tracker.services.performance_models import (
    DeadlineStatus,
    DepartmentPerformanceSummary,
    ExpenseRecord,
    PerformanceSummaries,
    ProjectPerformanceSummary,
    ProjectRecord,
    ProjectRef,
    ProjectTaskStats,
    TaskAssignmentRecord,
    TaskRecord,
    UserPerformanceSummary,
    UserRecord,
    UserRef,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HALF = Decimal("0.5")
HUNDRED = Decimal("100")
SECONDS_PER_DAY = Decimal("86400")
DEFAULT_AT_RISK_DAYS = 7


class PerformanceDataSource(Protocol):
    """Read operations the aggregation engine depends on.

    Every method may raise ``DataSourceError``.
    """

    def list_users(self) -> list[UserRecord]: ...

    def list_projects(self) -> list[ProjectRecord]: ...

    def get_tasks_assigned_to(self, user_id: UUID) -> list[TaskRecord]: ...

    def get_tasks_for_users(self, user_ids: Sequence[UUID]) -> list[TaskAssignmentRecord]: ...

    def get_tasks_for_project(self, project_id: UUID) -> list[TaskRecord]: ...

    def get_project_member_ids(self, project_id: UUID) -> list[UUID]: ...

    def get_project_expenses(self, project_id: UUID) -> list[ExpenseRecord]: ...


# ---------- Arithmetic ----------
def round_half_up(value: Decimal) -> int:
    """Round to the nearest integer, halves toward positive infinity."""

    return math.floor(value + HALF)


def completion_rate(completed: int, total: int) -> int:
    if total <= 0:
        return 0
    return round_half_up(Decimal(completed) * HUNDRED / Decimal(total))


@dataclass(slots=True, frozen=True)
class TaskCounts:
    total: int
    not_started: int
    in_progress: int
    completed: int

    @classmethod
    def of(cls, tasks: Iterable[TaskRecord]) -> TaskCounts:
        total = not_started = in_progress = completed = 0
        for task in tasks:
            total += 1
            if task.state is TaskState.NOT_STARTED:
                not_started += 1
            elif task.state is TaskState.IN_PROGRESS:
                in_progress += 1
            elif task.state is TaskState.CLOSED:
                completed += 1
        return cls(total=total, not_started=not_started, in_progress=in_progress, completed=completed)

    @property
    def completion_rate(self) -> int:
        return completion_rate(self.completed, self.total)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _start_of_day(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _days_between(start: datetime, end: date) -> Decimal:
    delta = _start_of_day(end) - _as_utc(start)
    return Decimal(str(delta.total_seconds())) / SECONDS_PER_DAY


def average_completion_days(tasks: Iterable[TaskRecord]) -> int:
    """Mean creation-to-target span in days over closed tasks with both dates."""

    durations = [
        _days_between(task.created_at, task.target_date)
        for task in tasks
        if task.state is TaskState.CLOSED and task.created_at is not None and task.target_date is not None
    ]
    if not durations:
        return 0
    return round_half_up(sum(durations, ZERO) / Decimal(len(durations)))


def last_activity(tasks: Iterable[TaskRecord]) -> datetime | None:
    stamps = [_as_utc(task.created_at) for task in tasks if task.created_at is not None]
    return max(stamps) if stamps else None


def budget_utilization(initial_budget: Decimal | None, expenses: Iterable[ExpenseRecord]) -> int:
    """Spent-to-date as a percentage of the initial budget (0 without a budget).

    A missing or zero converted amount falls back to the raw amount.
    """

    if not initial_budget:
        return 0
    spent = sum((expense.converted_amount or expense.amount for expense in expenses), ZERO)
    return round_half_up(spent * HUNDRED / initial_budget)


def deadline_status(
    end: date | datetime | None,
    *,
    now: datetime,
    at_risk_days: int = DEFAULT_AT_RISK_DAYS,
) -> DeadlineStatus:
    """Classify proximity to a deadline.

    A plain date is the start of that day in UTC. Past deadlines are overdue;
    otherwise the remaining time is rounded up to whole days and compared to
    the at-risk window.
    """

    if end is None:
        return DeadlineStatus.ON_TIME
    deadline = _as_utc(end) if isinstance(end, datetime) else _start_of_day(end)
    remaining = deadline - _as_utc(now)
    if remaining < timedelta(0):
        return DeadlineStatus.OVERDUE
    days_until_deadline = math.ceil(remaining / timedelta(days=1))
    if days_until_deadline <= at_risk_days:
        return DeadlineStatus.AT_RISK
    return DeadlineStatus.ON_TIME


# ---------- Aggregation ----------
class PerformanceAggregator:
    """Turns data source records into performance summaries.

    Fetch failures for a single user, department, or project are logged and
    the entity is left out of the result; the rest of the batch proceeds.
    """

    def __init__(
        self,
        source: PerformanceDataSource,
        *,
        clock: Clock | None = None,
        at_risk_days: int = DEFAULT_AT_RISK_DAYS,
    ) -> None:
        self.source = source
        self.clock = clock or SystemClock()
        self.at_risk_days = at_risk_days

    def compute_user_performance(self, users: Sequence[UserRecord]) -> list[UserPerformanceSummary]:
        logger.debug("Computing user performance for %d users", len(users))
        output: list[UserPerformanceSummary] = []
        for user in users:
            try:
                tasks = self.source.get_tasks_assigned_to(user.id)
            except DataSourceError as exc:
                logger.error("Skipping user %s: task fetch failed: %s", user.id, exc)
                continue

            counts = TaskCounts.of(tasks)
            output.append(
                UserPerformanceSummary(
                    user=UserRef.from_record(user),
                    total_tasks=counts.total,
                    not_started_tasks=counts.not_started,
                    in_progress_tasks=counts.in_progress,
                    completed_tasks=counts.completed,
                    completion_rate=counts.completion_rate,
                    assigned_projects=len({task.project_id for task in tasks}),
                    responsible_projects=sum(1 for task in tasks if task.project_responsible_id == user.id),
                    average_completion_days=average_completion_days(tasks),
                    last_activity_at=last_activity(tasks),
                )
            )
        return output

    def compute_department_performance(self, users: Sequence[UserRecord]) -> list[DepartmentPerformanceSummary]:
        departments = list(dict.fromkeys(user.department for user in users if user.department))
        logger.debug("Computing department performance for %d departments", len(departments))

        output: list[DepartmentPerformanceSummary] = []
        for department in departments:
            members = [user for user in users if user.department == department]
            try:
                rows = self.source.get_tasks_for_users([member.id for member in members])
            except DataSourceError as exc:
                logger.error("Skipping department %r: task fetch failed: %s", department, exc)
                continue

            # Pooled rows are per assignment; a shared task counts once per assignee.
            pooled = [row.task for row in rows]
            counts = TaskCounts.of(pooled)

            member_rates = [
                TaskCounts.of(row.task for row in rows if row.user_id == member.id).completion_rate
                for member in members
            ]
            average_rate = round_half_up(Decimal(sum(member_rates)) / Decimal(len(member_rates)))

            output.append(
                DepartmentPerformanceSummary(
                    department=department,
                    user_count=len(members),
                    total_tasks=counts.total,
                    not_started_tasks=counts.not_started,
                    in_progress_tasks=counts.in_progress,
                    completed_tasks=counts.completed,
                    completion_rate=counts.completion_rate,
                    average_completion_rate=average_rate,
                    total_projects=len({task.project_id for task in pooled}),
                    active_projects=sum(1 for task in pooled if task.project_status is ProjectStatus.ACTIVE),
                )
            )
        return output

    def compute_project_performance(
        self,
        projects: Sequence[ProjectRecord],
        users: Sequence[UserRecord],
    ) -> list[ProjectPerformanceSummary]:
        logger.debug("Computing project performance for %d projects", len(projects))
        users_by_id = {user.id: user for user in users}
        now = self.clock.now()

        output: list[ProjectPerformanceSummary] = []
        for project in projects:
            try:
                tasks = self.source.get_tasks_for_project(project.id)
            except DataSourceError as exc:
                logger.error("Skipping project %s: task fetch failed: %s", project.id, exc)
                continue

            try:
                member_count = len(self.source.get_project_member_ids(project.id))
            except DataSourceError as exc:
                logger.warning("Member count unavailable for project %s: %s", project.id, exc)
                member_count = 0

            utilization = 0
            if project.initial_budget:
                try:
                    expenses = self.source.get_project_expenses(project.id)
                except DataSourceError as exc:
                    logger.warning("Expenses unavailable for project %s: %s", project.id, exc)
                else:
                    utilization = budget_utilization(project.initial_budget, expenses)

            responsible = users_by_id.get(project.responsible_id) if project.responsible_id else None
            counts = TaskCounts.of(tasks)
            output.append(
                ProjectPerformanceSummary(
                    project=ProjectRef.from_record(project),
                    stats=ProjectTaskStats(
                        total_tasks=counts.total,
                        not_started_tasks=counts.not_started,
                        in_progress_tasks=counts.in_progress,
                        completed_tasks=counts.completed,
                        completion_rate=counts.completion_rate,
                    ),
                    member_count=member_count,
                    responsible_user=UserRef.from_record(responsible) if responsible else None,
                    budget_utilization=utilization,
                    deadline_status=deadline_status(project.end_date, now=now, at_risk_days=self.at_risk_days),
                    last_activity_at=last_activity(tasks),
                )
            )
        return output

    def compute_all(
        self,
        projects: Sequence[ProjectRecord],
        users: Sequence[UserRecord],
    ) -> PerformanceSummaries:
        """Run the three aggregations and join them into one summary set."""

        try:
            user_summaries = self.compute_user_performance(users)
            department_summaries = self.compute_department_performance(users)
            project_summaries = self.compute_project_performance(projects, users)
            return PerformanceSummaries(
                users=tuple(user_summaries),
                departments=tuple(department_summaries),
                projects=tuple(project_summaries),
            )
        except PerformanceError:
            raise
        except Exception as exc:
            raise AggregationError(f"Performance aggregation failed: {exc}") from exc
