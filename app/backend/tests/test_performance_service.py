from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tracker.core.errors import AggregationError
from tracker.models.entities import ProjectStatus, TaskState
from tracker.services.performance_models import (
    DeadlineStatus,
    ExpenseRecord,
    ProjectRecord,
    TaskRecord,
    UserRecord,
)
from tracker.services.performance_service import (
    PerformanceAggregator,
    average_completion_days,
    budget_utilization,
    completion_rate,
    deadline_status,
    round_half_up,
)

from tests.fakes import FakeClock, InMemoryDataSource

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _user(first_name: str, department: str | None = "Engineering") -> UserRecord:
    return UserRecord(id=uuid.uuid4(), last_name="Test", first_name=first_name, department=department)


def _task(
    project: ProjectRecord,
    state: TaskState,
    *assignees: UserRecord,
    created_at: datetime = NOW - timedelta(days=20),
    target_date: date | None = None,
) -> TaskRecord:
    return TaskRecord(
        id=uuid.uuid4(),
        name=f"task-{state.value}",
        state=state,
        project_id=project.id,
        created_at=created_at,
        target_date=target_date,
        assignee_ids=tuple(user.id for user in assignees),
    )


@pytest.fixture()
def scenario() -> dict[str, object]:
    alice, bob, carol = _user("Alice"), _user("Bob"), _user("Carol")
    project = ProjectRecord(
        id=uuid.uuid4(),
        name="Platform",
        responsible_id=alice.id,
        initial_budget=Decimal("1000"),
        end_date=date(2026, 6, 30),
    )
    tasks = [
        _task(
            project,
            TaskState.CLOSED,
            alice,
            created_at=datetime(2026, 2, 1, tzinfo=timezone.utc),
            target_date=date(2026, 2, 11),
        ),
        _task(
            project,
            TaskState.CLOSED,
            alice,
            created_at=datetime(2026, 2, 1, 12, tzinfo=timezone.utc),
            target_date=date(2026, 2, 5),
        ),
        _task(project, TaskState.NOT_STARTED, alice, created_at=datetime(2026, 2, 10, tzinfo=timezone.utc)),
        _task(project, TaskState.IN_PROGRESS, carol, created_at=datetime(2026, 2, 12, tzinfo=timezone.utc)),
    ]
    source = InMemoryDataSource(
        users=[alice, bob, carol],
        projects=[project],
        tasks=tasks,
        members={project.id: [alice.id, carol.id]},
        expenses={project.id: [ExpenseRecord(amount=Decimal("300"), currency="USD", converted_amount=Decimal("250"))]},
    )
    return {"alice": alice, "bob": bob, "carol": carol, "project": project, "source": source}


def test_completion_rate_rounds_half_up() -> None:
    assert completion_rate(1, 3) == 33
    assert completion_rate(2, 3) == 67
    assert completion_rate(1, 8) == 13
    assert completion_rate(5, 5) == 100
    assert completion_rate(0, 0) == 0


def test_round_half_up_goes_toward_positive_infinity() -> None:
    assert round_half_up(Decimal("2.5")) == 3
    assert round_half_up(Decimal("-2.5")) == -2
    assert round_half_up(Decimal("33.333")) == 33


def test_deadline_status_boundaries() -> None:
    now = datetime(2026, 3, 1, tzinfo=timezone.utc)

    assert deadline_status(None, now=now) is DeadlineStatus.ON_TIME
    assert deadline_status(now + timedelta(days=7), now=now) is DeadlineStatus.AT_RISK
    assert deadline_status(now + timedelta(days=8), now=now) is DeadlineStatus.ON_TIME
    assert deadline_status(now - timedelta(seconds=1), now=now) is DeadlineStatus.OVERDUE
    # Plain dates are the start of that day in UTC.
    assert deadline_status(date(2026, 3, 8), now=now) is DeadlineStatus.AT_RISK
    assert deadline_status(date(2026, 3, 9), now=now) is DeadlineStatus.ON_TIME
    assert deadline_status(date(2026, 2, 28), now=now) is DeadlineStatus.OVERDUE
    assert deadline_status(date(2026, 3, 20), now=now, at_risk_days=30) is DeadlineStatus.AT_RISK


def test_budget_utilization_prefers_converted_amount() -> None:
    expenses = [
        ExpenseRecord(amount=Decimal("300"), currency="USD", converted_amount=Decimal("200")),
        ExpenseRecord(amount=Decimal("50"), currency="EUR"),
    ]

    assert budget_utilization(Decimal("1000"), expenses) == 25
    assert budget_utilization(None, expenses) == 0
    assert budget_utilization(Decimal("0"), expenses) == 0


def test_average_completion_days_uses_closed_tasks_with_both_dates() -> None:
    project = ProjectRecord(id=uuid.uuid4(), name="P")
    tasks = [
        _task(project, TaskState.CLOSED, created_at=datetime(2026, 2, 1, tzinfo=timezone.utc), target_date=date(2026, 2, 11)),
        _task(
            project,
            TaskState.CLOSED,
            created_at=datetime(2026, 2, 1, 12, tzinfo=timezone.utc),
            target_date=date(2026, 2, 5),
        ),
        _task(project, TaskState.CLOSED, target_date=None),
        _task(project, TaskState.IN_PROGRESS, target_date=date(2026, 9, 1)),
    ]

    # (10 + 3.5) / 2 = 6.75
    assert average_completion_days(tasks) == 7
    assert average_completion_days([]) == 0


def test_user_performance_scenario(scenario: dict[str, object]) -> None:
    aggregator = PerformanceAggregator(scenario["source"], clock=FakeClock(NOW))
    summaries = aggregator.compute_user_performance([scenario["alice"], scenario["bob"], scenario["carol"]])

    alice, bob, carol = summaries
    assert [row.completion_rate for row in summaries] == [67, 0, 0]

    assert alice.total_tasks == 3
    assert alice.completed_tasks == 2
    assert alice.not_started_tasks == 1
    assert alice.assigned_projects == 1
    # One per task in a project Alice is responsible for.
    assert alice.responsible_projects == 3
    assert alice.average_completion_days == 7
    assert alice.last_activity_at == datetime(2026, 2, 10, tzinfo=timezone.utc)

    assert bob.total_tasks == 0
    assert bob.last_activity_at is None
    assert bob.average_completion_days == 0

    assert carol.in_progress_tasks == 1
    assert carol.responsible_projects == 0


def test_department_performance_pools_assignment_rows(scenario: dict[str, object]) -> None:
    aggregator = PerformanceAggregator(scenario["source"], clock=FakeClock(NOW))
    (engineering,) = aggregator.compute_department_performance(
        [scenario["alice"], scenario["bob"], scenario["carol"]]
    )

    assert engineering.department == "Engineering"
    assert engineering.user_count == 3
    assert engineering.total_tasks == 4
    assert engineering.completed_tasks == 2
    assert engineering.in_progress_tasks == 1
    assert engineering.not_started_tasks == 1
    assert engineering.completion_rate == 50
    # mean of 67, 0, 0
    assert engineering.average_completion_rate == 22
    assert engineering.total_projects == 1
    assert engineering.active_projects == 4


def test_department_grouping_is_case_sensitive_and_skips_blank() -> None:
    users = [_user("A", "Sales"), _user("B", "sales"), _user("C", ""), _user("D", None), _user("E", "Sales")]
    aggregator = PerformanceAggregator(InMemoryDataSource(users=users), clock=FakeClock(NOW))

    summaries = aggregator.compute_department_performance(users)

    assert [(row.department, row.user_count) for row in summaries] == [("Sales", 2), ("sales", 1)]


def test_shared_task_counts_once_per_assignee_in_department() -> None:
    alice, bob = _user("Alice"), _user("Bob")
    project = ProjectRecord(id=uuid.uuid4(), name="Shared", status=ProjectStatus.CLOSED)
    source = InMemoryDataSource(
        users=[alice, bob],
        projects=[project],
        tasks=[_task(project, TaskState.CLOSED, alice, bob)],
    )

    (department,) = PerformanceAggregator(source, clock=FakeClock(NOW)).compute_department_performance([alice, bob])

    assert department.total_tasks == 2
    assert department.completion_rate == 100
    assert department.average_completion_rate == 100
    assert department.active_projects == 0


def test_project_performance_scenario(scenario: dict[str, object]) -> None:
    users = [scenario["alice"], scenario["bob"], scenario["carol"]]
    unbudgeted = ProjectRecord(id=uuid.uuid4(), name="Side", end_date=date(2026, 3, 5))
    source = scenario["source"]
    source.projects.append(unbudgeted)
    source.expenses[unbudgeted.id] = [ExpenseRecord(amount=Decimal("999"), currency="EUR")]

    aggregator = PerformanceAggregator(source, clock=FakeClock(NOW))
    platform, side = aggregator.compute_project_performance([scenario["project"], unbudgeted], users)

    assert platform.stats.total_tasks == 4
    assert platform.stats.completed_tasks == 2
    assert platform.stats.completion_rate == 50
    assert platform.member_count == 2
    assert platform.responsible_user is not None
    assert platform.responsible_user.id == scenario["alice"].id
    assert platform.budget_utilization == 25
    assert platform.deadline_status is DeadlineStatus.ON_TIME
    assert platform.last_activity_at == datetime(2026, 2, 12, tzinfo=timezone.utc)

    assert side.budget_utilization == 0
    assert side.responsible_user is None
    assert side.deadline_status is DeadlineStatus.AT_RISK
    assert side.last_activity_at is None
    # Expenses are only read for budgeted projects.
    assert source.calls.count("get_project_expenses") == 1


def test_fetch_failure_skips_only_that_entity(scenario: dict[str, object], caplog: pytest.LogCaptureFixture) -> None:
    source = scenario["source"]
    source.failing = {scenario["bob"].id, scenario["project"].id}
    users = [scenario["alice"], scenario["bob"], scenario["carol"]]
    aggregator = PerformanceAggregator(source, clock=FakeClock(NOW))

    with caplog.at_level(logging.ERROR, logger="tracker"):
        user_rows = aggregator.compute_user_performance(users)
        department_rows = aggregator.compute_department_performance(users)
        project_rows = aggregator.compute_project_performance([scenario["project"]], users)

    assert [row.user.first_name for row in user_rows] == ["Alice", "Carol"]
    assert department_rows == []
    assert project_rows == []
    assert "Skipping user" in caplog.text
    assert "Skipping project" in caplog.text


def test_unexpected_error_is_raised_as_aggregation_error(scenario: dict[str, object]) -> None:
    source = scenario["source"]

    def explode() -> None:
        raise RuntimeError("connection reset")

    source.on_fetch = explode
    aggregator = PerformanceAggregator(source, clock=FakeClock(NOW))

    with pytest.raises(AggregationError, match="connection reset"):
        aggregator.compute_all(source.projects, source.users)


def test_compute_all_is_idempotent(scenario: dict[str, object]) -> None:
    source = scenario["source"]
    aggregator = PerformanceAggregator(source, clock=FakeClock(NOW))

    first = aggregator.compute_all(source.projects, source.users)
    second = aggregator.compute_all(source.projects, source.users)

    assert first.model_dump_json() == second.model_dump_json()
    assert len(first.users) == 3
    assert len(first.departments) == 1
    assert len(first.projects) == 1
