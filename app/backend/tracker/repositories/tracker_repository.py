"""Repository reading tracker entities for performance analytics."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tracker.core.errors import DataSourceError
from tracker.models.entities import (
    Project,
    ProjectExpense,
    ProjectMember,
    ProjectStatus,
    Task,
    TaskAssignment,
    User,
)
from tracker.services.performance_models import (
    ExpenseRecord,
    ProjectRecord,
    TaskAssignmentRecord,
    TaskRecord,
    UserRecord,
)


def _utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; stored values are UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TrackerRepository:
    """Read operations over users, projects, tasks, members, and expenses.

    Rows are converted into the typed records the aggregation engine works
    with; database failures surface as ``DataSourceError``.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    @contextmanager
    def _reading(self, what: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise DataSourceError(f"Loading {what} failed: {exc}") from exc

    # ---------- Conversion ----------
    @staticmethod
    def _user_record(user: User) -> UserRecord:
        return UserRecord(
            id=user.id,
            last_name=user.last_name,
            first_name=user.first_name,
            department=user.department,
            role=user.role,
            job_title=user.job_title,
            email=user.email,
        )

    @staticmethod
    def _project_record(project: Project) -> ProjectRecord:
        return ProjectRecord(
            id=project.id,
            name=project.name,
            status=project.status,
            responsible_id=project.responsible_id,
            initial_budget=project.initial_budget,
            currency=project.currency,
            department=project.department,
            start_date=project.start_date,
            end_date=project.end_date,
        )

    @staticmethod
    def _task_record(
        task: Task,
        *,
        responsible_id: UUID | None,
        project_status: ProjectStatus,
        assignee_ids: tuple[UUID, ...],
    ) -> TaskRecord:
        return TaskRecord(
            id=task.id,
            name=task.name,
            state=task.state,
            project_id=task.project_id,
            created_at=_utc(task.created_at),
            target_date=task.target_date,
            project_responsible_id=responsible_id,
            project_status=project_status,
            assignee_ids=assignee_ids,
        )

    def _assignee_ids(self, task_ids: Sequence[UUID]) -> dict[UUID, tuple[UUID, ...]]:
        if not task_ids:
            return {}
        rows = self.db.execute(
            select(TaskAssignment.task_id, TaskAssignment.user_id).where(TaskAssignment.task_id.in_(task_ids))
        ).all()
        grouped: dict[UUID, list[UUID]] = {}
        for task_id, user_id in rows:
            grouped.setdefault(task_id, []).append(user_id)
        return {task_id: tuple(sorted(user_ids, key=str)) for task_id, user_ids in grouped.items()}

    # ---------- Context ----------
    def list_users(self) -> list[UserRecord]:
        with self._reading("users"):
            users = self.db.scalars(select(User).order_by(User.last_name.asc(), User.first_name.asc())).all()
        return [self._user_record(user) for user in users]

    def list_projects(self) -> list[ProjectRecord]:
        with self._reading("projects"):
            projects = self.db.scalars(select(Project).order_by(Project.name.asc(), Project.id.asc())).all()
        return [self._project_record(project) for project in projects]

    # ---------- Tasks ----------
    def get_tasks_assigned_to(self, user_id: UUID) -> list[TaskRecord]:
        with self._reading(f"tasks assigned to user {user_id}"):
            rows = self.db.execute(
                select(Task, Project.responsible_id, Project.status)
                .join(TaskAssignment, TaskAssignment.task_id == Task.id)
                .join(Project, Project.id == Task.project_id)
                .where(TaskAssignment.user_id == user_id)
                .order_by(Task.created_at.asc(), Task.id.asc())
            ).all()
            assignees = self._assignee_ids([task.id for task, _, _ in rows])
        return [
            self._task_record(
                task,
                responsible_id=responsible_id,
                project_status=project_status,
                assignee_ids=assignees.get(task.id, ()),
            )
            for task, responsible_id, project_status in rows
        ]

    def get_tasks_for_users(self, user_ids: Sequence[UUID]) -> list[TaskAssignmentRecord]:
        if not user_ids:
            return []
        with self._reading("tasks for users"):
            rows = self.db.execute(
                select(TaskAssignment.user_id, Task, Project.responsible_id, Project.status)
                .join(Task, Task.id == TaskAssignment.task_id)
                .join(Project, Project.id == Task.project_id)
                .where(TaskAssignment.user_id.in_(list(user_ids)))
                .order_by(Task.created_at.asc(), Task.id.asc(), TaskAssignment.user_id.asc())
            ).all()
            assignees = self._assignee_ids(list({task.id for _, task, _, _ in rows}))
        return [
            TaskAssignmentRecord(
                user_id=user_id,
                task=self._task_record(
                    task,
                    responsible_id=responsible_id,
                    project_status=project_status,
                    assignee_ids=assignees.get(task.id, ()),
                ),
            )
            for user_id, task, responsible_id, project_status in rows
        ]

    def get_tasks_for_project(self, project_id: UUID) -> list[TaskRecord]:
        with self._reading(f"tasks for project {project_id}"):
            rows = self.db.execute(
                select(Task, Project.responsible_id, Project.status)
                .join(Project, Project.id == Task.project_id)
                .where(Task.project_id == project_id)
                .order_by(Task.created_at.asc(), Task.id.asc())
            ).all()
            assignees = self._assignee_ids([task.id for task, _, _ in rows])
        return [
            self._task_record(
                task,
                responsible_id=responsible_id,
                project_status=project_status,
                assignee_ids=assignees.get(task.id, ()),
            )
            for task, responsible_id, project_status in rows
        ]

    # ---------- Members and expenses ----------
    def get_project_member_ids(self, project_id: UUID) -> list[UUID]:
        with self._reading(f"members of project {project_id}"):
            return list(
                self.db.scalars(select(ProjectMember.user_id).where(ProjectMember.project_id == project_id)).all()
            )

    def get_project_expenses(self, project_id: UUID) -> list[ExpenseRecord]:
        with self._reading(f"expenses of project {project_id}"):
            expenses = self.db.scalars(
                select(ProjectExpense).where(ProjectExpense.project_id == project_id).order_by(ProjectExpense.id)
            ).all()
        return [
            ExpenseRecord(
                amount=expense.amount,
                currency=expense.currency,
                converted_amount=expense.converted_amount,
            )
            for expense in expenses
        ]


@contextmanager
def repository_scope(session_factory: Callable[[], Session]) -> Iterator[TrackerRepository]:
    """Open a session for one pipeline run and close it afterwards."""

    session = session_factory()
    try:
        yield TrackerRepository(session)
    finally:
        session.close()
