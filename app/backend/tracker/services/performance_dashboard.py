"""Dashboard-facing access to performance reports, including exports."""

from __future__ import annotations

import csv
import io
import logging
from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from functools import partial

from fastapi import HTTPException, status
from openpyxl import Workbook
from pydantic import BaseModel
from sqlalchemy.orm import Session

from tracker.core.clock import Clock, SystemClock
from tracker.core.config import Settings
from tracker.core.errors import DataSourceError
from tracker.repositories.tracker_repository import repository_scope
from tracker.services.performance_cache import (
    CacheStats,
    InMemoryCacheStore,
    PerformanceCache,
    SqlCacheStore,
)
from tracker.services.performance_models import (
    CacheEntry,
    DepartmentPerformanceSummary,
    PerformanceSnapshot,
    PerformanceSummaries,
    ProjectPerformanceSummary,
    UserPerformanceSummary,
)
from tracker.services.performance_scheduler import APSchedulerTimer, RefreshScheduler, Timer
from tracker.services.performance_service import (
    DEFAULT_AT_RISK_DAYS,
    PerformanceAggregator,
    PerformanceDataSource,
)

logger = logging.getLogger(__name__)

SourceFactory = Callable[[], AbstractContextManager[PerformanceDataSource]]

USER_COLUMNS = [
    "user_id",
    "last_name",
    "first_name",
    "department",
    "job_title",
    "assigned_projects",
    "responsible_projects",
    "total_tasks",
    "not_started_tasks",
    "in_progress_tasks",
    "completed_tasks",
    "completion_rate",
    "average_completion_days",
    "last_activity_at",
]
DEPARTMENT_COLUMNS = [
    "department",
    "user_count",
    "total_projects",
    "active_projects",
    "total_tasks",
    "not_started_tasks",
    "in_progress_tasks",
    "completed_tasks",
    "completion_rate",
    "average_completion_rate",
]
PROJECT_COLUMNS = [
    "project_id",
    "project_name",
    "responsible",
    "department",
    "member_count",
    "total_tasks",
    "not_started_tasks",
    "in_progress_tasks",
    "completed_tasks",
    "completion_rate",
    "budget_utilization",
    "deadline_status",
    "last_activity_at",
]


class PerformanceView(BaseModel):
    users: tuple[UserPerformanceSummary, ...] = ()
    departments: tuple[DepartmentPerformanceSummary, ...] = ()
    projects: tuple[ProjectPerformanceSummary, ...] = ()
    last_updated: datetime | None = None
    loading: bool = False
    error: str | None = None


@dataclass(slots=True)
class ExportFilePayload:
    media_type: str
    filename: str
    content: bytes


def _cell(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def flatten_summaries(summaries: PerformanceSummaries) -> dict[str, list[dict[str, str]]]:
    """One flat row per summary, keyed by summary type."""

    users = [
        {
            "user_id": _cell(row.user.id),
            "last_name": row.user.last_name,
            "first_name": row.user.first_name,
            "department": _cell(row.user.department),
            "job_title": _cell(row.user.job_title),
            "assigned_projects": _cell(row.assigned_projects),
            "responsible_projects": _cell(row.responsible_projects),
            "total_tasks": _cell(row.total_tasks),
            "not_started_tasks": _cell(row.not_started_tasks),
            "in_progress_tasks": _cell(row.in_progress_tasks),
            "completed_tasks": _cell(row.completed_tasks),
            "completion_rate": _cell(row.completion_rate),
            "average_completion_days": _cell(row.average_completion_days),
            "last_activity_at": _cell(row.last_activity_at),
        }
        for row in summaries.users
    ]
    departments = [
        {
            "department": row.department,
            "user_count": _cell(row.user_count),
            "total_projects": _cell(row.total_projects),
            "active_projects": _cell(row.active_projects),
            "total_tasks": _cell(row.total_tasks),
            "not_started_tasks": _cell(row.not_started_tasks),
            "in_progress_tasks": _cell(row.in_progress_tasks),
            "completed_tasks": _cell(row.completed_tasks),
            "completion_rate": _cell(row.completion_rate),
            "average_completion_rate": _cell(row.average_completion_rate),
        }
        for row in summaries.departments
    ]
    projects = [
        {
            "project_id": _cell(row.project.id),
            "project_name": row.project.name,
            "responsible": row.responsible_user.display_name if row.responsible_user else "",
            "department": _cell(row.project.department),
            "member_count": _cell(row.member_count),
            "total_tasks": _cell(row.stats.total_tasks),
            "not_started_tasks": _cell(row.stats.not_started_tasks),
            "in_progress_tasks": _cell(row.stats.in_progress_tasks),
            "completed_tasks": _cell(row.stats.completed_tasks),
            "completion_rate": _cell(row.stats.completion_rate),
            "budget_utilization": _cell(row.budget_utilization),
            "deadline_status": _cell(row.deadline_status),
            "last_activity_at": _cell(row.last_activity_at),
        }
        for row in summaries.projects
    ]
    return {"users": users, "departments": departments, "projects": projects}


SHEET_COLUMNS = {
    "users": USER_COLUMNS,
    "departments": DEPARTMENT_COLUMNS,
    "projects": PROJECT_COLUMNS,
}


class PerformanceDashboard:
    """Consumer view over one performance report.

    Owns the report's cache and refresh scheduler. Reads serve the cached
    entry while it is valid and recompute on a miss; when recomputation fails
    the last data shown stays available alongside the error.
    """

    def __init__(
        self,
        source_factory: SourceFactory,
        *,
        cache: PerformanceCache,
        timer: Timer,
        clock: Clock | None = None,
        at_risk_days: int = DEFAULT_AT_RISK_DAYS,
        refresh_interval_seconds: float = 0,
    ) -> None:
        self.source_factory = source_factory
        self.cache = cache
        self.clock = clock or SystemClock()
        self.at_risk_days = at_risk_days
        self.refresh_interval_seconds = refresh_interval_seconds
        self.scheduler = RefreshScheduler(self.compute_snapshot, cache, timer)
        self._displayed: CacheEntry | None = None

    @property
    def report_key(self) -> str:
        return self.cache.report_key

    # ---------- Lifecycle ----------
    def start(self) -> None:
        if self.refresh_interval_seconds > 0:
            self.scheduler.start(self.refresh_interval_seconds)

    def stop(self) -> None:
        self.scheduler.stop()

    def close(self) -> None:
        self.scheduler.close()

    # ---------- Pipeline ----------
    def compute_snapshot(self) -> PerformanceSnapshot:
        with self.source_factory() as source:
            users = source.list_users()
            projects = source.list_projects()
            aggregator = PerformanceAggregator(source, clock=self.clock, at_risk_days=self.at_risk_days)
            summaries = aggregator.compute_all(projects, users)
        return PerformanceSnapshot(
            summaries=summaries,
            project_ids=tuple(project.id for project in projects),
            user_ids=tuple(user.id for user in users),
        )

    # ---------- Reads ----------
    def get_summaries(self) -> PerformanceView:
        return self._read(recompute_on_miss=True)

    def refresh(self) -> PerformanceView:
        """Recompute immediately, bypassing a still-valid cached entry.

        A successful run replaces the entry; a failed one leaves it in place.
        """

        self.scheduler.refresh_now()
        return self._read(recompute_on_miss=False)

    def cache_stats(self) -> CacheStats:
        return self.cache.stats()

    def _read(self, *, recompute_on_miss: bool) -> PerformanceView:
        try:
            with self.source_factory() as source:
                project_ids = [project.id for project in source.list_projects()]
                user_ids = [user.id for user in source.list_users()]
        except DataSourceError as exc:
            logger.error("Performance context unavailable: %s", exc)
            return self._view(error=str(exc))

        if not project_ids or not user_ids:
            return PerformanceView(loading=self.scheduler.loading, error=self.scheduler.error)

        entry = self.cache.get(project_ids, user_ids)
        if entry is None and recompute_on_miss and not self.scheduler.loading:
            self.scheduler.refresh_now()
            entry = self.cache.get(project_ids, user_ids)
        if entry is not None:
            self._displayed = entry
        return self._view()

    def _view(self, *, error: str | None = None) -> PerformanceView:
        entry = self._displayed
        summaries = entry.summaries if entry is not None else PerformanceSummaries()
        return PerformanceView(
            users=summaries.users,
            departments=summaries.departments,
            projects=summaries.projects,
            last_updated=entry.timestamp if entry is not None else None,
            loading=self.scheduler.loading,
            error=error or self.scheduler.error,
        )

    # ---------- Export ----------
    def export(self, format_name: str) -> ExportFilePayload:
        normalized_format = format_name.strip().lower()
        if normalized_format not in {"csv", "xlsx"}:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="format must be one of: csv, xlsx.",
            )

        view = self.get_summaries()
        sheets = flatten_summaries(
            PerformanceSummaries(users=view.users, departments=view.departments, projects=view.projects)
        )
        base_filename = f"{self.report_key}-{self.clock.now().date().isoformat()}"

        if normalized_format == "csv":
            flattened: list[dict[str, str]] = []
            for summary_type, rows in sheets.items():
                flattened.extend({"summary_type": summary_type} | row for row in rows)

            fieldnames_set: set[str] = set()
            for row in flattened:
                fieldnames_set.update(row.keys())
            fieldnames = sorted(fieldnames_set)

            csv_bytes = b""
            if fieldnames:
                sio = io.StringIO()
                writer = csv.DictWriter(sio, fieldnames=fieldnames)
                writer.writeheader()
                writer.writerows(flattened)
                csv_bytes = sio.getvalue().encode("utf-8")
            return ExportFilePayload(
                media_type="text/csv; charset=utf-8",
                filename=f"{base_filename}.csv",
                content=csv_bytes,
            )

        workbook = Workbook()
        workbook.remove(workbook.active)
        for summary_type, rows in sheets.items():
            columns = SHEET_COLUMNS[summary_type]
            sheet = workbook.create_sheet(title=summary_type)
            sheet.append(columns)
            for row in rows:
                sheet.append([row.get(column, "") for column in columns])

        output = io.BytesIO()
        workbook.save(output)
        return ExportFilePayload(
            media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            filename=f"{base_filename}.xlsx",
            content=output.getvalue(),
        )


def build_performance_dashboard(
    settings: Settings,
    session_factory: Callable[[], Session],
    *,
    timer: Timer | None = None,
    clock: Clock | None = None,
) -> PerformanceDashboard:
    """Wire a dashboard to the database according to settings."""

    clock = clock or SystemClock()
    if settings.performance_cache_backend == "database":
        store = SqlCacheStore(session_factory)
    else:
        store = InMemoryCacheStore()
    cache = PerformanceCache(
        store,
        report_key=settings.performance_report_key,
        ttl=timedelta(seconds=settings.performance_cache_ttl_seconds),
        clock=clock,
    )
    return PerformanceDashboard(
        partial(repository_scope, session_factory),
        cache=cache,
        timer=timer or APSchedulerTimer(job_id=f"refresh:{settings.performance_report_key}"),
        clock=clock,
        at_risk_days=settings.performance_at_risk_days,
        refresh_interval_seconds=settings.performance_refresh_interval_seconds,
    )
