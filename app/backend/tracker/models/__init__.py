"""ORM model package."""

from tracker.models.entities import (
    CacheRecord,
    Project,
    ProjectExpense,
    ProjectMember,
    Task,
    TaskAssignment,
    User,
)

__all__ = [
    "CacheRecord",
    "Project",
    "ProjectExpense",
    "ProjectMember",
    "Task",
    "TaskAssignment",
    "User",
]
