"""Domain records shared by every taskweave component.

Plain dataclasses that mirror rows in the task store: ``Task``,
``ChangeRequest`` and ``Executor``. Stores hand out copies, so callers
mutate a record and write it back explicitly.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set


def utcnow() -> datetime:
    """Timezone-aware current time; every timestamp in the system uses it."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def as_utc(value: datetime) -> datetime:
    """Treat a naive timestamp as UTC."""
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _parse(value: Optional[str]) -> Optional[datetime]:
    return as_utc(datetime.fromisoformat(value)) if value else None


# ── Enums ────────────────────────────────────────────────────────────


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"  # waiting on dependencies
    READY = "ready"  # claimable
    IN_PROGRESS = "in_progress"  # claimed by an executor
    IN_REVIEW = "in_review"  # change request open
    COMPLETED = "completed"
    BLOCKED = "blocked"  # backoff, hold or escalation
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.CANCELLED)


class Priority(str, Enum):
    """Task priority tiers, highest first."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """0 for CRITICAL down to 3 for LOW."""
        return _PRIORITY_RANK[self]

    @classmethod
    def from_rank(cls, rank: int) -> "Priority":
        rank = max(0, min(rank, len(_PRIORITY_ORDER) - 1))
        return _PRIORITY_ORDER[rank]


_PRIORITY_ORDER = [Priority.CRITICAL, Priority.HIGH, Priority.MEDIUM, Priority.LOW]
_PRIORITY_RANK = {p: i for i, p in enumerate(_PRIORITY_ORDER)}


class ChangeRequestStatus(str, Enum):
    """Change request (pull request) lifecycle states."""

    DRAFT = "draft"
    READY_FOR_REVIEW = "ready_for_review"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    MERGED = "merged"
    CLOSED = "closed"

    @property
    def is_open(self) -> bool:
        return self in (
            ChangeRequestStatus.DRAFT,
            ChangeRequestStatus.READY_FOR_REVIEW,
            ChangeRequestStatus.APPROVED,
        )


class ReviewerClass(str, Enum):
    """Kind of review a change request needs."""

    GENERALIST = "generalist"
    SECURITY = "security"
    ARCHITECTURE = "architecture"
    PERFORMANCE = "performance"


class ExecutorStatus(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    OFFLINE = "offline"


# ── Records ──────────────────────────────────────────────────────────


@dataclass
class Task:
    """A unit of work in the dependency graph and the epic tree."""

    id: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    priority: Priority = Priority.MEDIUM
    depends_on: Set[str] = field(default_factory=set)
    parent_task_id: Optional[str] = None
    depth: int = 0
    team_id: Optional[str] = None
    assigned_executor_id: Optional[str] = None
    workspace: Optional[str] = None
    retry_count: int = 0
    blocked_until: Optional[datetime] = None
    blocked_reason: Optional[str] = None
    external_hold: bool = False
    error_message: Optional[str] = None
    deadline: Optional[datetime] = None
    acceptance_criteria: List[str] = field(default_factory=list)
    affected_files: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def copy(self) -> "Task":
        return replace(
            self,
            depends_on=set(self.depends_on),
            acceptance_criteria=list(self.acceptance_criteria),
            affected_files=list(self.affected_files),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "depends_on": sorted(self.depends_on),
            "parent_task_id": self.parent_task_id,
            "depth": self.depth,
            "team_id": self.team_id,
            "assigned_executor_id": self.assigned_executor_id,
            "workspace": self.workspace,
            "retry_count": self.retry_count,
            "blocked_until": _iso(self.blocked_until),
            "blocked_reason": self.blocked_reason,
            "external_hold": self.external_hold,
            "error_message": self.error_message,
            "deadline": _iso(self.deadline),
            "acceptance_criteria": list(self.acceptance_criteria),
            "affected_files": list(self.affected_files),
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            description=data.get("description", ""),
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            priority=Priority(data.get("priority", Priority.MEDIUM.value)),
            depends_on=set(data.get("depends_on", [])),
            parent_task_id=data.get("parent_task_id"),
            depth=data.get("depth", 0),
            team_id=data.get("team_id"),
            assigned_executor_id=data.get("assigned_executor_id"),
            workspace=data.get("workspace"),
            retry_count=data.get("retry_count", 0),
            blocked_until=_parse(data.get("blocked_until")),
            blocked_reason=data.get("blocked_reason"),
            external_hold=data.get("external_hold", False),
            error_message=data.get("error_message"),
            deadline=_parse(data.get("deadline")),
            acceptance_criteria=list(data.get("acceptance_criteria", [])),
            affected_files=list(data.get("affected_files", [])),
            created_at=_parse(data.get("created_at")) or utcnow(),
            started_at=_parse(data.get("started_at")),
            completed_at=_parse(data.get("completed_at")),
        )


@dataclass
class ChangeRequest:
    """The review/merge unit produced by one task's code changes."""

    id: str
    task_id: str
    author_executor_id: str
    status: ChangeRequestStatus = ChangeRequestStatus.DRAFT
    reviewer_executor_id: Optional[str] = None
    reviewer_class: ReviewerClass = ReviewerClass.GENERALIST
    handle: Optional[str] = None  # remote PR number / URL
    branch: Optional[str] = None
    title: str = ""
    comments: List[str] = field(default_factory=list)
    annotations: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    approved_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None

    def copy(self) -> "ChangeRequest":
        return replace(self, comments=list(self.comments), annotations=list(self.annotations))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "author_executor_id": self.author_executor_id,
            "status": self.status.value,
            "reviewer_executor_id": self.reviewer_executor_id,
            "reviewer_class": self.reviewer_class.value,
            "handle": self.handle,
            "branch": self.branch,
            "title": self.title,
            "comments": list(self.comments),
            "annotations": list(self.annotations),
            "created_at": _iso(self.created_at),
            "approved_at": _iso(self.approved_at),
            "merged_at": _iso(self.merged_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeRequest":
        return cls(
            id=data["id"],
            task_id=data["task_id"],
            author_executor_id=data["author_executor_id"],
            status=ChangeRequestStatus(data.get("status", ChangeRequestStatus.DRAFT.value)),
            reviewer_executor_id=data.get("reviewer_executor_id"),
            reviewer_class=ReviewerClass(data.get("reviewer_class", ReviewerClass.GENERALIST.value)),
            handle=data.get("handle"),
            branch=data.get("branch"),
            title=data.get("title", ""),
            comments=list(data.get("comments", [])),
            annotations=list(data.get("annotations", [])),
            created_at=_parse(data.get("created_at")) or utcnow(),
            approved_at=_parse(data.get("approved_at")),
            merged_at=_parse(data.get("merged_at")),
        )


@dataclass
class Executor:
    """An autonomous (or human) agent that claims tasks and reviews changes."""

    id: str
    name: str
    team_id: Optional[str] = None
    role: str = "developer"
    status: ExecutorStatus = ExecutorStatus.IDLE
    max_concurrent: Optional[int] = None
    is_temporary: bool = False

    def copy(self) -> "Executor":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "team_id": self.team_id,
            "role": self.role,
            "status": self.status.value,
            "max_concurrent": self.max_concurrent,
            "is_temporary": self.is_temporary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Executor":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            team_id=data.get("team_id"),
            role=data.get("role", "developer"),
            status=ExecutorStatus(data.get("status", ExecutorStatus.IDLE.value)),
            max_concurrent=data.get("max_concurrent"),
            is_temporary=data.get("is_temporary", False),
        )
