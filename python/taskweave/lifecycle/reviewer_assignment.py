"""Reviewer selection for change requests.

Changes touching security, architecture or performance go to a specialist
reviewer. Everything else goes to an idle teammate first, then any idle
executor in the organization, then a generalist "CodeReviewer". When no
idle specialist exists a temporary one is registered; there is at most one
live temporary per role and later reviews reuse it. The author of a change
is never eligible to review it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from taskweave.exceptions_unified import ReviewerUnavailableError
from taskweave.interfaces.task_store import ITaskStore
from taskweave.models import Executor, ExecutorStatus, ReviewerClass, Task, new_id

logger = logging.getLogger(__name__)

# (class, title keywords, description keywords), checked in order
CLASSIFICATION_RULES: List[Tuple[ReviewerClass, Tuple[str, ...], Tuple[str, ...]]] = [
    (ReviewerClass.SECURITY, ("security", "auth"), ("security",)),
    (ReviewerClass.ARCHITECTURE, ("architecture", "refactor"), ("architecture",)),
    (ReviewerClass.PERFORMANCE, ("performance", "optimization"), ("performance",)),
]

SPECIALIST_ROLES: Dict[ReviewerClass, str] = {
    ReviewerClass.SECURITY: "SecurityReviewer",
    ReviewerClass.ARCHITECTURE: "ArchitectureReviewer",
    ReviewerClass.PERFORMANCE: "PerformanceReviewer",
    ReviewerClass.GENERALIST: "CodeReviewer",
}


def classify_task(task: Task) -> ReviewerClass:
    title = task.title.lower()
    description = (task.description or "").lower()
    for reviewer_class, title_words, description_words in CLASSIFICATION_RULES:
        if any(w in title for w in title_words) or any(w in description for w in description_words):
            return reviewer_class
    return ReviewerClass.GENERALIST


@dataclass(frozen=True)
class ReviewerAssignment:
    reviewer_id: str
    reviewer_class: ReviewerClass
    source: str  # team | organization | specialist | temporary


class ReviewerAssigner:
    """Picks a reviewer for a task's change request."""

    def __init__(self, store: ITaskStore, allow_temporary: bool = True) -> None:
        self.store = store
        self.allow_temporary = allow_temporary

    async def assign(self, task: Task, author_executor_id: str) -> ReviewerAssignment:
        reviewer_class = classify_task(task)

        if reviewer_class == ReviewerClass.GENERALIST:
            if task.team_id:
                teammate = await self._first_idle(author_executor_id, team_id=task.team_id)
                if teammate:
                    return ReviewerAssignment(teammate.id, reviewer_class, "team")
            anyone = await self._first_idle(author_executor_id)
            if anyone:
                return ReviewerAssignment(anyone.id, reviewer_class, "organization")

        return await self._specialist(reviewer_class, author_executor_id)

    async def _first_idle(
        self,
        author_executor_id: str,
        team_id: Optional[str] = None,
        role: Optional[str] = None,
    ) -> Optional[Executor]:
        candidates = await self.store.list_executors(
            status=ExecutorStatus.IDLE, team_id=team_id, role=role
        )
        for executor in candidates:
            if executor.id != author_executor_id:
                return executor
        return None

    async def _specialist(self, reviewer_class: ReviewerClass, author_executor_id: str) -> ReviewerAssignment:
        role = SPECIALIST_ROLES[reviewer_class]
        existing = await self._first_idle(author_executor_id, role=role)
        if existing:
            return ReviewerAssignment(existing.id, reviewer_class, "specialist")

        temporary = await self._existing_temporary(role, author_executor_id)
        if temporary:
            return ReviewerAssignment(temporary.id, reviewer_class, "temporary")

        if not self.allow_temporary:
            raise ReviewerUnavailableError(
                f"No idle {role} available", details={"role": role, "author": author_executor_id}
            )

        reviewer_id = new_id()
        reviewer = Executor(
            id=reviewer_id,
            name=f"{role}-{reviewer_id[:8]}",
            role=role,
            is_temporary=True,
        )
        await self.store.add_executor(reviewer)
        logger.info("Created temporary reviewer %s (%s)", reviewer.name, role)
        return ReviewerAssignment(reviewer.id, reviewer_class, "temporary")

    async def _existing_temporary(self, role: str, author_executor_id: str) -> Optional[Executor]:
        # Any live temporary of the role, busy or idle.
        for executor in await self.store.list_executors(role=role):
            if executor.is_temporary and executor.status != ExecutorStatus.OFFLINE and executor.id != author_executor_id:
                return executor
        return None
