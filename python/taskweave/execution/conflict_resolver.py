"""Automatic merge-conflict resolution at two checkpoints.

Checkpoint A (``AFTER_OPEN``) runs right after a change request opens,
before CI. Checkpoint B (``PRE_MERGE``) runs inside the merge lock, after
CI passed and the change was approved. Both share one mechanism:

1. Ask the host whether the change request merges cleanly. Clean → done.
2. Stash local changes, fetch, rebase onto the mainline.
3. For each conflict round, hand the conflicting files to the author
   executor, verify no markers remain, stage and continue.
4. Restore the stash and force-push the rebased branch.

What happens after a successful resolution depends on the checkpoint:
A re-runs CI without notifying anyone; B sends the change back for review
annotated "auto-resolved" and never merges in the same operation. A failure
at either checkpoint aborts the rebase and requests changes.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from taskweave.enhanced_logging import track_performance
from taskweave.exceptions_unified import (
    ConflictUnresolvable,
    ExternalCallFailure,
    TaskweaveException,
)
from taskweave.interfaces.event_bus import EventType, IEventBus
from taskweave.interfaces.executor import IExecutor
from taskweave.interfaces.vcs import IVersionControl
from taskweave.execution.prompts import build_conflict_prompt
from taskweave.lifecycle.lifecycle_controller import AUTO_RESOLVED, LifecycleController
from taskweave.models import ChangeRequest, Task

logger = logging.getLogger(__name__)

_MARKER = re.compile(r"^(<{7}|>{7})(\s|$)|^={7}$", re.MULTILINE)


def has_conflict_markers(text: str) -> bool:
    return bool(_MARKER.search(text))


# ── Types ────────────────────────────────────────────────────────────


class Checkpoint(str, Enum):
    AFTER_OPEN = "after_open"  # A: before CI
    PRE_MERGE = "pre_merge"  # B: inside the merge lock


class ResolutionOutcome(str, Enum):
    CLEAN = "clean"
    RESOLVED = "resolved"
    FAILED = "failed"


@dataclass
class ConflictContext:
    """Everything a resolution needs about one change request."""

    task: Task
    change_request: ChangeRequest
    workspace: str
    branch: str
    executor: IExecutor  # the change's author


@dataclass
class ResolutionResult:
    outcome: ResolutionOutcome
    checkpoint: Checkpoint
    rounds: int = 0
    files: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "checkpoint": self.checkpoint.value,
            "rounds": self.rounds,
            "files": list(self.files),
            "error": self.error,
        }


# ── Resolver ─────────────────────────────────────────────────────────


class ConflictResolver:
    """Detects and resolves conflicts between a change request and the mainline."""

    def __init__(
        self,
        vcs: IVersionControl,
        lifecycle: LifecycleController,
        event_bus: Optional[IEventBus] = None,
        mainline_branch: str = "main",
        remote_name: str = "origin",
        max_rounds: int = 5,
        executor_timeout: float = 1800.0,
    ) -> None:
        self.vcs = vcs
        self.lifecycle = lifecycle
        self.event_bus = event_bus
        self.mainline_branch = mainline_branch
        self.remote_name = remote_name
        self.max_rounds = max_rounds
        self.executor_timeout = executor_timeout
        self._counts: Dict[ResolutionOutcome, int] = {o: 0 for o in ResolutionOutcome}

    @classmethod
    def from_settings(cls, settings: Any, vcs: IVersionControl, lifecycle: LifecycleController, **kwargs: Any) -> "ConflictResolver":
        return cls(
            vcs,
            lifecycle,
            mainline_branch=settings.mainline_branch,
            remote_name=settings.remote_name,
            max_rounds=settings.max_conflict_rounds,
            executor_timeout=settings.executor_timeout_seconds,
            **kwargs,
        )

    @track_performance(operation="resolve_conflicts")
    async def resolve_conflicts(self, context: ConflictContext, checkpoint: Checkpoint) -> ResolutionResult:
        cr = context.change_request
        if cr.handle is None:
            logger.debug("Change request %s has no remote handle; nothing to check", cr.id)
            return self._record(ResolutionResult(ResolutionOutcome.CLEAN, checkpoint))

        try:
            if await self.vcs.is_mergeable(cr.handle):
                return self._record(ResolutionResult(ResolutionOutcome.CLEAN, checkpoint))
        except ExternalCallFailure:
            logger.warning("Mergeability check failed for %s; rebasing anyway", cr.id, exc_info=True)

        logger.info("Change request %s conflicts with %s at %s", cr.id, self.mainline_branch, checkpoint.value)
        try:
            rounds, files = await self._rebase_and_resolve(context)
        except (ConflictUnresolvable, ExternalCallFailure) as e:
            await self._on_failure(context, checkpoint, e)
            return self._record(ResolutionResult(
                ResolutionOutcome.FAILED, checkpoint, error=e.message,
            ))

        result = ResolutionResult(ResolutionOutcome.RESOLVED, checkpoint, rounds=rounds, files=files)
        await self._apply_policy(context, result)
        return self._record(result)

    # ── Mechanism ────────────────────────────────────────────────────

    async def _rebase_and_resolve(self, context: ConflictContext):
        workspace = context.workspace
        stashed = await self.vcs.stash(workspace)
        try:
            await self.vcs.fetch(workspace)
            conflicts = await self.vcs.rebase(workspace, f"{self.remote_name}/{self.mainline_branch}")
            rounds = 0
            touched: List[str] = []
            while conflicts:
                rounds += 1
                if rounds > self.max_rounds:
                    raise ConflictUnresolvable(
                        f"Still conflicting after {self.max_rounds} rounds",
                        details={"files": conflicts},
                    )
                await self._resolve_round(context, conflicts)
                touched.extend(f for f in conflicts if f not in touched)
                await self.vcs.stage(workspace, conflicts)
                conflicts = await self.vcs.rebase_continue(workspace)
        except (ConflictUnresolvable, ExternalCallFailure):
            await self._abort_rebase(workspace)
            raise
        finally:
            if stashed:
                await self._restore_stash(workspace)

        await self.vcs.push(workspace, context.branch, force=True)
        return rounds, touched

    async def _resolve_round(self, context: ConflictContext, conflicts: List[str]) -> None:
        root = Path(context.workspace)
        contents = {f: self._read(root / f) for f in conflicts}
        prompt = build_conflict_prompt(context.task, self.mainline_branch, contents)
        try:
            result = await asyncio.wait_for(
                context.executor.invoke(prompt, context.workspace, self.executor_timeout),
                timeout=self.executor_timeout,
            )
        except asyncio.TimeoutError:
            raise ConflictUnresolvable(
                f"Executor timed out resolving {len(conflicts)} file(s)",
                details={"files": conflicts},
            )
        if not result.success:
            raise ConflictUnresolvable(
                f"Executor failed to resolve conflicts: {result.error}",
                details={"files": conflicts},
            )

        remaining = [
            f for f in conflicts
            if (root / f).exists() and has_conflict_markers(self._read(root / f))
        ]
        if remaining:
            raise ConflictUnresolvable(
                f"Conflict markers remain in {', '.join(remaining)}",
                details={"files": remaining},
            )

    @staticmethod
    def _read(path: Path) -> str:
        if not path.exists():
            return "(deleted on one side)"
        return path.read_text(encoding="utf-8", errors="replace")

    async def _abort_rebase(self, workspace: str) -> None:
        try:
            await self.vcs.rebase_abort(workspace)
        except ExternalCallFailure:
            logger.debug("No rebase to abort in %s", workspace)

    async def _restore_stash(self, workspace: str) -> None:
        try:
            await self.vcs.stash_pop(workspace)
        except ExternalCallFailure:
            logger.warning("Could not restore stash in %s", workspace, exc_info=True)

    # ── Post-resolution policy ───────────────────────────────────────

    async def _apply_policy(self, context: ConflictContext, result: ResolutionResult) -> None:
        cr = context.change_request
        if result.checkpoint == Checkpoint.AFTER_OPEN:
            try:
                await self.vcs.rerun_ci(cr.handle)
            except ExternalCallFailure:
                logger.warning("CI re-run request failed for %s; the push triggers CI", cr.id, exc_info=True)
            await self._publish(EventType.CI_RERUN_REQUESTED, {"change_request_id": cr.id, "handle": cr.handle})
        else:
            await self.lifecycle.reopen_for_review(cr.id, AUTO_RESOLVED)

        await self._publish(EventType.CONFLICT_RESOLVED, {
            "change_request_id": cr.id,
            "task_id": cr.task_id,
            **result.to_dict(),
        })
        logger.info(
            "Resolved conflicts on %s at %s in %d round(s)", cr.id, result.checkpoint.value, result.rounds
        )

    async def _on_failure(self, context: ConflictContext, checkpoint: Checkpoint, error: TaskweaveException) -> None:
        cr = context.change_request
        logger.error("Conflict resolution failed for %s at %s: %s", cr.id, checkpoint.value, error)
        await self.lifecycle.request_changes(cr.id, f"Automatic conflict resolution failed: {error.message}")
        await self._publish(EventType.CONFLICT_UNRESOLVABLE, {
            "change_request_id": cr.id,
            "task_id": cr.task_id,
            "checkpoint": checkpoint.value,
            "error": error.message,
        })

    def _record(self, result: ResolutionResult) -> ResolutionResult:
        self._counts[result.outcome] += 1
        return result

    async def _publish(self, event_type: EventType, data: Dict[str, Any]) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish(event_type, data, source="conflict_resolver")

    @property
    def stats(self) -> Dict[str, int]:
        return {o.value: n for o, n in self._counts.items()}
