"""Serialized merges into the mainline.

One ``asyncio.Lock`` per mainline branch is held for the whole merge:
checkpoint B, the host merge and the completion cascade. Two approved
change requests can therefore never race each other into the same branch.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from taskweave.exceptions_unified import InvalidTransitionError
from taskweave.execution.conflict_resolver import (
    Checkpoint,
    ConflictContext,
    ConflictResolver,
    ResolutionOutcome,
    ResolutionResult,
)
from taskweave.interfaces.task_store import ITaskStore
from taskweave.interfaces.vcs import IVersionControl
from taskweave.lifecycle.lifecycle_controller import CompletionResult, LifecycleController
from taskweave.models import ChangeRequest, ChangeRequestStatus

logger = logging.getLogger(__name__)

ContextProvider = Callable[[ChangeRequest], Awaitable[ConflictContext]]


@dataclass
class MergeResult:
    change_request_id: str
    merged: bool
    resolution: ResolutionResult
    completion: Optional[CompletionResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "change_request_id": self.change_request_id,
            "merged": self.merged,
            "resolution": self.resolution.to_dict(),
            "completion": self.completion.to_dict() if self.completion else None,
        }


class MergePipeline:
    """Merges approved change requests one at a time per mainline."""

    def __init__(
        self,
        store: ITaskStore,
        vcs: IVersionControl,
        lifecycle: LifecycleController,
        resolver: ConflictResolver,
        context_provider: ContextProvider,
        mainline_branch: str = "main",
    ) -> None:
        self.store = store
        self.vcs = vcs
        self.lifecycle = lifecycle
        self.resolver = resolver
        self.context_provider = context_provider
        self.mainline_branch = mainline_branch
        self._locks: Dict[str, asyncio.Lock] = {}
        self._merged = 0
        self._deferred = 0

    def _lock_for(self, branch: str) -> asyncio.Lock:
        if branch not in self._locks:
            self._locks[branch] = asyncio.Lock()
        return self._locks[branch]

    async def merge(self, cr_id: str) -> MergeResult:
        """Run checkpoint B and merge when the change is still clean.

        A resolved conflict sends the change back for review instead of
        merging; a failed one requests changes.

        Raises:
            InvalidTransitionError: the change request is not APPROVED
        """
        async with self._lock_for(self.mainline_branch):
            cr = await self.store.get_change_request(cr_id)
            if cr.status != ChangeRequestStatus.APPROVED:
                raise InvalidTransitionError(
                    f"Change request {cr_id} is {cr.status.value}, not approved",
                    details={"change_request_id": cr_id, "status": cr.status.value},
                )

            context = await self.context_provider(cr)
            resolution = await self.resolver.resolve_conflicts(context, Checkpoint.PRE_MERGE)
            if resolution.outcome != ResolutionOutcome.CLEAN:
                self._deferred += 1
                logger.info("Merge of %s deferred: %s", cr_id, resolution.outcome.value)
                return MergeResult(cr_id, merged=False, resolution=resolution)

            if cr.handle:
                await self.vcs.merge_change_request(cr.handle)
            completion = await self.lifecycle.mark_merged(cr_id)
            self._merged += 1
            return MergeResult(cr_id, merged=True, resolution=resolution, completion=completion)

    @property
    def stats(self) -> Dict[str, int]:
        return {"merged": self._merged, "deferred": self._deferred}
