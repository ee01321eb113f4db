"""Task-level retry policy with exponential backoff and escalation.

Transport retries (one HTTP request, one git push) are tenacity's job inside
the clients. This module decides what happens to a *task* after a whole
attempt failed: back off and try again later, or stop and hand the task to
a human.

The retry manager sits between the execution coordinator and the lifecycle
controller: the coordinator reports a failure, the manager returns a
decision, the coordinator applies it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from taskweave.exceptions_unified import RetryConfig

logger = logging.getLogger(__name__)


# ── Decision types ───────────────────────────────────────────────────


class RetryReason(str, Enum):
    """Why an attempt failed."""

    EXECUTION_FAILURE = "execution_failure"  # Executor reported failure
    TIMEOUT = "timeout"  # Executor exceeded its timeout
    VCS_FAILURE = "vcs_failure"  # Commit / push / change-request call failed
    NO_CHANGES = "no_changes"  # Executor finished without touching the workspace
    STUCK = "stuck"  # IN_PROGRESS far longer than any run should take


@dataclass(frozen=True)
class RetryDecision:
    """What to do with a task after a failed attempt."""

    should_retry: bool
    reason: RetryReason
    attempt: int  # Failed attempts so far (1-indexed)
    delay_seconds: float = 0.0
    retry_at: Optional[datetime] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "should_retry": self.should_retry,
            "reason": self.reason.value,
            "attempt": self.attempt,
            "delay_seconds": self.delay_seconds,
            "retry_at": self.retry_at.isoformat() if self.retry_at else None,
            "message": self.message,
        }


# ── Strategy ─────────────────────────────────────────────────────────


@dataclass
class BackoffPolicy:
    """Exponential backoff capped at a maximum number of attempts.

    Attempt *n* (1-indexed) waits ``base * multiplier ** (n - 1)`` seconds,
    capped at ``max_delay_seconds``. Once *n* reaches ``max_attempts`` the
    task is not retried automatically.
    """

    config: RetryConfig

    @classmethod
    def from_settings(cls, settings: Any) -> "BackoffPolicy":
        return cls(RetryConfig(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.backoff_base_seconds,
            max_delay_seconds=settings.backoff_max_seconds,
            exponential_base=settings.backoff_multiplier,
            jitter=settings.backoff_jitter,
        ))

    @property
    def max_attempts(self) -> int:
        return self.config.max_attempts

    def decide(self, attempt: int, reason: RetryReason, now: datetime) -> RetryDecision:
        if attempt >= self.config.max_attempts:
            return RetryDecision(
                should_retry=False,
                reason=reason,
                attempt=attempt,
                message=f"Max attempts exhausted ({attempt}/{self.config.max_attempts}); escalating",
            )

        delay = self.config.get_delay(attempt - 1)
        return RetryDecision(
            should_retry=True,
            reason=reason,
            attempt=attempt,
            delay_seconds=delay,
            retry_at=now + timedelta(seconds=delay),
            message=f"Retry {attempt}/{self.config.max_attempts} after {delay:.0f}s ({reason.value})",
        )


# ── Retry Manager ────────────────────────────────────────────────────


class RetryManager:
    """Applies a backoff policy and keeps per-task decision history."""

    def __init__(self, policy: Optional[BackoffPolicy] = None) -> None:
        self.policy = policy or BackoffPolicy(RetryConfig())
        self._history: Dict[str, List[RetryDecision]] = {}

    def on_failure(
        self,
        task_id: str,
        attempt: int,
        reason: RetryReason,
        now: datetime,
    ) -> RetryDecision:
        """Called with the task's updated failure count after an attempt failed."""
        decision = self.policy.decide(attempt, reason, now)
        self._history.setdefault(task_id, []).append(decision)
        if decision.should_retry:
            logger.info("Task %s: %s", task_id, decision.message)
        else:
            logger.warning("Task %s: %s", task_id, decision.message)
        return decision

    def reset(self, task_id: str) -> None:
        """Forget a task's history (success, cancellation or manual release)."""
        self._history.pop(task_id, None)

    def get_history(self, task_id: str) -> List[RetryDecision]:
        return list(self._history.get(task_id, []))

    @property
    def stats(self) -> Dict[str, Any]:
        total = sum(len(h) for h in self._history.values())
        approved = sum(1 for h in self._history.values() for d in h if d.should_retry)
        return {
            "tasks_with_failures": len(self._history),
            "total_retry_decisions": total,
            "retries_approved": approved,
            "escalations": total - approved,
        }
