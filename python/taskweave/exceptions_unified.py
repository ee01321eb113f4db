"""
Unified error system for taskweave.

Every failure the orchestrator can hit is scoped to a single task or change
request, so each exception carries enough context to be logged, recorded on
the task and routed without halting the scheduler:
- Structural errors (dangling references, bad hierarchy)
- Claim conflicts between concurrent executors
- External call failures (executor timeouts, VCS command failures)
- Unresolvable merge conflicts
- Consistency drift between change requests and tasks

Also provides retry backoff configuration and a circuit breaker used by the
executor clients.
"""

import logging
import random
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# Enums & Constants
# ============================================================================

class ErrorSeverity(Enum):
    """Error severity levels."""
    CRITICAL = "critical"      # Orchestrator-wide problem, needs a human now
    ERROR = "error"            # One task or change request failed
    WARNING = "warning"        # Degraded, result is advisory
    INFO = "info"              # Informational, no action needed


class ErrorCategory(Enum):
    """Error categories for classification and routing."""
    VALIDATION = "validation"           # Malformed task data or transition
    NOT_FOUND = "not_found"             # Unknown task / change request / executor
    CONCURRENCY = "concurrency"         # Lost a race on a shared row
    EXTERNAL = "external"               # Executor or VCS call failed
    TIMEOUT = "timeout"                 # External call exceeded its bound
    CONFLICT = "conflict"               # Merge conflict could not be resolved
    CONSISTENCY = "consistency"         # Stored state disagrees with itself
    RESOURCE = "resource"               # No executor / reviewer available
    INTERNAL = "internal"               # Bug


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"          # Normal operation
    OPEN = "open"              # Failing, rejecting requests
    HALF_OPEN = "half_open"    # Testing recovery


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ErrorContext:
    """Rich error context with metadata."""
    error_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=_utcnow)
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    is_recoverable: bool = True
    recovery_suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (stack trace excluded)."""
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
            "is_recoverable": self.is_recoverable,
            "recovery_suggestions": self.recovery_suggestions,
        }


@dataclass
class RetryConfig:
    """Exponential backoff configuration.

    Delays are ``base * multiplier ** attempt`` seconds, capped at
    ``max_delay_seconds``, with optional 0-25% jitter.
    """
    max_attempts: int = 5
    base_delay_seconds: float = 300.0
    max_delay_seconds: float = 3600.0
    exponential_base: float = 2.0
    jitter: bool = False

    def get_delay(self, attempt: int) -> float:
        """Calculate delay in seconds for a zero-based attempt number."""
        delay = min(
            self.base_delay_seconds * (self.exponential_base ** max(0, attempt)),
            self.max_delay_seconds,
        )
        if self.jitter:
            delay += delay * random.uniform(0, 0.25)
        return delay


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration."""
    failure_threshold: int = 5        # Failures before opening
    recovery_timeout_sec: int = 60    # Time to wait before trying recovery
    success_threshold: int = 2        # Successes in half-open before closing


@dataclass
class CircuitBreakerMetrics:
    """Circuit breaker metrics."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    last_failure_time: Optional[datetime] = None


# ============================================================================
# Exception Hierarchy
# ============================================================================

class TaskweaveException(Exception):
    """Base exception for all taskweave errors with rich context."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        is_recoverable: bool = True,
        recovery_suggestions: Optional[List[str]] = None,
        context: Optional[ErrorContext] = None,
    ):
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.is_recoverable = is_recoverable
        self.recovery_suggestions = recovery_suggestions or []

        if context:
            self.context = context
        else:
            self.context = ErrorContext(
                severity=severity,
                category=category,
                message=message,
                details=self.details,
                stack_trace=traceback.format_exc(),
                is_recoverable=is_recoverable,
                recovery_suggestions=self.recovery_suggestions,
            )

        super().__init__(self.message)

    def __str__(self) -> str:
        return f"[{self.context.error_id}] {self.category.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return self.context.to_dict()


# ============================================================================
# Structural Errors
# ============================================================================

class StructuralError(TaskweaveException):
    """The task graph or hierarchy is malformed.

    Reported, never fatal: ordering derived from a malformed graph is
    treated as advisory.
    """
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        super().__init__(message, **kwargs)


class DanglingDependencyError(StructuralError):
    """A task references dependencies that do not exist."""

    def __init__(self, task_id: str, missing: List[str], **kwargs):
        self.task_id = task_id
        self.missing = missing
        kwargs.setdefault("details", {"task_id": task_id, "missing": missing})
        super().__init__(
            f"Task {task_id} depends on unknown tasks: {', '.join(missing)}", **kwargs
        )


class InvalidHierarchyError(StructuralError):
    """Parent/child tree violates depth, fan-out or descendant rules."""
    pass


class InvalidTransitionError(TaskweaveException):
    """A state transition is not allowed from the current state."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


# ============================================================================
# Lookup Errors
# ============================================================================

class NotFoundError(TaskweaveException):
    """Base lookup error."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.NOT_FOUND)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class TaskNotFoundError(NotFoundError):
    """Task id does not exist in the store."""
    pass


class ChangeRequestNotFoundError(NotFoundError):
    """Change request id does not exist in the store."""
    pass


class ExecutorNotFoundError(NotFoundError):
    """Executor id is unknown."""
    pass


# ============================================================================
# Concurrency & Resource Errors
# ============================================================================

class ClaimConflict(TaskweaveException):
    """Another executor won the race for a task."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONCURRENCY)
        kwargs.setdefault("severity", ErrorSeverity.INFO)
        super().__init__(message, **kwargs)


class ReviewerUnavailableError(TaskweaveException):
    """No eligible reviewer could be found or created."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.RESOURCE)
        super().__init__(message, **kwargs)


# ============================================================================
# External Call Errors
# ============================================================================

class ExternalCallFailure(TaskweaveException):
    """An executor or version-control call failed.

    Always retryable at the task level: the coordinator applies backoff and
    eventually escalates.
    """
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.EXTERNAL)
        kwargs.setdefault("is_recoverable", True)
        super().__init__(message, **kwargs)


class ExecutorTimeoutError(ExternalCallFailure):
    """Executor invocation exceeded its timeout."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.TIMEOUT)
        super().__init__(message, **kwargs)


class ExecutorInvocationError(ExternalCallFailure):
    """Executor returned an error or could not be reached."""
    pass


class VCSCommandError(ExternalCallFailure):
    """A git / hosting CLI command exited non-zero."""

    def __init__(self, message: str, command: Optional[List[str]] = None,
                 returncode: Optional[int] = None, stderr: str = "", **kwargs):
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr
        kwargs.setdefault("details", {
            "command": self.command,
            "returncode": returncode,
            "stderr": stderr[-2000:],
        })
        super().__init__(message, **kwargs)


class VCSTimeoutError(VCSCommandError):
    """A git / hosting CLI command exceeded its timeout."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.TIMEOUT)
        super().__init__(message, **kwargs)


class CircuitOpenError(ExternalCallFailure):
    """Request rejected because the circuit breaker is open."""
    pass


# ============================================================================
# Conflict & Consistency Errors
# ============================================================================

class ConflictUnresolvable(TaskweaveException):
    """Automated merge-conflict resolution failed."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONFLICT)
        super().__init__(message, **kwargs)


class ConsistencyDrift(TaskweaveException):
    """A change request and its task disagree about where work stands."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONSISTENCY)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        super().__init__(message, **kwargs)


# ============================================================================
# Circuit Breaker
# ============================================================================

class CircuitBreaker:
    """Circuit breaker pattern implementation."""

    def __init__(self, name: str, config: Optional[CircuitBreakerConfig] = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitBreakerState.CLOSED
        self.metrics = CircuitBreakerMetrics()
        self.last_state_change = _utcnow()

    def record_success(self) -> None:
        self.metrics.successful_requests += 1
        self.metrics.total_requests += 1

        if self.state == CircuitBreakerState.HALF_OPEN:
            if self.metrics.successful_requests >= self.config.success_threshold:
                self._close()

    def record_failure(self) -> None:
        self.metrics.failed_requests += 1
        self.metrics.total_requests += 1
        self.metrics.last_failure_time = _utcnow()

        if self.state == CircuitBreakerState.HALF_OPEN:
            self._open()
        elif self.state == CircuitBreakerState.CLOSED:
            if self.metrics.failed_requests >= self.config.failure_threshold:
                self._open()

    def record_rejection(self) -> None:
        self.metrics.rejected_requests += 1
        self.metrics.total_requests += 1

    def can_execute(self) -> bool:
        """Check if a request may go through."""
        if self.state == CircuitBreakerState.CLOSED:
            return True

        if self.state == CircuitBreakerState.OPEN:
            elapsed = (_utcnow() - self.last_state_change).total_seconds()
            if elapsed > self.config.recovery_timeout_sec:
                self._half_open()
                return True
            return False

        return True

    def _open(self) -> None:
        self.state = CircuitBreakerState.OPEN
        self.last_state_change = _utcnow()
        self.metrics.failed_requests = 0
        logger.warning("Circuit breaker '%s' opened", self.name)

    def _close(self) -> None:
        self.state = CircuitBreakerState.CLOSED
        self.last_state_change = _utcnow()
        self.metrics = CircuitBreakerMetrics()
        logger.info("Circuit breaker '%s' closed", self.name)

    def _half_open(self) -> None:
        self.state = CircuitBreakerState.HALF_OPEN
        self.last_state_change = _utcnow()
        self.metrics.successful_requests = 0
        logger.info("Circuit breaker '%s' half-open (testing recovery)", self.name)

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "metrics": {
                "total_requests": self.metrics.total_requests,
                "successful_requests": self.metrics.successful_requests,
                "failed_requests": self.metrics.failed_requests,
                "rejected_requests": self.metrics.rejected_requests,
            },
        }


__all__ = [
    # Enums
    "ErrorSeverity",
    "ErrorCategory",
    "CircuitBreakerState",
    # Data classes
    "ErrorContext",
    "RetryConfig",
    "CircuitBreakerConfig",
    "CircuitBreakerMetrics",
    # Base exception
    "TaskweaveException",
    # Structural
    "StructuralError",
    "DanglingDependencyError",
    "InvalidHierarchyError",
    "InvalidTransitionError",
    # Lookup
    "NotFoundError",
    "TaskNotFoundError",
    "ChangeRequestNotFoundError",
    "ExecutorNotFoundError",
    # Concurrency & resource
    "ClaimConflict",
    "ReviewerUnavailableError",
    # External calls
    "ExternalCallFailure",
    "ExecutorTimeoutError",
    "ExecutorInvocationError",
    "VCSCommandError",
    "VCSTimeoutError",
    "CircuitOpenError",
    # Conflict & consistency
    "ConflictUnresolvable",
    "ConsistencyDrift",
    # Circuit breaker
    "CircuitBreaker",
]
