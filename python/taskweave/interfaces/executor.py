"""Interface for executors (brain providers).

An executor receives a prompt and a working directory and edits files in
that directory. The same call is used for code generation, conflict
resolution and review.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol


@dataclass
class ExecutorResult:
    """Outcome of one executor invocation."""
    success: bool
    output: str = ""
    cost: float = 0.0
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class IExecutor(Protocol):
    """Interface for an autonomous executor."""

    async def invoke(
        self,
        prompt: str,
        working_directory: str,
        timeout: float,
    ) -> ExecutorResult:
        """Run one prompt.

        Args:
            prompt: Full instruction text
            working_directory: Workspace the executor may modify
            timeout: Seconds before the call must give up

        Returns:
            ExecutorResult with success flag, output text and cost

        Raises:
            ExternalCallFailure: the provider could not be reached
        """
        ...
