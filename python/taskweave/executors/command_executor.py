"""CLI agent executor.

Runs a coding agent (``claude -p`` by default) inside the workspace with
the prompt on stdin. The agent edits files directly; its stdout becomes the
result output.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from typing import Any, Dict, List, Optional

from taskweave.exceptions_unified import ExecutorInvocationError, ExecutorTimeoutError
from taskweave.interfaces.executor import ExecutorResult

logger = logging.getLogger(__name__)


class CommandExecutor:
    """IExecutor that shells out to an agent CLI."""

    def __init__(self, command: str = "claude -p", env: Optional[Dict[str, str]] = None) -> None:
        self.args: List[str] = shlex.split(command)
        if not self.args:
            raise ValueError("executor command must not be empty")
        self.env = env
        self._runs = 0
        self._failures = 0

    @classmethod
    def from_settings(cls, settings: Any) -> "CommandExecutor":
        return cls(settings.executor_command)

    async def invoke(self, prompt: str, working_directory: str, timeout: float) -> ExecutorResult:
        self._runs += 1
        try:
            process = await asyncio.create_subprocess_exec(
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=working_directory,
                env=self.env,
            )
        except OSError as e:
            self._failures += 1
            raise ExecutorInvocationError(f"Could not start {self.args[0]}: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(prompt.encode("utf-8")), timeout=timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            self._failures += 1
            raise ExecutorTimeoutError(
                f"{self.args[0]} timed out after {timeout:.0f}s", details={"timeout": timeout}
            )

        output = stdout.decode("utf-8", errors="replace")
        if process.returncode != 0:
            self._failures += 1
            error = stderr.decode("utf-8", errors="replace")[-2000:]
            logger.warning("%s exited with %s in %s", self.args[0], process.returncode, working_directory)
            return ExecutorResult(
                success=False,
                output=output,
                error=error or f"exit code {process.returncode}",
                metadata={"returncode": process.returncode},
            )
        return ExecutorResult(success=True, output=output, metadata={"returncode": 0})

    @property
    def stats(self) -> Dict[str, int]:
        return {"runs": self._runs, "failures": self._failures}
