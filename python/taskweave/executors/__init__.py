"""Executor backends."""

from taskweave.executors.command_executor import CommandExecutor
from taskweave.executors.http_executor import HttpExecutor

__all__ = ["CommandExecutor", "HttpExecutor"]
