"""Dependency injection container for taskweave.

Lightweight wiring of the orchestrator and its external collaborators at
application startup. Uses lazy initialization: services are created on
first access.
"""

import logging
from typing import Any, Dict, Optional

from taskweave.config.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class TaskweaveContainer:
    """Central service container for the orchestration core."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings
        self._event_bus = None
        self._store = None
        self._vcs = None
        self._executor = None
        self._orchestrator = None

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def event_bus(self):
        if self._event_bus is None:
            from taskweave.event_bus import InMemoryEventBus
            self._event_bus = InMemoryEventBus()
        return self._event_bus

    @property
    def store(self):
        if self._store is None:
            from taskweave.storage.memory_store import InMemoryTaskStore
            self._store = InMemoryTaskStore()
        return self._store

    @property
    def vcs(self):
        if self._vcs is None:
            from taskweave.vcs.git_backend import GitBackend
            self._vcs = GitBackend.from_settings(self.settings)
            logger.info("GitBackend initialized for %s", self._vcs.repository_path)
        return self._vcs

    @property
    def executor(self):
        """Default executor backend: the CLI agent."""
        if self._executor is None:
            from taskweave.executors.command_executor import CommandExecutor
            self._executor = CommandExecutor.from_settings(self.settings)
            logger.info("CommandExecutor initialized (%s)", self.settings.executor_command)
        return self._executor

    @property
    def orchestrator(self):
        if self._orchestrator is None:
            from taskweave.orchestrator import create_orchestrator
            self._orchestrator = create_orchestrator(
                vcs=self.vcs,
                settings=self.settings,
                store=self.store,
                event_bus=self.event_bus,
                default_executor=self.executor,
            )
            logger.info("Orchestrator initialized")
        return self._orchestrator

    def status(self) -> Dict[str, Any]:
        """Report which services are initialized."""
        return {
            "settings": self._settings is not None,
            "event_bus": self._event_bus is not None,
            "store": self._store is not None,
            "vcs": self._vcs is not None,
            "executor": self._executor is not None,
            "orchestrator": self._orchestrator is not None,
        }


# Global container
_container: Optional[TaskweaveContainer] = None


def get_container() -> TaskweaveContainer:
    global _container
    if _container is None:
        _container = TaskweaveContainer()
    return _container


def init_container(settings: Optional[Settings] = None) -> TaskweaveContainer:
    global _container
    _container = TaskweaveContainer(settings)
    return _container


def shutdown_container() -> None:
    global _container
    _container = None
