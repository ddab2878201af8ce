"""Page automation contract and the reporter it talks back through."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Protocol

from gacha.task.types import Task


class TaskReporter(Protocol):
    """Outcome channel handed to an agent for one `execute` call."""

    async def submitted(self, external_id: str) -> None:
        ...

    async def platform_update(self, records: Iterable[Dict[str, Any]]) -> None:
        """Raw platform status records: `id`, `status`, `progress_pct`, `generations`, `failure_reason`."""


class PageAutomationAgent(ABC):
    """Performs one task's page interaction; outcomes arrive only through the reporter."""

    agent_id: str = "agent"

    @abstractmethod
    async def execute(self, task: Task, reporter: TaskReporter) -> None:
        raise NotImplementedError

    def clear_task_context(self) -> None:
        return None

    async def close(self) -> None:
        return None


class AgentInteractionError(RuntimeError):
    """Raised by agents when the page could not be driven, e.g. the prompt field is missing."""
