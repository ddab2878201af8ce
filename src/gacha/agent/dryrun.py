"""Offline agent that rehearses a batch without touching a real page."""

from __future__ import annotations

import asyncio
import importlib
from typing import Any, Dict, Optional, Sequence

from gacha.agent.base import PageAutomationAgent, TaskReporter
from gacha.task.types import Task

FAIL_MARKER = "[fail]"


class DryRunAgent(PageAutomationAgent):
    """Simulates submit, progress and completion; prompts containing `[fail]` fail."""

    agent_id = "dryrun"

    def __init__(
        self,
        *,
        step_delay_ms: int = 50,
        progress_steps: Sequence[float] = (0.25, 0.5, 0.75),
    ) -> None:
        self._step_delay_ms = max(0, int(step_delay_ms))
        self._progress_steps = tuple(float(item) for item in progress_steps)
        self._context: Dict[str, Any] = {}
        self._counter = 0

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self._context)

    async def execute(self, task: Task, reporter: TaskReporter) -> None:
        self._context = {"ratio": task.aspect_ratio.value, "quantity": task.image_quantity}
        self._counter += 1
        external_id = "dry_{0:04d}".format(self._counter)

        await self._pause()
        await reporter.submitted(external_id)
        for fraction in self._progress_steps:
            await self._pause()
            await reporter.platform_update(
                [{"id": external_id, "status": "processing", "progress_pct": fraction}]
            )

        await self._pause()
        if FAIL_MARKER in task.prompt.lower():
            await reporter.platform_update(
                [{"id": external_id, "status": "failed", "failure_reason": "Simulated failure"}]
            )
            return
        await reporter.platform_update(
            [
                {
                    "id": external_id,
                    "status": "succeeded",
                    "generations": [
                        {"url": "dryrun://{0}/{1}".format(external_id, index)}
                        for index in range(task.image_quantity)
                    ],
                }
            ]
        )

    def clear_task_context(self) -> None:
        self._context = {}

    async def _pause(self) -> None:
        await asyncio.sleep(self._step_delay_ms / 1000.0)


def load_agent(spec: str, *, options: Optional[Dict[str, Any]] = None) -> PageAutomationAgent:
    """Resolve `dryrun` or a `module:factory` reference into an agent instance."""

    name = str(spec or "dryrun").strip()
    if name == "dryrun":
        return DryRunAgent(**dict(options or {}))
    module_name, _, attr = name.partition(":")
    if not module_name or not attr:
        raise ValueError("agent must be 'dryrun' or 'module:factory', got {0!r}".format(spec))
    factory = getattr(importlib.import_module(module_name), attr)
    agent = factory(**dict(options or {}))
    if not isinstance(agent, PageAutomationAgent):
        raise ValueError("{0} did not return a PageAutomationAgent".format(name))
    return agent
