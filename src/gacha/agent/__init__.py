"""Page automation agents and the host that runs them."""

from gacha.agent.base import AgentInteractionError, PageAutomationAgent, TaskReporter
from gacha.agent.dryrun import DryRunAgent, load_agent
from gacha.agent.host import AgentHost
from gacha.agent.status_map import map_platform_status, status_event_from_record

__all__ = [
    "AgentHost",
    "AgentInteractionError",
    "DryRunAgent",
    "PageAutomationAgent",
    "TaskReporter",
    "load_agent",
    "map_platform_status",
    "status_event_from_record",
]
