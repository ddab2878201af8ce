"""Page-side message bridge."""

from gacha.bridge.message_bridge import MessageBridge, supervisor_for

__all__ = ["MessageBridge", "supervisor_for"]
