"""UI-side state mirror and terminal rendering."""

from gacha.ui.client import UiClient

__all__ = ["UiClient"]
