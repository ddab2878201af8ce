"""gacha: batch submission orchestrator for a third-party generation page."""

__all__ = ["__version__"]

__version__ = "0.3.0"
