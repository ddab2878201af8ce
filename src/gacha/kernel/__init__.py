"""Shared kernel primitives (ids, clocks, subscriptions, event logging)."""
