"""Audience Automations - event-driven marketing automation engine.

This package advances contacts through automation step graphs (triggers,
rules and actions) with at-most-once completion per contact and step.
"""

__version__ = "0.1.0"

from audience_automations.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
