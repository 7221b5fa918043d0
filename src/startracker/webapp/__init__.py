"""Star Tracker web application package."""
from __future__ import annotations

from .application import app, current_actor, get_tracker, respond, set_tracker

__all__ = ["app", "current_actor", "get_tracker", "respond", "set_tracker"]
