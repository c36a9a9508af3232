"""KidGoals HTTP surface."""
from __future__ import annotations

from .application import build_default_app, create_app, status_for

__all__ = ["build_default_app", "create_app", "status_for"]
