"""Alert governor: debounce, flap suppression, escalation and SLA alerts."""

from .governor import AlertGovernor, Notifier
from .messages import AlertKind, AlertMessage, format_downtime
from .state import AlertState
from .timers import AsyncioTimers, Timers

__all__ = [
    "AlertGovernor",
    "AlertKind",
    "AlertMessage",
    "AlertState",
    "AsyncioTimers",
    "Notifier",
    "Timers",
    "format_downtime",
]
