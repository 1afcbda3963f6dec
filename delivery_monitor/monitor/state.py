"""delivery_monitor/monitor/state.py — Per-instance monitoring state.

One MonitorState belongs to exactly one monitor loop instance.  It is never
shared between deliveries; the host persists it inside the instance
checkpoint between wakes.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Phase(str, Enum):
    WAITING = "WAITING"
    EVALUATING = "EVALUATING"
    NOTIFYING = "NOTIFYING"


class WaitReason(str, Enum):
    CYCLE = "CYCLE"     # next wake starts a fresh cycle
    SNOOZE = "SNOOZE"   # next wake resumes after a snooze sleep, skipping the snooze check


@dataclass
class MonitorState:
    """Watermark and scheduling fields for one delivery.

    Watermark fields (written only by NotificationDebouncer and route_restarted):
        highest_notified_delay_minutes  — largest delay already communicated
        has_notified_over_threshold     — an escalation is outstanding (no all-clear yet)
        notification_sequence           — source of idempotency keys, never reset

    Signal fields (written only by the control-signal handlers, consumed by the loop):
        pending_snooze_ms               — one-shot override of the next sleep
        check_now_requested             — one-shot "skip waiting" flag
    """
    highest_notified_delay_minutes: int = 0
    has_notified_over_threshold: bool = False
    notification_sequence: int = 0
    pending_snooze_ms: Optional[int] = None
    check_now_requested: bool = False
