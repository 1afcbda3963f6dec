"""delivery_monitor/monitor/debouncer.py — Anti-spam watermark and idempotency keys.

The debouncer builds the outbound NotificationIntent for a decision and,
once the email collaborator has accepted it, commits the watermark change.
Keys are drawn from notification_sequence, which is advanced before use and
never reset, so every outbound message of an instance gets a fresh,
strictly increasing key: "{delivery_id}-{sequence}".
"""
import logging
from dataclasses import dataclass
from enum import Enum

from delivery_monitor.models.schemas import MonitorConfig
from delivery_monitor.monitor.state import MonitorState

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    ESCALATION = "escalation"
    ALL_CLEAR = "all_clear"


@dataclass(frozen=True)
class NotificationIntent:
    kind: NotificationKind
    delay_minutes: int
    subject: str
    body: str
    idempotency_key: str


class NotificationDebouncer:
    """Owns the watermark fields of a MonitorState."""

    def __init__(self, config: MonitorConfig, state: MonitorState) -> None:
        self.config = config
        self.state = state

    def next_idempotency_key(self) -> str:
        self.state.notification_sequence += 1
        return f"{self.config.delivery_id}-{self.state.notification_sequence}"

    def on_escalate(self, delay_minutes: int, body: str) -> NotificationIntent:
        """Build the escalation message for *delay_minutes* with a fresh key."""
        return NotificationIntent(
            kind=NotificationKind.ESCALATION,
            delay_minutes=delay_minutes,
            subject=f"Delay update for delivery {self.config.delivery_id}",
            body=body,
            idempotency_key=self.next_idempotency_key(),
        )

    def on_clear(self, delay_minutes: int = 0) -> NotificationIntent:
        """Build the fixed "back on track" message with a fresh key."""
        body = (
            f"Good news! Traffic has improved and your delivery from "
            f"{self.config.origin} to {self.config.destination} is back on track. "
            f"We'll keep monitoring."
        )
        return NotificationIntent(
            kind=NotificationKind.ALL_CLEAR,
            delay_minutes=delay_minutes,
            subject=f"Update for delivery {self.config.delivery_id}: back on track",
            body=body,
            idempotency_key=self.next_idempotency_key(),
        )

    def commit(self, intent: NotificationIntent) -> None:
        """Apply the watermark change for an intent that was delivered.

        Must only be called after the email collaborator returned successfully.
        """
        if intent.kind is NotificationKind.ESCALATION:
            self.state.highest_notified_delay_minutes = intent.delay_minutes
            self.state.has_notified_over_threshold = True
        else:
            # Episode over
            self.state.highest_notified_delay_minutes = 0
            self.state.has_notified_over_threshold = False

        logger.debug(
            "Watermark committed: delivery=%s kind=%s watermark=%d key=%s",
            self.config.delivery_id,
            intent.kind.value,
            self.state.highest_notified_delay_minutes,
            intent.idempotency_key,
        )
