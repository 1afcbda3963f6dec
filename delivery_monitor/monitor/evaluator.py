"""delivery_monitor/monitor/evaluator.py — Notify / clear decision.

evaluate() is called by the monitor loop once per cycle with the freshly
fetched delay.  It never mutates state; the loop hands the decision to the
NotificationDebouncer, which owns the watermark.

Rules:
  1. ESCALATE — delay is at or over the threshold AND has grown by at least
     notify_delta_minutes beyond the last notified value.  The watermark
     starts at 0, so the first crossing always notifies.
  2. CLEAR    — an escalation is outstanding and delay dropped below the
     threshold.
  3. NONE     — anything else.

Rules 1 and 2 cannot both hold: rule 1 needs delay >= threshold.
"""
import logging
from enum import Enum

from delivery_monitor.models.schemas import MonitorConfig
from delivery_monitor.monitor.state import MonitorState

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    NONE = "none"
    ESCALATE = "escalate"
    CLEAR = "clear"


def evaluate(delay_minutes: int, config: MonitorConfig, state: MonitorState) -> Decision:
    """Decide whether this cycle's delay warrants a notification.

    Args:
        delay_minutes: Current traffic delay, already validated as >= 0.
        config:        Threshold and delta for this delivery.
        state:         Watermark state (read only).

    Returns:
        Decision.ESCALATE, Decision.CLEAR or Decision.NONE.
    """
    if (
        delay_minutes >= config.threshold_minutes
        and delay_minutes
        >= state.highest_notified_delay_minutes + config.notify_delta_minutes
    ):
        return Decision.ESCALATE

    if state.has_notified_over_threshold and delay_minutes < config.threshold_minutes:
        return Decision.CLEAR

    if delay_minutes >= config.threshold_minutes:
        logger.debug(
            "Escalation suppressed: delivery=%s delay=%d watermark=%d delta=%d",
            config.delivery_id,
            delay_minutes,
            state.highest_notified_delay_minutes,
            config.notify_delta_minutes,
        )
    return Decision.NONE
