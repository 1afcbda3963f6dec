"""delivery_monitor/monitor/loop.py — Per-delivery monitor state machine.

The loop is written as an explicit resumable machine rather than a
long-lived thread: every call to step() runs from one wake-up to the next
suspension point and returns the Suspension the host must honour.  Between
steps the host checkpoints (config, state, phase, wait_reason) and may be
restarted freely.

    WAITING ──wake──▶ [snooze pending?] ──yes──▶ WAITING (SNOOZE)
                              │ no
                              ▼
                         EVALUATING ──ESCALATE/CLEAR──▶ NOTIFYING
                              │ NONE                       │
                              ▼                            ▼
                         WAITING (CYCLE, base interval) ◀──┘

Collaborator failures (CollaboratorError) abandon the cycle without touching
the watermark; the next wake, or a checkNow signal, retries the whole cycle.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from delivery_monitor.config import settings
from delivery_monitor.errors import CollaboratorError
from delivery_monitor.models.schemas import MonitorConfig, TrafficConditions
from delivery_monitor.monitor.debouncer import NotificationDebouncer, NotificationIntent
from delivery_monitor.monitor.evaluator import Decision, evaluate
from delivery_monitor.monitor.signals import Signal, apply_signals
from delivery_monitor.monitor.state import MonitorState, Phase, WaitReason

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Collaborators:
    """The three external activities a cycle may call."""
    fetch_traffic_conditions: Callable[[str, str], TrafficConditions]
    generate_delay_message: Callable[[str, str, int], str]
    send_notification_email: Callable[[str, str, str, str], None]


def default_collaborators() -> Collaborators:
    """Return collaborators backed by the real (or mock-mode) provider clients."""
    from delivery_monitor.integrations.email_service import send_notification_email
    from delivery_monitor.integrations.messages import generate_delay_message
    from delivery_monitor.integrations.traffic import fetch_traffic_conditions

    return Collaborators(
        fetch_traffic_conditions=fetch_traffic_conditions,
        generate_delay_message=generate_delay_message,
        send_notification_email=send_notification_email,
    )


@dataclass(frozen=True)
class Suspension:
    seconds: float
    reason: WaitReason


@dataclass(frozen=True)
class CycleResult:
    decision: Decision = Decision.NONE
    delay_minutes: Optional[int] = None
    intent: Optional[NotificationIntent] = None
    sent: bool = False
    error: Optional[str] = None


@dataclass
class MonitorLoop:
    config: MonitorConfig
    state: MonitorState = field(default_factory=MonitorState)
    phase: Phase = Phase.WAITING
    wait_reason: WaitReason = WaitReason.CYCLE
    poll_interval_seconds: Optional[int] = None
    last_result: Optional[CycleResult] = None

    def __post_init__(self) -> None:
        if self.poll_interval_seconds is None:
            self.poll_interval_seconds = settings.MONITOR_POLL_INTERVAL_SECONDS
        self.debouncer = NotificationDebouncer(self.config, self.state)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def apply_signals(self, signals: Iterable[Signal]) -> int:
        """Apply mailbox signals in order (no suspension, no I/O)."""
        return apply_signals(self.state, signals)

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------

    def step(self, collaborators: Collaborators) -> Suspension:
        """Advance from the current wake to the next suspension point."""
        self.last_result = None

        # Step 1: a pending snooze replaces the start of this cycle, unless
        # an immediate check was requested.
        if self.wait_reason is WaitReason.CYCLE:
            snooze_ms = self.state.pending_snooze_ms
            if snooze_ms is not None and not self.state.check_now_requested:
                self.state.pending_snooze_ms = None
                self.phase = Phase.WAITING
                self.wait_reason = WaitReason.SNOOZE
                logger.info(
                    "Snoozing: delivery=%s for %ds",
                    self.config.delivery_id,
                    snooze_ms // 1000,
                )
                return Suspension(seconds=snooze_ms / 1000, reason=WaitReason.SNOOZE)

        # Steps 2-4
        self.last_result = self.run_cycle(collaborators)

        # Step 5: base interval; signals received meanwhile apply next cycle
        self.phase = Phase.WAITING
        self.wait_reason = WaitReason.CYCLE
        return Suspension(seconds=self.poll_interval_seconds, reason=WaitReason.CYCLE)

    def abandon_cycle(self, error: str) -> Suspension:
        """Drop the cycle in progress and wait the base interval, watermark untouched.

        For hosts that interrupt a step from outside (e.g. a time limit).
        """
        logger.warning(
            "Cycle abandoned: delivery=%s phase=%s error=%s",
            self.config.delivery_id,
            self.phase.value,
            error,
        )
        self.state.check_now_requested = False
        self.last_result = CycleResult(error=error)
        self.phase = Phase.WAITING
        self.wait_reason = WaitReason.CYCLE
        return Suspension(seconds=self.poll_interval_seconds, reason=WaitReason.CYCLE)

    def run_cycle(self, collaborators: Collaborators) -> CycleResult:
        """Fetch, evaluate and notify once.  Always clears check_now_requested."""
        cfg = self.config
        decision = Decision.NONE
        delay: Optional[int] = None
        intent: Optional[NotificationIntent] = None

        try:
            self.phase = Phase.EVALUATING
            traffic = collaborators.fetch_traffic_conditions(cfg.origin, cfg.destination)
            delay = traffic.delay_minutes
            decision = evaluate(delay, cfg, self.state)
            logger.info(
                "Cycle evaluated: delivery=%s delay=%dm threshold=%dm watermark=%dm decision=%s",
                cfg.delivery_id,
                delay,
                cfg.threshold_minutes,
                self.state.highest_notified_delay_minutes,
                decision.value,
            )

            if decision is Decision.NONE:
                return CycleResult(decision=decision, delay_minutes=delay)

            self.phase = Phase.NOTIFYING
            if decision is Decision.ESCALATE:
                body = collaborators.generate_delay_message(
                    cfg.origin, cfg.destination, delay
                )
                intent = self.debouncer.on_escalate(delay, body)
            else:
                intent = self.debouncer.on_clear(delay)

            collaborators.send_notification_email(
                cfg.recipient_email, intent.subject, intent.body, intent.idempotency_key
            )
            self.debouncer.commit(intent)
            logger.info(
                "Notification sent: delivery=%s kind=%s delay=%dm key=%s",
                cfg.delivery_id,
                intent.kind.value,
                delay,
                intent.idempotency_key,
            )
            return CycleResult(
                decision=decision, delay_minutes=delay, intent=intent, sent=True
            )

        except CollaboratorError as exc:
            logger.warning(
                "Cycle abandoned: delivery=%s phase=%s error=%s",
                cfg.delivery_id,
                self.phase.value,
                exc,
            )
            return CycleResult(
                decision=decision, delay_minutes=delay, intent=intent, error=str(exc)
            )

        finally:
            self.state.check_now_requested = False
