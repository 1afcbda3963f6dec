"""delivery_monitor/monitor/signals.py — Control-signal handlers.

Signals are delivered to a running instance through its mailbox and applied
in arrival order before the loop takes its next step.  Every handler is a
pure in-memory update of a single MonitorState field; handlers do no I/O
and commute with each other.

    snooze(minutes)    pending_snooze_ms := max(0, floor(minutes) * 60000)   last write wins
    route_restarted()  highest_notified_delay_minutes := 0                   over-threshold flag kept
    check_now()        check_now_requested := True
"""
import logging
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Iterable, Optional

from delivery_monitor.monitor.state import MonitorState
from delivery_monitor.utils.time_utils import minutes_to_ms

logger = logging.getLogger(__name__)

SNOOZE = "snooze"
ROUTE_RESTARTED = "routeRestarted"
CHECK_NOW = "checkNow"


@dataclass(frozen=True)
class Signal:
    name: str
    minutes: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Signal":
        return cls(name=data["name"], minutes=data.get("minutes"))


def snooze(state: MonitorState, minutes: float) -> None:
    state.pending_snooze_ms = minutes_to_ms(minutes)


def route_restarted(state: MonitorState) -> None:
    state.highest_notified_delay_minutes = 0


def check_now(state: MonitorState) -> None:
    state.check_now_requested = True


_HANDLERS: Dict[str, Callable[[MonitorState, Signal], None]] = {
    SNOOZE: lambda state, sig: snooze(state, sig.minutes if sig.minutes is not None else 0),
    ROUTE_RESTARTED: lambda state, sig: route_restarted(state),
    CHECK_NOW: lambda state, sig: check_now(state),
}

SIGNAL_NAMES = frozenset(_HANDLERS)


def validate_signal(signal: Signal) -> None:
    """Raise ValueError for names no handler is registered for."""
    if signal.name not in _HANDLERS:
        raise ValueError(
            f"Unknown signal '{signal.name}', expected one of {sorted(SIGNAL_NAMES)}"
        )


def apply_signal(state: MonitorState, signal: Signal) -> None:
    """Apply one signal to *state*."""
    validate_signal(signal)
    _HANDLERS[signal.name](state, signal)
    logger.debug("Signal applied: name=%s minutes=%s", signal.name, signal.minutes)


def apply_signals(state: MonitorState, signals: Iterable[Signal]) -> int:
    """Apply *signals* in order and return how many were applied."""
    count = 0
    for signal in signals:
        apply_signal(state, signal)
        count += 1
    return count
