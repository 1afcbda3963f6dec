"""delivery_monitor/state/monitor_store.py — Redis-backed monitor instance checkpoints.

Each monitor instance is stored as up to four keys:

    monitor:{workflow_id}:record    JSON checkpoint (config, state, phase, status, wake token)
    monitor:{workflow_id}:signals   FIFO list of pending control signals (the mailbox)
    monitor:{workflow_id}:lock      short-lived lock serialising cycles and signal wakes
    monitor:{workflow_id}:cancel    set by cancel_monitor, honoured at the next suspension point

Running instances never expire.  Once an instance stops running its keys
get MONITOR_RECORD_TTL_SECONDS so the final status stays queryable for a day.

Unlike a cache, the store cannot degrade silently: every Redis failure is
surfaced as MonitorUnavailableError so callers can report it.
"""
import functools
import json
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Iterator, List, Optional

import redis as redis_lib

from delivery_monitor.config import settings
from delivery_monitor.errors import MonitorBusyError, MonitorUnavailableError
from delivery_monitor.models.schemas import MonitorConfig
from delivery_monitor.monitor.loop import MonitorLoop
from delivery_monitor.monitor.signals import Signal
from delivery_monitor.monitor.state import MonitorState, Phase, WaitReason

logger = logging.getLogger(__name__)

_LOCK_POLL_SECONDS = 0.1


class MonitorStatus(str, Enum):
    RUNNING = "RUNNING"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# ---------------------------------------------------------------------------
# MonitorRecord dataclass
# ---------------------------------------------------------------------------

@dataclass
class MonitorRecord:
    """Durable checkpoint of one monitor instance between wakes.

    wake_token identifies the single scheduled timed wake that may still
    advance the loop; any step rotates it, so older timers become no-ops.
    """
    workflow_id: str
    config: MonitorConfig
    state: MonitorState = field(default_factory=MonitorState)
    phase: Phase = Phase.WAITING
    wait_reason: WaitReason = WaitReason.CYCLE
    status: MonitorStatus = MonitorStatus.RUNNING
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    wake_token: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_loop(self) -> MonitorLoop:
        return MonitorLoop(
            config=self.config,
            state=self.state,
            phase=self.phase,
            wait_reason=self.wait_reason,
        )

    def absorb(self, loop: MonitorLoop) -> None:
        """Copy the loop's position back into the checkpoint."""
        self.state = loop.state
        self.phase = loop.phase
        self.wait_reason = loop.wait_reason

    def to_json(self) -> str:
        return json.dumps({
            "workflow_id": self.workflow_id,
            "config": self.config.model_dump(),
            "state": asdict(self.state),
            "phase": self.phase.value,
            "wait_reason": self.wait_reason.value,
            "status": self.status.value,
            "run_id": self.run_id,
            "wake_token": self.wake_token,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        })

    @classmethod
    def from_json(cls, raw: str) -> "MonitorRecord":
        data = json.loads(raw)
        return cls(
            workflow_id=data["workflow_id"],
            config=MonitorConfig(**data["config"]),
            state=MonitorState(**data["state"]),
            phase=Phase(data["phase"]),
            wait_reason=WaitReason(data["wait_reason"]),
            status=MonitorStatus(data["status"]),
            run_id=data["run_id"],
            wake_token=data.get("wake_token"),
            created_at=data["created_at"],
            updated_at=data["updated_at"],
        )


# ---------------------------------------------------------------------------
# Redis helpers
# ---------------------------------------------------------------------------

def _get_redis() -> "redis_lib.Redis":
    """Return a connected Redis client or raise MonitorUnavailableError."""
    try:
        r = redis_lib.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            decode_responses=True,
        )
        r.ping()
        return r
    except redis_lib.RedisError as exc:
        logger.warning("Redis unavailable for monitor store: %s", exc)
        raise MonitorUnavailableError(f"Redis unavailable: {exc}") from exc


def _surface_redis_errors(func):
    """Translate Redis failures raised mid-operation into MonitorUnavailableError."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except redis_lib.RedisError as exc:
            logger.error("Redis error in %s: %s", func.__name__, exc)
            raise MonitorUnavailableError(f"Redis error: {exc}") from exc
    return wrapper


def _record_key(workflow_id: str) -> str:
    return f"monitor:{workflow_id}:record"


def _signals_key(workflow_id: str) -> str:
    return f"monitor:{workflow_id}:signals"


def _lock_key(workflow_id: str) -> str:
    return f"monitor:{workflow_id}:lock"


def _cancel_key(workflow_id: str) -> str:
    return f"monitor:{workflow_id}:cancel"


# ---------------------------------------------------------------------------
# Public interface
# ---------------------------------------------------------------------------

@_surface_redis_errors
def create_record(record: MonitorRecord) -> bool:
    """Persist a new record.  Returns False if the workflow id is already taken."""
    r = _get_redis()
    created = r.set(_record_key(record.workflow_id), record.to_json(), nx=True)
    if created:
        logger.info("Monitor record created: workflow=%s", record.workflow_id)
    return bool(created)


@_surface_redis_errors
def get_record(workflow_id: str) -> Optional[MonitorRecord]:
    """Load the record for *workflow_id*, or None if it does not exist or expired."""
    r = _get_redis()
    raw = r.get(_record_key(workflow_id))
    if raw is None:
        return None
    return MonitorRecord.from_json(raw)


@_surface_redis_errors
def save_record(record: MonitorRecord) -> None:
    """Overwrite the record.  Stopped instances get a TTL and lose their mailbox."""
    r = _get_redis()
    record.updated_at = time.time()
    key = _record_key(record.workflow_id)

    if record.status is MonitorStatus.RUNNING:
        r.set(key, record.to_json())
    else:
        r.setex(key, settings.MONITOR_RECORD_TTL_SECONDS, record.to_json())
        r.delete(_signals_key(record.workflow_id), _cancel_key(record.workflow_id))

    logger.debug(
        "Saved monitor record: workflow=%s status=%s phase=%s",
        record.workflow_id,
        record.status.value,
        record.phase.value,
    )


@_surface_redis_errors
def push_signal(workflow_id: str, signal: Signal) -> None:
    """Append *signal* to the instance mailbox."""
    r = _get_redis()
    r.rpush(_signals_key(workflow_id), json.dumps(signal.to_dict()))
    logger.debug("Signal queued: workflow=%s name=%s", workflow_id, signal.name)


@_surface_redis_errors
def peek_signals(workflow_id: str) -> List[Signal]:
    """Return every pending signal, oldest first, leaving them in the mailbox.

    Call under monitor_lock and follow with ack_signals once the checkpoint
    that absorbed them is saved.
    """
    r = _get_redis()
    return [Signal.from_dict(json.loads(item)) for item in r.lrange(_signals_key(workflow_id), 0, -1)]


@_surface_redis_errors
def ack_signals(workflow_id: str, count: int) -> None:
    """Drop the *count* oldest signals; anything pushed since peek_signals stays."""
    if count <= 0:
        return
    r = _get_redis()
    r.ltrim(_signals_key(workflow_id), count, -1)


@_surface_redis_errors
def request_cancel(workflow_id: str) -> None:
    """Flag the instance for cancellation at its next suspension point (no lock needed)."""
    r = _get_redis()
    r.set(_cancel_key(workflow_id), "1", ex=settings.MONITOR_RECORD_TTL_SECONDS)
    logger.debug("Cancel requested: workflow=%s", workflow_id)


@_surface_redis_errors
def cancel_requested(workflow_id: str) -> bool:
    r = _get_redis()
    return bool(r.exists(_cancel_key(workflow_id)))


@contextmanager
def monitor_lock(workflow_id: str, blocking_timeout: float = 10.0) -> Iterator[None]:
    """Hold the per-instance lock for the duration of the block.

    Raises:
        MonitorBusyError: the lock could not be acquired within blocking_timeout.
    """
    r = _get_redis()
    lock = r.lock(
        _lock_key(workflow_id),
        timeout=settings.MONITOR_LOCK_TIMEOUT_SECONDS,
        sleep=_LOCK_POLL_SECONDS,
        blocking_timeout=blocking_timeout,
    )
    try:
        acquired = lock.acquire()
    except redis_lib.RedisError as exc:
        raise MonitorUnavailableError(f"Redis error: {exc}") from exc
    if not acquired:
        raise MonitorBusyError(f"Monitor {workflow_id} is busy")

    try:
        yield
    finally:
        try:
            lock.release()
        except redis_lib.RedisError as exc:
            # Expired or taken over; the token check left the other holder's lock alone
            logger.warning("Failed to release lock for workflow=%s: %s", workflow_id, exc)


def mark_cancelled(record: MonitorRecord) -> None:
    """Stop *record* for good: CANCELLED, no live timer, mailbox and cancel flag dropped."""
    record.status = MonitorStatus.CANCELLED
    record.wake_token = None
    save_record(record)
