"""delivery_monitor/workers/tasks.py — Celery task that advances a monitor instance.

run_monitor_cycle is the only place a monitor loop executes.  It is enqueued
by start_monitor (first wake), by itself (timed wakes, via countdown) and by
checkNow signals (signal wakes, no token).  Each run:
  1. Takes the per-instance lock and loads the checkpoint.
  2. Exits if the instance is gone or no longer RUNNING, and finishes a
     pending cancel request.
  3. Reads the signal mailbox and applies the signals in order.
  4. Decides whether this wake may step the loop:
       timed wake   — only if its token matches the checkpoint's wake_token
       signal wake  — only if a checkNow is now pending
  5. Steps the loop to its next suspension and rotates the wake token.
  6. Schedules the next timed wake, saves the checkpoint, then acknowledges
     the signals it absorbed.

Redis or broker failures raise MonitorUnavailableError and the task is
retried with the same token.  Nothing of the interrupted run was saved, so
the retry replays the cycle from the previous checkpoint with the same
idempotency keys and the same unacknowledged signals.

No recipient addresses appear in task arguments or log messages.
"""
import logging
import uuid
from typing import Optional

from celery.exceptions import SoftTimeLimitExceeded
from kombu.exceptions import OperationalError

from delivery_monitor.errors import MonitorUnavailableError
from delivery_monitor.monitor.loop import default_collaborators
from delivery_monitor.state.monitor_store import (
    MonitorStatus,
    ack_signals,
    cancel_requested,
    get_record,
    mark_cancelled,
    monitor_lock,
    peek_signals,
    save_record,
)
from delivery_monitor.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def schedule_wake(workflow_id: str, wake_token: Optional[str], delay_seconds: float = 0) -> None:
    """Enqueue run_monitor_cycle for *workflow_id* after *delay_seconds*.

    Raises:
        MonitorUnavailableError: the Celery broker rejected the message.
    """
    try:
        run_monitor_cycle.apply_async(
            args=[workflow_id, wake_token],
            countdown=max(0.0, delay_seconds),
        )
    except OperationalError as exc:
        logger.error("Broker unavailable, wake not scheduled: workflow=%s error=%s", workflow_id, exc)
        raise MonitorUnavailableError(f"Celery broker unavailable: {exc}") from exc

    logger.debug(
        "Wake scheduled: workflow=%s token=%s in=%.0fs",
        workflow_id,
        wake_token or "signal",
        delay_seconds,
    )


@celery_app.task(
    name="delivery_monitor.workers.tasks.run_monitor_cycle",
    autoretry_for=(MonitorUnavailableError,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_kwargs={"max_retries": 12},
)
def run_monitor_cycle(workflow_id: str, wake_token: Optional[str] = None) -> dict:
    """Advance one monitor instance from this wake to its next suspension.

    Args:
        workflow_id:  Instance key, e.g. "delivery-d42-2030-06-15".
        wake_token:   Token of the timed wake being delivered; None for a
                      wake triggered by a checkNow signal.

    Returns:
        Dict with keys: advanced (bool), reason (str), plus sleep_seconds
        and decision when the loop was stepped.
    """
    with monitor_lock(workflow_id):
        record = get_record(workflow_id)
        if record is None:
            logger.warning("run_monitor_cycle: no record for workflow=%s", workflow_id)
            return {"advanced": False, "reason": "not_found"}

        if record.status is not MonitorStatus.RUNNING:
            logger.info(
                "run_monitor_cycle: workflow=%s is %s, exiting",
                workflow_id,
                record.status.value,
            )
            return {"advanced": False, "reason": "not_running"}

        if cancel_requested(workflow_id):
            mark_cancelled(record)
            logger.info("Monitor cancelled: workflow=%s", workflow_id)
            return {"advanced": False, "reason": "cancelled"}

        loop = record.to_loop()
        applied = loop.apply_signals(peek_signals(workflow_id))

        if wake_token is None and not loop.state.check_now_requested:
            # Signal wake whose checkNow was already consumed by an earlier cycle
            record.absorb(loop)
            save_record(record)
            ack_signals(workflow_id, applied)
            return {"advanced": False, "reason": "signals_applied", "signals": applied}

        if wake_token is not None and wake_token != record.wake_token:
            if applied:
                record.absorb(loop)
                save_record(record)
                ack_signals(workflow_id, applied)
            logger.debug("Stale wake ignored: workflow=%s token=%s", workflow_id, wake_token)
            return {"advanced": False, "reason": "stale_wake", "signals": applied}

        try:
            suspension = loop.step(default_collaborators())
        except SoftTimeLimitExceeded:
            suspension = loop.abandon_cycle("cycle exceeded the task soft time limit")
        except Exception as exc:
            logger.error("Monitor loop failed: workflow=%s error=%s", workflow_id, exc)
            record.absorb(loop)
            record.status = MonitorStatus.FAILED
            save_record(record)
            return {"advanced": False, "reason": "failed"}

        record.absorb(loop)
        if cancel_requested(workflow_id):
            mark_cancelled(record)
            logger.info("Monitor cancelled after cycle: workflow=%s", workflow_id)
            return {"advanced": True, "reason": "cancelled"}

        # A wake scheduled before a failed save carries a token nobody saved
        record.wake_token = uuid.uuid4().hex
        schedule_wake(workflow_id, record.wake_token, suspension.seconds)
        save_record(record)
        ack_signals(workflow_id, applied)

    result = loop.last_result
    logger.info(
        "Monitor advanced: workflow=%s next=%s in %.0fs signals=%d",
        workflow_id,
        suspension.reason.value,
        suspension.seconds,
        applied,
    )
    return {
        "advanced": True,
        "reason": suspension.reason.value.lower(),
        "sleep_seconds": suspension.seconds,
        "decision": result.decision.value if result else None,
    }
