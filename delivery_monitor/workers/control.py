"""delivery_monitor/workers/control.py — Control plane for monitor instances.

Both the HTTP routes and the CLI call these functions identically.  All
HTTP concerns (status codes, response bodies) stay in the API layer; this
module raises the MonitorError hierarchy instead.

    start_monitor       create instance delivery-{delivery_id}-{YYYY-MM-DD}, enqueue first wake
    signal_monitor      queue snooze / routeRestarted / checkNow (checkNow also wakes)
    get_monitor_status  read-only lifecycle status
    cancel_monitor      mark CANCELLED now, or at the end of the running cycle
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Optional

from delivery_monitor.errors import (
    MonitorAlreadyExistsError,
    MonitorBusyError,
    MonitorNotFoundError,
)
from delivery_monitor.models.schemas import MonitorConfig
from delivery_monitor.monitor.signals import CHECK_NOW, Signal, validate_signal
from delivery_monitor.state.monitor_store import (
    MonitorRecord,
    MonitorStatus,
    create_record,
    get_record,
    mark_cancelled,
    monitor_lock,
    push_signal,
    request_cancel,
)
from delivery_monitor.utils.time_utils import workflow_id_for
from delivery_monitor.workers.tasks import schedule_wake

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartResult:
    workflow_id: str
    run_id: str


@dataclass(frozen=True)
class MonitorStatusView:
    workflow_id: str
    status: MonitorStatus
    phase: str

    @property
    def status_message(self) -> str:
        return f"Workflow {self.workflow_id} status: {self.status.value}"


def start_monitor(config: MonitorConfig, today: Optional[date] = None) -> StartResult:
    """Create a monitor instance for *config* and schedule its first cycle now.

    Raises:
        MonitorAlreadyExistsError: an instance with the same key exists.
        MonitorUnavailableError:   Redis or the broker is unreachable.
    """
    workflow_id = workflow_id_for(config.delivery_id, today)
    record = MonitorRecord(
        workflow_id=workflow_id,
        config=config,
        wake_token=uuid.uuid4().hex,
    )
    if not create_record(record):
        raise MonitorAlreadyExistsError(f"Workflow {workflow_id} already exists")

    schedule_wake(workflow_id, record.wake_token, 0)
    logger.info(
        "Monitor started: workflow=%s run=%s threshold=%dm delta=%dm",
        workflow_id,
        record.run_id,
        config.threshold_minutes,
        config.notify_delta_minutes,
    )
    return StartResult(workflow_id=workflow_id, run_id=record.run_id)


def _require_running(workflow_id: str) -> MonitorRecord:
    record = get_record(workflow_id)
    if record is None or record.status is not MonitorStatus.RUNNING:
        raise MonitorNotFoundError(f"Workflow {workflow_id} not found or not running")
    return record


def signal_monitor(workflow_id: str, name: str, minutes: Optional[float] = None) -> None:
    """Deliver a control signal to a running instance (fire-and-forget).

    Raises:
        ValueError:               unknown signal name.
        MonitorNotFoundError:     no running instance with this id.
        MonitorUnavailableError:  Redis or the broker is unreachable.
    """
    signal = Signal(name=name, minutes=minutes)
    validate_signal(signal)
    _require_running(workflow_id)

    push_signal(workflow_id, signal)
    if signal.name == CHECK_NOW:
        schedule_wake(workflow_id, None, 0)

    logger.info("Signal delivered: workflow=%s name=%s minutes=%s", workflow_id, name, minutes)


def get_monitor_status(workflow_id: str) -> MonitorStatusView:
    """Return the lifecycle status of an instance (running, cancelled, failed...).

    Raises:
        MonitorNotFoundError:     unknown or expired instance.
        MonitorUnavailableError:  Redis is unreachable.
    """
    record = get_record(workflow_id)
    if record is None:
        raise MonitorNotFoundError(f"Workflow {workflow_id} not found")
    return MonitorStatusView(
        workflow_id=workflow_id,
        status=record.status,
        phase=record.phase.value,
    )


def cancel_monitor(workflow_id: str) -> None:
    """Request termination; takes effect at the instance's next suspension point.

    An idle instance is marked CANCELLED at once.  While a cycle holds the
    lock only the request is recorded, and run_monitor_cycle marks the
    instance CANCELLED when that cycle reaches its suspension point.

    Raises:
        MonitorNotFoundError:     no running instance with this id.
        MonitorUnavailableError:  Redis is unreachable.
    """
    _require_running(workflow_id)
    request_cancel(workflow_id)

    try:
        with monitor_lock(workflow_id, blocking_timeout=0):
            record = get_record(workflow_id)
            if record is not None and record.status is MonitorStatus.RUNNING:
                mark_cancelled(record)
    except MonitorBusyError:
        logger.info("Cancel deferred until the running cycle ends: workflow=%s", workflow_id)
        return

    logger.info("Monitor cancelled: workflow=%s", workflow_id)
