"""tests/test_tasks.py — Unit tests for delivery_monitor/workers/tasks.py.

All external dependencies are mocked:
  - monitor store Redis (fakeredis via monkeypatch)
  - traffic / message / email collaborators (in-memory fakes)
  - schedule_wake (no Celery broker)
"""
from unittest.mock import MagicMock, patch

import fakeredis
import pytest
from celery.exceptions import SoftTimeLimitExceeded
from kombu.exceptions import OperationalError

from delivery_monitor.errors import MonitorUnavailableError, TrafficProviderError
from delivery_monitor.models.schemas import MonitorConfig, TrafficConditions
from delivery_monitor.monitor.loop import Collaborators
from delivery_monitor.monitor.signals import CHECK_NOW, ROUTE_RESTARTED, SNOOZE, Signal
from delivery_monitor.monitor.state import MonitorState, WaitReason
from delivery_monitor.state import monitor_store
from delivery_monitor.state.monitor_store import (
    MonitorRecord,
    MonitorStatus,
    create_record,
    get_record,
    peek_signals,
    push_signal,
    request_cancel,
    save_record,
)
from delivery_monitor.workers.tasks import run_monitor_cycle, schedule_wake

WORKFLOW_ID = "delivery-d-001-2030-06-15"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    server = fakeredis.FakeServer()
    client = fakeredis.FakeRedis(server=server, decode_responses=True)
    monkeypatch.setattr("delivery_monitor.state.monitor_store._get_redis", lambda: client)
    return client


@pytest.fixture()
def mock_schedule():
    with patch("delivery_monitor.workers.tasks.schedule_wake") as mock:
        yield mock


class _Providers:
    def __init__(self, delays):
        self.delays = list(delays)
        self.fetches = 0
        self.sent = []
        self.on_fetch = None

    def fetch(self, origin, destination):
        self.fetches += 1
        if self.on_fetch is not None:
            self.on_fetch()
        delay = self.delays.pop(0)
        if isinstance(delay, Exception):
            raise delay
        return TrafficConditions(
            planned_seconds=3600,
            in_traffic_seconds=3600 + delay * 60,
            delay_minutes=delay,
        )

    def message(self, origin, destination, delay_minutes):
        return f"Delayed by {delay_minutes} minutes"

    def send(self, to, subject, body, key):
        self.sent.append((to, subject, key))

    def collaborators(self) -> Collaborators:
        return Collaborators(
            fetch_traffic_conditions=self.fetch,
            generate_delay_message=self.message,
            send_notification_email=self.send,
        )


def _seed(**overrides) -> MonitorRecord:
    defaults = dict(
        workflow_id=WORKFLOW_ID,
        config=MonitorConfig(
            delivery_id="d-001",
            origin="San Francisco, CA",
            destination="Oakland, CA",
            recipient_email="customer@example.com",
        ),
        wake_token="tok-1",
    )
    defaults.update(overrides)
    record = MonitorRecord(**defaults)
    create_record(record)
    return record


def _run(providers: _Providers, wake_token):
    with patch(
        "delivery_monitor.workers.tasks.default_collaborators",
        return_value=providers.collaborators(),
    ):
        return run_monitor_cycle(WORKFLOW_ID, wake_token)


# ---------------------------------------------------------------------------
# Timed wakes
# ---------------------------------------------------------------------------

def test_timed_wake_runs_cycle_and_schedules_next(mock_schedule):
    _seed()
    providers = _Providers([10])

    result = _run(providers, "tok-1")

    assert result == {
        "advanced": True,
        "reason": "cycle",
        "sleep_seconds": 1800,
        "decision": "none",
    }
    record = get_record(WORKFLOW_ID)
    assert record.wake_token not in (None, "tok-1")
    mock_schedule.assert_called_once_with(WORKFLOW_ID, record.wake_token, 1800)


def test_escalation_is_sent_and_watermark_persisted(mock_schedule):
    _seed()
    providers = _Providers([42])

    result = _run(providers, "tok-1")

    assert result["decision"] == "escalate"
    assert providers.sent == [
        ("customer@example.com", "Delay update for delivery d-001", "d-001-1")
    ]
    state = get_record(WORKFLOW_ID).state
    assert state.highest_notified_delay_minutes == 42
    assert state.has_notified_over_threshold is True
    assert state.notification_sequence == 1


def test_consecutive_wakes_continue_from_checkpoint(mock_schedule):
    _seed()
    providers = _Providers([35, 38, 50])

    _run(providers, "tok-1")
    for _ in range(2):
        _run(providers, get_record(WORKFLOW_ID).wake_token)

    assert [key for *_, key in providers.sent] == ["d-001-1", "d-001-2"]
    assert get_record(WORKFLOW_ID).state.highest_notified_delay_minutes == 50


def test_stale_wake_is_ignored(mock_schedule):
    _seed()
    providers = _Providers([40])

    result = _run(providers, "tok-old")

    assert result == {"advanced": False, "reason": "stale_wake", "signals": 0}
    assert providers.fetches == 0
    mock_schedule.assert_not_called()


def test_stale_wake_still_applies_pending_signals(mock_schedule):
    _seed()
    push_signal(WORKFLOW_ID, Signal(SNOOZE, 15))

    result = _run(_Providers([]), "tok-old")

    assert result["signals"] == 1
    assert get_record(WORKFLOW_ID).state.pending_snooze_ms == 900_000


def test_collaborator_failure_keeps_instance_running(mock_schedule):
    _seed()
    providers = _Providers([TrafficProviderError("Routes HTTP 500")])

    result = _run(providers, "tok-1")

    assert result["advanced"] is True
    record = get_record(WORKFLOW_ID)
    assert record.status is MonitorStatus.RUNNING
    mock_schedule.assert_called_once_with(WORKFLOW_ID, record.wake_token, 1800)


def test_unexpected_error_marks_instance_failed(mock_schedule):
    _seed()
    providers = _Providers([RuntimeError("bug")])

    result = _run(providers, "tok-1")

    assert result == {"advanced": False, "reason": "failed"}
    assert get_record(WORKFLOW_ID).status is MonitorStatus.FAILED
    mock_schedule.assert_not_called()


# ---------------------------------------------------------------------------
# Snooze
# ---------------------------------------------------------------------------

def test_snooze_schedules_snooze_wake_then_cycle(mock_schedule):
    _seed()
    push_signal(WORKFLOW_ID, Signal(SNOOZE, 5))
    providers = _Providers([10])

    first = _run(providers, "tok-1")
    assert first["reason"] == "snooze"
    assert first["sleep_seconds"] == 300
    assert providers.fetches == 0
    assert get_record(WORKFLOW_ID).wait_reason is WaitReason.SNOOZE

    second = _run(providers, get_record(WORKFLOW_ID).wake_token)
    assert second["reason"] == "cycle"
    assert providers.fetches == 1
    assert get_record(WORKFLOW_ID).wait_reason is WaitReason.CYCLE


# ---------------------------------------------------------------------------
# Signal wakes
# ---------------------------------------------------------------------------

def test_signal_wake_with_check_now_runs_cycle(mock_schedule):
    _seed()
    push_signal(WORKFLOW_ID, Signal(CHECK_NOW))
    providers = _Providers([10])

    result = _run(providers, None)

    assert result["advanced"] is True
    assert providers.fetches == 1
    record = get_record(WORKFLOW_ID)
    assert record.state.check_now_requested is False
    # The timer that was pending before the check is now stale
    assert record.wake_token != "tok-1"


def test_signal_wake_without_check_now_only_applies_signals(mock_schedule):
    _seed(state=MonitorState(highest_notified_delay_minutes=45, has_notified_over_threshold=True))
    push_signal(WORKFLOW_ID, Signal(ROUTE_RESTARTED))
    providers = _Providers([])

    result = _run(providers, None)

    assert result == {"advanced": False, "reason": "signals_applied", "signals": 1}
    record = get_record(WORKFLOW_ID)
    assert record.state.highest_notified_delay_minutes == 0
    assert record.wake_token == "tok-1"
    mock_schedule.assert_not_called()


def test_check_now_overrides_snooze_in_same_window(mock_schedule):
    _seed()
    push_signal(WORKFLOW_ID, Signal(SNOOZE, 5))
    push_signal(WORKFLOW_ID, Signal(CHECK_NOW))
    providers = _Providers([10])

    result = _run(providers, None)

    assert result["reason"] == "cycle"
    assert providers.fetches == 1


# ---------------------------------------------------------------------------
# Stopped / missing instances
# ---------------------------------------------------------------------------

def test_cancelled_instance_exits_without_cycle(mock_schedule):
    record = _seed()
    record.status = MonitorStatus.CANCELLED
    record.wake_token = None
    save_record(record)
    providers = _Providers([40])

    result = _run(providers, "tok-1")

    assert result == {"advanced": False, "reason": "not_running"}
    assert providers.fetches == 0
    mock_schedule.assert_not_called()


def test_unknown_instance_returns_not_found(mock_schedule):
    result = _run(_Providers([]), "tok-1")
    assert result == {"advanced": False, "reason": "not_found"}


# ---------------------------------------------------------------------------
# schedule_wake
# ---------------------------------------------------------------------------

def test_schedule_wake_enqueues_with_countdown():
    with patch("delivery_monitor.workers.tasks.run_monitor_cycle") as mock_task:
        schedule_wake(WORKFLOW_ID, "tok-2", 300)
    mock_task.apply_async.assert_called_once_with(args=[WORKFLOW_ID, "tok-2"], countdown=300)


def test_schedule_wake_clamps_negative_delay():
    with patch("delivery_monitor.workers.tasks.run_monitor_cycle") as mock_task:
        schedule_wake(WORKFLOW_ID, None, -5)
    assert mock_task.apply_async.call_args.kwargs["countdown"] == 0


def test_schedule_wake_broker_down_raises_unavailable():
    mock_task = MagicMock()
    mock_task.apply_async.side_effect = OperationalError("connection refused")
    with patch("delivery_monitor.workers.tasks.run_monitor_cycle", mock_task):
        with pytest.raises(MonitorUnavailableError):
            schedule_wake(WORKFLOW_ID, "tok-2", 0)


# ---------------------------------------------------------------------------
# Time limits and infrastructure failures
# ---------------------------------------------------------------------------

def _flaky_save(failures: int):
    """save_record that raises MonitorUnavailableError for the first *failures* calls."""
    calls = {"n": 0}

    def _save(record):
        calls["n"] += 1
        if calls["n"] <= failures:
            raise MonitorUnavailableError("Redis error: timeout")
        monitor_store.save_record(record)

    return _save


def test_soft_time_limit_abandons_cycle_and_keeps_running(mock_schedule):
    _seed()
    push_signal(WORKFLOW_ID, Signal(CHECK_NOW))
    providers = _Providers([SoftTimeLimitExceeded()])

    result = _run(providers, "tok-1")

    assert result["advanced"] is True
    assert result["reason"] == "cycle"
    record = get_record(WORKFLOW_ID)
    assert record.status is MonitorStatus.RUNNING
    assert record.state.check_now_requested is False
    assert record.state.highest_notified_delay_minutes == 0
    mock_schedule.assert_called_once_with(WORKFLOW_ID, record.wake_token, 1800)


def test_task_retries_on_backend_unavailable():
    assert run_monitor_cycle.autoretry_for == (MonitorUnavailableError,)


def test_failed_save_leaves_checkpoint_and_replay_reuses_key(mock_schedule):
    _seed()
    providers = _Providers([42, 42])

    with patch("delivery_monitor.workers.tasks.save_record", side_effect=_flaky_save(1)):
        with pytest.raises(MonitorUnavailableError):
            _run(providers, "tok-1")

        record = get_record(WORKFLOW_ID)
        assert record.status is MonitorStatus.RUNNING
        assert record.wake_token == "tok-1"
        assert record.state.notification_sequence == 0
        # The wake enqueued before the failed save carries an unsaved token
        assert mock_schedule.call_args.args[1] != "tok-1"

        result = _run(providers, "tok-1")

    assert result["advanced"] is True
    assert [key for *_, key in providers.sent] == ["d-001-1", "d-001-1"]
    assert get_record(WORKFLOW_ID).wake_token == mock_schedule.call_args.args[1]


def test_failed_save_keeps_signals_for_the_retry(mock_schedule):
    _seed()
    push_signal(WORKFLOW_ID, Signal(SNOOZE, 5))

    with patch("delivery_monitor.workers.tasks.save_record", side_effect=_flaky_save(1)):
        with pytest.raises(MonitorUnavailableError):
            _run(_Providers([]), "tok-1")
        assert peek_signals(WORKFLOW_ID) == [Signal(SNOOZE, 5)]

        result = _run(_Providers([]), "tok-1")

    assert result["reason"] == "snooze"
    assert peek_signals(WORKFLOW_ID) == []


def test_broker_failure_leaves_checkpoint_for_the_retry(mock_schedule):
    _seed()
    providers = _Providers([42, 42])
    mock_schedule.side_effect = [MonitorUnavailableError("Celery broker unavailable"), None]

    with pytest.raises(MonitorUnavailableError):
        _run(providers, "tok-1")
    assert get_record(WORKFLOW_ID).wake_token == "tok-1"

    _run(providers, "tok-1")

    assert [key for *_, key in providers.sent] == ["d-001-1", "d-001-1"]
    assert get_record(WORKFLOW_ID).state.notification_sequence == 1


# ---------------------------------------------------------------------------
# Cancel requests
# ---------------------------------------------------------------------------

def test_cancel_requested_before_wake_stops_instance(mock_schedule):
    _seed()
    request_cancel(WORKFLOW_ID)
    providers = _Providers([40])

    result = _run(providers, "tok-1")

    assert result == {"advanced": False, "reason": "cancelled"}
    assert providers.fetches == 0
    assert get_record(WORKFLOW_ID).status is MonitorStatus.CANCELLED
    mock_schedule.assert_not_called()


def test_cancel_requested_during_cycle_takes_effect_at_suspension(mock_schedule):
    _seed()
    providers = _Providers([10])
    providers.on_fetch = lambda: request_cancel(WORKFLOW_ID)

    result = _run(providers, "tok-1")

    assert result == {"advanced": True, "reason": "cancelled"}
    record = get_record(WORKFLOW_ID)
    assert record.status is MonitorStatus.CANCELLED
    assert record.wake_token is None
    mock_schedule.assert_not_called()
