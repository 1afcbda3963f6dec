import logging
from typing import Optional

import redis
from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from delivery_monitor.config import settings
from delivery_monitor.errors import (
    MonitorAlreadyExistsError,
    MonitorNotFoundError,
    MonitorUnavailableError,
)
from delivery_monitor.models.schemas import (
    MonitorConfig,
    MonitorStatusResponse,
    SignalResponse,
    SnoozeRequest,
    StartMonitorResponse,
)
from delivery_monitor.monitor.signals import CHECK_NOW, ROUTE_RESTARTED, SNOOZE
from delivery_monitor.workers.control import (
    cancel_monitor,
    get_monitor_status,
    signal_monitor,
    start_monitor,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


def _not_found(workflow_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Workflow {workflow_id} not found")


def _unavailable() -> HTTPException:
    return HTTPException(
        status_code=503,
        detail="Monitor backend (Redis/Celery) unavailable. Try again shortly.",
    )


def _signal(workflow_id: str, name: str, message: str, minutes=None) -> SignalResponse:
    """Deliver a signal and translate control-plane errors to HTTP errors."""
    try:
        signal_monitor(workflow_id, name, minutes)
    except MonitorNotFoundError:
        logger.warning("%s: workflow=%s not found", name, workflow_id)
        raise _not_found(workflow_id)
    except MonitorUnavailableError as exc:
        logger.error("%s failed: workflow=%s error=%s", name, workflow_id, exc)
        raise _unavailable()
    return SignalResponse(ok=True, message=message)


@router.post("/workflows/start", response_model=StartMonitorResponse, status_code=202)
async def start_workflow(request: MonitorConfig) -> StartMonitorResponse:
    """Start monitoring a delivery.

    The instance id is delivery-{delivery_id}-{YYYY-MM-DD}; a second start for
    the same delivery on the same day returns 409.  Invalid configuration is
    rejected with 422 before anything is created.
    """
    try:
        result = start_monitor(request)
    except MonitorAlreadyExistsError as exc:
        logger.warning("start rejected: %s", exc)
        raise HTTPException(status_code=409, detail=str(exc))
    except MonitorUnavailableError as exc:
        logger.error("start failed: delivery=%s error=%s", request.delivery_id, exc)
        raise _unavailable()
    return StartMonitorResponse(workflow_id=result.workflow_id, run_id=result.run_id)


@router.get("/workflows/{workflow_id}/status", response_model=MonitorStatusResponse)
async def workflow_status(workflow_id: str) -> MonitorStatusResponse:
    """Return the lifecycle status of a monitor instance."""
    try:
        view = get_monitor_status(workflow_id)
    except MonitorNotFoundError:
        raise _not_found(workflow_id)
    except MonitorUnavailableError as exc:
        logger.error("status failed: workflow=%s error=%s", workflow_id, exc)
        raise _unavailable()
    return MonitorStatusResponse(
        workflow_id=view.workflow_id,
        status=view.status.value,
        phase=view.phase,
        status_message=view.status_message,
    )


@router.post("/workflows/{workflow_id}/cancel", response_model=SignalResponse, status_code=202)
async def cancel_workflow(workflow_id: str) -> SignalResponse:
    """Request cancellation at the instance's next suspension point."""
    try:
        cancel_monitor(workflow_id)
    except MonitorNotFoundError:
        raise _not_found(workflow_id)
    except MonitorUnavailableError as exc:
        logger.error("cancel failed: workflow=%s error=%s", workflow_id, exc)
        raise _unavailable()
    return SignalResponse(ok=True, message=f"Cancel requested for {workflow_id}")


@router.post("/workflows/{workflow_id}/snooze", response_model=SignalResponse, status_code=202)
async def snooze_workflow(
    workflow_id: str,
    request: Optional[SnoozeRequest] = None,
) -> SignalResponse:
    """Override the next sleep of the instance with *minutes* (default 30, minimum 1)."""
    request = request or SnoozeRequest()
    return _signal(
        workflow_id,
        SNOOZE,
        f"Snoozed {workflow_id} for {request.minutes:g} minutes",
        minutes=request.minutes,
    )


@router.post(
    "/workflows/{workflow_id}/route-restarted",
    response_model=SignalResponse,
    status_code=202,
)
async def route_restarted(workflow_id: str) -> SignalResponse:
    """Forget the notified-delay watermark after the delivery took a new route."""
    return _signal(
        workflow_id, ROUTE_RESTARTED, f"Route restarted acknowledged for {workflow_id}"
    )


@router.post("/workflows/{workflow_id}/check-now", response_model=SignalResponse, status_code=202)
async def check_now(workflow_id: str) -> SignalResponse:
    """Run the next cycle immediately, skipping any pending snooze and wait."""
    return _signal(workflow_id, CHECK_NOW, f"Requested immediate check for {workflow_id}")


@router.get("/health")
async def health_check() -> JSONResponse:
    """Return service health: Redis connectivity and provider key presence."""
    # Redis connectivity
    redis_status = "unavailable"
    try:
        r = redis.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            socket_connect_timeout=1,
        )
        r.ping()
        redis_status = "ok"
    except Exception:
        pass

    # Provider keys only; no live calls on health check. Missing keys mean mock mode.
    def _mode(key: str, force_mock: bool) -> str:
        return "mock" if force_mock or not key else "configured"

    return JSONResponse(
        {
            "status": "healthy",
            "redis": redis_status,
            "maps_api": _mode(settings.GOOGLE_MAPS_API_KEY, settings.USE_MOCK_TRAFFIC),
            "openai": _mode(settings.OPENAI_API_KEY, settings.USE_MOCK_AI),
            "sendgrid": _mode(settings.SENDGRID_API_KEY, settings.USE_MOCK_EMAIL),
        }
    )
