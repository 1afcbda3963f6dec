import re
import logging
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class MonitorConfig(BaseModel):
    """Immutable configuration supplied when a delivery monitor is started."""

    model_config = ConfigDict(frozen=True)

    delivery_id: str = Field(min_length=1)
    origin: str = Field(min_length=1)
    destination: str = Field(min_length=1)
    recipient_email: str
    threshold_minutes: int = 30
    notify_delta_minutes: int = 10

    @field_validator("recipient_email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Reject strings that are not shaped like an email address."""
        if not _EMAIL_RE.match(v):
            raise ValueError(f"recipient_email is not a valid address: '{v}'")
        return v

    @field_validator("threshold_minutes", "notify_delta_minutes")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Reject zero or negative minute settings."""
        if v <= 0:
            raise ValueError(f"must be a positive number of minutes, got {v}")
        return v


class StartMonitorResponse(BaseModel):
    workflow_id: str
    run_id: str


class SnoozeRequest(BaseModel):
    minutes: float = 30

    @field_validator("minutes")
    @classmethod
    def clamp_minutes(cls, v: float) -> float:
        """Snoozes shorter than a minute are raised to one minute."""
        return max(1, v)


class SignalResponse(BaseModel):
    ok: bool
    message: str


class MonitorStatusResponse(BaseModel):
    workflow_id: str
    status: str
    phase: str
    status_message: str


class TrafficConditions(BaseModel):
    planned_seconds: int = Field(ge=0)
    in_traffic_seconds: int = Field(ge=0)
    delay_minutes: int = Field(ge=0)
