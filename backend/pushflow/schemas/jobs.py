"""Job payload schemas - one model per job kind."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from ..exceptions import ValidationError
from ..models.notification import Priority
from ..models.notification_schedule import RepeatRule
from ..models.scheduled_job import JobKind
from ..utils.time_utils import as_naive_utc


class RepeatConfig(BaseModel):
    """Repeat configuration. Days of week use 0 = Sunday .. 6 = Saturday."""
    interval: Optional[int] = Field(None, ge=1)
    end_date: Optional[datetime] = None
    days_of_week: Optional[list[int]] = None
    day_of_month: Optional[int] = Field(None, ge=1, le=31)

    @field_validator("days_of_week")
    @classmethod
    def check_days_of_week(cls, value):
        if value is None:
            return value
        if not value:
            raise ValueError("days_of_week must not be empty")
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("days_of_week entries must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(value))

    @field_validator("end_date")
    @classmethod
    def normalize_end_date(cls, value):
        return as_naive_utc(value) if value else value


class ScheduledSendPayload(BaseModel):
    """Templated send to explicit recipients, optionally recurring."""
    schedule_id: Optional[str] = None
    template_name: str = Field(..., min_length=1)
    recipients: list[str] = Field(..., min_length=1)
    company_id: str = Field(..., min_length=1)
    variables: dict[str, str] = Field(default_factory=dict)
    scheduled_at: datetime
    timezone: str = "UTC"
    repeat: RepeatRule = RepeatRule.NONE
    repeat_config: Optional[RepeatConfig] = None
    # Each occurrence's records expire this long after they are sent
    ttl_seconds: Optional[int] = Field(None, ge=1)

    @field_validator("scheduled_at")
    @classmethod
    def normalize_scheduled_at(cls, value):
        return as_naive_utc(value)


class BulkSendPayload(BaseModel):
    """Template (by id) rendered once and fanned out to many recipients."""
    template_id: str = Field(..., min_length=1)
    recipients: list[str] = Field(..., min_length=1)
    company_id: str = Field(..., min_length=1)
    variables: dict[str, str] = Field(default_factory=dict)
    priority: Optional[Priority] = None
    scheduled_at: Optional[datetime] = None
    category: Optional[str] = None
    expires_at: Optional[datetime] = None

    @field_validator("scheduled_at", "expires_at")
    @classmethod
    def normalize_times(cls, value):
        return as_naive_utc(value) if value else value


class TopicBroadcastPayload(BaseModel):
    """Broadcast to a provider topic; no token resolution."""
    topic: str = Field(..., min_length=1)
    title: str
    body: str
    data: dict[str, str] = Field(default_factory=dict)
    company_id: str


class CleanupPayload(BaseModel):
    """Stale-token sweep."""
    days_inactive: int = Field(30, ge=1)


class RetryPayload(BaseModel):
    """Re-attempt previously failed notifications."""
    notification_ids: list[str] = Field(..., min_length=1)
    attempt: int = Field(1, ge=1)


PAYLOAD_MODELS = {
    JobKind.SCHEDULED_SEND: ScheduledSendPayload,
    JobKind.BULK_SEND: BulkSendPayload,
    JobKind.TOPIC_BROADCAST: TopicBroadcastPayload,
    JobKind.CLEANUP: CleanupPayload,
    JobKind.RETRY: RetryPayload,
}


def parse_payload(kind, data: dict) -> BaseModel:
    """Validate a raw payload for a job kind.

    Raises:
        ValidationError: unknown kind or malformed payload
    """
    try:
        model = PAYLOAD_MODELS[JobKind(kind)]
    except (KeyError, ValueError):
        raise ValidationError(f"Unknown job kind: {kind}", field="kind") from None
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {JobKind(kind).value} payload: {e}", field="payload") from e
