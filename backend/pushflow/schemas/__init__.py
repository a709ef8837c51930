"""Pydantic schemas for job payloads and API."""
from .jobs import (
    RepeatConfig,
    ScheduledSendPayload,
    BulkSendPayload,
    TopicBroadcastPayload,
    CleanupPayload,
    RetryPayload,
    PAYLOAD_MODELS,
    parse_payload,
)
from .devices import DeviceRegisterRequest, DeviceTokenResponse

__all__ = [
    "RepeatConfig",
    "ScheduledSendPayload",
    "BulkSendPayload",
    "TopicBroadcastPayload",
    "CleanupPayload",
    "RetryPayload",
    "PAYLOAD_MODELS",
    "parse_payload",
    "DeviceRegisterRequest",
    "DeviceTokenResponse",
]
