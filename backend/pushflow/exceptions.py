"""Error taxonomy shared by the registry, stores, gateway and dispatcher."""
from typing import Optional


class PushflowError(Exception):
    """Base class for all pushflow errors."""


class ValidationError(PushflowError):
    """Malformed input, rejected before any persistence or queue interaction."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(PushflowError):
    """A referenced template, device, notification, schedule or job does not exist."""

    def __init__(self, entity: str, identifier: str):
        super().__init__(f"{entity} {identifier} not found")
        self.entity = entity
        self.identifier = identifier


class DeliveryError(PushflowError):
    """Transport-level failure.

    Raised for topic broadcasts that fail and for fan-outs where no token could
    be reached at all. Per-token failures inside a batch are reported in the
    delivery report instead.
    """

    def __init__(self, message: str, provider: Optional[str] = None, topic: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.topic = topic


class ConfigurationError(PushflowError):
    """Ambiguous persisted state, e.g. two active templates sharing one name."""
