"""Delivery gateway contract - provider-agnostic fan-out sender.

The gateway reports; it never retries and never touches the device
registry. Deciding what to do with failures is the dispatcher's job.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..exceptions import DeliveryError
from ..models.device_token import Platform


class ErrorKind(str, Enum):
    """Why a single token failed."""
    UNREGISTERED = "unregistered"  # token is dead, deactivate it
    REJECTED = "rejected"  # provider refused this message for this token
    TRANSPORT = "transport"  # network/provider outage, worth retrying
    UNSUPPORTED = "unsupported"  # no provider configured for the platform


@dataclass(frozen=True)
class PushTarget:
    """A token plus the platform that decides which provider carries it."""
    token: str
    platform: Platform

    @classmethod
    def from_device(cls, device) -> "PushTarget":
        return cls(token=device.token, platform=Platform(device.platform))


@dataclass
class PushContent:
    """Rendered content and delivery hints."""
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)
    priority: str = "normal"
    sound: Optional[str] = None
    icon: Optional[str] = None
    image_url: Optional[str] = None
    click_action: Optional[str] = None
    badge: Optional[int] = None

    @property
    def is_high_priority(self) -> bool:
        return self.priority in ("high", "urgent")


@dataclass
class TokenResult:
    """Outcome for one token."""
    token: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def ok(cls, token: str, message_id: Optional[str] = None) -> "TokenResult":
        return cls(token=token, success=True, message_id=message_id)

    @classmethod
    def failed(cls, token: str, error: str, kind: ErrorKind) -> "TokenResult":
        return cls(token=token, success=False, error=error, error_kind=kind)


@dataclass
class DeliveryReport:
    """Per-token results of one fan-out."""
    results: list[TokenResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for result in self.results if not result.success)

    @property
    def per_token(self) -> dict[str, TokenResult]:
        return {result.token: result for result in self.results}

    def tokens_with(self, kind: ErrorKind) -> list[str]:
        return [r.token for r in self.results if not r.success and r.error_kind == kind]

    @property
    def unregistered_tokens(self) -> list[str]:
        return self.tokens_with(ErrorKind.UNREGISTERED)

    @property
    def transport_failed_tokens(self) -> list[str]:
        return self.tokens_with(ErrorKind.TRANSPORT)

    @property
    def all_transport_failed(self) -> bool:
        """True when nothing got through because the transport itself was down."""
        return bool(self.results) and all(
            not r.success and r.error_kind == ErrorKind.TRANSPORT for r in self.results
        )


@dataclass(frozen=True)
class TopicResult:
    """Outcome of a topic broadcast."""
    message_id: str


class PushProvider(ABC):
    """One concrete transport (APNs, FCM, ...)."""

    name = "provider"

    @abstractmethod
    async def send(self, targets: list[PushTarget], content: PushContent) -> list[TokenResult]:
        """Deliver to every target; one result per target, in order."""

    async def send_topic(self, topic: str, content: PushContent) -> str:
        """Broadcast to a topic; returns the provider message id."""
        raise DeliveryError(f"{self.name} does not support topics", provider=self.name, topic=topic)

    async def close(self) -> None:
        """Release provider resources."""


class DeliveryGateway(ABC):
    """Fan-out sender used by the dispatcher."""

    @abstractmethod
    async def send_to_tokens(self, targets: list[PushTarget], content: PushContent) -> DeliveryReport:
        """Best-effort delivery to every target.

        Raises:
            DeliveryError: the transport was unavailable for every target
        """

    @abstractmethod
    async def send_to_topic(self, topic: str, content: PushContent) -> TopicResult:
        """Single logical broadcast.

        Raises:
            DeliveryError: the broadcast failed
        """
