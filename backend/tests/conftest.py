"""Shared fixtures: a throwaway SQLite database, a controllable clock and fake push providers."""
from datetime import datetime, timedelta

import pytest

from pushflow.database import build_engine, build_session_factory, create_schema
from pushflow.exceptions import DeliveryError
from pushflow.models.device_token import Platform
from pushflow.services.delivery_gateway import ErrorKind, PushProvider, TokenResult
from pushflow.services.device_registry import DeviceRegistry
from pushflow.services.dispatcher import JobDispatcher
from pushflow.services.job_queue import JobQueue
from pushflow.services.notification_store import NotificationStore
from pushflow.services.notifier import Notifier
from pushflow.services.preferences import PreferencesStore
from pushflow.services.push_sender import PushGateway
from pushflow.services.schedules import ScheduleStore
from pushflow.services.templates import TemplateStore

# Monday
START = datetime(2024, 1, 15, 12, 0, 0)


def android_token(n: int) -> str:
    """A 150-character android token."""
    return f"{n:06d}" + "a" * 144


def ios_token(n: int) -> str:
    """A 64-hex-character ios token."""
    return f"{n:064x}"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeProvider(PushProvider):
    """Records sends; per-token outcomes are scripted through ``outcomes``."""

    name = "fake"

    def __init__(self):
        self.calls = []
        self.topic_calls = []
        self.outcomes: dict[str, ErrorKind] = {}
        self.topic_error = None
        # Awaited before each send, to act while a job is mid-delivery
        self.on_send = None

    @property
    def sent_tokens(self) -> list[str]:
        return [target.token for targets, _ in self.calls for target in targets]

    async def send(self, targets, content):
        if self.on_send is not None:
            await self.on_send()
        self.calls.append((list(targets), content))
        results = []
        for index, target in enumerate(targets):
            kind = self.outcomes.get(target.token)
            if kind is None:
                results.append(TokenResult.ok(target.token, f"msg-{len(self.calls)}-{index}"))
            else:
                results.append(TokenResult.failed(target.token, kind.value, kind))
        return results

    async def send_topic(self, topic, content):
        self.topic_calls.append((topic, content))
        if self.topic_error:
            raise DeliveryError(self.topic_error, provider=self.name, topic=topic)
        return f"projects/test/messages/{len(self.topic_calls)}"


@pytest.fixture
async def session_factory(tmp_path):
    # One connection: concurrent sessions queue for it instead of contending for SQLite locks
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'pushflow-test.db'}", pool_size=1, max_overflow=0)
    await create_schema(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def gateway(provider):
    return PushGateway(
        {Platform.ANDROID: provider, Platform.IOS: provider, Platform.WEB: provider},
        topic_provider=provider,
    )


@pytest.fixture
def registry(session_factory, clock):
    return DeviceRegistry(session_factory, clock)


@pytest.fixture
def templates(session_factory, clock):
    return TemplateStore(session_factory, clock)


@pytest.fixture
def preferences(session_factory, clock):
    return PreferencesStore(session_factory, clock)


@pytest.fixture
def notifications(session_factory, clock):
    return NotificationStore(session_factory, clock, retention_days=90)


@pytest.fixture
def schedules(session_factory, clock):
    return ScheduleStore(session_factory, clock)


@pytest.fixture
def queue(session_factory, clock):
    return JobQueue(session_factory, clock, max_attempts=3, backoff_seconds=30.0)


@pytest.fixture
def dispatcher(gateway, registry, templates, preferences, notifications, schedules, queue, clock):
    return JobDispatcher(
        gateway,
        registry=registry,
        templates=templates,
        preferences=preferences,
        notifications=notifications,
        schedules=schedules,
        queue=queue,
        clock=clock,
        retry_delay_seconds=300,
        max_delivery_retries=2,
    )


@pytest.fixture
def notifier(queue, templates, schedules):
    return Notifier(queue=queue, templates=templates, schedules=schedules)
