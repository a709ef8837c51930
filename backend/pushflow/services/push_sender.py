"""Push notification providers (APNs for iOS, FCM for Android/web) and the gateway routing between them."""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

import firebase_admin
from aioapns import APNs, NotificationRequest, PushType
from firebase_admin import credentials, messaging
from firebase_admin import exceptions as firebase_exceptions

from ..exceptions import DeliveryError
from ..models.device_token import Platform
from .delivery_gateway import (
    DeliveryGateway,
    DeliveryReport,
    ErrorKind,
    PushContent,
    PushProvider,
    PushTarget,
    TokenResult,
    TopicResult,
)

logger = logging.getLogger(__name__)

# APNs reasons meaning the token itself is dead
APNS_UNREGISTERED_REASONS = {"BadDeviceToken", "Unregistered", "DeviceTokenNotForTopic", "ExpiredToken"}
# APNs reasons meaning the service, not the token, is the problem
APNS_TRANSIENT_REASONS = {"InternalServerError", "ServiceUnavailable", "Shutdown", "TooManyRequests"}

# FCM accepts at most 500 messages per batch call
FCM_BATCH_SIZE = 500

FCM_TRANSIENT_ERRORS = (
    firebase_exceptions.UnavailableError,
    firebase_exceptions.InternalError,
    firebase_exceptions.DeadlineExceededError,
    messaging.QuotaExceededError,
)
FCM_UNREGISTERED_ERRORS = (
    messaging.UnregisteredError,
    messaging.SenderIdMismatchError,
)


def _short(token: str) -> str:
    return f"{token[:16]}..."


@dataclass
class PushConfig:
    """Provider credentials."""
    apns_key_path: str = ""  # Path to .p8 key file
    apns_key_id: str = ""
    apns_team_id: str = ""
    apns_bundle_id: str = ""
    apns_use_sandbox: bool = True  # Use sandbox for development
    fcm_credentials_path: str = ""  # Service account JSON
    concurrency: int = 20

    @property
    def apns_configured(self) -> bool:
        return all([self.apns_key_path, self.apns_key_id, self.apns_team_id, self.apns_bundle_id])

    @property
    def fcm_configured(self) -> bool:
        return bool(self.fcm_credentials_path)


class ApnsProvider(PushProvider):
    """Sends to iOS devices via APNs."""

    name = "apns"

    def __init__(self, client: APNs, concurrency: int = 20):
        self._client = client
        self._semaphore = asyncio.Semaphore(concurrency)

    @classmethod
    def from_config(cls, config: PushConfig) -> "ApnsProvider":
        client = APNs(
            key=config.apns_key_path,
            key_id=config.apns_key_id,
            team_id=config.apns_team_id,
            topic=config.apns_bundle_id,
            use_sandbox=config.apns_use_sandbox,
        )
        logger.info(f"APNs client configured (sandbox={config.apns_use_sandbox})")
        return cls(client, concurrency=config.concurrency)

    def _payload(self, content: PushContent) -> dict:
        alert = {"title": content.title, "body": content.body}
        aps = {"alert": alert, "sound": content.sound or "default"}
        if content.badge is not None:
            aps["badge"] = content.badge
        if content.click_action:
            aps["category"] = content.click_action

        # Combine aps with custom data
        payload = {"aps": aps}
        if content.data:
            payload.update(content.data)
        return payload

    async def _send_one(self, target: PushTarget, content: PushContent) -> TokenResult:
        request = NotificationRequest(
            device_token=target.token,
            message=self._payload(content),
            push_type=PushType.ALERT,
            priority=10 if content.is_high_priority else 5,
        )
        async with self._semaphore:
            try:
                response = await self._client.send_notification(request)
            except Exception as e:
                logger.warning(f"APNs transport error for {_short(target.token)}: {e}")
                return TokenResult.failed(target.token, str(e), ErrorKind.TRANSPORT)

        if response.is_successful:
            return TokenResult.ok(target.token, response.notification_id)

        reason = response.description or str(response.status)
        if reason in APNS_UNREGISTERED_REASONS:
            kind = ErrorKind.UNREGISTERED
        elif reason in APNS_TRANSIENT_REASONS or str(response.status).startswith("5"):
            kind = ErrorKind.TRANSPORT
        else:
            kind = ErrorKind.REJECTED
        logger.warning(f"APNs rejected {_short(target.token)}: {reason}")
        return TokenResult.failed(target.token, reason, kind)

    async def send(self, targets: list[PushTarget], content: PushContent) -> list[TokenResult]:
        return list(await asyncio.gather(*[self._send_one(t, content) for t in targets]))


class FcmProvider(PushProvider):
    """Sends to Android and web devices, and to topics, via Firebase Cloud Messaging."""

    name = "fcm"

    def __init__(self, app: Optional[firebase_admin.App] = None, credentials_path: str = ""):
        self._app = app
        self._credentials_path = credentials_path

    def _get_app(self) -> firebase_admin.App:
        """Lazy-init a dedicated Firebase app."""
        if self._app is None:
            if not self._credentials_path:
                raise DeliveryError("FCM credentials are not configured", provider=self.name)
            self._app = firebase_admin.initialize_app(
                credentials.Certificate(self._credentials_path),
                name="pushflow",
            )
            logger.info("Firebase app initialized")
        return self._app

    def _message(self, content: PushContent, token: Optional[str] = None, topic: Optional[str] = None,
                 platform: Optional[Platform] = None) -> messaging.Message:
        # FCM data payload: all values must be strings
        data = {k: str(v) for k, v in (content.data or {}).items()}
        android = None
        webpush = None
        if platform in (None, Platform.ANDROID):
            android = messaging.AndroidConfig(
                priority="high" if content.is_high_priority else "normal",
                notification=messaging.AndroidNotification(
                    sound=content.sound,
                    icon=content.icon,
                    click_action=content.click_action,
                ),
            )
        if platform in (None, Platform.WEB):
            webpush = messaging.WebpushConfig(
                notification=messaging.WebpushNotification(icon=content.icon),
                fcm_options=messaging.WebpushFCMOptions(link=content.click_action) if content.click_action else None,
            )
        return messaging.Message(
            token=token,
            topic=topic,
            notification=messaging.Notification(
                title=content.title,
                body=content.body,
                image=content.image_url,
            ),
            data=data or None,
            android=android,
            webpush=webpush,
        )

    def _classify(self, error: Exception) -> ErrorKind:
        if isinstance(error, FCM_UNREGISTERED_ERRORS):
            return ErrorKind.UNREGISTERED
        if isinstance(error, FCM_TRANSIENT_ERRORS):
            return ErrorKind.TRANSPORT
        return ErrorKind.REJECTED

    async def send(self, targets: list[PushTarget], content: PushContent) -> list[TokenResult]:
        app = self._get_app()
        results: list[TokenResult] = []
        for start in range(0, len(targets), FCM_BATCH_SIZE):
            chunk = targets[start:start + FCM_BATCH_SIZE]
            messages = [self._message(content, token=t.token, platform=t.platform) for t in chunk]
            try:
                batch = await asyncio.to_thread(messaging.send_each, messages, False, app)
            except firebase_exceptions.FirebaseError as e:
                logger.warning(f"FCM batch of {len(chunk)} failed: {e}")
                results.extend(TokenResult.failed(t.token, str(e), self._classify(e)) for t in chunk)
                continue

            for target, response in zip(chunk, batch.responses):
                if response.success:
                    results.append(TokenResult.ok(target.token, response.message_id))
                else:
                    error = response.exception
                    logger.warning(f"FCM rejected {_short(target.token)}: {error}")
                    results.append(TokenResult.failed(target.token, str(error), self._classify(error)))
        return results

    async def send_topic(self, topic: str, content: PushContent) -> str:
        app = self._get_app()
        try:
            return await asyncio.to_thread(messaging.send, self._message(content, topic=topic), False, app)
        except firebase_exceptions.FirebaseError as e:
            raise DeliveryError(f"Topic broadcast to {topic} failed: {e}", provider=self.name, topic=topic) from e

    async def close(self) -> None:
        if self._app is not None:
            firebase_admin.delete_app(self._app)
            self._app = None


class PushGateway(DeliveryGateway):
    """Routes each token to the provider for its platform."""

    def __init__(
        self,
        providers: Optional[dict[Platform, PushProvider]] = None,
        topic_provider: Optional[PushProvider] = None,
    ):
        self._providers: dict[Platform, PushProvider] = dict(providers or {})
        self._topic_provider = topic_provider

    def configure(self, providers: dict[Platform, PushProvider], topic_provider: Optional[PushProvider] = None):
        """Replace the provider set (e.g. at startup)."""
        self._providers = dict(providers)
        self._topic_provider = topic_provider

    @property
    def platforms(self) -> list[Platform]:
        return list(self._providers)

    async def _send_group(self, platform: Platform, targets: list[PushTarget], content: PushContent) -> list[TokenResult]:
        provider = self._providers.get(platform)
        if provider is None:
            logger.warning(f"No push provider for {platform.value}; {len(targets)} tokens not delivered")
            return [
                TokenResult.failed(t.token, f"No provider for {platform.value}", ErrorKind.UNSUPPORTED)
                for t in targets
            ]
        try:
            return await provider.send(targets, content)
        except Exception as e:
            # Provider blew up as a whole: every token in the group is a transport failure
            logger.error(f"{provider.name} failed for {len(targets)} tokens: {e}")
            return [TokenResult.failed(t.token, str(e), ErrorKind.TRANSPORT) for t in targets]

    async def send_to_tokens(self, targets: list[PushTarget], content: PushContent) -> DeliveryReport:
        if not targets:
            return DeliveryReport()

        groups: dict[Platform, list[PushTarget]] = defaultdict(list)
        for target in targets:
            groups[Platform(target.platform)].append(target)

        grouped_results = await asyncio.gather(
            *[self._send_group(platform, group, content) for platform, group in groups.items()]
        )
        report = DeliveryReport(results=[r for results in grouped_results for r in results])

        logger.info(
            f"Push notifications sent: {report.success_count} success, {report.failure_count} failed"
        )
        if report.all_transport_failed:
            raise DeliveryError(f"Push transport unavailable for all {len(targets)} tokens")
        return report

    async def send_to_topic(self, topic: str, content: PushContent) -> TopicResult:
        if self._topic_provider is None:
            raise DeliveryError("No provider configured for topic broadcasts", topic=topic)
        message_id = await self._topic_provider.send_topic(topic, content)
        logger.info(f"Topic notification sent to {topic}: {message_id}")
        return TopicResult(message_id=message_id)

    async def close(self) -> None:
        closed = set()
        for provider in [*self._providers.values(), self._topic_provider]:
            if provider is not None and id(provider) not in closed:
                closed.add(id(provider))
                await provider.close()


def build_gateway(config: PushConfig) -> PushGateway:
    """Create a gateway with every provider the config allows."""
    providers: dict[Platform, PushProvider] = {}
    topic_provider = None

    if config.apns_configured:
        try:
            providers[Platform.IOS] = ApnsProvider.from_config(config)
        except Exception as e:
            logger.error(f"Failed to configure APNs client: {e}")
    else:
        logger.warning("APNs not fully configured - iOS push disabled")

    if config.fcm_configured:
        fcm = FcmProvider(credentials_path=config.fcm_credentials_path)
        providers[Platform.ANDROID] = fcm
        providers[Platform.WEB] = fcm
        topic_provider = fcm
    else:
        logger.warning("FCM not configured - Android/web push and topics disabled")

    return PushGateway(providers, topic_provider=topic_provider)
