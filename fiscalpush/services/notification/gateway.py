"""Push delivery gateway client (Firebase Cloud Messaging).

The dispatcher never talks to `firebase_admin` directly. It leases the current
`PushGateway` from a `GatewayHandle`; when credentials expire the handle builds
a brand new gateway and swaps it in under a single-flight lock, and the old
one is closed after its last in-flight send returns.
"""

import itertools
import threading
from contextlib import contextmanager

import firebase_admin
import google.auth.exceptions
from firebase_admin import credentials, exceptions, messaging

from fiscalpush.common.logging import logger
from fiscalpush.common.metrics import push_credential_reinit_total


CREDENTIAL_EXPIRY_SIGNATURES = ("invalid_grant", "invalid_credentials", "unsupported_grant_type")


class PushGatewayError(Exception):
    """Generic delivery failure."""


class InvalidMessageError(PushGatewayError):
    """The gateway rejected the payload itself."""


class TokenNotRegisteredError(PushGatewayError):
    """The token no longer identifies an installed app."""


class GatewayAuthError(PushGatewayError):
    """The gateway rejected our credentials."""


class GatewayReinitError(PushGatewayError):
    """Building a fresh gateway client failed."""


def is_credential_expiry(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(signature in message for signature in CREDENTIAL_EXPIRY_SIGNATURES)


class PushGateway:
    """Interface of one authenticated gateway client."""

    def verify_credentials(self) -> None:
        raise NotImplementedError

    def send(self, message: dict) -> str:
        """Deliver one single-token message and return the delivery id."""

        raise NotImplementedError

    def close(self) -> None:
        return None


class FirebaseGateway(PushGateway):
    """`firebase_admin` backed gateway; each instance owns a named app."""

    _app_ids = itertools.count(1)

    def __init__(self, credentials_path: str = "", project_id: str = "", timeout_seconds: int = 10) -> None:
        if credentials_path:
            credential = credentials.Certificate(credentials_path)
        else:
            credential = credentials.ApplicationDefault()
        options = {"httpTimeout": timeout_seconds}
        if project_id:
            options["projectId"] = project_id
        self.app = firebase_admin.initialize_app(
            credential,
            options,
            name=f"fiscalpush-push-{next(self._app_ids)}",
        )

    def verify_credentials(self) -> None:
        """Fetch an OAuth access token; cheapest authenticated round trip."""

        try:
            self.app.credential.get_access_token()
        except google.auth.exceptions.RefreshError as exc:
            raise GatewayAuthError(str(exc)) from exc
        except google.auth.exceptions.TransportError as exc:
            raise PushGatewayError(str(exc)) from exc

    def send(self, message: dict) -> str:
        try:
            return messaging.send(to_firebase_message(message), app=self.app)
        except (messaging.UnregisteredError, exceptions.NotFoundError) as exc:
            raise TokenNotRegisteredError(str(exc)) from exc
        except exceptions.InvalidArgumentError as exc:
            raise InvalidMessageError(str(exc)) from exc
        except (exceptions.UnauthenticatedError, google.auth.exceptions.RefreshError) as exc:
            raise GatewayAuthError(str(exc)) from exc
        except exceptions.FirebaseError as exc:
            raise PushGatewayError(str(exc)) from exc
        except ValueError as exc:
            # firebase_admin validates message fields client-side.
            raise InvalidMessageError(str(exc)) from exc

    def close(self) -> None:
        firebase_admin.delete_app(self.app)


def to_firebase_message(message: dict) -> messaging.Message:
    """Convert a channel-neutral message dict into a `messaging.Message`."""

    notification = message.get("notification") or {}
    android = message.get("android") or {}
    android_notification = android.get("notification") or {}
    apns = message.get("apns") or {}
    aps = (apns.get("payload") or {}).get("aps") or {}
    alert = aps.get("alert") or {}
    webpush = message.get("webpush") or {}
    webpush_notification = webpush.get("notification") or {}

    return messaging.Message(
        token=message["token"],
        notification=messaging.Notification(title=notification.get("title"), body=notification.get("body")),
        data=message.get("data") or None,
        android=messaging.AndroidConfig(
            priority=android.get("priority"),
            collapse_key=android.get("collapse_key"),
            notification=messaging.AndroidNotification(
                title=android_notification.get("title"),
                body=android_notification.get("body"),
                icon=android_notification.get("icon"),
                color=android_notification.get("color"),
                sound=android_notification.get("sound"),
                click_action=android_notification.get("click_action"),
                channel_id=android_notification.get("channel_id"),
            ),
        ),
        apns=messaging.APNSConfig(
            headers=apns.get("headers"),
            payload=messaging.APNSPayload(
                aps=messaging.Aps(
                    alert=messaging.ApsAlert(title=alert.get("title"), body=alert.get("body")),
                    badge=aps.get("badge"),
                    sound=aps.get("sound"),
                    mutable_content=bool(aps.get("mutable-content")),
                    content_available=bool(aps.get("content-available")),
                )
            ),
        ),
        webpush=messaging.WebpushConfig(
            headers=webpush.get("headers"),
            notification=messaging.WebpushNotification(
                title=webpush_notification.get("title"),
                body=webpush_notification.get("body"),
                icon=webpush_notification.get("icon"),
            ),
            fcm_options=messaging.WebpushFCMOptions(link=webpush["link"]) if webpush.get("link") else None,
        ),
    )


class GatewayHandle:
    """Shared, reference-counted holder of the current gateway client."""

    def __init__(self, factory, service_name: str = "notification") -> None:
        self._factory = factory
        self.service_name = service_name
        self._lock = threading.Lock()
        self._reinit_lock = threading.Lock()
        self._client: PushGateway | None = None
        self._generation = 0
        self._leases: dict[int, int] = {}
        self._retired: dict[int, PushGateway] = {}

    @property
    def generation(self) -> int:
        return self._generation

    @contextmanager
    def lease(self):
        """Yield `(client, generation)`, building the first client lazily."""

        if self._client is None:
            self.reinitialize(0)
        with self._lock:
            client, generation = self._client, self._generation
            self._leases[generation] = self._leases.get(generation, 0) + 1
        try:
            yield client, generation
        finally:
            self._release(generation)

    def _release(self, generation: int) -> None:
        retired = None
        with self._lock:
            self._leases[generation] -= 1
            if self._leases[generation] == 0:
                del self._leases[generation]
                retired = self._retired.pop(generation, None)
        if retired is not None:
            self._close(retired, generation)

    def _close(self, client: PushGateway, generation: int) -> None:
        try:
            client.close()
        except Exception as exc:
            logger.warning("push gateway close failed generation=%s error=%s", generation, exc)

    def reinitialize(self, seen_generation: int) -> int:
        """Build and swap in a new client unless another caller already did.

        Callers pass the generation they observed failing. Concurrent callers
        queue on the lock; all but the first find the generation already moved
        on and return without rebuilding.
        """

        with self._reinit_lock:
            if self._generation != seen_generation:
                return self._generation
            try:
                client = self._factory()
            except Exception as exc:
                push_credential_reinit_total.labels(service=self.service_name, result="failed").inc()
                logger.critical("push gateway reinitialization failed generation=%s error=%s", seen_generation, exc)
                raise GatewayReinitError(str(exc)) from exc

            idle = None
            with self._lock:
                previous, previous_generation = self._client, self._generation
                self._client = client
                self._generation += 1
                if previous is not None:
                    if self._leases.get(previous_generation):
                        self._retired[previous_generation] = previous
                    else:
                        idle = previous
            if idle is not None:
                self._close(idle, previous_generation)
            result = "initial" if previous is None else "ok"
            push_credential_reinit_total.labels(service=self.service_name, result=result).inc()
            logger.info("push gateway client ready generation=%s", self._generation)
            return self._generation


def firebase_gateway_factory(settings):
    """Factory closure building live Firebase gateways from settings."""

    def build() -> PushGateway:
        return FirebaseGateway(
            credentials_path=settings.firebase_credentials_path,
            project_id=settings.firebase_project_id,
            timeout_seconds=settings.push_send_timeout_seconds,
        )

    return build
