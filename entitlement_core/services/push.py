"""
Push Delivery (FCM HTTP v1)
===========================

Sends one message per device token through Firebase Cloud Messaging.

A send outcome is classified as permanent (``NotRegistered`` /
``InvalidRegistration``, the token should be deactivated) or transient
(everything else). A failed recipient never raises; only an inability
to authenticate does.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import httpx

from entitlement_core.config import settings
from entitlement_core.core.errors import ConfigurationError
from entitlement_core.services.google_auth import (
    FIREBASE_MESSAGING_SCOPE,
    ServiceAccountAuthenticator,
)

logger = logging.getLogger(__name__)

ERROR_NOT_REGISTERED = "NotRegistered"
ERROR_INVALID_REGISTRATION = "InvalidRegistration"
PERMANENT_ERRORS = (ERROR_NOT_REGISTERED, ERROR_INVALID_REGISTRATION)


@dataclass(frozen=True)
class PushMessage:
    """Notification content shared by every recipient."""

    title: str
    body: str
    image_url: Optional[str] = None
    data: dict = field(default_factory=dict)
    channel_id: str = "marketing"


@dataclass(frozen=True)
class SendResult:
    token: str
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None

    @property
    def is_permanent_failure(self) -> bool:
        return not self.success and self.error in PERMANENT_ERRORS


def classify_error(error_text: str) -> str:
    """Map an FCM error body to a short error code."""
    if "UNREGISTERED" in error_text or "NOT_FOUND" in error_text:
        return ERROR_NOT_REGISTERED
    if "INVALID_ARGUMENT" in error_text:
        return ERROR_INVALID_REGISTRATION
    return error_text[:500]


class PushClient:
    """FCM sender for one Firebase project."""

    def __init__(
        self,
        authenticator: Optional[ServiceAccountAuthenticator] = None,
        project_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._authenticator = authenticator
        self._project_id = project_id
        self.transport = transport

    @property
    def authenticator(self) -> ServiceAccountAuthenticator:
        if self._authenticator is None:
            self._authenticator = ServiceAccountAuthenticator.from_settings(
                FIREBASE_MESSAGING_SCOPE,
                transport=self.transport,
            )
        return self._authenticator

    @property
    def project_id(self) -> str:
        if self._project_id:
            return self._project_id
        project_id = (self.authenticator.service_account or {}).get("project_id")
        if not project_id:
            raise ConfigurationError("Firebase project_id is not configured")
        return project_id

    @property
    def send_url(self) -> str:
        return f"{settings.FCM_BASE_URL}/projects/{self.project_id}/messages:send"

    async def get_access_token(self) -> str:
        return await self.authenticator.get_access_token()

    @staticmethod
    def build_payload(token: str, message: PushMessage) -> dict[str, Any]:
        notification: dict[str, Any] = {"title": message.title, "body": message.body}
        if message.image_url:
            notification["image"] = message.image_url

        # FCM data values must be strings
        data = {key: str(value) for key, value in message.data.items()}
        data.setdefault("click_action", "FLUTTER_NOTIFICATION_CLICK")

        return {
            "message": {
                "token": token,
                "notification": notification,
                "data": data,
                "android": {
                    "priority": "high",
                    "notification": {
                        "sound": "default",
                        "channel_id": message.channel_id,
                        "icon": "ic_notification",
                    },
                },
                "apns": {
                    "payload": {
                        "aps": {
                            "sound": "default",
                            "badge": 1,
                        },
                    },
                },
                "webpush": {
                    "notification": {
                        "icon": "/favicon.png",
                        "badge": "/favicon.png",
                    },
                    "headers": {"Urgency": "high"},
                },
            },
        }

    async def send(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        token: str,
        message: PushMessage,
    ) -> SendResult:
        try:
            response = await client.post(
                self.send_url,
                json=self.build_payload(token, message),
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            return SendResult(token=token, success=False, error=str(exc)[:500])

        if response.status_code == 200:
            try:
                message_id = response.json().get("name")
            except (ValueError, AttributeError) as exc:
                return SendResult(token=token, success=False, error=f"Unreadable FCM response: {exc}"[:500])
            return SendResult(token=token, success=True, message_id=message_id)

        return SendResult(token=token, success=False, error=classify_error(response.text))

    async def send_many(
        self,
        tokens: Iterable[str],
        message: PushMessage,
        access_token: Optional[str] = None,
    ) -> list[SendResult]:
        """
        Send ``message`` to every token concurrently and wait for all.

        Raises:
            ConfigurationError / ProviderError: No bearer token could be obtained.
        """
        tokens = list(tokens)
        if not tokens:
            return []
        if access_token is None:
            access_token = await self.get_access_token()

        async with httpx.AsyncClient(
            transport=self.transport,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        ) as client:
            return list(await asyncio.gather(
                *(self.send(client, access_token, token, message) for token in tokens)
            ))
