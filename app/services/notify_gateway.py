from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx
from jose import jwt

from app.services.resilience import RateLimiter, ResilientCaller
from app.settings import Settings

logger = logging.getLogger("app.notify_gateway")

TERMINAL_NOTIFICATION_STATUSES = frozenset(
    {"delivered", "permanent-failure", "temporary-failure", "technical-failure"}
)


@dataclass(frozen=True, slots=True)
class SmsRecipient:
    phone_number: str


@dataclass(frozen=True, slots=True)
class EmailRecipient:
    address: str


Recipient = SmsRecipient | EmailRecipient


@dataclass(frozen=True, slots=True)
class NotificationStatusItem:
    notification_id: uuid.UUID
    status: str


@dataclass(frozen=True, slots=True)
class NotificationStatusPage:
    items: list[NotificationStatusItem] = field(default_factory=list)
    has_next_page: bool = False
    next_cursor: str | None = None


def split_api_key(api_key: str) -> tuple[str, str]:
    """Returns ``(service_id, secret)`` from a provider API key.

    Keys end with ``{service_id}-{secret}``, both 36-character uuids.
    """
    key = api_key.strip()
    if len(key) < 74:
        raise ValueError("Notify API key is malformed")
    return key[-73:-37], key[-36:]


def build_notify_token(api_key: str, *, issued_at: int | None = None) -> str:
    service_id, secret = split_api_key(api_key)
    claims = {"iss": service_id, "iat": issued_at if issued_at is not None else int(time.time())}
    return jwt.encode(claims, secret, algorithm="HS256")


def _next_cursor(body: dict[str, Any], items: list[NotificationStatusItem]) -> str | None:
    next_link = (body.get("links") or {}).get("next")
    if not next_link:
        return None
    older_than = httpx.URL(next_link).params.get("older_than")
    if older_than:
        return older_than
    return str(items[-1].notification_id) if items else None


class NotifyGateway:
    def __init__(
        self,
        http_client: httpx.Client,
        *,
        api_key: str,
        rate_limiter: RateLimiter,
        caller: ResilientCaller,
    ):
        self.http_client = http_client
        self.api_key = api_key
        self.rate_limiter = rate_limiter
        self.caller = caller

    def close(self) -> None:
        self.http_client.close()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {build_notify_token(self.api_key)}"}

    def send(
        self,
        recipient: Recipient,
        template_id: str,
        personalisation: dict[str, Any],
        reference: str,
    ) -> uuid.UUID:
        if isinstance(recipient, SmsRecipient):
            path = "/v2/notifications/sms"
            payload: dict[str, Any] = {"phone_number": recipient.phone_number}
        elif isinstance(recipient, EmailRecipient):
            path = "/v2/notifications/email"
            payload = {"email_address": recipient.address}
        else:
            raise TypeError(f"Unsupported recipient type: {type(recipient).__name__}")

        payload.update(
            {
                "template_id": template_id,
                "personalisation": personalisation,
                "reference": reference,
            }
        )
        return self.caller.call(self._post_notification, path, payload)

    def _post_notification(self, path: str, payload: dict[str, Any]) -> uuid.UUID:
        self.rate_limiter.acquire()
        response = self.http_client.post(path, json=payload, headers=self._headers())
        response.raise_for_status()
        notification_id = uuid.UUID(str(response.json()["id"]))
        logger.info(
            "notify_notification_sent",
            extra={"path": path, "reference": payload["reference"], "notification_id": str(notification_id)},
        )
        return notification_id

    def notification_status(self, reference: str, older_than: str | None = None) -> NotificationStatusPage:
        return self.caller.call(self._get_notifications, reference, older_than)

    def _get_notifications(self, reference: str, older_than: str | None) -> NotificationStatusPage:
        self.rate_limiter.acquire()
        params = {"reference": reference}
        if older_than:
            params["older_than"] = older_than
        response = self.http_client.get("/v2/notifications", params=params, headers=self._headers())
        response.raise_for_status()
        body = response.json() or {}
        items = [
            NotificationStatusItem(notification_id=uuid.UUID(str(item["id"])), status=str(item["status"]))
            for item in body.get("notifications") or []
        ]
        cursor = _next_cursor(body, items)
        logger.info(
            "notify_status_page_fetched",
            extra={"reference": reference, "older_than": older_than, "count": len(items)},
        )
        return NotificationStatusPage(items=items, has_next_page=cursor is not None, next_cursor=cursor)


def build_notify_http_client(settings: Settings) -> httpx.Client:
    return httpx.Client(
        base_url=settings.notify_base_url.rstrip("/"),
        timeout=settings.notify_timeout_seconds,
    )
