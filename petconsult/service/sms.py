from __future__ import annotations

from collections import deque
from typing import Optional, Protocol

import httpx

from petconsult.config import Settings
from petconsult.logging import get_logger

logger = get_logger(__name__)

OUTBOX_LIMIT = 100

VERIFICATION_TEMPLATE = "کد تأیید شما: {code}\nاین کد تا {minutes} دقیقه معتبر است."


class SmsDeliveryError(Exception):
    """The provider did not accept the message."""


class SmsNotifier(Protocol):
    async def send(self, mobile: str, message: str) -> None: ...

    async def close(self) -> None: ...


class LoggingSmsNotifier:
    """Development notifier: records the message instead of sending it.

    Only the most recent ``max_messages`` are kept.
    """

    def __init__(self, max_messages: int = OUTBOX_LIMIT) -> None:
        self.outbox: deque[tuple[str, str]] = deque(maxlen=max_messages)

    async def send(self, mobile: str, message: str) -> None:
        self.outbox.append((mobile, message))
        logger.info("sms_mock_sent", mobile=mobile, length=len(message))

    async def close(self) -> None:
        return None


class HttpSmsNotifier:
    """Posts ``{sender, receptor, message}`` to a bearer-authenticated gateway."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        sender: Optional[str],
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url
        self.sender = sender
        self._client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=False,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    async def send(self, mobile: str, message: str) -> None:
        payload = {"sender": self.sender, "receptor": mobile, "message": message}
        try:
            response = await self._client.post(self.api_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            logger.error("sms_transport_failed", receptor=mobile, error=str(exc))
            raise SmsDeliveryError("sms gateway unreachable") from exc
        except ValueError as exc:
            logger.error("sms_response_unparseable", receptor=mobile)
            raise SmsDeliveryError("sms gateway returned an invalid response") from exc
        if not isinstance(body, dict) or body.get("status") != "success":
            reason = body.get("message") if isinstance(body, dict) else None
            logger.error("sms_rejected", receptor=mobile, reason=reason)
            raise SmsDeliveryError(reason or "sms sending failed")
        logger.info(
            "sms_sent", receptor=mobile, provider_id=body.get("messageId")
        )

    async def close(self) -> None:
        await self._client.aclose()


def build_notifier(settings: Settings) -> SmsNotifier:
    if settings.sms_provider == "http":
        logger.info("sms_provider_http", url=settings.sms_api_url)
        return HttpSmsNotifier(
            settings.sms_api_url,
            settings.sms_api_key,
            settings.sms_sender,
            timeout=settings.sms_timeout_seconds,
        )
    return LoggingSmsNotifier()
