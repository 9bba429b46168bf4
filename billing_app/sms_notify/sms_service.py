import logging

import httpx
from core.breaker import notification_breaker
from core.settings import settings

logger = logging.getLogger(__name__)


class TermiiClient:
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = settings.TERMII_BASE_URL
        self.api_key = settings.TERMII_API_KEY
        self.sender_id = settings.TERMII_SENDER_ID
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def send_sms(self, to: str, message: str) -> dict:
        payload = {
            "to": to.lstrip("+"),
            "from": self.sender_id,
            "sms": message,
            "type": "plain",
            "channel": "generic",
            "api_key": self.api_key,
        }

        async def handler():
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=settings.GATEWAY_TIMEOUT_SECONDS,
                transport=self.transport,
            ) as client:
                response = await client.post("/api/sms/send", json=payload)
                response.raise_for_status()
                return response.json()

        return await notification_breaker.call(handler)

    async def send_upcoming_due_sms(self, to: str, name: str, period_key: str, days_left: int):
        message = (
            f"Hello {name}, your payment for {period_key} is due in {days_left} day(s).\n\n"
            "Please ensure it is paid on time."
        )
        return await self.send_sms(to, message)

    async def send_due_today_sms(self, to: str, name: str, period_key: str):
        message = f"Hello {name}, your payment for {period_key} is due today."
        return await self.send_sms(to, message)

    async def send_overdue_sms(self, to: str, name: str, period_key: str, days_overdue: int):
        message = (
            f"Hello {name}, your payment for {period_key} is {days_overdue} day(s) overdue.\n\n"
            "Please settle it as soon as possible."
        )
        return await self.send_sms(to, message)

    async def send_consolidated_sms(self, to: str, name: str, count: int, total: str):
        message = (
            f"Hello {name}, you have {count} outstanding payment(s) totalling {total}.\n\n"
            "Please settle them as soon as possible."
        )
        return await self.send_sms(to, message)


send_sms = TermiiClient()
