from decimal import Decimal

import httpx
from core.breaker import gateway_breaker
from core.settings import settings


class PaystackClient:
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = settings.PAYSTACK_BASE_URL
        self.secret = settings.PAYSTACK_SECRET_KEY
        self.headers = {
            "Authorization": f"Bearer {self.secret}",
            "Content-Type": "application/json",
        }
        self.transport = transport

    async def verify_payment(self, reference: str):
        url = f"{self.base_url}/transaction/verify/{reference}"

        async def handler():
            async with httpx.AsyncClient(
                timeout=settings.GATEWAY_TIMEOUT_SECONDS, transport=self.transport
            ) as client:
                res = await client.get(url, headers=self.headers)
            res.raise_for_status()
            return res.json()

        payload = await gateway_breaker.call(handler)

        if not payload.get("status"):
            return {"success": False, "message": payload.get("message")}

        tx = payload["data"]

        if tx["status"] != "success":
            return {"success": False, "status": tx["status"]}

        return {
            "success": True,
            "status": tx["status"],
            "reference": tx["reference"],
            "amount": Decimal(tx["amount"]) / 100,
            "currency": tx.get("currency"),
            "metadata": tx.get("metadata") or {},
            "paid_at": tx.get("paid_at"),
            "channel": tx.get("channel"),
        }
