import hashlib
import hmac
import logging

from core.settings import settings

logger = logging.getLogger("billing.security")


class FintechsVerifySignature:

    @staticmethod
    def compute_signature(body: bytes, secret: str | None = None) -> str:
        secret = secret or settings.GATEWAY_WEBHOOK_SECRET or ""
        digestmod = getattr(hashlib, settings.GATEWAY_SIGNATURE_ALGORITHM)
        return hmac.new(secret.encode(), body, digestmod).hexdigest()

    @staticmethod
    def verify_gateway_signature(signature: str | None, body: bytes) -> bool:
        if not signature:
            return False

        if not settings.GATEWAY_WEBHOOK_SECRET:
            logger.error("GATEWAY_WEBHOOK_SECRET is not configured; rejecting webhook")
            return False

        expected = FintechsVerifySignature.compute_signature(body)
        return hmac.compare_digest(expected, signature.strip().lower())
