import json
import logging
from datetime import date, datetime
from typing import Optional
from uuid import UUID

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from core.date_helper import today_in_billing_tz
from core.errors import AgreementNotFound, InvalidPayload, InvalidSignature, PaymentNotVerified
from core.settings import settings
from fintech_verify_signature.verify_signature import FintechsVerifySignature
from fintechs.paystack import PaystackClient
from models.enums import PaymentMethod, PaymentSource
from repos.agreement_repo import AgreementRepo
from schemas.schema import GatewayEventSchema, ReconcileAck
from services.ledger_service import PaymentLedgerService, PaymentOutcome
from services.notification_service import NotificationSender

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("billing.security")

datetime_adapter = TypeAdapter(datetime)


def _paid_on(paid_at) -> Optional[date]:
    if paid_at is None:
        return None
    if not isinstance(paid_at, datetime):
        try:
            paid_at = datetime_adapter.validate_python(paid_at)
        except PydanticValidationError:
            return None
    return today_in_billing_tz(paid_at)


def _ack(status: str, reference: str, outcome: PaymentOutcome) -> ReconcileAck:
    return ReconcileAck(
        status=status,
        reference=reference,
        agreement_id=outcome.agreement.id,
        duplicate=outcome.duplicate,
        settled_periods=list(outcome.settled_period_keys),
        total_paid=outcome.agreement.total_paid,
        remaining_amount=outcome.agreement.remaining_amount,
    )


class PaymentWebhooks:
    def __init__(
        self,
        db,
        notifier: NotificationSender | None = None,
        paystack: PaystackClient | None = None,
    ):
        self.agreement_repo = AgreementRepo(db)
        self.ledger_service = PaymentLedgerService(db, notifier)
        self.paystack = paystack or PaystackClient()
        self.verify_signature = FintechsVerifySignature()

    async def _resolve(self, correlation_id) -> UUID:
        agreement_id = await self.agreement_repo.resolve_id(str(correlation_id))
        if agreement_id is None:
            raise AgreementNotFound(agreement_id=str(correlation_id))
        return agreement_id

    async def reconcile_gateway_event(
        self, raw_payload: bytes, signature: str | None
    ) -> ReconcileAck:
        if not self.verify_signature.verify_gateway_signature(signature, raw_payload):
            security_logger.warning(
                f"Rejected gateway event with invalid signature ({len(raw_payload)} bytes)"
            )
            raise InvalidSignature()

        try:
            body = json.loads(raw_payload)
        except ValueError:
            raise InvalidPayload("Gateway payload is not valid JSON")
        if not isinstance(body, dict) or not isinstance(body.get("event"), str):
            raise InvalidPayload("Gateway payload has no event")

        if body["event"] != settings.GATEWAY_SUCCESS_EVENT:
            logger.info(f"Ignoring gateway event {body['event']}")
            return ReconcileAck(status="ignored")

        try:
            event = GatewayEventSchema.model_validate(body)
        except PydanticValidationError as e:
            raise InvalidPayload(
                "Gateway payload is missing required fields",
                errors=e.errors(include_url=False, include_context=False),
            )

        data = event.data
        agreement_id = await self._resolve(data.metadata.agreement_id)
        outcome = await self.ledger_service.apply(
            agreement_id,
            data.major_amount,
            paid_date=_paid_on(data.paid_at),
            method=data.channel or PaymentMethod.GATEWAY.value,
            external_reference=data.reference,
            source=PaymentSource.GATEWAY,
        )
        status = "duplicate" if outcome.duplicate else "applied"
        logger.info(f"Gateway event {data.reference} {status}")
        return _ack(status, data.reference, outcome)

    async def verify_gateway_payment(self, reference: str, agreement_id) -> ReconcileAck:
        resolved_id = await self._resolve(agreement_id)

        verification = await self.paystack.verify_payment(reference)
        if not verification.get("success"):
            logger.warning(f"Gateway verification failed for {reference}")
            raise PaymentNotVerified(reference=reference)

        metadata = verification.get("metadata")
        claimed = metadata.get("agreement_id") if isinstance(metadata, dict) else None
        if claimed and await self.agreement_repo.resolve_id(str(claimed)) != resolved_id:
            security_logger.warning(
                f"Payment {reference} belongs to {claimed}, not {agreement_id}"
            )
            raise PaymentNotVerified(
                "Payment does not belong to this agreement", reference=reference
            )

        outcome = await self.ledger_service.apply(
            resolved_id,
            verification["amount"],
            paid_date=_paid_on(verification.get("paid_at")),
            method=verification.get("channel") or PaymentMethod.GATEWAY.value,
            external_reference=verification["reference"],
            source=PaymentSource.GATEWAY,
        )
        return _ack("duplicate" if outcome.duplicate else "applied", reference, outcome)
