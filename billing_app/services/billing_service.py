import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Union
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from core.date_helper import as_utc, today_in_billing_tz, utc_now
from core.errors import (
    AgreementNotFound,
    InternalBillingError,
    InvalidAmount,
    InvalidDates,
    InvalidStatusTransition,
    ValidationError,
)
from core.get_db import AsyncSessionLocal
from core.locks import agreement_locks
from core.safe_handler import safe_handler
from fintechs.paystack import PaystackClient
from models.enums import (
    ALLOWED_STATUS_TRANSITIONS,
    AgreementEventType,
    AgreementStatus,
    PaymentMethod,
    PaymentSource,
)
from models.models import Agreement
from models.utils import generate_agreement_reference
from repos.agreement_event_repo import AgreementEventRepo
from repos.agreement_repo import AgreementRepo
from schemas.schema import (
    AgreementOut,
    CreateAgreementSchema,
    LedgerStateOut,
    ManualPaymentSchema,
    ReconcileAck,
    ReminderAck,
    SweepResult,
)
from webhooks.service_webhooks import PaymentWebhooks

from .ledger_service import PaymentLedgerService
from .notification_service import NotificationSender
from .record_generator import RecordGeneratorService
from .reminder_service import ReminderService
from .sweep_service import DailySweepService

logger = logging.getLogger(__name__)

REFERENCE_ATTEMPTS = 5


def agreement_out(agreement: Agreement) -> AgreementOut:
    out = AgreementOut.model_validate(agreement)
    out.records.sort(key=lambda r: r.period_key)
    return out


def ledger_out(
    agreement: Agreement,
    duplicate: bool = False,
    settled_periods=(),
) -> LedgerStateOut:
    ledger = AgreementRepo.to_ledger(agreement)
    return LedgerStateOut(
        agreement=agreement_out(agreement),
        credit=ledger.credit,
        outstanding_balance=ledger.outstanding_balance(),
        duplicate=duplicate,
        settled_periods=list(settled_periods),
        invoice_number=agreement.invoice_number,
    )


class BillingService:
    """Entry point for everything outside the billing engine."""

    def __init__(
        self,
        db,
        notifier: NotificationSender | None = None,
        paystack: PaystackClient | None = None,
        session_factory=AsyncSessionLocal,
    ):
        self.db = db
        self.notifier = notifier or NotificationSender()
        self.agreement_repo = AgreementRepo(db)
        self.event_repo = AgreementEventRepo(db)
        self.generator = RecordGeneratorService(db)
        self.ledger_service = PaymentLedgerService(db, self.notifier)
        self.reminder_service = ReminderService(db, self.notifier)
        self.webhooks = PaymentWebhooks(db, self.notifier, paystack)
        self.sweep_service = DailySweepService(session_factory, self.notifier)

    async def _new_reference(self, created_on: date) -> str:
        for _ in range(REFERENCE_ATTEMPTS):
            reference = generate_agreement_reference(created_on)
            if not await self.agreement_repo.reference_exists(reference):
                return reference
        raise InternalBillingError("Could not allocate an agreement reference")

    @safe_handler
    async def create_agreement(
        self,
        data: Union[CreateAgreementSchema, dict],
        now: Optional[datetime] = None,
    ) -> AgreementOut:
        if not isinstance(data, CreateAgreementSchema):
            try:
                data = CreateAgreementSchema.model_validate(data)
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid agreement data",
                    errors=e.errors(include_url=False, include_context=False),
                )

        if data.end_date is not None and data.end_date < data.start_date:
            raise InvalidDates(
                start_date=data.start_date.isoformat(), end_date=data.end_date.isoformat()
            )

        now = as_utc(now) if now is not None else utc_now()
        today = today_in_billing_tz(now)

        agreement = Agreement(
            reference=await self._new_reference(today),
            customer_name=data.customer_name,
            customer_email=data.customer_email,
            customer_phone=data.customer_phone,
            period_amount=data.period_amount,
            total_amount=data.total_amount,
            start_date=data.start_date,
            end_date=data.end_date,
            status=AgreementStatus.ACTIVE,
            total_paid=Decimal("0"),
            remaining_amount=data.total_amount or Decimal("0"),
            notes=data.notes,
            records=[],
            payments=[],
        )
        try:
            await self.agreement_repo.create(agreement)
            self.event_repo.add(
                agreement.id,
                AgreementEventType.AGREEMENT_CREATED,
                new_value={
                    "reference": agreement.reference,
                    "period_amount": str(agreement.period_amount),
                    "start_date": agreement.start_date.isoformat(),
                },
            )
            self.generator.generate_locked(agreement, today)
            await self.agreement_repo.db_commit()
        except Exception:
            await self.agreement_repo.db_rollback()
            raise

        logger.info(
            f"Agreement {agreement.reference} created with {len(agreement.records)} record(s)"
        )
        return agreement_out(agreement)

    @safe_handler
    async def record_manual_payment(
        self,
        agreement_id: UUID,
        amount: Decimal,
        method: Union[PaymentMethod, str, None] = None,
        paid_date: Optional[date] = None,
        target_period_key: Optional[str] = None,
        external_reference: Optional[str] = None,
    ) -> LedgerStateOut:
        try:
            data = ManualPaymentSchema(
                amount=amount,
                method=getattr(method, "value", method),
                paid_date=paid_date,
                target_period_key=target_period_key,
                external_reference=external_reference,
            )
        except PydanticValidationError as e:
            errors = e.errors(include_url=False, include_context=False)
            if any(error["loc"][:1] == ("amount",) for error in errors):
                raise InvalidAmount(
                    "Payment amount must be a positive value with at most two decimal places",
                    amount=str(amount),
                    errors=errors,
                )
            raise ValidationError("Invalid payment data", errors=errors)

        outcome = await self.ledger_service.apply(
            agreement_id,
            data.amount,
            paid_date=data.paid_date,
            method=data.method,
            external_reference=data.external_reference,
            target_period_key=data.target_period_key,
            source=PaymentSource.MANUAL,
        )
        return ledger_out(outcome.agreement, outcome.duplicate, outcome.settled_period_keys)

    @safe_handler
    async def reconcile_gateway_event(
        self, raw_payload: bytes, signature: Optional[str]
    ) -> ReconcileAck:
        return await self.webhooks.reconcile_gateway_event(raw_payload, signature)

    @safe_handler
    async def verify_gateway_payment(self, reference: str, agreement_id) -> ReconcileAck:
        return await self.webhooks.verify_gateway_payment(reference, agreement_id)

    @safe_handler
    async def run_daily_sweep(
        self, as_of: Optional[date] = None, now: Optional[datetime] = None
    ) -> SweepResult:
        return await self.sweep_service.run(as_of=as_of, now=now)

    @safe_handler
    async def trigger_manual_reminder(
        self, agreement_id: UUID, now: Optional[datetime] = None
    ) -> ReminderAck:
        return await self.reminder_service.trigger_manual_reminder(agreement_id, now=now)

    @safe_handler
    async def generate_records(
        self, agreement_id: UUID, now: Optional[datetime] = None
    ) -> LedgerStateOut:
        agreement, _ = await self.generator.generate_for_agreement(agreement_id, now=now)
        return ledger_out(agreement)

    @safe_handler
    async def update_status(
        self,
        agreement_id: UUID,
        status: Union[AgreementStatus, str],
        now: Optional[datetime] = None,
    ) -> AgreementOut:
        try:
            target = AgreementStatus(status)
        except ValueError:
            raise InvalidStatusTransition(f"Unknown agreement status: {status}")

        today = today_in_billing_tz(now)
        async with agreement_locks.hold(agreement_id):
            agreement = await self.agreement_repo.get_for_update(agreement_id)
            if agreement is None:
                await self.agreement_repo.db_rollback()
                raise AgreementNotFound(agreement_id=str(agreement_id))

            current = agreement.status
            if target == current:
                await self.agreement_repo.db_commit()
                return agreement_out(agreement)
            if target not in ALLOWED_STATUS_TRANSITIONS[current]:
                await self.agreement_repo.db_rollback()
                raise InvalidStatusTransition(
                    f"Cannot move agreement from {current.value} to {target.value}",
                    current=current.value,
                    requested=target.value,
                )

            agreement.status = target
            self.event_repo.add(
                agreement.id,
                AgreementEventType.STATUS_CHANGED,
                old_value={"status": current.value},
                new_value={"status": target.value},
            )
            if target == AgreementStatus.ACTIVE:
                self.generator.generate_locked(agreement, today)
            await self.agreement_repo.db_commit()

        logger.info(f"Agreement {agreement.reference}: {current.value} -> {target.value}")
        return agreement_out(agreement)

    @safe_handler
    async def get_ledger(self, agreement_id: UUID) -> LedgerStateOut:
        agreement = await self.agreement_repo.get_by_id(agreement_id)
        if agreement is None:
            raise AgreementNotFound(agreement_id=str(agreement_id))
        return ledger_out(agreement)
