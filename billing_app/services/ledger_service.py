import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from core.date_helper import as_utc, today_in_billing_tz, utc_now
from core.errors import AgreementNotFound
from core.locks import agreement_locks
from models.enums import AgreementEventType, PaymentSource
from models.ledger import LedgerState, apply_payment, assign_invoice, to_money
from models.models import Agreement
from repos.agreement_event_repo import AgreementEventRepo
from repos.agreement_repo import AgreementRepo

from .invoice_service import InvoiceService
from .notification_service import NotificationSender

logger = logging.getLogger(__name__)

WRITE_ATTEMPTS = 2


@dataclass
class PaymentOutcome:
    agreement: Agreement
    ledger: LedgerState
    duplicate: bool = False
    settled_period_keys: Tuple[str, ...] = ()
    invoice_number: Optional[str] = None


class PaymentLedgerService:
    def __init__(self, db, notifier: NotificationSender | None = None):
        self.db = db
        self.agreement_repo = AgreementRepo(db)
        self.event_repo = AgreementEventRepo(db)
        self.notifier = notifier or NotificationSender()
        self.invoice_service = InvoiceService(db, self.notifier)

    async def apply(
        self,
        agreement_id: UUID,
        amount: Decimal,
        paid_date: Optional[date] = None,
        method: Optional[str] = None,
        external_reference: Optional[str] = None,
        target_period_key: Optional[str] = None,
        source: PaymentSource = PaymentSource.MANUAL,
        now: Optional[datetime] = None,
    ) -> PaymentOutcome:
        """Apply one payment under the agreement lock and commit it.

        A unique-index violation means another writer got there first (same
        reference or same invoice number); the write is retried once against
        fresh state, where a repeated reference resolves as a duplicate.
        """
        now = as_utc(now) if now is not None else utc_now()
        today = today_in_billing_tz(now)

        for attempt in range(1, WRITE_ATTEMPTS + 1):
            try:
                outcome = await self._apply_once(
                    agreement_id,
                    to_money(amount),
                    paid_date or today,
                    method,
                    external_reference,
                    target_period_key,
                    source,
                    now,
                    today,
                )
                break
            except IntegrityError:
                if attempt == WRITE_ATTEMPTS:
                    raise
                logger.warning(
                    f"Ledger write conflict on agreement {agreement_id}; retrying"
                )

        if outcome.invoice_number:
            settled = outcome.ledger.record_for(outcome.settled_period_keys[0])
            await self.invoice_service.send_invoice(outcome.agreement, today, settled)
        return outcome

    async def _apply_once(
        self,
        agreement_id,
        amount,
        paid_date,
        method,
        external_reference,
        target_period_key,
        source,
        now,
        today,
    ) -> PaymentOutcome:
        async with agreement_locks.hold(agreement_id):
            agreement = await self.agreement_repo.get_for_update(agreement_id)
            if agreement is None:
                await self.agreement_repo.db_rollback()
                raise AgreementNotFound(agreement_id=str(agreement_id))

            try:
                result = apply_payment(
                    self.agreement_repo.to_ledger(agreement),
                    amount,
                    paid_date,
                    method=method,
                    external_reference=external_reference,
                    target_period_key=target_period_key,
                    agreement_status=agreement.status,
                    source=source,
                )
            except Exception:
                await self.agreement_repo.db_rollback()
                raise

            if result.duplicate:
                # nothing changed; commit only releases the row lock
                await self.agreement_repo.db_commit()
                logger.info(
                    f"Duplicate payment reference {external_reference} on {agreement.reference}"
                )
                return PaymentOutcome(agreement=agreement, ledger=result.ledger, duplicate=True)

            ledger = result.ledger
            assigned = None
            if result.settled_period_keys and ledger.invoice_number is None:
                assigned = await self.invoice_service.allocate_number(today)
                ledger = assign_invoice(ledger, assigned, result.settled_period_keys[0])
                agreement.invoice_assigned_at = now
                self.event_repo.add(
                    agreement.id,
                    AgreementEventType.INVOICE_ASSIGNED,
                    new_value={
                        "invoice_number": assigned,
                        "period_key": result.settled_period_keys[0],
                    },
                )

            self.agreement_repo.save_ledger(agreement, ledger)
            self.event_repo.add(
                agreement.id,
                AgreementEventType.PAYMENT_APPLIED,
                old_value={"total_paid": str(result.ledger.total_paid - amount)},
                new_value={
                    "external_reference": external_reference,
                    "amount": str(amount),
                    "source": source.value,
                    "allocations": {
                        key: str(value)
                        for key, value in result.ledger.payments[-1].allocations.items()
                    },
                    "total_paid": str(ledger.total_paid),
                },
            )
            await self.agreement_repo.db_commit()

        logger.info(
            f"Applied {amount} ({source.value}) to {agreement.reference}; "
            f"settled={list(result.settled_period_keys)}"
        )
        return PaymentOutcome(
            agreement=agreement,
            ledger=ledger,
            settled_period_keys=result.settled_period_keys,
            invoice_number=assigned,
        )
