import logging
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from models.enums import AgreementStatus
from models.ledger import AppliedPaymentState, LedgerState, PaymentRecordState
from models.models import Agreement, AppliedPayment, PaymentRecord

logger = logging.getLogger(__name__)

RECORD_FIELDS = (
    "amount",
    "amount_paid",
    "due_date",
    "paid_date",
    "status",
    "method",
    "external_reference",
    "invoice_number",
)


class AgreementRepo:
    def __init__(self, db):
        self.db = db

    def _with_ledger(self):
        return select(Agreement).options(
            selectinload(Agreement.records),
            selectinload(Agreement.payments),
        )

    async def create(self, agreement: Agreement) -> Agreement:
        self.db.add(agreement)
        await self.db.flush()
        return agreement

    async def get_by_id(self, agreement_id: UUID) -> Optional[Agreement]:
        result = await self.db.execute(
            self._with_ledger()
            .where(Agreement.id == agreement_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, agreement_id: UUID) -> Optional[Agreement]:
        stmt = (
            self._with_ledger()
            .where(Agreement.id == agreement_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def resolve_id(self, correlation_id: str) -> Optional[UUID]:
        """Map a gateway correlation id (agreement UUID or reference) to an id."""
        try:
            agreement_id = UUID(str(correlation_id))
        except ValueError:
            result = await self.db.execute(
                select(Agreement.id).where(Agreement.reference == correlation_id)
            )
            return result.scalar_one_or_none()

        result = await self.db.execute(
            select(Agreement.id).where(Agreement.id == agreement_id)
        )
        return result.scalar_one_or_none()

    async def list_ids_by_status(
        self, statuses: Iterable[AgreementStatus] = (AgreementStatus.ACTIVE,)
    ) -> List[UUID]:
        result = await self.db.execute(
            select(Agreement.id)
            .where(Agreement.status.in_(list(statuses)))
            .order_by(Agreement.created_at)
        )
        return list(result.scalars().all())

    async def invoice_number_exists(self, invoice_number: str) -> bool:
        result = await self.db.execute(
            select(Agreement.id).where(Agreement.invoice_number == invoice_number)
        )
        return result.first() is not None

    async def reference_exists(self, reference: str) -> bool:
        result = await self.db.execute(
            select(Agreement.id).where(Agreement.reference == reference)
        )
        return result.first() is not None

    @staticmethod
    def to_ledger(agreement: Agreement) -> LedgerState:
        return LedgerState(
            records=tuple(
                PaymentRecordState.model_validate(r)
                for r in sorted(agreement.records, key=lambda r: r.period_key)
            ),
            payments=tuple(
                AppliedPaymentState.model_validate(p) for p in agreement.payments
            ),
            total_paid=agreement.total_paid or 0,
            total_amount=agreement.total_amount,
            invoice_number=agreement.invoice_number,
        )

    @staticmethod
    def save_ledger(agreement: Agreement, ledger: LedgerState) -> None:
        """Write a ledger snapshot back onto the loaded aggregate.

        Records are matched by period key; journal entries are append-only so
        only the tail past what is already stored is added.
        """
        existing = {r.period_key: r for r in agreement.records}
        for state in ledger.records:
            row = existing.get(state.period_key)
            if row is None:
                agreement.records.append(
                    PaymentRecord(
                        period_key=state.period_key,
                        **{name: getattr(state, name) for name in RECORD_FIELDS},
                    )
                )
                continue
            for name in RECORD_FIELDS:
                value = getattr(state, name)
                if getattr(row, name) != value:
                    setattr(row, name, value)

        for state in ledger.payments[len(agreement.payments):]:
            agreement.payments.append(
                AppliedPayment(
                    external_reference=state.external_reference,
                    amount=state.amount,
                    paid_date=state.paid_date,
                    method=state.method,
                    source=state.source,
                    allocations={k: str(v) for k, v in state.allocations.items()},
                )
            )

        agreement.total_paid = ledger.total_paid
        agreement.remaining_amount = ledger.remaining_amount
        if ledger.invoice_number and agreement.invoice_number != ledger.invoice_number:
            agreement.invoice_number = ledger.invoice_number

    async def db_commit(self):
        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

    async def db_rollback(self):
        await self.db.rollback()
