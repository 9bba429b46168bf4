"""Ledger value types and pure transition functions.

A ``LedgerState`` is an immutable snapshot of one agreement's payment
records, payment journal and running totals. Every transition returns a new
state; persisting it is the repository's job.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from core.errors import InvalidAmount, InvoiceAlreadyAssigned, UnknownPeriod, not_active
from models.enums import (
    OUTSTANDING_STATUSES,
    AgreementStatus,
    PaymentMethod,
    PaymentRecordStatus,
    PaymentSource,
)

ZERO = Decimal("0")
CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Two-place Decimal for an amount; floats are read through ``str``."""
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
        if not amount.is_finite():
            raise InvalidAmount(amount=str(value))
        return amount.quantize(CENT)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(amount=str(value))


class PaymentRecordState(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    period_key: str
    amount: Decimal
    amount_paid: Decimal = ZERO
    due_date: date
    paid_date: Optional[date] = None
    status: PaymentRecordStatus = PaymentRecordStatus.PENDING
    method: Optional[str] = None
    external_reference: Optional[str] = None
    invoice_number: Optional[str] = None

    @property
    def balance(self) -> Decimal:
        return max(self.amount - self.amount_paid, ZERO)

    @property
    def is_outstanding(self) -> bool:
        return self.status in OUTSTANDING_STATUSES


class AppliedPaymentState(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    external_reference: Optional[str] = None
    amount: Decimal
    paid_date: date
    method: Optional[str] = None
    source: PaymentSource = PaymentSource.MANUAL
    allocations: Dict[str, Decimal] = {}


class LedgerState(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    records: Tuple[PaymentRecordState, ...] = ()
    payments: Tuple[AppliedPaymentState, ...] = ()
    total_paid: Decimal = ZERO
    total_amount: Optional[Decimal] = None
    invoice_number: Optional[str] = None

    def record_for(self, period_key: str) -> Optional[PaymentRecordState]:
        for record in self.records:
            if record.period_key == period_key:
                return record
        return None

    def has_reference(self, external_reference: str) -> bool:
        if any(p.external_reference == external_reference for p in self.payments):
            return True
        return any(r.external_reference == external_reference for r in self.records)

    @property
    def billed_total(self) -> Decimal:
        return sum((r.amount for r in self.records), ZERO)

    @property
    def effective_total(self) -> Decimal:
        if self.total_amount is not None:
            return self.total_amount
        return self.billed_total

    @property
    def remaining_amount(self) -> Decimal:
        # may go negative on over-payment; callers clamp for display
        return self.effective_total - self.total_paid

    @property
    def allocated(self) -> Decimal:
        return sum((r.amount_paid for r in self.records), ZERO)

    @property
    def credit(self) -> Decimal:
        return max(self.total_paid - self.allocated, ZERO)

    def outstanding_records(self) -> Tuple[PaymentRecordState, ...]:
        return tuple(r for r in self.records if r.is_outstanding)

    def outstanding_balance(self) -> Decimal:
        return sum((r.balance for r in self.outstanding_records()), ZERO)


@dataclass(frozen=True)
class UpsertResult:
    ledger: LedgerState
    inserted: bool


@dataclass(frozen=True)
class PaymentResult:
    ledger: LedgerState
    duplicate: bool = False
    settled_period_keys: Tuple[str, ...] = ()
    touched_period_keys: Tuple[str, ...] = ()
    unallocated: Decimal = ZERO


@dataclass(frozen=True)
class OverdueResult:
    ledger: LedgerState
    transitioned: Tuple[str, ...] = field(default_factory=tuple)


def _sorted(records) -> Tuple[PaymentRecordState, ...]:
    return tuple(sorted(records, key=lambda r: r.period_key))


def upsert_if_absent(
    ledger: LedgerState,
    period_key: str,
    amount: Decimal,
    due_date: date,
    initial_status: PaymentRecordStatus = PaymentRecordStatus.PENDING,
) -> UpsertResult:
    if ledger.record_for(period_key) is not None:
        return UpsertResult(ledger=ledger, inserted=False)

    record = PaymentRecordState(
        period_key=period_key,
        amount=to_money(amount),
        due_date=due_date,
        status=initial_status,
    )
    return UpsertResult(
        ledger=ledger.model_copy(update={"records": _sorted(ledger.records + (record,))}),
        inserted=True,
    )


def _allocate(
    records: Dict[str, PaymentRecordState],
    order,
    pool: Decimal,
    paid_date: date,
    method: Optional[str],
    external_reference: Optional[str] = None,
):
    """Spend ``pool`` over ``order`` in place; returns what is left over."""
    allocations: Dict[str, Decimal] = {}
    settled = []
    reference_stamped = False

    for period_key in order:
        if pool <= ZERO:
            break
        record = records[period_key]
        portion = min(pool, record.balance)
        if portion <= ZERO:
            continue
        pool -= portion
        new_paid = record.amount_paid + portion
        status = (
            PaymentRecordStatus.PAID
            if new_paid >= record.amount
            else PaymentRecordStatus.PARTIAL
        )
        update = {
            "amount_paid": new_paid,
            "status": status,
            "paid_date": paid_date,
            "method": method,
        }
        if (
            external_reference
            and not reference_stamped
            and record.external_reference is None
        ):
            update["external_reference"] = external_reference
            reference_stamped = True

        records[period_key] = record.model_copy(update=update)
        allocations[period_key] = portion
        if status == PaymentRecordStatus.PAID:
            settled.append(period_key)

    return pool, allocations, settled


def allocate_credit(ledger: LedgerState, allocated_on: date) -> PaymentResult:
    """Settle outstanding records from credit already held, oldest first.

    No money comes in, so ``total_paid`` and the payment journal are left
    alone; only record balances move.
    """
    if ledger.credit <= ZERO:
        return PaymentResult(ledger=ledger)

    order = [r.period_key for r in ledger.records if r.is_outstanding]
    records = {r.period_key: r for r in ledger.records}
    pool, allocations, settled = _allocate(
        records, order, ledger.credit, allocated_on, PaymentMethod.CREDIT.value
    )
    if not allocations:
        return PaymentResult(ledger=ledger)
    return PaymentResult(
        ledger=ledger.model_copy(update={"records": _sorted(records.values())}),
        settled_period_keys=tuple(settled),
        touched_period_keys=tuple(allocations),
        unallocated=pool,
    )


def ensure_payable(ledger: LedgerState, agreement_status: AgreementStatus) -> None:
    """Active agreements take payments; cancelled ones only while old debt remains."""
    if agreement_status == AgreementStatus.ACTIVE:
        return
    if agreement_status == AgreementStatus.CANCELLED and ledger.outstanding_records():
        return
    raise not_active(agreement_status)


def apply_payment(
    ledger: LedgerState,
    amount_paid: Decimal,
    paid_date: date,
    method: Optional[str] = None,
    external_reference: Optional[str] = None,
    target_period_key: Optional[str] = None,
    agreement_status: AgreementStatus = AgreementStatus.ACTIVE,
    source: PaymentSource = PaymentSource.MANUAL,
) -> PaymentResult:
    """Credit a payment and settle records oldest period first.

    A reference that is already on the ledger makes the call a no-op. With
    ``target_period_key`` that record is settled first and any surplus falls
    through to the regular FIFO order. Money left after every outstanding
    record is covered stays on the ledger as credit.
    """
    amount = to_money(amount_paid)
    if amount <= ZERO:
        raise InvalidAmount(amount=str(amount))

    if external_reference and ledger.has_reference(external_reference):
        return PaymentResult(ledger=ledger, duplicate=True)

    ensure_payable(ledger, agreement_status)

    if target_period_key is not None and ledger.record_for(target_period_key) is None:
        raise UnknownPeriod(period_key=target_period_key)

    order = [r.period_key for r in ledger.records if r.is_outstanding]
    if target_period_key in order:
        order.remove(target_period_key)
        order.insert(0, target_period_key)

    records = {r.period_key: r for r in ledger.records}
    pool, allocations, settled = _allocate(
        records, order, amount + ledger.credit, paid_date, method, external_reference
    )

    payment = AppliedPaymentState(
        external_reference=external_reference,
        amount=amount,
        paid_date=paid_date,
        method=method,
        source=source,
        allocations=allocations,
    )
    new_ledger = ledger.model_copy(
        update={
            "records": _sorted(records.values()),
            "payments": ledger.payments + (payment,),
            "total_paid": ledger.total_paid + amount,
        }
    )
    return PaymentResult(
        ledger=new_ledger,
        settled_period_keys=tuple(settled),
        touched_period_keys=tuple(allocations),
        unallocated=pool,
    )


def mark_overdue_if_past_due(ledger: LedgerState, today: date) -> OverdueResult:
    transitioned = []
    records = []
    for record in ledger.records:
        if record.status == PaymentRecordStatus.PENDING and record.due_date < today:
            record = record.model_copy(update={"status": PaymentRecordStatus.OVERDUE})
            transitioned.append(record.period_key)
        records.append(record)

    if not transitioned:
        return OverdueResult(ledger=ledger)
    return OverdueResult(
        ledger=ledger.model_copy(update={"records": tuple(records)}),
        transitioned=tuple(transitioned),
    )


def assign_invoice(
    ledger: LedgerState,
    invoice_number: str,
    period_key: Optional[str] = None,
) -> LedgerState:
    if ledger.invoice_number is not None:
        raise InvoiceAlreadyAssigned(invoice_number=ledger.invoice_number)

    records = ledger.records
    if period_key is not None:
        if ledger.record_for(period_key) is None:
            raise UnknownPeriod(period_key=period_key)
        records = tuple(
            r.model_copy(update={"invoice_number": invoice_number})
            if r.period_key == period_key
            else r
            for r in records
        )
    return ledger.model_copy(update={"invoice_number": invoice_number, "records": records})
