"""Tests for ledger transitions."""

from datetime import date
from decimal import Decimal

import pytest

from core.errors import (
    AgreementNotActive,
    InvalidAmount,
    InvoiceAlreadyAssigned,
    UnknownPeriod,
)
from models.enums import AgreementStatus, PaymentRecordStatus, PaymentSource
from models.ledger import (
    LedgerState,
    allocate_credit,
    apply_payment,
    assign_invoice,
    mark_overdue_if_past_due,
    upsert_if_absent,
)


def ledger_with(*periods, amount=Decimal("1000"), total_amount=None):
    ledger = LedgerState(total_amount=total_amount)
    for period_key, due_date in periods:
        ledger = upsert_if_absent(ledger, period_key, amount, due_date).ledger
    return ledger


@pytest.fixture
def three_months():
    return ledger_with(
        ("2024-01", date(2024, 1, 15)),
        ("2024-02", date(2024, 2, 15)),
        ("2024-03", date(2024, 3, 15)),
    )


class TestUpsert:
    """Tests for upsert_if_absent."""

    def test_repeated_upsert_keeps_one_record(self):
        ledger = LedgerState()
        for _ in range(5):
            ledger = upsert_if_absent(
                ledger, "2024-01", Decimal("1000"), date(2024, 1, 15)
            ).ledger

        assert len(ledger.records) == 1

    def test_existing_record_is_not_modified(self):
        ledger = ledger_with(("2024-01", date(2024, 1, 15)))
        result = upsert_if_absent(ledger, "2024-01", Decimal("5"), date(2024, 1, 1))

        assert result.inserted is False
        assert result.ledger.records[0].amount == Decimal("1000")

    def test_records_stay_ordered(self):
        ledger = ledger_with(
            ("2024-03", date(2024, 3, 15)), ("2024-01", date(2024, 1, 15))
        )

        assert [r.period_key for r in ledger.records] == ["2024-01", "2024-03"]


class TestApplyPayment:
    """Tests for apply_payment."""

    def test_partial_payment(self):
        ledger = ledger_with(("2024-01", date(2024, 1, 15)))
        result = apply_payment(ledger, Decimal("600"), date(2024, 1, 10), method="Cash")

        record = result.ledger.records[0]
        assert record.status == PaymentRecordStatus.PARTIAL
        assert record.amount_paid == Decimal("600")
        assert record.method == "Cash"
        assert result.ledger.total_paid == Decimal("600")
        assert result.settled_period_keys == ()

    def test_fifo_settles_oldest_first(self, three_months):
        result = apply_payment(three_months, Decimal("1500"), date(2024, 3, 1))

        statuses = [r.status for r in result.ledger.records]
        assert statuses == [
            PaymentRecordStatus.PAID,
            PaymentRecordStatus.PARTIAL,
            PaymentRecordStatus.PENDING,
        ]
        assert result.settled_period_keys == ("2024-01",)
        assert result.touched_period_keys == ("2024-01", "2024-02")

    def test_duplicate_reference_is_a_noop(self, three_months):
        first = apply_payment(
            three_months, Decimal("1000"), date(2024, 1, 15), external_reference="evt_123"
        )
        second = apply_payment(
            first.ledger, Decimal("1000"), date(2024, 1, 15), external_reference="evt_123"
        )

        assert second.duplicate is True
        assert second.ledger is first.ledger
        assert second.ledger.total_paid == Decimal("1000")

    def test_reference_is_stamped_on_first_touched_record(self, three_months):
        result = apply_payment(
            three_months, Decimal("2000"), date(2024, 2, 1), external_reference="evt_9"
        )

        references = [r.external_reference for r in result.ledger.records]
        assert references == ["evt_9", None, None]
        assert result.ledger.payments[-1].allocations == {
            "2024-01": Decimal("1000"),
            "2024-02": Decimal("1000"),
        }

    def test_target_period_goes_first(self, three_months):
        result = apply_payment(
            three_months, Decimal("1200"), date(2024, 3, 1), target_period_key="2024-03"
        )
        by_key = {r.period_key: r for r in result.ledger.records}

        assert by_key["2024-03"].status == PaymentRecordStatus.PAID
        assert by_key["2024-01"].status == PaymentRecordStatus.PARTIAL
        assert by_key["2024-01"].amount_paid == Decimal("200")

    def test_unknown_target_period(self, three_months):
        with pytest.raises(UnknownPeriod):
            apply_payment(
                three_months, Decimal("100"), date(2024, 3, 1), target_period_key="2025-01"
            )

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5")])
    def test_non_positive_amount(self, three_months, amount):
        with pytest.raises(InvalidAmount):
            apply_payment(three_months, amount, date(2024, 3, 1))

    def test_over_payment_becomes_credit(self):
        ledger = ledger_with(("2024-01", date(2024, 1, 15)))
        result = apply_payment(ledger, Decimal("1300"), date(2024, 1, 15))

        assert result.ledger.credit == Decimal("300")
        assert result.ledger.remaining_amount == Decimal("-300")

        ledger = upsert_if_absent(
            result.ledger, "2024-02", Decimal("1000"), date(2024, 2, 15)
        ).ledger
        after = apply_payment(ledger, Decimal("700"), date(2024, 2, 10))

        assert after.ledger.record_for("2024-02").status == PaymentRecordStatus.PAID
        assert after.ledger.credit == Decimal("0")
        assert after.ledger.total_paid == Decimal("2000")

    def test_total_amount_overrides_billed_total(self):
        ledger = ledger_with(("2024-01", date(2024, 1, 15)), total_amount=Decimal("12000"))
        result = apply_payment(ledger, Decimal("1000"), date(2024, 1, 15))

        assert result.ledger.effective_total == Decimal("12000")
        assert result.ledger.remaining_amount == Decimal("11000")

    @pytest.mark.parametrize(
        "status", [AgreementStatus.ON_HOLD, AgreementStatus.COMPLETED]
    )
    def test_inactive_agreement_rejected(self, three_months, status):
        with pytest.raises(AgreementNotActive):
            apply_payment(
                three_months, Decimal("100"), date(2024, 3, 1), agreement_status=status
            )

    def test_cancelled_agreement_can_settle_existing_debt(self, three_months):
        result = apply_payment(
            three_months,
            Decimal("1000"),
            date(2024, 3, 1),
            agreement_status=AgreementStatus.CANCELLED,
            source=PaymentSource.GATEWAY,
        )

        assert result.settled_period_keys == ("2024-01",)
        assert result.ledger.payments[-1].source == PaymentSource.GATEWAY

    def test_cancelled_agreement_without_debt_rejected(self):
        ledger = ledger_with(("2024-01", date(2024, 1, 15)))
        settled = apply_payment(ledger, Decimal("1000"), date(2024, 1, 15)).ledger

        with pytest.raises(AgreementNotActive):
            apply_payment(
                settled,
                Decimal("100"),
                date(2024, 2, 1),
                agreement_status=AgreementStatus.CANCELLED,
            )

    def test_float_amount_settles_exact_record(self):
        ledger = ledger_with(("2024-01", date(2024, 1, 15)), amount=Decimal("1000.30"))

        result = apply_payment(ledger, 1000.3, date(2024, 1, 15))

        record = result.ledger.record_for("2024-01")
        assert record.status == PaymentRecordStatus.PAID
        assert record.amount_paid == Decimal("1000.30")
        assert result.ledger.total_paid == Decimal("1000.30")
        assert result.ledger.credit == Decimal("0")

    @pytest.mark.parametrize("amount", ["abc", "NaN", "Infinity", None])
    def test_unreadable_amount(self, three_months, amount):
        with pytest.raises(InvalidAmount):
            apply_payment(three_months, amount, date(2024, 3, 1))


class TestAllocateCredit:
    """Tests for allocate_credit."""

    def test_credit_settles_later_records(self):
        ledger = ledger_with(
            ("2024-01", date(2024, 1, 15)), ("2024-02", date(2024, 2, 15))
        )
        prepaid = apply_payment(ledger, Decimal("3500"), date(2024, 1, 20)).ledger
        ledger = upsert_if_absent(
            prepaid, "2024-03", Decimal("1000"), date(2024, 3, 15)
        ).ledger
        ledger = upsert_if_absent(ledger, "2024-04", Decimal("1000"), date(2024, 4, 15)).ledger

        result = allocate_credit(ledger, date(2024, 2, 20))

        march = result.ledger.record_for("2024-03")
        april = result.ledger.record_for("2024-04")
        assert march.status == PaymentRecordStatus.PAID
        assert march.paid_date == date(2024, 2, 20)
        assert march.method == "Credit"
        assert april.status == PaymentRecordStatus.PARTIAL
        assert april.amount_paid == Decimal("500")
        assert result.settled_period_keys == ("2024-03",)
        assert result.ledger.credit == Decimal("0")
        assert result.ledger.total_paid == Decimal("3500")
        assert result.ledger.payments == prepaid.payments

    def test_no_credit_is_a_noop(self, three_months):
        result = allocate_credit(three_months, date(2024, 3, 1))

        assert result.ledger is three_months
        assert result.touched_period_keys == ()


class TestOverdue:
    """Tests for mark_overdue_if_past_due."""

    def test_past_due_pending_becomes_overdue_once(self):
        ledger = ledger_with(("2024-01", date(2024, 1, 15)))
        first = mark_overdue_if_past_due(ledger, date(2024, 1, 16))
        second = mark_overdue_if_past_due(first.ledger, date(2024, 1, 17))

        assert first.transitioned == ("2024-01",)
        assert second.transitioned == ()
        assert second.ledger.records[0].status == PaymentRecordStatus.OVERDUE

    def test_due_today_stays_pending(self):
        ledger = ledger_with(("2024-01", date(2024, 1, 15)))
        result = mark_overdue_if_past_due(ledger, date(2024, 1, 15))

        assert result.ledger.records[0].status == PaymentRecordStatus.PENDING

    def test_overdue_cleared_only_by_payment(self):
        ledger = ledger_with(("2024-01", date(2024, 1, 15)))
        overdue = mark_overdue_if_past_due(ledger, date(2024, 2, 1)).ledger
        paid = apply_payment(overdue, Decimal("1000"), date(2024, 2, 2)).ledger

        assert paid.records[0].status == PaymentRecordStatus.PAID
        assert mark_overdue_if_past_due(paid, date(2024, 3, 1)).transitioned == ()


class TestInvoiceAssignment:
    """Tests for assign_invoice."""

    def test_assigns_agreement_and_record(self):
        ledger = ledger_with(("2024-01", date(2024, 1, 15)))
        ledger = assign_invoice(ledger, "INV-2024-0115-AB12", "2024-01")

        assert ledger.invoice_number == "INV-2024-0115-AB12"
        assert ledger.records[0].invoice_number == "INV-2024-0115-AB12"

    def test_never_reassigned(self):
        ledger = assign_invoice(LedgerState(), "INV-2024-0115-AB12")

        with pytest.raises(InvoiceAlreadyAssigned):
            assign_invoice(ledger, "INV-2024-0115-ZZ99")
