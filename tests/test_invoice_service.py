"""Tests for invoice numbering, rendering and delivery."""

import re
from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from core.errors import InvoiceAllocationFailed
from core.pdf_generate import InvoiceRenderer
from models.enums import NotificationKind
from schemas.schema import InvoiceData, InvoiceLine
from services.invoice_service import InvoiceService, generate_invoice_number

INVOICE_PATTERN = re.compile(r"^INV-\d{4}-\d{4}-[A-Z0-9]{4}$")


def test_invoice_number_format():
    number = generate_invoice_number(date(2024, 3, 20))

    assert INVOICE_PATTERN.match(number)
    assert number.startswith("INV-2024-0320-")


class TestAllocateNumber:
    """Tests for allocate_number."""

    @pytest.mark.asyncio
    async def test_rerolls_on_collision(self, db, notifier):
        service = InvoiceService(db, notifier)
        service.agreement_repo.invoice_number_exists = AsyncMock(
            side_effect=[True, True, False]
        )

        number = await service.allocate_number(date(2024, 3, 20))

        assert INVOICE_PATTERN.match(number)
        assert service.agreement_repo.invoice_number_exists.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, db, notifier):
        service = InvoiceService(db, notifier)
        service.agreement_repo.invoice_number_exists = AsyncMock(return_value=True)

        with pytest.raises(InvoiceAllocationFailed):
            await service.allocate_number(date(2024, 3, 20))


class TestInvoiceLifecycle:
    """Tests for invoice assignment through payments."""

    @pytest.mark.asyncio
    async def test_first_settled_record_gets_the_invoice(
        self, billing, notifier, agreement_data, march_20
    ):
        agreement = await billing.create_agreement(agreement_data, now=march_20)

        partial = await billing.record_manual_payment(agreement.id, Decimal("600"), "Cash")
        assert partial.invoice_number is None
        assert NotificationKind.INVOICE not in notifier.kinds()

        settled = await billing.record_manual_payment(agreement.id, Decimal("400"), "Cash")
        number = settled.invoice_number
        assert INVOICE_PATTERN.match(number)
        records = {r.period_key: r for r in settled.agreement.records}
        assert records["2024-01"].invoice_number == number
        assert notifier.kinds().count(NotificationKind.INVOICE) == 1
        assert notifier.calls[-1]["context"]["attachment"].startswith(b"%PDF")

    @pytest.mark.asyncio
    async def test_invoice_is_never_reassigned(
        self, billing, notifier, agreement_data, march_20
    ):
        agreement = await billing.create_agreement(agreement_data, now=march_20)

        first = await billing.record_manual_payment(agreement.id, Decimal("1000"), "Cash")
        second = await billing.record_manual_payment(agreement.id, Decimal("1000"), "Cash")

        assert second.settled_periods == ["2024-02"]
        assert second.invoice_number == first.invoice_number
        assert notifier.kinds().count(NotificationKind.INVOICE) == 1


class TestSendInvoice:
    """Tests for best-effort invoice delivery."""

    @pytest.mark.asyncio
    async def test_rendering_failure_still_notifies(self, db, notifier):
        renderer = SimpleNamespace(
            render_async=AsyncMock(side_effect=RuntimeError("font missing"))
        )
        service = InvoiceService(db, notifier, renderer=renderer)
        agreement = SimpleNamespace(
            invoice_number="INV-2024-0320-AB12",
            reference="RENT-2024-0320-ABC123",
            customer_name="Ada Okafor",
            customer_email="ada@example.com",
            total_paid=Decimal("1000"),
            remaining_amount=Decimal("0"),
            records=[],
        )

        sent = await service.send_invoice(agreement, date(2024, 3, 20))

        assert sent is True
        assert notifier.calls[0]["context"] == {
            "invoice_number": "INV-2024-0320-AB12",
            "attachment": None,
        }


def test_render_produces_pdf():
    invoice = InvoiceData(
        invoice_number="INV-2024-0320-AB12",
        agreement_reference="RENT-2024-0115-ABC123",
        customer_name="Ada Okafor",
        customer_email="ada@example.com",
        issued_on=date(2024, 3, 20),
        currency="NGN",
        total_paid=Decimal("1000"),
        remaining_amount=Decimal("3000"),
        lines=[
            InvoiceLine("2024-01", date(2024, 1, 15), Decimal("1000"), Decimal("1000"), "Paid"),
            InvoiceLine("2024-02", date(2024, 2, 15), Decimal("1000"), Decimal("0"), "Overdue"),
        ],
    )

    pdf = InvoiceRenderer.render(invoice)

    assert pdf.startswith(b"%PDF")
