import logging
import secrets
import string
from datetime import date
from typing import Optional

from core.errors import InvoiceAllocationFailed
from core.pdf_generate import InvoiceRenderer
from core.settings import settings
from models.enums import NotificationKind
from models.ledger import PaymentRecordState
from models.models import Agreement
from repos.agreement_repo import AgreementRepo
from schemas.schema import InvoiceData, InvoiceLine

from .notification_service import NotificationSender

logger = logging.getLogger(__name__)

INVOICE_ALPHABET = string.ascii_uppercase + string.digits


def generate_invoice_number(issued_on: date) -> str:
    suffix = "".join(
        secrets.choice(INVOICE_ALPHABET) for _ in range(settings.INVOICE_SUFFIX_LENGTH)
    )
    return f"{settings.INVOICE_PREFIX}-{issued_on:%Y}-{issued_on:%m%d}-{suffix}"


class InvoiceService:
    def __init__(
        self,
        db,
        notifier: NotificationSender | None = None,
        renderer=InvoiceRenderer,
    ):
        self.db = db
        self.agreement_repo = AgreementRepo(db)
        self.notifier = notifier or NotificationSender()
        self.renderer = renderer

    async def allocate_number(self, issued_on: date) -> str:
        for attempt in range(1, settings.INVOICE_MAX_ATTEMPTS + 1):
            candidate = generate_invoice_number(issued_on)
            if not await self.agreement_repo.invoice_number_exists(candidate):
                return candidate
            logger.warning(f"Invoice number collision on {candidate} (attempt {attempt})")
        raise InvoiceAllocationFailed(attempts=settings.INVOICE_MAX_ATTEMPTS)

    @staticmethod
    def build_invoice_data(agreement: Agreement, issued_on: date) -> InvoiceData:
        return InvoiceData(
            invoice_number=agreement.invoice_number,
            agreement_reference=agreement.reference,
            customer_name=agreement.customer_name,
            customer_email=agreement.customer_email,
            issued_on=issued_on,
            currency=settings.CURRENCY,
            total_paid=agreement.total_paid,
            remaining_amount=agreement.remaining_amount,
            lines=[
                InvoiceLine(
                    period_key=r.period_key,
                    due_date=r.due_date,
                    amount=r.amount,
                    amount_paid=r.amount_paid,
                    status=r.status.value,
                )
                for r in sorted(agreement.records, key=lambda r: r.period_key)
            ],
        )

    async def send_invoice(
        self,
        agreement: Agreement,
        issued_on: date,
        record: Optional[PaymentRecordState] = None,
    ) -> bool:
        """Render and send the agreement's invoice. Failures are logged, never raised."""
        try:
            pdf = await self.renderer.render_async(
                self.build_invoice_data(agreement, issued_on)
            )
        except Exception:
            logger.exception(f"Invoice rendering failed for {agreement.invoice_number}")
            pdf = None

        return await self.notifier.send(
            NotificationKind.INVOICE,
            agreement,
            record,
            invoice_number=agreement.invoice_number,
            attachment=pdf,
        )
