import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional, Tuple

import email_notify.email_service as email_service
from core.settings import settings
from models.enums import NotificationKind
from models.ledger import PaymentRecordState
from models.models import Agreement
from sms_notify.sms_service import TermiiClient, send_sms

logger = logging.getLogger("billing.notifications")


@dataclass
class PendingNotification:
    kind: NotificationKind
    agreement: Agreement
    record: Optional[PaymentRecordState] = None
    context: dict = field(default_factory=dict)


class NotificationSender:
    """Email first, SMS second.

    ``send`` never raises. Email delivery decides the result when the
    customer has an address; SMS is only authoritative when there is no email.
    """

    def __init__(self, sms_client: TermiiClient | None = None):
        self.sms = sms_client or send_sms
        self.sent = 0
        self.failures = 0

    async def send(
        self,
        kind: NotificationKind,
        agreement: Agreement,
        record: Optional[PaymentRecordState] = None,
        **context,
    ) -> bool:
        email = agreement.customer_email
        phone = agreement.customer_phone
        if not email and not phone:
            logger.warning(
                f"No contact details on agreement {agreement.reference}; {kind.value} skipped"
            )
            self.failures += 1
            return False

        delivered = None
        if email:
            try:
                await self._send_email(kind, agreement, record, context)
                delivered = True
            except Exception:
                logger.exception(
                    f"Email {kind.value} failed for agreement {agreement.reference}"
                )
                delivered = False

        if phone and kind != NotificationKind.INVOICE and self.sms.configured:
            try:
                await self._send_sms(kind, agreement, record, context)
                if delivered is None:
                    delivered = True
            except Exception:
                logger.exception(
                    f"SMS {kind.value} failed for agreement {agreement.reference}"
                )
                if delivered is None:
                    delivered = False

        if delivered:
            self.sent += 1
            return True
        self.failures += 1
        return False

    async def dispatch(self, pending: Iterable[PendingNotification]) -> Tuple[int, int]:
        sent = failed = 0
        for item in pending:
            if await self.send(item.kind, item.agreement, item.record, **item.context):
                sent += 1
            else:
                failed += 1
        return sent, failed

    async def _send_email(self, kind, agreement, record, context):
        email = agreement.customer_email
        name = agreement.customer_name

        if kind == NotificationKind.UPCOMING_DUE:
            await email_service.send_upcoming_due_email(
                email, name, record.period_key, record.balance, record.due_date,
                context.get("days", 0),
            )
        elif kind == NotificationKind.DUE_TODAY:
            await email_service.send_due_today_email(
                email, name, record.period_key, record.balance, record.due_date
            )
        elif kind == NotificationKind.OVERDUE:
            await email_service.send_overdue_email(
                email, name, record.period_key, record.balance, record.due_date,
                context.get("days", 0),
            )
        elif kind == NotificationKind.CONSOLIDATED:
            records = context.get("records", ())
            await email_service.send_consolidated_reminder_email(
                email,
                name,
                [(r.period_key, r.due_date, r.balance, r.status.value) for r in records],
                context.get("total", Decimal("0")),
            )
        elif kind == NotificationKind.INVOICE:
            await email_service.send_invoice_email(
                email, name, context["invoice_number"], context.get("attachment")
            )
        else:
            raise ValueError(f"Unsupported notification kind: {kind}")

    async def _send_sms(self, kind, agreement, record, context):
        phone = agreement.customer_phone
        name = agreement.customer_name

        if kind == NotificationKind.UPCOMING_DUE:
            await self.sms.send_upcoming_due_sms(
                phone, name, record.period_key, context.get("days", 0)
            )
        elif kind == NotificationKind.DUE_TODAY:
            await self.sms.send_due_today_sms(phone, name, record.period_key)
        elif kind == NotificationKind.OVERDUE:
            await self.sms.send_overdue_sms(
                phone, name, record.period_key, context.get("days", 0)
            )
        elif kind == NotificationKind.CONSOLIDATED:
            records = context.get("records", ())
            total = context.get("total", Decimal("0"))
            await self.sms.send_consolidated_sms(
                phone, name, len(records), f"{settings.CURRENCY} {total:,.2f}"
            )
