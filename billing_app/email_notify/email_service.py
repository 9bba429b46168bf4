import logging
from datetime import date
from decimal import Decimal
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Iterable, Tuple

import aiosmtplib
from core.breaker import notification_breaker
from core.settings import settings

logger = logging.getLogger(__name__)


def _money(amount: Decimal) -> str:
    return f"{settings.CURRENCY} {amount:,.2f}"


def _wrap(title: str, name: str, body: str) -> str:
    return f"""
        <html>
        <body style="font-family: Arial, sans-serif; line-height: 1.6;">
            <h2>{title}</h2>
            <p>Hello {name},</p>
            {body}
            <p>Best regards,<br>Your Billing Team</p>
        </body>
        </html>
        """


def _message(email: str, subject: str, html_content: str) -> MIMEMultipart:
    message = MIMEMultipart("mixed")
    message["Subject"] = subject
    message["From"] = settings.EMAIL_USER
    message["To"] = email
    message.attach(MIMEText(html_content, "html"))
    return message


async def _deliver(message: MIMEMultipart):
    async def handler():
        await aiosmtplib.send(
            message,
            hostname=settings.EMAIL_SERVER,
            port=settings.EMAIL_PORT,
            username=settings.EMAIL_USER,
            password=settings.EMAIL_PASSWORD,
            start_tls=settings.EMAIL_USE_TLS,
            timeout=settings.EMAIL_TIMEOUT_SECONDS,
        )

    return await notification_breaker.call(handler)


async def send_upcoming_due_email(
    email: str, name: str, period_key: str, amount: Decimal, due_date: date, days_left: int
):
    body = (
        f"<p>Your payment of <b>{_money(amount)}</b> for {period_key} is due in "
        f"{days_left} day(s), on {due_date:%d %B %Y}.</p>"
        "<p>Please ensure the payment is made on time.</p>"
    )
    message = _message(email, "Upcoming Payment Reminder", _wrap("Payment Reminder", name, body))
    await _deliver(message)
    logger.info(f"Upcoming-due reminder sent to {email} for {period_key}")


async def send_due_today_email(
    email: str, name: str, period_key: str, amount: Decimal, due_date: date
):
    body = (
        f"<p>Your payment of <b>{_money(amount)}</b> for {period_key} is due today "
        f"({due_date:%d %B %Y}).</p>"
    )
    message = _message(email, "Payment Due Today", _wrap("Payment Due Today", name, body))
    await _deliver(message)
    logger.info(f"Due-today reminder sent to {email} for {period_key}")


async def send_overdue_email(
    email: str, name: str, period_key: str, amount: Decimal, due_date: date, days_overdue: int
):
    body = (
        f"<p>Your payment of <b>{_money(amount)}</b> for {period_key} was due on "
        f"{due_date:%d %B %Y} and is now {days_overdue} day(s) overdue.</p>"
        "<p>Please settle the outstanding balance as soon as possible.</p>"
    )
    message = _message(email, "Overdue Payment Notice", _wrap("Payment Overdue", name, body))
    await _deliver(message)
    logger.info(f"Overdue reminder sent to {email} for {period_key}")


async def send_consolidated_reminder_email(
    email: str,
    name: str,
    lines: Iterable[Tuple[str, date, Decimal, str]],
    total: Decimal,
):
    rows = "".join(
        f"<tr><td>{period_key}</td><td>{due_date:%d %b %Y}</td>"
        f"<td>{_money(balance)}</td><td>{status}</td></tr>"
        for period_key, due_date, balance, status in lines
    )
    body = (
        "<p>The following payments are outstanding on your agreement:</p>"
        '<table border="1" cellpadding="6" style="border-collapse: collapse;">'
        "<tr><th>Period</th><th>Due</th><th>Balance</th><th>Status</th></tr>"
        f"{rows}</table>"
        f"<p>Total outstanding: <b>{_money(total)}</b></p>"
    )
    message = _message(email, "Outstanding Payments Reminder", _wrap("Payment Reminder", name, body))
    await _deliver(message)
    logger.info(f"Consolidated reminder sent to {email}")


async def send_invoice_email(
    email: str, name: str, invoice_number: str, pdf_bytes: bytes | None = None
):
    body = (
        f"<p>Thank you for your payment. Your invoice number is <b>{invoice_number}</b>.</p>"
        "<p>A copy of the invoice is attached for your records.</p>"
    )
    message = _message(email, f"Invoice {invoice_number}", _wrap("Payment Invoice", name, body))
    if pdf_bytes:
        attachment = MIMEApplication(pdf_bytes, _subtype="pdf")
        attachment.add_header(
            "Content-Disposition", "attachment", filename=f"{invoice_number}.pdf"
        )
        message.attach(attachment)
    await _deliver(message)
    logger.info(f"Invoice {invoice_number} sent to {email}")
