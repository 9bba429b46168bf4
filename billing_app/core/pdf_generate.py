import asyncio
from concurrent.futures import ThreadPoolExecutor
from io import BytesIO

from reportlab.graphics.barcode import code128
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from schemas.schema import InvoiceData

executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="invoice-render")

GRID_STYLE = [
    ("BACKGROUND", (0, 0), (-1, 0), colors.whitesmoke),
    ("GRID", (0, 0), (-1, -1), 0.5, colors.lightgrey),
    ("FONT", (0, 0), (-1, 0), "Helvetica-Bold"),
    ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
]


class InvoiceRenderer:
    @staticmethod
    def _styles():
        styles = getSampleStyleSheet()
        styles.add(
            ParagraphStyle(
                name="TitleStyle",
                fontSize=18,
                alignment=TA_CENTER,
                spaceAfter=12,
                textColor=colors.HexColor("#1F2937"),
            )
        )
        styles.add(
            ParagraphStyle(
                name="SectionHeader",
                fontSize=12,
                spaceBefore=14,
                spaceAfter=6,
                textColor=colors.HexColor("#111827"),
                fontName="Helvetica-Bold",
            )
        )
        styles.add(
            ParagraphStyle(
                name="Meta",
                fontSize=9,
                alignment=TA_RIGHT,
                textColor=colors.grey,
            )
        )
        return styles

    @staticmethod
    def render(invoice: InvoiceData) -> bytes:
        buffer = BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=30,
            leftMargin=30,
            topMargin=30,
            bottomMargin=30,
            title=invoice.invoice_number,
        )
        styles = InvoiceRenderer._styles()
        currency = invoice.currency

        elements = [
            Paragraph("PAYMENT INVOICE", styles["TitleStyle"]),
            Paragraph(f"Invoice Number: <b>{invoice.invoice_number}</b>", styles["Meta"]),
            Paragraph(f"Agreement: {invoice.agreement_reference}", styles["Meta"]),
            Spacer(1, 10),
            code128.Code128(invoice.invoice_number, barHeight=15 * mm, barWidth=0.6),
            Spacer(1, 10),
            Paragraph(
                f"Issue Date: {invoice.issued_on.strftime('%d %B %Y')}", styles["Meta"]
            ),
            Paragraph("Billed To", styles["SectionHeader"]),
            Paragraph(invoice.customer_name, styles["Normal"]),
        ]
        if invoice.customer_email:
            elements.append(Paragraph(invoice.customer_email, styles["Normal"]))

        elements.append(Paragraph("Billing Periods", styles["SectionHeader"]))
        rows = [["Period", "Due Date", "Amount", "Paid", "Status"]]
        for line in invoice.lines:
            rows.append(
                [
                    line.period_key,
                    line.due_date.isoformat(),
                    f"{currency} {line.amount:,.2f}",
                    f"{currency} {line.amount_paid:,.2f}",
                    line.status,
                ]
            )
        lines_table = Table(rows, colWidths=[70, 90, 110, 110, None])
        lines_table.setStyle(TableStyle(GRID_STYLE))
        elements.append(lines_table)

        elements.append(Paragraph("Summary", styles["SectionHeader"]))
        summary = Table(
            [
                ["Total Paid", f"{currency} {invoice.total_paid:,.2f}"],
                ["Outstanding", f"{currency} {max(invoice.remaining_amount, 0):,.2f}"],
            ],
            colWidths=[150, None],
        )
        summary.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (0, -1), colors.whitesmoke),
                    ("GRID", (0, 0), (-1, -1), 0.5, colors.lightgrey),
                    ("FONT", (0, 0), (0, -1), "Helvetica-Bold"),
                ]
            )
        )
        elements.append(summary)
        elements.append(Spacer(1, 16))
        elements.append(
            Paragraph(
                "This invoice confirms the payments listed above. "
                "Please keep this document for your records.",
                styles["Normal"],
            )
        )

        doc.build(elements)
        return buffer.getvalue()

    @staticmethod
    async def render_async(invoice: InvoiceData) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(executor, InvoiceRenderer.render, invoice)
