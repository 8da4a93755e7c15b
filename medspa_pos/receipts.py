"""
PDF rendering for payment receipts and the admin exports (audit logs,
compliance alerts). Everything is built into an in-memory buffer and
returned as bytes.
"""

import io
import logging
from datetime import datetime
from html import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import landscape, letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from medspa_pos.config import BUSINESS_NAME

logger = logging.getLogger(__name__)

BRAND_COLOR = colors.HexColor("#0f766e")
DARK_GRAY = colors.HexColor("#1e293b")
LIGHT_GRAY = colors.HexColor("#f1f5f9")


def _currency(value) -> str:
    return f"${float(value or 0):,.2f}"


def _grid_style(header_rows: int = 1):
    return TableStyle([
        ("BACKGROUND", (0, 0), (-1, header_rows - 1), BRAND_COLOR),
        ("TEXTCOLOR", (0, 0), (-1, header_rows - 1), colors.white),
        ("FONTNAME", (0, 0), (-1, header_rows - 1), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("ROWBACKGROUNDS", (0, header_rows), (-1, -1), [colors.white, LIGHT_GRAY]),
        ("GRID", (0, 0), (-1, -1), 0.25, colors.HexColor("#cbd5e1")),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("TOPPADDING", (0, 0), (-1, -1), 4),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
    ])


class ReceiptPDFGenerator:
    """Single-payment receipt: header, payment details, line items, totals."""

    def __init__(self, payment):
        self.payment = payment
        self.margin = 0.75 * inch
        styles = getSampleStyleSheet()
        self.title_style = ParagraphStyle(
            "ReceiptTitle", parent=styles["Heading1"], fontSize=20, textColor=BRAND_COLOR,
        )
        self.body_style = ParagraphStyle(
            "ReceiptBody", parent=styles["Normal"], fontSize=10, textColor=DARK_GRAY,
        )

    def _details_table(self):
        payment = self.payment
        client = payment.client
        rows = [
            ["Transaction ID", payment.transaction_id],
            ["Date", payment.created_at.strftime("%Y-%m-%d %H:%M") if payment.created_at else ""],
            ["Client", client.name if client else f"#{payment.client_id}"],
            ["Payment method", "Card (Stripe)" if payment.payment_method == "stripe" else "Cash"],
            ["Status", payment.status.capitalize()],
        ]
        table = Table(rows, colWidths=[1.8 * inch, 4.5 * inch])
        table.setStyle(TableStyle([
            ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
            ("FONTSIZE", (0, 0), (-1, -1), 10),
            ("TEXTCOLOR", (0, 0), (-1, -1), DARK_GRAY),
        ]))
        return table

    def _items_table(self):
        rows = [["Item", "Type", "Qty", "Price", "Subtotal"]]
        for item in self.payment.items:
            rows.append([
                item.item_name,
                item.item_type.capitalize(),
                str(item.quantity),
                _currency(item.price),
                _currency(item.subtotal),
            ])
        if len(rows) == 1:
            rows.append(["Payment", "", "1", _currency(self.payment.amount), _currency(self.payment.amount)])
        table = Table(rows, colWidths=[2.6 * inch, 0.9 * inch, 0.6 * inch, 1.0 * inch, 1.1 * inch])
        style = _grid_style()
        style.add("ALIGN", (2, 0), (-1, -1), "RIGHT")
        table.setStyle(style)
        return table

    def _totals_table(self):
        rows = [
            ["Tips", _currency(self.payment.tips)],
            ["Total paid", _currency(self.payment.amount)],
        ]
        table = Table(rows, colWidths=[5.1 * inch, 1.1 * inch])
        table.setStyle(TableStyle([
            ("ALIGN", (0, 0), (-1, -1), "RIGHT"),
            ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
            ("LINEABOVE", (0, -1), (-1, -1), 0.75, DARK_GRAY),
        ]))
        return table

    def generate(self) -> bytes:
        logger.info(f"Generating receipt PDF for payment {self.payment.id}")
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=letter,
            rightMargin=self.margin,
            leftMargin=self.margin,
            topMargin=self.margin,
            bottomMargin=self.margin,
            title=f"Receipt {self.payment.transaction_id}",
        )
        story = [
            Paragraph(escape(BUSINESS_NAME), self.title_style),
            Paragraph("Payment Receipt", self.body_style),
            Spacer(1, 0.25 * inch),
            self._details_table(),
            Spacer(1, 0.3 * inch),
            self._items_table(),
            Spacer(1, 0.2 * inch),
            self._totals_table(),
        ]
        if self.payment.notes:
            story += [Spacer(1, 0.2 * inch), Paragraph(f"Notes: {escape(self.payment.notes)}", self.body_style)]
        story += [Spacer(1, 0.4 * inch), Paragraph("Thank you for your visit!", self.body_style)]
        doc.build(story)
        return buffer.getvalue()


def render_receipt(payment) -> bytes:
    return ReceiptPDFGenerator(payment).generate()


def _render_table_document(title: str, filters: dict, header, rows, summary=None) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=landscape(letter),
        rightMargin=0.5 * inch,
        leftMargin=0.5 * inch,
        topMargin=0.5 * inch,
        bottomMargin=0.5 * inch,
        title=title,
    )
    styles = getSampleStyleSheet()
    applied = ", ".join(f"{key}: {value}" for key, value in filters.items() if value) or "none"
    story = [
        Paragraph(f"{escape(BUSINESS_NAME)} - {title}", styles["Heading1"]),
        Paragraph(f"Generated {datetime.now().strftime('%Y-%m-%d %H:%M')}", styles["Normal"]),
        Paragraph(f"Filters: {escape(applied)}", styles["Normal"]),
    ]
    if summary:
        story.append(Paragraph(
            " | ".join(f"{key.capitalize()}: {value}" for key, value in summary.items()),
            styles["Normal"],
        ))
    story.append(Spacer(1, 0.2 * inch))

    if rows:
        table = Table([header] + rows, repeatRows=1)
        table.setStyle(_grid_style())
        story.append(table)
    else:
        story.append(Paragraph("No records match these filters.", styles["Normal"]))

    doc.build(story)
    return buffer.getvalue()


def render_audit_log_export(logs, filters: dict) -> bytes:
    rows = [
        [
            log.created_at.strftime("%Y-%m-%d %H:%M") if log.created_at else "",
            log.user_id or "system",
            log.action,
            log.table_name,
            str(log.record_id or ""),
        ]
        for log in logs
    ]
    return _render_table_document(
        "Audit Logs", filters, ["Date", "User", "Action", "Table", "Record"], rows,
        summary={"records": len(rows)},
    )


def render_compliance_export(alerts, filters: dict, summary: dict) -> bytes:
    rows = [
        [
            alert.title,
            alert.type or "",
            alert.priority or "",
            alert.status or "",
            alert.category or "",
            alert.due_date.isoformat() if alert.due_date else "",
            alert.assigned_to or "",
        ]
        for alert in alerts
    ]
    return _render_table_document(
        "Compliance Alerts", filters,
        ["Title", "Type", "Priority", "Status", "Category", "Due", "Assigned to"], rows,
        summary=summary,
    )
