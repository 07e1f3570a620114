import io
import logging
from datetime import datetime
from typing import List, NamedTuple, Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

logger = logging.getLogger(__name__)

STORE_NAME = "JEWEL HAVEN"
STORE_LINES = [
    "Luxury Jewelry & Accessories",
    "Eldoret, Kenya",
    "info@jewelhaven.giftedtech.co.ke | +254 799 916 673",
]
THANKS = "Thank you for shopping with Jewel Haven!"
NAVY = colors.Color(44 / 255, 62 / 255, 80 / 255)
GREY = colors.Color(100 / 255, 100 / 255, 100 / 255)


class Invoice(NamedTuple):
    content: bytes
    media_type: str
    filename: str


def ksh(value) -> str:
    try:
        amount = float(value or 0)
    except (TypeError, ValueError):
        amount = 0.0
    return f"KSh {amount:,.2f}"


def _date(order: dict) -> str:
    created = order.get("created_at")
    if isinstance(created, str):
        try:
            created = datetime.fromisoformat(created)
        except ValueError:
            return created
    if isinstance(created, datetime):
        return created.strftime("%d/%m/%Y")
    return "N/A"


def _upper(value: Optional[str]) -> str:
    return value.upper() if value else "N/A"


def _truncate(value: str, width: int) -> str:
    return value if len(value) <= width else value[:width] + "..."


def _line_total(item: dict) -> float:
    return float(item.get("price") or 0) * int(item.get("quantity") or 1)


def _copy_label(admin_copy: bool) -> str:
    return "ADMIN COPY" if admin_copy else "CUSTOMER COPY"


def render_table_pdf(order: dict, items: List[dict], admin_copy: bool = False) -> bytes:
    """Full invoice: letterhead, customer block, striped item table, summary and page numbers."""
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, leftMargin=20 * mm, rightMargin=20 * mm,
                            topMargin=15 * mm, bottomMargin=20 * mm,
                            title=f"Invoice {order.get('order_number', '')}")
    styles = getSampleStyleSheet()
    centered = ParagraphStyle("centered", parent=styles["Normal"], alignment=TA_CENTER, textColor=GREY)
    heading = ParagraphStyle("heading", parent=styles["Title"], textColor=NAVY)
    sub = ParagraphStyle("sub", parent=styles["Heading2"], alignment=TA_CENTER, textColor=NAVY)
    body = ParagraphStyle("body", parent=styles["Normal"], textColor=GREY)

    story = [Paragraph(STORE_NAME, heading)]
    story += [Paragraph(escape(line), centered) for line in STORE_LINES]
    story.append(Spacer(1, 6 * mm))
    story.append(Paragraph(f"{_copy_label(admin_copy)} - INVOICE", sub))
    story.append(Spacer(1, 4 * mm))

    details = Table([
        [f"Invoice Date: {_date(order)}", f"Customer: {order.get('delivery_name') or 'N/A'}"],
        [f"Invoice Number: {order.get('order_number', '')}", f"Phone: {order.get('delivery_phone') or 'N/A'}"],
        ["", f"Address: {_truncate(order.get('delivery_address') or 'N/A', 30)}"],
    ], colWidths=[85 * mm, 85 * mm])
    details.setStyle(TableStyle([
        ("TEXTCOLOR", (0, 0), (-1, -1), GREY),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("LINEBELOW", (0, -1), (-1, -1), 0.5, colors.lightgrey),
    ]))
    story += [details, Spacer(1, 5 * mm)]

    rows = [["Description", "Unit Price", "Quantity", "Total"]]
    for item in items:
        rows.append([
            Paragraph(escape(item.get("product_name") or "Product"), styles["Normal"]),
            ksh(item.get("price")),
            str(item.get("quantity") or 1),
            ksh(_line_total(item)),
        ])
    table = Table(rows, colWidths=[80 * mm, 35 * mm, 20 * mm, 35 * mm], repeatRows=1)
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), NAVY),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.whitesmoke]),
        ("ALIGN", (1, 0), (1, -1), "RIGHT"),
        ("ALIGN", (2, 0), (2, -1), "CENTER"),
        ("ALIGN", (3, 0), (3, -1), "RIGHT"),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
    ]))
    story += [table, Spacer(1, 6 * mm)]

    summary = Table([
        ["Summary", f"Subtotal: {ksh(order.get('subtotal'))}"],
        ["", f"Delivery Fee: {ksh(order.get('delivery_fee'))}"],
        ["", f"Total: {ksh(order.get('total'))}"],
    ], colWidths=[85 * mm, 85 * mm])
    summary.setStyle(TableStyle([
        ("ALIGN", (1, 0), (1, -1), "RIGHT"),
        ("TEXTCOLOR", (0, 0), (-1, -1), NAVY),
        ("FONTNAME", (1, 2), (1, 2), "Helvetica-Bold"),
    ]))
    story += [summary, Spacer(1, 6 * mm)]

    story.append(Paragraph(f"Payment Method: {_upper(order.get('payment_method'))}", body))
    story.append(Paragraph(f"Payment Status: {_upper(order.get('payment_status'))}", body))
    if order.get("mpesa_receipt_number"):
        story.append(Paragraph(escape(f"M-Pesa Receipt: {order['mpesa_receipt_number']}"), body))
    if order.get("notes"):
        story.append(Paragraph(escape(f"Notes: {_truncate(order['notes'], 60)}"), body))
    story.append(Spacer(1, 10 * mm))
    story.append(Paragraph(THANKS, centered))
    story.append(Paragraph("This is a system-generated invoice", centered))

    doc.build(story, canvasmaker=NumberedCanvas)
    return buffer.getvalue()


class NumberedCanvas(canvas.Canvas):
    """Canvas that stamps "Page i of n" once the page count is known."""

    def __init__(self, *args, **kwargs):
        canvas.Canvas.__init__(self, *args, **kwargs)
        self._saved_page_states = []

    def showPage(self):
        self._saved_page_states.append(dict(self.__dict__))
        self._startPage()

    def save(self):
        count = len(self._saved_page_states)
        for state in self._saved_page_states:
            self.__dict__.update(state)
            self.setFont("Helvetica", 8)
            self.setFillColor(colors.grey)
            self.drawCentredString(A4[0] / 2, 10 * mm, f"Page {self._pageNumber} of {count}")
            canvas.Canvas.showPage(self)
        canvas.Canvas.save(self)


def render_simple_pdf(order: dict, items: List[dict], admin_copy: bool = False) -> bytes:
    """Hand-laid invoice drawn straight on the canvas, no table layout."""
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)
    width, height = A4

    def at(y_mm: float) -> float:
        return height - y_mm * mm

    pdf.setFont("Helvetica-Bold", 18)
    pdf.setFillColor(NAVY)
    pdf.drawCentredString(width / 2, at(20), f"{STORE_NAME} INVOICE")
    pdf.setFont("Helvetica", 11)
    pdf.setFillColor(GREY)
    pdf.drawCentredString(width / 2, at(30), _copy_label(admin_copy))

    pdf.setFont("Helvetica", 10)
    pdf.drawString(20 * mm, at(45), f"Invoice Number: {order.get('order_number', '')}")
    pdf.drawString(20 * mm, at(52), f"Date: {_date(order)}")
    pdf.drawString(20 * mm, at(59), f"Customer: {order.get('delivery_name') or 'N/A'}")
    pdf.drawString(20 * mm, at(66), f"Phone: {order.get('delivery_phone') or 'N/A'}")

    pdf.setFont("Helvetica-Bold", 11)
    pdf.setFillColor(NAVY)
    pdf.drawString(20 * mm, at(80), "Order Items")
    pdf.setFont("Helvetica", 9)
    pdf.setFillColor(GREY)
    for x, label in ((20, "Item"), (100, "Price"), (130, "Qty"), (160, "Total")):
        pdf.drawString(x * mm, at(90), label)
    pdf.setStrokeColor(colors.lightgrey)
    pdf.line(20 * mm, at(93), 190 * mm, at(93))

    y = 100
    for item in items:
        pdf.drawString(20 * mm, at(y), _truncate(item.get("product_name") or "Product", 40))
        pdf.drawString(100 * mm, at(y), ksh(item.get("price")))
        pdf.drawString(130 * mm, at(y), str(item.get("quantity") or 1))
        pdf.drawString(160 * mm, at(y), ksh(_line_total(item)))
        y += 7
        if y > 250:
            pdf.showPage()
            pdf.setFont("Helvetica", 9)
            pdf.setFillColor(GREY)
            y = 20

    y = max(y + 10, 120)
    if y > 240:
        pdf.showPage()
        y = 30
    pdf.setFont("Helvetica-Bold", 11)
    pdf.setFillColor(NAVY)
    pdf.drawString(20 * mm, at(y), "Summary")
    pdf.setFont("Helvetica", 10)
    pdf.setFillColor(GREY)
    pdf.drawRightString(140 * mm, at(y), f"Subtotal: {ksh(order.get('subtotal'))}")
    pdf.drawRightString(140 * mm, at(y + 7), f"Delivery Fee: {ksh(order.get('delivery_fee'))}")
    pdf.setFont("Helvetica-Bold", 12)
    pdf.setFillColor(NAVY)
    pdf.drawRightString(140 * mm, at(y + 17), f"Total: {ksh(order.get('total'))}")

    y += 35
    pdf.setFont("Helvetica", 10)
    pdf.setFillColor(GREY)
    pdf.drawString(20 * mm, at(y), f"Payment Method: {_upper(order.get('payment_method'))}")
    pdf.drawString(20 * mm, at(y + 7), f"Payment Status: {_upper(order.get('payment_status'))}")
    if order.get("mpesa_receipt_number"):
        pdf.drawString(20 * mm, at(y + 14), f"M-Pesa Receipt: {order['mpesa_receipt_number']}")

    pdf.setFont("Helvetica", 9)
    pdf.drawCentredString(width / 2, at(min(max(y + 30, 250), 285)), THANKS)
    pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def render_text(order: dict, items: List[dict], admin_copy: bool = False) -> str:
    rule, thin = "=" * 60, "-" * 60
    lines = [
        rule,
        f"{STORE_NAME} INVOICE",
        rule,
        _copy_label(admin_copy),
        "",
        f"Invoice Number: {order.get('order_number', '')}",
        f"Date: {_date(order)}",
        f"Customer: {order.get('delivery_name') or 'N/A'}",
        f"Phone: {order.get('delivery_phone') or 'N/A'}",
        f"Address: {order.get('delivery_address') or 'N/A'}",
        "",
        thin,
        "ORDER ITEMS:",
        thin,
    ]
    for item in items:
        lines += [
            item.get("product_name") or "Product",
            f"  Price: {ksh(item.get('price'))}",
            f"  Quantity: {item.get('quantity') or 1}",
            f"  Total: {ksh(_line_total(item))}",
            "",
        ]
    lines += [
        thin,
        "SUMMARY:",
        thin,
        f"Subtotal: {ksh(order.get('subtotal'))}",
        f"Delivery Fee: {ksh(order.get('delivery_fee'))}",
        f"Total: {ksh(order.get('total'))}",
        "",
        f"Payment Method: {order.get('payment_method') or 'N/A'}",
        f"Payment Status: {order.get('payment_status') or 'N/A'}",
    ]
    if order.get("mpesa_receipt_number"):
        lines.append(f"M-Pesa Receipt: {order['mpesa_receipt_number']}")
    lines += ["", rule, THANKS, rule, ""]
    return "\n".join(lines)


def render_invoice(order: dict, items: List[dict], admin_copy: bool = False) -> Invoice:
    """Render the richest invoice that succeeds: table PDF, then simple PDF, then plain text."""
    stem = f"{'admin' if admin_copy else 'customer'}-invoice-{order.get('order_number', 'order')}"
    try:
        return Invoice(render_table_pdf(order, items, admin_copy), "application/pdf", f"{stem}.pdf")
    except Exception as e:
        logger.warning("Table invoice failed for %s, trying simple layout: %s", order.get("order_number"), e)
    try:
        return Invoice(render_simple_pdf(order, items, admin_copy), "application/pdf", f"{stem}.pdf")
    except Exception:
        logger.exception("Both PDF invoice layouts failed for %s", order.get("order_number"))
    return Invoice(render_text(order, items, admin_copy).encode("utf-8"), "text/plain", f"{stem}.txt")
