import pytest

import invoice
from invoice import ksh, render_invoice, render_simple_pdf, render_table_pdf, render_text

ORDER = {
    "id": "66a1f0c2e4b0a1b2c3d4e5f6",
    "order_number": "JHLZ8K3QXA9F2",
    "created_at": "2026-03-14T09:30:00+00:00",
    "delivery_name": "Wanjiru Kamau",
    "delivery_phone": "0722000111",
    "delivery_address": "Moi Avenue, Nairobi, opposite the old post office",
    "notes": "Gift wrap please & add a card <3",
    "payment_method": "mpesa",
    "payment_status": "paid",
    "mpesa_receipt_number": "SGH7XK2L9P",
    "subtotal": 6000,
    "delivery_fee": 200,
    "total": 6200,
}
ITEMS = [
    {"product_name": "Silver Necklace", "price": 1000, "quantity": 3},
    {"product_name": "Ruby & Gold Earrings", "price": 3000, "quantity": 1},
]


@pytest.mark.parametrize("value, expected", [
    (0, "KSh 0.00"),
    (1234.5, "KSh 1,234.50"),
    ("6200", "KSh 6,200.00"),
    (None, "KSh 0.00"),
    ("n/a", "KSh 0.00"),
])
def test_ksh(value, expected):
    assert ksh(value) == expected


def test_table_pdf_is_a_pdf():
    content = render_table_pdf(ORDER, ITEMS)
    assert content.startswith(b"%PDF")


def test_simple_pdf_is_a_pdf():
    content = render_simple_pdf(ORDER, ITEMS, admin_copy=True)
    assert content.startswith(b"%PDF")


def test_invoice_with_no_items_still_renders():
    result = render_invoice(ORDER, [])
    assert result.media_type == "application/pdf"
    assert result.content.startswith(b"%PDF")


def test_invoice_with_many_items_spans_pages():
    items = [{"product_name": f"Charm #{n}", "price": 150, "quantity": 2} for n in range(80)]
    assert render_table_pdf(ORDER, items).startswith(b"%PDF")
    assert render_simple_pdf(ORDER, items).startswith(b"%PDF")


def test_invoice_filenames():
    assert render_invoice(ORDER, ITEMS).filename == "customer-invoice-JHLZ8K3QXA9F2.pdf"
    assert render_invoice(ORDER, ITEMS, admin_copy=True).filename == "admin-invoice-JHLZ8K3QXA9F2.pdf"


def test_text_invoice_lists_order():
    text = render_text(ORDER, ITEMS)
    assert "JEWEL HAVEN INVOICE" in text
    assert "CUSTOMER COPY" in text
    assert "Invoice Number: JHLZ8K3QXA9F2" in text
    assert "Date: 14/03/2026" in text
    assert "Silver Necklace" in text
    assert "  Total: KSh 3,000.00" in text
    assert "Delivery Fee: KSh 200.00" in text
    assert "Total: KSh 6,200.00" in text
    assert "M-Pesa Receipt: SGH7XK2L9P" in text


def test_text_invoice_without_receipt_or_date():
    order = {**ORDER, "mpesa_receipt_number": None, "created_at": None}
    text = render_text(order, [], admin_copy=True)
    assert "ADMIN COPY" in text
    assert "Date: N/A" in text
    assert "M-Pesa Receipt" not in text


def test_falls_back_to_simple_layout(monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("layout overflow")

    monkeypatch.setattr(invoice, "render_table_pdf", broken)
    result = render_invoice(ORDER, ITEMS)
    assert result.media_type == "application/pdf"
    assert result.content.startswith(b"%PDF")


def test_falls_back_to_plain_text(monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("no fonts")

    monkeypatch.setattr(invoice, "render_table_pdf", broken)
    monkeypatch.setattr(invoice, "render_simple_pdf", broken)
    result = render_invoice(ORDER, ITEMS, admin_copy=True)
    assert result.media_type == "text/plain"
    assert result.filename == "admin-invoice-JHLZ8K3QXA9F2.txt"
    assert b"ADMIN COPY" in result.content
