"""Receipt PDF rendering."""
from io import BytesIO

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from schemas import CanonicalOrder
from settings import Settings

MARGIN = 20 * mm
LINE = 6 * mm


def receipt_filename(reference: str) -> str:
    return f"{reference}-receipt.pdf"


def format_money(amount, currency: str) -> str:
    return f"{currency} {float(amount or 0):,.2f}"


class _Writer:
    def __init__(self, pdf: canvas.Canvas, width: float, height: float):
        self.pdf = pdf
        self.width = width
        self.height = height
        self.y = height - MARGIN

    def ensure_room(self, lines: int = 1) -> None:
        if self.y - lines * LINE < MARGIN:
            self.pdf.showPage()
            self.y = self.height - MARGIN

    def text(self, value: str, size: int = 11, bold: bool = False) -> None:
        self.ensure_room()
        self.pdf.setFont("Helvetica-Bold" if bold else "Helvetica", size)
        self.pdf.drawString(MARGIN, self.y, value)
        self.y -= LINE

    def row(self, left: str, right: str, size: int = 11, bold: bool = False) -> None:
        self.ensure_room()
        self.pdf.setFont("Helvetica-Bold" if bold else "Helvetica", size)
        self.pdf.drawString(MARGIN, self.y, left)
        self.pdf.drawRightString(self.width - MARGIN, self.y, right)
        self.y -= LINE

    def gap(self, lines: float = 0.5) -> None:
        self.y -= LINE * lines

    def rule(self) -> None:
        self.ensure_room()
        self.pdf.line(MARGIN, self.y + LINE / 2, self.width - MARGIN, self.y + LINE / 2)
        self.y -= LINE / 2


def render_receipt(order: CanonicalOrder, settings: Settings) -> bytes:
    """
    Lay out a receipt for ``order`` and return the PDF bytes.

    Optional customer fields (phone, email, address, zone) are only drawn
    when present; reference, items and totals are always drawn.
    """
    buffer = BytesIO()
    width, height = A4
    pdf = canvas.Canvas(buffer, pagesize=A4)
    pdf.setTitle(f"{settings.STORE_NAME} receipt {order.reference}")
    out = _Writer(pdf, width, height)
    currency = settings.CURRENCY
    info = order.info

    out.text(f"{settings.STORE_NAME} - Order Receipt", size=18, bold=True)
    out.gap()
    out.text(f"Reference: {order.reference}")
    out.text(f"Date: {order.created_at:%Y-%m-%d %H:%M} UTC")
    out.text(f"Status: {order.status.value}   Payment: {order.payment_status.value}")
    out.gap()

    out.text("Bill to", size=13, bold=True)
    out.text(info.name or "Customer")
    if info.phone:
        out.text(f"Phone: {info.phone}")
    if info.email:
        out.text(f"Email: {info.email}")
    if info.address:
        out.text(f"Address: {info.address}")
    if info.delivery_zone:
        out.text(f"Delivery zone: {info.delivery_zone}")
    if info.payment_method:
        out.text(f"Payment method: {info.payment_method}")
    out.gap()

    out.text("Items", size=13, bold=True)
    out.rule()
    for item in order.items:
        out.row(f"{item.title} x {item.quantity}", format_money(item.unit_price, currency))
    out.rule()

    out.row("Subtotal", format_money(order.subtotal, currency))
    out.row("Delivery", format_money(order.delivery_fee, currency))
    out.row("Total", format_money(order.grand_total, currency), size=12, bold=True)
    out.gap(1.5)

    if order.proof_url:
        out.text("Proof of payment received.", size=9)
    out.text(settings.RECEIPT_FOOTER, size=10)

    pdf.showPage()
    pdf.save()
    return buffer.getvalue()
