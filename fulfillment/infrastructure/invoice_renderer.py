import io

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from fulfillment.application.schemas import InvoiceSnapshot
from fulfillment.core_settings import Settings

CURRENCY_SYMBOLS = {"GBP": "£", "EUR": "€", "USD": "$"}

LEFT = 20 * mm
RIGHT = 190 * mm
LINE_HEIGHT = 6 * mm
BOTTOM_MARGIN = 25 * mm


def _money(amount, currency: str) -> str:
    symbol = CURRENCY_SYMBOLS.get(currency.upper())
    if symbol:
        return f"{symbol}{amount:,.2f}"
    return f"{amount:,.2f} {currency.upper()}"


def _address_lines(address) -> list[str]:
    if address is None:
        return []
    name = " ".join(part for part in (address.first_name, address.last_name) if part)
    lines = [name, address.unit, address.line1, address.line2, address.city, address.county,
             address.postcode, address.country]
    return [line for line in lines if line]


class InvoiceRenderer:
    """Lays an invoice snapshot out on A4 pages."""

    def __init__(self, settings: Settings):
        self.company_name = settings.COMPANY_NAME
        self.company_address = settings.COMPANY_ADDRESS
        self.company_email = settings.COMPANY_EMAIL
        self.vat_number = settings.COMPANY_VAT_NUMBER

    def render(self, snapshot: InvoiceSnapshot) -> bytes:
        buf = io.BytesIO()
        pdf = canvas.Canvas(buf, pagesize=A4)
        pdf.setTitle(f"Invoice {snapshot.invoice_number}")
        pdf.setAuthor(self.company_name)
        _, height = A4

        y = height - 25 * mm
        pdf.setFont("Helvetica-Bold", 18)
        pdf.drawString(LEFT, y, self.company_name)
        pdf.setFont("Helvetica", 9)
        for line in (self.company_address, self.company_email,
                     f"VAT {self.vat_number}" if self.vat_number else ""):
            if line:
                y -= 5 * mm
                pdf.drawString(LEFT, y, line)

        pdf.setFont("Helvetica-Bold", 14)
        pdf.drawRightString(RIGHT, height - 25 * mm, f"INVOICE {snapshot.invoice_number}")
        pdf.setFont("Helvetica", 9)
        pdf.drawRightString(RIGHT, height - 31 * mm, f"Order {snapshot.order_number}")
        if snapshot.paid_at:
            pdf.drawRightString(RIGHT, height - 36 * mm, f"Paid {snapshot.paid_at:%d %b %Y}")

        y -= 12 * mm
        pdf.setFont("Helvetica-Bold", 10)
        pdf.drawString(LEFT, y, "Bill to")
        pdf.drawString(105 * mm, y, "Ship to")
        pdf.setFont("Helvetica", 9)
        billing = _address_lines(snapshot.billing_address or snapshot.shipping_address)
        shipping = _address_lines(snapshot.shipping_address)
        if snapshot.client and snapshot.client.name and not billing:
            billing = [snapshot.client.name]
        for offset in range(max(len(billing), len(shipping))):
            y -= 5 * mm
            if offset < len(billing):
                pdf.drawString(LEFT, y, billing[offset])
            if offset < len(shipping):
                pdf.drawString(105 * mm, y, shipping[offset])

        y -= 12 * mm
        pdf.setFont("Helvetica-Bold", 9)
        pdf.drawString(LEFT, y, "Item")
        pdf.drawRightString(130 * mm, y, "Qty")
        pdf.drawRightString(160 * mm, y, "Unit price")
        pdf.drawRightString(RIGHT, y, "Total")
        pdf.line(LEFT, y - 2 * mm, RIGHT, y - 2 * mm)
        pdf.setFont("Helvetica", 9)

        for item in snapshot.items:
            y -= LINE_HEIGHT
            if y < BOTTOM_MARGIN:
                pdf.showPage()
                pdf.setFont("Helvetica", 9)
                y = height - 25 * mm
            pdf.drawString(LEFT, y, item.name[:60])
            pdf.drawRightString(130 * mm, y, str(item.quantity))
            pdf.drawRightString(160 * mm, y, _money(item.unit_price, snapshot.currency))
            pdf.drawRightString(RIGHT, y, _money(item.line_total, snapshot.currency))

        # the totals block stays together above the footer
        if y - 4 * mm - 3 * LINE_HEIGHT < BOTTOM_MARGIN:
            pdf.showPage()
            y = height - 25 * mm
        y -= 4 * mm
        pdf.line(120 * mm, y, RIGHT, y)
        for label, amount, font in (
            ("Subtotal", snapshot.subtotal, "Helvetica"),
            ("Shipping", snapshot.shipping, "Helvetica"),
            ("Total", snapshot.total, "Helvetica-Bold"),
        ):
            y -= LINE_HEIGHT
            pdf.setFont(font, 10)
            pdf.drawString(125 * mm, y, label)
            pdf.drawRightString(RIGHT, y, _money(amount, snapshot.currency))

        pdf.setFont("Helvetica", 8)
        pdf.drawString(LEFT, BOTTOM_MARGIN - 10 * mm, f"Payment reference {snapshot.payment_reference}")
        pdf.showPage()
        pdf.save()
        return buf.getvalue()
