"""
Build the MRA EIS sales-transaction payload from a stored invoice.
Money is sent as 2dp strings so the authority sees exactly what was persisted.
"""

from decimal import Decimal

from invoicing.models import Invoice
from invoicing.services.vat_calculator import round2


def _money(value) -> str:
    return f"{round2(value):.2f}"


def _quantity(value) -> str:
    return format(Decimal(str(value)).normalize(), "f")


def build_invoice_payload(invoice: Invoice) -> dict:
    """invoiceHeader / invoiceLineItems / invoiceSummary for submit-sales-transaction."""
    header = {
        "invoiceNumber": invoice.invoice_number,
        "invoiceDateTime": invoice.invoice_date_time.isoformat(),
        "sellerTIN": invoice.seller_tin,
        "buyerTIN": invoice.buyer_tin or None,
        "buyerName": invoice.buyer_name,
        "paymentMethod": invoice.payment_method,
        "terminalId": invoice.terminal_id,
    }
    line_items = [
        {
            "lineNo": line.position,
            "description": line.description,
            "unitPrice": _money(line.unit_price),
            "quantity": _quantity(line.quantity),
            "discount": _money(line.discount),
            "taxableAmount": _money(line.base_amount),
            "vatAmount": _money(line.vat_amount),
            "total": _money(line.line_total),
        }
        for line in invoice.line_items.order_by("position")
    ]
    summary = {
        "totalTaxableAmount": _money(invoice.base_amount),
        "totalVAT": _money(invoice.vat_amount),
        "invoiceTotal": _money(invoice.invoice_total),
    }
    return {
        "invoiceHeader": header,
        "invoiceLineItems": line_items,
        "invoiceSummary": summary,
    }
