"""
Read-only reconciliation views over the invoice store for dashboards and alerting.
Counts are taken per invoice; completion order across the worker pool is never assumed.
"""

from datetime import datetime, timedelta
from decimal import Decimal

from django.db.models import Count, Q, Sum
from django.utils import timezone

from invoicing.models import Invoice, InvoiceStatus


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def get_reconciliation(window_hours: int = 24, now: datetime | None = None) -> dict:
    """
    {totalInvoices, processed, pending, failed, totalAmount} over invoices created in the
    trailing window. pending includes SUBMITTING (awaiting retry or in flight).
    """
    now = now or timezone.now()
    window_start = now - timedelta(hours=window_hours)
    stats = Invoice.objects.filter(created_at__gte=window_start, created_at__lte=now).aggregate(
        total=Count("id"),
        processed=Count("id", filter=Q(status=InvoiceStatus.PROCESSED)),
        pending=Count("id", filter=Q(status__in=[InvoiceStatus.PENDING, InvoiceStatus.SUBMITTING])),
        failed=Count("id", filter=Q(status=InvoiceStatus.FAILED)),
        amount=Sum("invoice_total"),
    )
    return {
        "totalInvoices": stats["total"] or 0,
        "processed": stats["processed"] or 0,
        "pending": stats["pending"] or 0,
        "failed": stats["failed"] or 0,
        "totalAmount": stats["amount"] or Decimal("0.00"),
        "windowStart": window_start.isoformat(),
        "windowEnd": now.isoformat(),
    }


def _invoice_summary(invoice: Invoice) -> dict:
    return {
        "invoiceId": invoice.pk,
        "invoiceNumber": invoice.invoice_number,
        "invoiceDateTime": _iso(invoice.invoice_date_time),
        "sellerTIN": invoice.seller_tin,
        "buyerTIN": invoice.buyer_tin,
        "buyerName": invoice.buyer_name,
        "paymentMethod": invoice.payment_method,
        "status": invoice.status,
        "invoiceTotal": invoice.invoice_total,
        "totalVAT": invoice.vat_amount,
        "createdAt": _iso(invoice.created_at),
        "submittedAt": _iso(invoice.submitted_at),
    }


def get_invoice_status(invoice_number: str) -> dict | None:
    """Per-invoice status lookup by invoice number. None if unknown."""
    invoice = Invoice.objects.filter(invoice_number=invoice_number).first()
    if invoice is None:
        return None
    data = _invoice_summary(invoice)
    data.update({
        "baseAmount": invoice.base_amount,
        "attemptCount": invoice.attempt_count,
        "lastError": invoice.last_error,
        "authorityReference": invoice.authority_reference,
        "needsAttention": invoice.needs_attention,
        "nextAttemptAt": _iso(invoice.next_attempt_at),
    })
    return data


def get_recent_invoices(limit: int = 50) -> list[dict]:
    """Newest first, with summary totals."""
    qs = Invoice.objects.order_by("-created_at", "-id")[:max(limit, 0)]
    return [_invoice_summary(invoice) for invoice in qs]


def get_attention_queue(limit: int = 100) -> list[dict]:
    """FAILED invoices flagged for operator attention (retry ceiling), oldest first."""
    qs = (
        Invoice.objects.filter(status=InvoiceStatus.FAILED, needs_attention=True)
        .order_by("created_at", "id")[:max(limit, 0)]
    )
    return [
        {**_invoice_summary(invoice), "attemptCount": invoice.attempt_count, "lastError": invoice.last_error}
        for invoice in qs
    ]
