from decimal import Decimal

from django.db import models
from django.utils import timezone


class InvoiceStatus(models.TextChoices):
    """Invoice submission lifecycle. PROCESSED and FAILED are terminal."""

    PENDING = "PENDING", "Pending"
    SUBMITTING = "SUBMITTING", "Submitting"
    PROCESSED = "PROCESSED", "Processed"
    FAILED = "FAILED", "Failed"


# Forward-only. Moving a terminal invoice back to PENDING is a manual remediation, not a transition.
ALLOWED_TRANSITIONS = {
    InvoiceStatus.PENDING: frozenset({InvoiceStatus.SUBMITTING}),
    InvoiceStatus.SUBMITTING: frozenset({
        InvoiceStatus.SUBMITTING,
        InvoiceStatus.PROCESSED,
        InvoiceStatus.FAILED,
    }),
    InvoiceStatus.PROCESSED: frozenset(),
    InvoiceStatus.FAILED: frozenset(),
}

ACTIONABLE_STATUSES = (InvoiceStatus.PENDING, InvoiceStatus.SUBMITTING)
TERMINAL_STATUSES = (InvoiceStatus.PROCESSED, InvoiceStatus.FAILED)


def can_transition(current: str, target: str) -> bool:
    return InvoiceStatus(target) in ALLOWED_TRANSITIONS[InvoiceStatus(current)]


class InvoiceSequence(models.Model):
    """Per-terminal invoice number sequence for <terminal>-N format."""

    terminal_id = models.CharField(max_length=50, unique=True)
    last_number = models.IntegerField(default=0)

    class Meta:
        verbose_name = "Invoice Sequence"
        verbose_name_plural = "Invoice Sequences"

    def __str__(self):
        return f"{self.terminal_id}-{self.last_number}"


class Invoice(models.Model):
    """Fiscal invoice awaiting or past submission to the tax authority."""

    invoice_number = models.CharField(max_length=50, unique=True, null=True, blank=True)
    terminal_id = models.CharField(max_length=50, db_index=True)
    invoice_date_time = models.DateTimeField(default=timezone.now)
    seller_tin = models.CharField(max_length=20)
    buyer_tin = models.CharField(max_length=20, blank=True)
    buyer_name = models.CharField(max_length=255, blank=True)
    payment_method = models.CharField(max_length=30, default="CASH")

    base_amount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))
    vat_amount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))
    invoice_total = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))

    status = models.CharField(
        max_length=20,
        choices=InvoiceStatus.choices,
        default=InvoiceStatus.PENDING,
        db_index=True,
    )
    attempt_count = models.IntegerField(default=0)
    last_error = models.TextField(null=True, blank=True)
    needs_attention = models.BooleanField(default=False, db_index=True)
    next_attempt_at = models.DateTimeField(null=True, blank=True)
    authority_reference = models.CharField(max_length=128, null=True, blank=True)
    submitted_at = models.DateTimeField(null=True, blank=True)

    lock_token = models.CharField(max_length=64, blank=True, default="")
    lock_expires_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Invoice"
        verbose_name_plural = "Invoices"
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="invoice_status_created_idx"),
        ]

    def __str__(self):
        return f"Invoice {self.invoice_number or self.pk} ({self.status})"


class LineItem(models.Model):
    """Invoice line. Amounts are derived by vat_calculator; never typed by hand."""

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="line_items")
    position = models.IntegerField()
    description = models.CharField(max_length=255)
    unit_price = models.DecimalField(max_digits=14, decimal_places=2)
    quantity = models.DecimalField(max_digits=12, decimal_places=3, default=Decimal("1"))
    discount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))
    base_amount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))
    vat_amount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))
    line_total = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))

    class Meta:
        verbose_name = "Line Item"
        verbose_name_plural = "Line Items"
        ordering = ["position"]
        unique_together = [["invoice", "position"]]

    def __str__(self):
        return f"Line {self.position}: {self.description}"


class SubmissionAttempt(models.Model):
    """Audit log for every submission attempt. attempt_count on the invoice is authoritative."""

    OUTCOME_KINDS = (
        ("ACCEPTED", "Accepted"),
        ("REJECTED", "Rejected"),
        ("TRANSIENT", "Transient failure"),
        ("INVALID", "Invalid line item"),
        ("RETRY_CEILING", "Retry ceiling exceeded"),
    )

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="submission_attempts")
    attempt_number = models.IntegerField()
    outcome_kind = models.CharField(max_length=20, choices=OUTCOME_KINDS, blank=True)
    status_code = models.IntegerField(null=True, blank=True)
    error_message = models.TextField(blank=True)
    started_at = models.DateTimeField(default=timezone.now)
    finished_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        verbose_name = "Submission Attempt"
        verbose_name_plural = "Submission Attempts"
        ordering = ["-started_at", "-attempt_number"]
        unique_together = [["invoice", "attempt_number"]]

    def __str__(self):
        return f"Attempt #{self.attempt_number} for invoice {self.invoice_id} ({self.outcome_kind or 'open'})"


class AuthorityApiLog(models.Model):
    """Audit log for tax authority API calls."""

    endpoint = models.CharField(max_length=255)
    method = models.CharField(max_length=10)
    invoice_number = models.CharField(max_length=50, blank=True, db_index=True)
    request_payload = models.JSONField(default=dict)
    response_payload = models.JSONField(null=True, blank=True)
    status_code = models.IntegerField(null=True, blank=True)
    error_message = models.TextField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = "Authority API Log"
        verbose_name_plural = "Authority API Logs"
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.method} {self.endpoint} - {self.status_code or 'error'}"
