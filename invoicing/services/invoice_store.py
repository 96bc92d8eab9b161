"""
Invoice store: durable invoices, per-invoice advisory locks and the lifecycle state machine.

All cross-worker coordination goes through try_acquire. A lock is a token plus an
expiry written by one conditional UPDATE; whoever's UPDATE matched owns the invoice
until it applies an outcome, releases, or the TTL lapses.
"""

import functools
import logging
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal

from django.db import DatabaseError, transaction
from django.db.models import Q
from django.utils import timezone

from invoicing.models import (
    ACTIONABLE_STATUSES,
    TERMINAL_STATUSES,
    Invoice,
    InvoiceStatus,
    LineItem,
    SubmissionAttempt,
    can_transition,
)
from invoicing.services.invoice_number import InvoiceNumberError, get_next_invoice_number
from invoicing.services.vat_calculator import (
    VAT_RATE,
    InvalidLineItem,
    InvoiceTotals,
    compute_line_amounts,
    line_fields,
)

logger = logging.getLogger("invoicing")

DEFAULT_LOCK_TTL_MS = 90_000


class StoreError(Exception):
    """Base for invoice store errors."""


class AlreadyLocked(StoreError):
    """Another worker holds the invoice, or it is no longer actionable."""


class StaleLock(StoreError):
    """Lock token no longer matches; another worker took over the invoice."""


class InvalidTransition(StoreError):
    """Requested status change is not allowed by the lifecycle state machine."""


class StoreUnavailable(StoreError):
    """Database could not be reached. Fatal to a tick, never to a single invoice."""


@dataclass(frozen=True)
class LockToken:
    invoice_id: int
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class Transition:
    """Outcome to persist for one attempt. Build with the classmethods."""

    status: str
    outcome_kind: str
    last_error: str | None = None
    authority_reference: str | None = None
    next_attempt_at: datetime | None = None
    needs_attention: bool = False
    status_code: int | None = None

    @classmethod
    def processed(cls, reference: str, status_code: int | None = None) -> "Transition":
        return cls(
            status=InvoiceStatus.PROCESSED,
            outcome_kind="ACCEPTED",
            authority_reference=reference,
            status_code=status_code,
        )

    @classmethod
    def rejected(cls, reason: str, status_code: int | None = None) -> "Transition":
        return cls(status=InvoiceStatus.FAILED, outcome_kind="REJECTED", last_error=reason, status_code=status_code)

    @classmethod
    def invalid(cls, reason: str) -> "Transition":
        return cls(status=InvoiceStatus.FAILED, outcome_kind="INVALID", last_error=reason)

    @classmethod
    def retry(cls, cause: str, next_attempt_at: datetime, status_code: int | None = None) -> "Transition":
        return cls(
            status=InvoiceStatus.SUBMITTING,
            outcome_kind="TRANSIENT",
            last_error=cause,
            next_attempt_at=next_attempt_at,
            status_code=status_code,
        )

    @classmethod
    def retry_ceiling(cls, cause: str, status_code: int | None = None) -> "Transition":
        return cls(
            status=InvoiceStatus.FAILED,
            outcome_kind="RETRY_CEILING",
            last_error=f"RetryCeilingExceeded: {cause}",
            needs_attention=True,
            status_code=status_code,
        )


def _store_errors(func):
    """Re-raise database failures as StoreUnavailable."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DatabaseError as e:
            logger.error("Invoice store unavailable in %s: %s", func.__name__, e)
            raise StoreUnavailable(str(e)) from e

    return wrapper


def _lock_free(now: datetime) -> Q:
    return Q(lock_token="") | Q(lock_expires_at__isnull=True) | Q(lock_expires_at__lte=now)


def _check_transition(current: str, target: str) -> None:
    try:
        allowed = can_transition(current, target)
    except ValueError as e:
        raise InvalidTransition(f"Unknown status in {current} -> {target}") from e
    if not allowed:
        raise InvalidTransition(f"{current} -> {target} is not allowed")


class InvoiceStore:
    """Django ORM backed invoice store."""

    def __init__(self, lock_ttl_ms: int = DEFAULT_LOCK_TTL_MS, vat_rate: Decimal = VAT_RATE):
        self.lock_ttl_ms = lock_ttl_ms
        self.vat_rate = vat_rate

    @_store_errors
    def create_pending(
        self,
        terminal_id: str,
        seller_tin: str,
        lines: Iterable[dict],
        *,
        buyer_tin: str = "",
        buyer_name: str = "",
        payment_method: str = "CASH",
        invoice_date_time: datetime | None = None,
    ) -> Invoice:
        """
        Create a PENDING invoice with its line items and derived summary.
        Raises InvalidLineItem or InvoiceNumberError before anything is written.
        """
        if not terminal_id:
            raise InvoiceNumberError("terminal_id is required")
        lines = list(lines)
        amounts = compute_line_amounts(lines, rate=self.vat_rate)
        with transaction.atomic():
            invoice = Invoice.objects.create(
                terminal_id=terminal_id,
                seller_tin=seller_tin,
                buyer_tin=buyer_tin,
                buyer_name=buyer_name,
                payment_method=payment_method,
                invoice_date_time=invoice_date_time or timezone.now(),
                status=InvoiceStatus.PENDING,
            )
            for index, (line, line_amounts) in enumerate(zip(lines, amounts), start=1):
                unit_price, quantity, discount, position = line_fields(line, index)
                LineItem.objects.create(
                    invoice=invoice,
                    position=position,
                    description=line.get("description", "") if isinstance(line, Mapping) else "",
                    unit_price=unit_price,
                    quantity=quantity,
                    discount=discount,
                    base_amount=line_amounts.base_amount,
                    vat_amount=line_amounts.vat_amount,
                    line_total=line_amounts.line_total,
                )
            self._write_totals(invoice, _sum_amounts(amounts))
            invoice.save(update_fields=["base_amount", "vat_amount", "invoice_total", "updated_at"])
        logger.info("Created pending invoice %s", invoice.pk, extra={"invoice_id": invoice.pk})
        return invoice

    @_store_errors
    def get(self, invoice_id: int) -> Invoice:
        return Invoice.objects.get(pk=invoice_id)

    @_store_errors
    def get_by_number(self, invoice_number: str) -> Invoice | None:
        return Invoice.objects.filter(invoice_number=invoice_number).first()

    @_store_errors
    def fetch_actionable(self, limit: int, now: datetime | None = None) -> list[Invoice]:
        """
        PENDING invoices and SUBMITTING invoices whose backoff has elapsed, excluding
        those held by a live lock. Oldest created_at first, at most limit.
        """
        if limit <= 0:
            return []
        now = now or timezone.now()
        qs = (
            Invoice.objects.filter(status__in=ACTIONABLE_STATUSES)
            .filter(Q(next_attempt_at__isnull=True) | Q(next_attempt_at__lte=now))
            .filter(_lock_free(now))
            .order_by("created_at", "id")
        )
        return list(qs[:limit])

    @_store_errors
    def try_acquire(self, invoice_id: int, now: datetime | None = None) -> LockToken:
        """
        Take the per-invoice lock. Single conditional UPDATE: of two concurrent callers
        exactly one matches the row. Raises AlreadyLocked otherwise.
        """
        now = now or timezone.now()
        token = uuid.uuid4().hex
        expires_at = now + timedelta(milliseconds=self.lock_ttl_ms)
        updated = (
            Invoice.objects.filter(pk=invoice_id, status__in=ACTIONABLE_STATUSES)
            .filter(_lock_free(now))
            .update(lock_token=token, lock_expires_at=expires_at)
        )
        if updated != 1:
            raise AlreadyLocked(f"Invoice {invoice_id} is locked or not actionable")
        return LockToken(invoice_id=invoice_id, token=token, expires_at=expires_at)

    @_store_errors
    def begin_attempt(self, lock: LockToken) -> Invoice:
        """
        Move the invoice to SUBMITTING, count the attempt, assign its number on the
        first attempt and open a SubmissionAttempt row.
        """
        with transaction.atomic():
            invoice = self._locked_invoice(lock)
            _check_transition(invoice.status, InvoiceStatus.SUBMITTING)
            if not invoice.invoice_number:
                invoice.invoice_number = get_next_invoice_number(invoice.terminal_id)
            self._open_attempt(invoice)
        logger.info(
            "Attempt %d started for invoice %s",
            invoice.attempt_count,
            invoice.invoice_number,
            extra={"invoice_id": invoice.pk, "invoice_number": invoice.invoice_number, "attempt": invoice.attempt_count},
        )
        return invoice

    @_store_errors
    def count_attempt(self, lock: LockToken) -> Invoice:
        """
        Make sure the current attempt is counted, for attempts that failed before an
        authority outcome. A no-op when begin_attempt already opened the attempt; otherwise
        the invoice moves to SUBMITTING (unnumbered if numbering failed) with a new attempt row.
        """
        with transaction.atomic():
            invoice = self._locked_invoice(lock)
            opened = SubmissionAttempt.objects.filter(
                invoice=invoice, attempt_number=invoice.attempt_count, finished_at__isnull=True,
            ).exists()
            if invoice.status == InvoiceStatus.SUBMITTING and opened:
                return invoice
            _check_transition(invoice.status, InvoiceStatus.SUBMITTING)
            self._open_attempt(invoice)
        return invoice

    @_store_errors
    def extend_lock(self, lock: LockToken, now: datetime | None = None) -> LockToken:
        """Push the lock expiry a full TTL ahead. Raises StaleLock if the lock was lost."""
        now = now or timezone.now()
        expires_at = now + timedelta(milliseconds=self.lock_ttl_ms)
        updated = Invoice.objects.filter(pk=lock.invoice_id, lock_token=lock.token).update(
            lock_expires_at=expires_at,
        )
        if updated != 1:
            raise StaleLock(f"Lock on invoice {lock.invoice_id} is no longer held")
        return replace(lock, expires_at=expires_at)

    @_store_errors
    def sync_totals(self, lock: LockToken) -> Invoice:
        """
        Recompute line and summary amounts from the line items and persist any drift.
        Raises InvalidLineItem for malformed lines or an invoice without lines.
        """
        with transaction.atomic():
            invoice = self._locked_invoice(lock)
            lines = list(invoice.line_items.order_by("position"))
            if not lines:
                raise InvalidLineItem("invoice has no line items")
            amounts = compute_line_amounts(lines, rate=self.vat_rate)
            for line, line_amounts in zip(lines, amounts):
                if (line.base_amount, line.vat_amount, line.line_total) != (
                    line_amounts.base_amount, line_amounts.vat_amount, line_amounts.line_total,
                ):
                    line.base_amount = line_amounts.base_amount
                    line.vat_amount = line_amounts.vat_amount
                    line.line_total = line_amounts.line_total
                    line.save(update_fields=["base_amount", "vat_amount", "line_total"])
            totals = _sum_amounts(amounts)
            if (invoice.base_amount, invoice.vat_amount, invoice.invoice_total) != (
                totals.base_amount, totals.vat_amount, totals.invoice_total,
            ):
                logger.warning(
                    "Invoice %s summary corrected: total %s -> %s",
                    invoice.invoice_number, invoice.invoice_total, totals.invoice_total,
                    extra={"invoice_id": invoice.pk, "invoice_number": invoice.invoice_number},
                )
                self._write_totals(invoice, totals)
                invoice.save(update_fields=["base_amount", "vat_amount", "invoice_total", "updated_at"])
        return invoice

    @_store_errors
    def apply_outcome(self, lock: LockToken, transition: Transition) -> Invoice:
        """
        Persist one attempt's outcome, close its SubmissionAttempt row and release the lock.
        Raises StaleLock if another worker took over, InvalidTransition if the move is not allowed.
        """
        now = timezone.now()
        with transaction.atomic():
            invoice = self._locked_invoice(lock)
            _check_transition(invoice.status, transition.status)
            if transition.status == InvoiceStatus.PROCESSED and not transition.authority_reference:
                raise InvalidTransition("PROCESSED requires an authority reference")

            invoice.status = transition.status
            invoice.last_error = transition.last_error
            invoice.authority_reference = (
                transition.authority_reference if transition.status == InvoiceStatus.PROCESSED else None
            )
            if transition.status in TERMINAL_STATUSES and invoice.submitted_at is None:
                invoice.submitted_at = now
            invoice.next_attempt_at = (
                transition.next_attempt_at if transition.status == InvoiceStatus.SUBMITTING else None
            )
            invoice.needs_attention = transition.needs_attention
            invoice.lock_token = ""
            invoice.lock_expires_at = None
            invoice.save(update_fields=[
                "status", "last_error", "authority_reference", "submitted_at", "next_attempt_at",
                "needs_attention", "lock_token", "lock_expires_at", "updated_at",
            ])
            SubmissionAttempt.objects.filter(
                invoice=invoice, attempt_number=invoice.attempt_count, finished_at__isnull=True,
            ).update(
                outcome_kind=transition.outcome_kind,
                status_code=transition.status_code,
                error_message=transition.last_error or "",
                finished_at=now,
            )
        logger.info(
            "Invoice %s -> %s (%s)",
            invoice.invoice_number, invoice.status, transition.outcome_kind,
            extra={
                "invoice_id": invoice.pk,
                "invoice_number": invoice.invoice_number,
                "attempt": invoice.attempt_count,
                "status_code": transition.status_code,
            },
        )
        return invoice

    @_store_errors
    def release(self, lock: LockToken) -> bool:
        """Drop the lock without a transition. False if it was already lost."""
        released = Invoice.objects.filter(pk=lock.invoice_id, lock_token=lock.token).update(
            lock_token="", lock_expires_at=None,
        )
        return released == 1

    def _locked_invoice(self, lock: LockToken) -> Invoice:
        invoice = Invoice.objects.select_for_update().filter(pk=lock.invoice_id).first()
        if invoice is None or invoice.lock_token != lock.token:
            raise StaleLock(f"Lock on invoice {lock.invoice_id} is no longer held")
        return invoice

    @staticmethod
    def _open_attempt(invoice: Invoice) -> None:
        invoice.status = InvoiceStatus.SUBMITTING
        invoice.attempt_count += 1
        invoice.next_attempt_at = None
        invoice.save(update_fields=[
            "invoice_number", "status", "attempt_count", "next_attempt_at", "updated_at",
        ])
        SubmissionAttempt.objects.create(invoice=invoice, attempt_number=invoice.attempt_count)

    @staticmethod
    def _write_totals(invoice: Invoice, totals: InvoiceTotals) -> None:
        invoice.base_amount = totals.base_amount
        invoice.vat_amount = totals.vat_amount
        invoice.invoice_total = totals.invoice_total


def _sum_amounts(amounts) -> InvoiceTotals:
    base = sum((a.base_amount for a in amounts), Decimal("0.00"))
    vat = sum((a.vat_amount for a in amounts), Decimal("0.00"))
    return InvoiceTotals(base_amount=base, vat_amount=vat, invoice_total=base + vat)
