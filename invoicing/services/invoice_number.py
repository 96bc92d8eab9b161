"""
Invoice number generation: <terminal_id>-N with auto-increment per terminal.
Numbers are the idempotency key sent to the authority; never reuse or change one.
"""

from django.db import transaction
from django.db.utils import IntegrityError

from invoicing.models import InvoiceSequence

_MAX_SEQUENCE_RETRIES = 5


class InvoiceNumberError(ValueError):
    """Invoice cannot be numbered (no terminal). Retrying will not help."""


def format_invoice_number(terminal_id: str, sequence: int) -> str:
    """Format number from terminal and sequence. Does not advance the sequence."""
    return f"{terminal_id}-{sequence}"


def get_next_invoice_number(terminal_id: str) -> str:
    """
    Return next invoice number for the terminal in format <terminal_id>-N.
    Atomic per-terminal sequence. Thread-safe; retries on concurrent create (IntegrityError).
    """
    if not terminal_id:
        raise InvoiceNumberError("terminal_id is required to number an invoice")
    for _ in range(_MAX_SEQUENCE_RETRIES):
        try:
            with transaction.atomic():
                seq = InvoiceSequence.objects.select_for_update().filter(terminal_id=terminal_id).first()
                if seq:
                    seq.last_number += 1
                    seq.save(update_fields=["last_number"])
                    return format_invoice_number(terminal_id, seq.last_number)
                InvoiceSequence.objects.create(terminal_id=terminal_id, last_number=1)
                return format_invoice_number(terminal_id, 1)
        except IntegrityError:
            # Another process created the row; retry to lock and increment
            continue
    raise RuntimeError(f"get_next_invoice_number({terminal_id}): too many retries (concurrent contention)")
