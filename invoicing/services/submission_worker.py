"""
Submission worker: discover actionable invoices and drive each through one attempt.

Per invoice: acquire lock -> begin attempt -> validate totals -> idempotency check ->
submit -> apply outcome. Every attempt is its own lock cycle, so a crash leaves the
invoice SUBMITTING with an expiring lock for a later tick to pick up.
"""

import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass

from django.db import connections

from invoicing.models import InvoiceStatus
from invoicing.services.authority_client import Accepted, AuthorityClient, Rejected, TransientFailure
from invoicing.services.backoff import backoff_delay_ms, next_attempt_at
from invoicing.services.invoice_number import InvoiceNumberError
from invoicing.services.invoice_store import (
    AlreadyLocked,
    InvalidTransition,
    InvoiceStore,
    LockToken,
    StaleLock,
    StoreUnavailable,
    Transition,
)
from invoicing.services.pipeline_config import PipelineConfig
from invoicing.services.vat_calculator import InvalidLineItem

logger = logging.getLogger("invoicing")

OUTCOME_ACCEPTED = "accepted"
OUTCOME_REJECTED = "rejected"
OUTCOME_INVALID = "invalid"
OUTCOME_RETRIED = "retried"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_ERROR = "error"


@dataclass
class TickResult:
    fetched: int = 0
    processed: int = 0
    accepted: int = 0
    rejected: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0

    def record(self, outcome: str) -> None:
        if outcome == OUTCOME_SKIPPED:
            self.skipped += 1
            return
        if outcome == OUTCOME_ERROR:
            self.errors += 1
            return
        self.processed += 1
        if outcome == OUTCOME_ACCEPTED:
            self.accepted += 1
        elif outcome in (OUTCOME_REJECTED, OUTCOME_INVALID):
            self.rejected += 1
        elif outcome == OUTCOME_RETRIED:
            self.retried += 1
        elif outcome == OUTCOME_FAILED:
            self.failed += 1
        else:
            raise TypeError(f"Unknown invoice outcome: {outcome!r}")

    def as_dict(self) -> dict:
        return asdict(self)


class SubmissionWorker:
    """
    Timer-driven worker with injected configuration, store and authority client.
    start()/stop() own the loop thread; tick() is also callable directly (Celery, --once).
    """

    def __init__(
        self,
        config: PipelineConfig,
        store: InvoiceStore | None = None,
        client: AuthorityClient | None = None,
        rng: random.Random | None = None,
    ):
        self.config = config
        self.store = store or InvoiceStore(lock_ttl_ms=config.lock_ttl_ms, vat_rate=config.vat_rate)
        self.client = client or AuthorityClient.from_config(config)
        self.rng = rng or random.Random()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # Loop lifecycle

    def start(self) -> None:
        """Run the loop in a background thread."""
        if self.is_running():
            raise RuntimeError("Submission worker is already running")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="eis-submission-worker", daemon=True)
        self._thread.start()
        logger.info("Submission worker started (tick every %sms)", self.config.tick_interval_ms)

    def stop(self, drain: bool = True, timeout: float | None = None) -> None:
        """
        Signal shutdown. Invoices already in flight finish their authority call and
        outcome; queued ones are skipped. With drain, wait for the loop thread to exit.
        """
        self._stop_event.set()
        thread = self._thread
        if drain and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("Submission worker stop requested (drain=%s)", drain)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def run_forever(self) -> None:
        """Tick until stop(). Store outages back off the whole loop."""
        store_failures = 0
        while not self._stop_event.is_set():
            wait_s = self.config.tick_interval_s
            try:
                self.tick()
                store_failures = 0
            except StoreUnavailable as e:
                store_failures += 1
                delay_ms = backoff_delay_ms(
                    store_failures - 1, self.config.backoff_base_ms, self.config.backoff_cap_ms, rng=self.rng,
                )
                wait_s = max(wait_s, delay_ms / 1000)
                logger.error(
                    "Invoice store unavailable (%d consecutive), backing off %.1fs: %s",
                    store_failures, wait_s, e,
                )
            self._stop_event.wait(wait_s)
        logger.info("Submission worker loop exited")

    # One tick

    def tick(self) -> TickResult:
        """
        Process one bounded batch and drain the pool before returning.
        Raises StoreUnavailable if the store could not be reached.
        """
        result = TickResult()
        invoices = self.store.fetch_actionable(self.config.batch_size)
        result.fetched = len(invoices)
        invoice_ids = [invoice.pk for invoice in invoices]

        if self.config.concurrency <= 1 or len(invoice_ids) <= 1:
            for invoice_id in invoice_ids:
                result.record(self.process_invoice(invoice_id))
        else:
            store_error = None
            workers = min(self.config.concurrency, len(invoice_ids))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="eis-submit") as pool:
                futures = [pool.submit(self._process_in_thread, invoice_id) for invoice_id in invoice_ids]
                for future in futures:
                    try:
                        result.record(future.result())
                    except StoreUnavailable as e:
                        store_error = e
            if store_error is not None:
                raise store_error

        if result.fetched:
            logger.info("Submission tick: %s", result.as_dict())
        return result

    def _process_in_thread(self, invoice_id: int) -> str:
        try:
            return self.process_invoice(invoice_id)
        finally:
            connections.close_all()

    # One invoice

    def process_invoice(self, invoice_id: int) -> str:
        """
        Run one attempt for one invoice and return its outcome label.
        Lock races are skipped; only StoreUnavailable propagates.
        """
        if self._stop_event.is_set():
            return OUTCOME_SKIPPED
        try:
            lock = self.store.try_acquire(invoice_id)
        except AlreadyLocked:
            return OUTCOME_SKIPPED

        try:
            return self._attempt(lock)
        except StaleLock:
            logger.info("Lock on invoice %s lost mid-attempt; skipping", invoice_id, extra={"invoice_id": invoice_id})
            return OUTCOME_SKIPPED
        except StoreUnavailable:
            raise
        except InvalidTransition as e:
            logger.error("Invoice %s: %s", invoice_id, e, extra={"invoice_id": invoice_id})
            return self._record_error(lock, e)
        except Exception as e:
            logger.exception("Unexpected error processing invoice %s", invoice_id, extra={"invoice_id": invoice_id})
            return self._record_error(lock, e)

    def _record_error(self, lock: LockToken, error: Exception) -> str:
        """Count the attempt, then schedule a retry with backoff or fail at the ceiling."""
        cause = f"{type(error).__name__}: {error}"
        try:
            invoice = self.store.count_attempt(lock)
            if invoice.attempt_count >= self.config.max_attempts:
                self.store.apply_outcome(lock, Transition.retry_ceiling(cause))
                return OUTCOME_FAILED
            when = next_attempt_at(
                invoice.attempt_count, self.config.backoff_base_ms, self.config.backoff_cap_ms, rng=self.rng,
            )
            self.store.apply_outcome(lock, Transition.retry(cause, when))
        except StaleLock:
            return OUTCOME_SKIPPED
        except StoreUnavailable:
            raise
        except Exception:
            logger.exception(
                "Could not record failure for invoice %s", lock.invoice_id, extra={"invoice_id": lock.invoice_id},
            )
            self.store.release(lock)
        return OUTCOME_ERROR

    def _attempt(self, lock: LockToken) -> str:
        invoice = self.store.get(lock.invoice_id)
        if invoice.status == InvoiceStatus.SUBMITTING and invoice.attempt_count >= self.config.max_attempts:
            # Previous attempt died before recording its outcome; no attempts left.
            return self._settle_exhausted(lock, invoice)

        try:
            invoice = self.store.begin_attempt(lock)
        except InvoiceNumberError as e:
            logger.warning("Invoice %s cannot be numbered: %s", lock.invoice_id, e, extra={"invoice_id": lock.invoice_id})
            self.store.count_attempt(lock)
            self.store.apply_outcome(lock, Transition.invalid(f"InvoiceNumberError: {e}"))
            return OUTCOME_INVALID

        try:
            invoice = self.store.sync_totals(lock)
        except InvalidLineItem as e:
            logger.warning(
                "Invoice %s has invalid line items: %s", invoice.invoice_number, e,
                extra={"invoice_id": invoice.pk, "invoice_number": invoice.invoice_number},
            )
            self.store.apply_outcome(lock, Transition.invalid(f"InvalidLineItem: {e}"))
            return OUTCOME_INVALID

        outcome = self._submit_once(lock, invoice)
        return self._apply(lock, invoice, outcome)

    def _submit_once(self, lock: LockToken, invoice):
        """
        The invoice number is the idempotency key. After the first attempt, ask the
        authority before sending again; an unanswered lookup is retried, never bypassed.
        """
        if invoice.attempt_count > 1:
            found = self._call_client(lock, self.client.lookup, invoice.invoice_number)
            if isinstance(found, Accepted):
                logger.info(
                    "Invoice %s already accepted as %s; not resubmitting",
                    invoice.invoice_number, found.reference,
                    extra={"invoice_id": invoice.pk, "invoice_number": invoice.invoice_number},
                )
                return found
            if isinstance(found, TransientFailure):
                return found
            if found is not None:
                raise TypeError(f"Unknown lookup result: {found!r}")
        return self._call_client(lock, self.client.submit, invoice)

    def _call_client(self, lock: LockToken, method, *args):
        # Each client call gets a full TTL; StaleLock here means nothing is sent.
        self.store.extend_lock(lock)
        try:
            return method(*args)
        except Exception as e:
            logger.exception("Authority client raised %s", type(e).__name__)
            return TransientFailure(cause=f"Unexpected {type(e).__name__}: {e}")

    def _apply(self, lock: LockToken, invoice, outcome) -> str:
        extra = {"invoice_id": invoice.pk, "invoice_number": invoice.invoice_number, "attempt": invoice.attempt_count}
        if isinstance(outcome, Accepted):
            self.store.apply_outcome(lock, Transition.processed(outcome.reference, outcome.status_code))
            return OUTCOME_ACCEPTED
        elif isinstance(outcome, Rejected):
            logger.warning("Invoice %s rejected: %s", invoice.invoice_number, outcome.reason, extra=extra)
            self.store.apply_outcome(lock, Transition.rejected(outcome.reason, outcome.status_code))
            return OUTCOME_REJECTED
        elif isinstance(outcome, TransientFailure):
            if invoice.attempt_count >= self.config.max_attempts:
                logger.error(
                    "Invoice %s reached retry ceiling after %d attempts: %s",
                    invoice.invoice_number, invoice.attempt_count, outcome.cause, extra=extra,
                )
                self.store.apply_outcome(lock, Transition.retry_ceiling(outcome.cause, outcome.status_code))
                return OUTCOME_FAILED
            when = next_attempt_at(
                invoice.attempt_count,
                self.config.backoff_base_ms,
                self.config.backoff_cap_ms,
                rng=self.rng,
                retry_after_s=outcome.retry_after,
            )
            logger.warning(
                "Invoice %s transient failure, retry at %s: %s",
                invoice.invoice_number, when.isoformat(), outcome.cause, extra=extra,
            )
            self.store.apply_outcome(lock, Transition.retry(outcome.cause, when, outcome.status_code))
            return OUTCOME_RETRIED
        raise TypeError(f"Unknown submission outcome: {outcome!r}")

    def _settle_exhausted(self, lock: LockToken, invoice) -> str:
        found = self._call_client(lock, self.client.lookup, invoice.invoice_number)
        if isinstance(found, Accepted):
            self.store.apply_outcome(lock, Transition.processed(found.reference, found.status_code))
            return OUTCOME_ACCEPTED
        cause = invoice.last_error or "attempt interrupted before an outcome was recorded"
        self.store.apply_outcome(lock, Transition.retry_ceiling(cause))
        return OUTCOME_FAILED
