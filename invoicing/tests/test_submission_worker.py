"""
Submission worker tests with an in-memory authority stub.
Workers run with concurrency 1 so attempts execute inline inside the test transaction.
"""

import random
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

from django.test import TestCase
from django.utils import timezone

from invoicing.models import Invoice, InvoiceStatus, LineItem, SubmissionAttempt
from invoicing.services.authority_client import Accepted, Rejected, TransientFailure
from invoicing.services.invoice_store import InvoiceStore, StaleLock, StoreUnavailable
from invoicing.services.pipeline_config import PipelineConfig
from invoicing.services.submission_worker import OUTCOME_ACCEPTED, SubmissionWorker


class StubAuthority:
    """Remembers accepted invoice numbers the way the real authority does."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.accepted = {}
        self.submitted = []
        self.lookups = []

    def submit(self, invoice):
        self.submitted.append(invoice.invoice_number)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, Accepted):
            self.accepted.setdefault(invoice.invoice_number, outcome.reference)
        return outcome

    def lookup(self, invoice_number):
        self.lookups.append(invoice_number)
        reference = self.accepted.get(invoice_number)
        return Accepted(reference=reference, duplicate=True) if reference else None


class LostResponseAuthority(StubAuthority):
    """Accepts every submission with a fresh reference, but the response never arrives."""

    def submit(self, invoice):
        self.submitted.append(invoice.invoice_number)
        self.accepted.setdefault(invoice.invoice_number, f"REF-{len(self.submitted)}")
        return TransientFailure(cause="read timed out")


def _config(**overrides):
    values = {"max_attempts": 3, "concurrency": 1, "batch_size": 10}
    values.update(overrides)
    return PipelineConfig.from_settings(values)


def _make_invoice(terminal_id="T01", total="1000"):
    return InvoiceStore().create_pending(
        terminal_id=terminal_id,
        seller_tin="70000001",
        lines=[{"description": "Consultancy", "unit_price": total, "quantity": 1}],
        buyer_name="Acme Ltd",
    )


def _make_due(invoice):
    Invoice.objects.filter(pk=invoice.pk).update(next_attempt_at=timezone.now() - timedelta(seconds=1))


class SubmissionWorkerTests(TestCase):
    def _worker(self, client, **overrides):
        return SubmissionWorker(_config(**overrides), client=client, rng=random.Random(0))

    def test_accepted_invoice_processed_in_one_tick(self):
        invoice = _make_invoice()
        worker = self._worker(StubAuthority(Accepted(reference="REF123")))
        result = worker.tick()
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, InvoiceStatus.PROCESSED)
        self.assertEqual(invoice.authority_reference, "REF123")
        self.assertIsNotNone(invoice.submitted_at)
        self.assertEqual(invoice.invoice_number, "T01-1")
        self.assertEqual(invoice.attempt_count, 1)
        self.assertEqual((result.fetched, result.processed, result.accepted), (1, 1, 1))

    def test_first_attempt_does_not_look_up(self):
        _make_invoice()
        client = StubAuthority(Accepted(reference="REF1"))
        self._worker(client).tick()
        self.assertEqual(client.lookups, [])

    def test_retry_ceiling_after_exactly_max_attempts(self):
        invoice = _make_invoice()
        client = StubAuthority(TransientFailure(cause="HTTP 503", status_code=503))
        worker = self._worker(client, max_attempts=3)
        for expected_attempt in (1, 2, 3):
            worker.tick()
            invoice.refresh_from_db()
            self.assertEqual(invoice.attempt_count, expected_attempt)
            _make_due(invoice)
        self.assertEqual(invoice.status, InvoiceStatus.FAILED)
        self.assertTrue(invoice.needs_attention)
        self.assertIn("RetryCeilingExceeded", invoice.last_error)
        self.assertIsNotNone(invoice.submitted_at)
        self.assertEqual(len(client.submitted), 3)
        self.assertEqual(SubmissionAttempt.objects.filter(invoice=invoice).count(), 3)

        result = worker.tick()
        self.assertEqual(result.fetched, 0)
        self.assertEqual(len(client.submitted), 3)

    def test_transient_failure_schedules_backoff(self):
        invoice = _make_invoice()
        worker = self._worker(StubAuthority(TransientFailure(cause="timeout")))
        before = timezone.now()
        result = worker.tick()
        invoice.refresh_from_db()
        self.assertEqual(result.retried, 1)
        self.assertEqual(invoice.status, InvoiceStatus.SUBMITTING)
        self.assertEqual(invoice.last_error, "timeout")
        # base 2000ms * 2^1, jittered into [2000, 4000]
        self.assertGreaterEqual(invoice.next_attempt_at, before + timedelta(milliseconds=2000))
        self.assertLessEqual(invoice.next_attempt_at, timezone.now() + timedelta(milliseconds=4000))
        self.assertEqual(worker.tick().fetched, 0)

    def test_retry_after_extends_backoff(self):
        invoice = _make_invoice()
        worker = self._worker(StubAuthority(TransientFailure(cause="HTTP 429", status_code=429, retry_after=120)))
        before = timezone.now()
        worker.tick()
        invoice.refresh_from_db()
        self.assertGreaterEqual(invoice.next_attempt_at, before + timedelta(seconds=120))

    def test_lost_response_is_not_resubmitted(self):
        invoice = _make_invoice()
        client = LostResponseAuthority()
        worker = self._worker(client)
        worker.tick()
        _make_due(invoice)
        worker.tick()
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, InvoiceStatus.PROCESSED)
        self.assertEqual(invoice.authority_reference, "REF-1")
        self.assertEqual(client.submitted, ["T01-1"])
        self.assertEqual(client.lookups, ["T01-1"])

    def test_same_number_never_yields_two_references(self):
        invoice = _make_invoice()
        client = LostResponseAuthority()
        worker = self._worker(client, max_attempts=5)
        for _ in range(4):
            worker.tick()
            _make_due(invoice)
        invoice.refresh_from_db()
        self.assertEqual(len(set(client.accepted.values())), 1)
        self.assertEqual(invoice.authority_reference, client.accepted["T01-1"])

    def test_crash_mid_attempt_is_recovered_by_lookup(self):
        invoice = _make_invoice()
        store = InvoiceStore()
        lock = store.try_acquire(invoice.pk)
        store.begin_attempt(lock)
        # Worker died after the authority accepted; lock expires.
        Invoice.objects.filter(pk=invoice.pk).update(lock_expires_at=timezone.now() - timedelta(seconds=1))
        client = StubAuthority(Accepted(reference="SHOULD-NOT-BE-USED"))
        client.accepted["T01-1"] = "REF-ORIG"
        self._worker(client).tick()
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, InvoiceStatus.PROCESSED)
        self.assertEqual(invoice.authority_reference, "REF-ORIG")
        self.assertEqual(client.submitted, [])
        self.assertEqual(invoice.attempt_count, 2)

    def test_crash_on_last_attempt_goes_to_ceiling_without_submitting(self):
        invoice = _make_invoice()
        Invoice.objects.filter(pk=invoice.pk).update(
            status=InvoiceStatus.SUBMITTING, attempt_count=3, invoice_number="T01-1",
        )
        client = StubAuthority(Accepted(reference="NEW"))
        result = self._worker(client, max_attempts=3).tick()
        invoice.refresh_from_db()
        self.assertEqual(result.failed, 1)
        self.assertEqual(invoice.status, InvoiceStatus.FAILED)
        self.assertTrue(invoice.needs_attention)
        self.assertEqual(client.submitted, [])
        self.assertEqual(client.lookups, ["T01-1"])

    def test_rejected_invoice_fails_without_retry(self):
        invoice = _make_invoice()
        client = StubAuthority(Rejected(reason="Invalid seller TIN", status_code=400))
        worker = self._worker(client)
        result = worker.tick()
        invoice.refresh_from_db()
        self.assertEqual(result.rejected, 1)
        self.assertEqual(invoice.status, InvoiceStatus.FAILED)
        self.assertEqual(invoice.last_error, "Invalid seller TIN")
        self.assertFalse(invoice.needs_attention)
        self.assertIsNone(invoice.authority_reference)
        self.assertIsNotNone(invoice.submitted_at)
        self.assertEqual(worker.tick().fetched, 0)

    def test_invalid_line_item_fails_without_submitting(self):
        invoice = Invoice.objects.create(terminal_id="T01", seller_tin="70000001")
        LineItem.objects.create(
            invoice=invoice, position=1, description="Bad", unit_price=Decimal("10"), discount=Decimal("25"),
        )
        client = StubAuthority(Accepted(reference="REF"))
        result = self._worker(client).tick()
        invoice.refresh_from_db()
        self.assertEqual(result.rejected, 1)
        self.assertEqual(invoice.status, InvoiceStatus.FAILED)
        self.assertIn("InvalidLineItem", invoice.last_error)
        self.assertEqual(client.submitted, [])
        attempt = SubmissionAttempt.objects.get(invoice=invoice)
        self.assertEqual(attempt.outcome_kind, "INVALID")

    def test_invoice_without_lines_fails(self):
        invoice = Invoice.objects.create(terminal_id="T01", seller_tin="70000001")
        self._worker(StubAuthority(Accepted(reference="REF"))).tick()
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, InvoiceStatus.FAILED)

    def test_totals_corrected_before_submission(self):
        invoice = _make_invoice(total="1000")
        Invoice.objects.filter(pk=invoice.pk).update(invoice_total=Decimal("1.00"))
        seen = []

        class RecordingAuthority(StubAuthority):
            def submit(self, inv):
                seen.append(inv.invoice_total)
                return super().submit(inv)

        self._worker(RecordingAuthority(Accepted(reference="R"))).tick()
        self.assertEqual(seen, [Decimal("1000.00")])

    def test_locked_invoice_is_skipped(self):
        invoice = _make_invoice()
        InvoiceStore().try_acquire(invoice.pk)
        client = StubAuthority(Accepted(reference="REF"))
        worker = self._worker(client)
        self.assertEqual(worker.tick().fetched, 0)
        self.assertEqual(worker.process_invoice(invoice.pk), "skipped")
        self.assertEqual(client.submitted, [])

    def test_unexpected_client_error_is_transient(self):
        invoice = _make_invoice()
        result = self._worker(StubAuthority(RuntimeError("bug in adapter"))).tick()
        invoice.refresh_from_db()
        self.assertEqual(result.retried, 1)
        self.assertEqual(invoice.status, InvoiceStatus.SUBMITTING)
        self.assertIn("RuntimeError", invoice.last_error)

    def test_one_failure_does_not_halt_batch(self):
        first = _make_invoice()
        second = _make_invoice()
        client = StubAuthority(RuntimeError("boom"), Accepted(reference="REF2"))
        result = self._worker(client).tick()
        first.refresh_from_db()
        second.refresh_from_db()
        self.assertEqual(first.status, InvoiceStatus.SUBMITTING)
        self.assertEqual(second.status, InvoiceStatus.PROCESSED)
        self.assertEqual((result.retried, result.accepted), (1, 1))

    def test_unnumberable_invoice_fails_and_frees_the_queue(self):
        stuck = Invoice.objects.create(terminal_id="", seller_tin="70000001")
        LineItem.objects.create(invoice=stuck, position=1, description="X", unit_price=Decimal("10"))
        newer = _make_invoice()
        client = StubAuthority(Accepted(reference="REF"))
        result = self._worker(client, batch_size=1).tick()
        stuck.refresh_from_db()
        self.assertEqual(result.rejected, 1)
        self.assertEqual(stuck.status, InvoiceStatus.FAILED)
        self.assertEqual(stuck.attempt_count, 1)
        self.assertIn("InvoiceNumberError", stuck.last_error)
        self.assertEqual(client.submitted, [])
        self.assertEqual(SubmissionAttempt.objects.get(invoice=stuck).outcome_kind, "INVALID")

        self._worker(client, batch_size=1).tick()
        newer.refresh_from_db()
        self.assertEqual(newer.status, InvoiceStatus.PROCESSED)

    def test_unexpected_error_is_recorded_and_reaches_ceiling(self):
        invoice = _make_invoice()
        client = StubAuthority(Accepted(reference="REF"))
        worker = self._worker(client, max_attempts=3)
        with patch.object(InvoiceStore, "sync_totals", side_effect=RuntimeError("disk full")):
            result = worker.tick()
            invoice.refresh_from_db()
            self.assertEqual(result.errors, 1)
            self.assertEqual(invoice.status, InvoiceStatus.SUBMITTING)
            self.assertEqual(invoice.attempt_count, 1)
            self.assertEqual(invoice.last_error, "RuntimeError: disk full")
            self.assertGreater(invoice.next_attempt_at, timezone.now())
            self.assertEqual(invoice.lock_token, "")
            self.assertEqual(worker.tick().fetched, 0)

            for _ in range(2):
                _make_due(invoice)
                worker.tick()
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, InvoiceStatus.FAILED)
        self.assertEqual(invoice.attempt_count, 3)
        self.assertTrue(invoice.needs_attention)
        self.assertIn("RetryCeilingExceeded: RuntimeError", invoice.last_error)
        self.assertEqual(client.submitted, [])

    def test_lock_renewed_before_each_authority_call(self):
        invoice = _make_invoice()
        worker = self._worker(LostResponseAuthority())
        with patch.object(worker.store, "extend_lock", wraps=worker.store.extend_lock) as extend:
            worker.tick()
            self.assertEqual(extend.call_count, 1)
            _make_due(invoice)
            worker.tick()
            # only the lookup; it finds the invoice, so nothing is resubmitted
            self.assertEqual(extend.call_count, 2)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, InvoiceStatus.PROCESSED)

    def test_lost_lock_is_not_submitted(self):
        _make_invoice()
        client = StubAuthority(Accepted(reference="REF"))
        worker = self._worker(client)
        with patch.object(worker.store, "extend_lock", side_effect=StaleLock("taken over")):
            result = worker.tick()
        self.assertEqual(result.skipped, 1)
        self.assertEqual(client.submitted, [])

    def test_batch_size_bounds_tick(self):
        for _ in range(3):
            _make_invoice()
        result = self._worker(StubAuthority(Accepted(reference="R")), batch_size=2).tick()
        self.assertEqual(result.fetched, 2)
        self.assertEqual(Invoice.objects.filter(status=InvoiceStatus.PENDING).count(), 1)

    def test_stopping_worker_skips_queued_invoices(self):
        _make_invoice()
        client = StubAuthority(Accepted(reference="R"))
        worker = self._worker(client)
        worker.stop(drain=False)
        result = worker.tick()
        self.assertEqual(result.skipped, 1)
        self.assertEqual(client.submitted, [])


class WorkerLoopTests(TestCase):
    def test_store_unavailable_propagates_from_tick(self):
        store = MagicMock()
        store.fetch_actionable.side_effect = StoreUnavailable("down")
        worker = SubmissionWorker(_config(), store=store, client=StubAuthority(Accepted(reference="R")))
        with self.assertRaises(StoreUnavailable):
            worker.tick()

    def test_loop_backs_off_on_store_outage(self):
        store = MagicMock()
        worker = SubmissionWorker(_config(), store=store, client=StubAuthority(Accepted(reference="R")))

        def outage(limit):
            worker.stop(drain=False)
            raise StoreUnavailable("down")

        store.fetch_actionable.side_effect = outage
        with patch("invoicing.services.submission_worker.backoff_delay_ms", return_value=2000) as delay:
            worker.run_forever()
        delay.assert_called_once()
        self.assertEqual(delay.call_args.args[0], 0)

    def test_start_and_stop(self):
        store = MagicMock()
        store.fetch_actionable.return_value = []
        worker = SubmissionWorker(_config(), store=store, client=StubAuthority(Accepted(reference="R")))
        worker.start()
        self.assertTrue(worker.is_running())
        with self.assertRaises(RuntimeError):
            worker.start()
        worker.stop(drain=True, timeout=5)
        self.assertFalse(worker.is_running())

    def test_pool_path_processes_every_invoice(self):
        store = MagicMock()
        store.fetch_actionable.return_value = [MagicMock(pk=pk) for pk in (1, 2, 3)]
        worker = SubmissionWorker(_config(concurrency=3), store=store, client=StubAuthority(Accepted(reference="R")))
        with patch.object(SubmissionWorker, "process_invoice", return_value=OUTCOME_ACCEPTED) as process:
            result = worker.tick()
        self.assertEqual(result.accepted, 3)
        self.assertEqual(sorted(call.args[0] for call in process.call_args_list), [1, 2, 3])

    def test_pool_path_raises_store_unavailable_after_drain(self):
        store = MagicMock()
        store.fetch_actionable.return_value = [MagicMock(pk=pk) for pk in (1, 2)]
        worker = SubmissionWorker(_config(concurrency=2), store=store, client=StubAuthority(Accepted(reference="R")))
        with patch.object(
            SubmissionWorker, "process_invoice", side_effect=[StoreUnavailable("down"), OUTCOME_ACCEPTED],
        ) as process:
            with self.assertRaises(StoreUnavailable):
                worker.tick()
        self.assertEqual(process.call_count, 2)
