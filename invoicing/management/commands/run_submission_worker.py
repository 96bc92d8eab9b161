"""
Management command: Run the invoice submission worker.
Ticks every tick_interval_ms until SIGINT/SIGTERM, then drains in-flight submissions.
"""

import signal

from django.core.management.base import BaseCommand, CommandError

from invoicing.services.invoice_store import StoreUnavailable
from invoicing.services.pipeline_config import PipelineConfig
from invoicing.services.submission_worker import SubmissionWorker


class Command(BaseCommand):
    help = (
        "Run the submission worker: submit pending invoices to the tax authority "
        "with bounded retries, until interrupted."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--once",
            action="store_true",
            help="Run a single tick and exit",
        )

    def handle(self, *args, **options):
        config = PipelineConfig.from_settings()
        worker = SubmissionWorker(config)

        if options["once"]:
            try:
                result = worker.tick()
            except StoreUnavailable as e:
                raise CommandError(f"Invoice store unavailable: {e}") from e
            self.stdout.write(
                f"Fetched {result.fetched}, accepted {result.accepted}, rejected {result.rejected}, "
                f"retried {result.retried}, failed {result.failed}, skipped {result.skipped}"
            )
            return

        def _shutdown(signum, frame):
            self.stdout.write(self.style.WARNING(f"Signal {signum} received, draining..."))
            worker.stop(drain=False)

        signal.signal(signal.SIGINT, _shutdown)
        signal.signal(signal.SIGTERM, _shutdown)

        self.stdout.write(
            f"Submission worker running: batch {config.batch_size}, concurrency {config.concurrency}, "
            f"tick {config.tick_interval_ms}ms, max attempts {config.max_attempts}"
        )
        worker.run_forever()
        self.stdout.write(self.style.SUCCESS("Submission worker stopped."))
