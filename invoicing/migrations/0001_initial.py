# Generated manually for the invoice submission pipeline

from decimal import Decimal

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="AuthorityApiLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("endpoint", models.CharField(max_length=255)),
                ("method", models.CharField(max_length=10)),
                ("invoice_number", models.CharField(blank=True, db_index=True, max_length=50)),
                ("request_payload", models.JSONField(default=dict)),
                ("response_payload", models.JSONField(blank=True, null=True)),
                ("status_code", models.IntegerField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "verbose_name": "Authority API Log",
                "verbose_name_plural": "Authority API Logs",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="InvoiceSequence",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("terminal_id", models.CharField(max_length=50, unique=True)),
                ("last_number", models.IntegerField(default=0)),
            ],
            options={
                "verbose_name": "Invoice Sequence",
                "verbose_name_plural": "Invoice Sequences",
            },
        ),
        migrations.CreateModel(
            name="Invoice",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("invoice_number", models.CharField(blank=True, max_length=50, null=True, unique=True)),
                ("terminal_id", models.CharField(db_index=True, max_length=50)),
                ("invoice_date_time", models.DateTimeField(default=django.utils.timezone.now)),
                ("seller_tin", models.CharField(max_length=20)),
                ("buyer_tin", models.CharField(blank=True, max_length=20)),
                ("buyer_name", models.CharField(blank=True, max_length=255)),
                ("payment_method", models.CharField(default="CASH", max_length=30)),
                ("base_amount", models.DecimalField(decimal_places=2, default=Decimal("0"), max_digits=14)),
                ("vat_amount", models.DecimalField(decimal_places=2, default=Decimal("0"), max_digits=14)),
                ("invoice_total", models.DecimalField(decimal_places=2, default=Decimal("0"), max_digits=14)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("SUBMITTING", "Submitting"),
                            ("PROCESSED", "Processed"),
                            ("FAILED", "Failed"),
                        ],
                        db_index=True,
                        default="PENDING",
                        max_length=20,
                    ),
                ),
                ("attempt_count", models.IntegerField(default=0)),
                ("last_error", models.TextField(blank=True, null=True)),
                ("needs_attention", models.BooleanField(db_index=True, default=False)),
                ("next_attempt_at", models.DateTimeField(blank=True, null=True)),
                ("authority_reference", models.CharField(blank=True, max_length=128, null=True)),
                ("submitted_at", models.DateTimeField(blank=True, null=True)),
                ("lock_token", models.CharField(blank=True, default="", max_length=64)),
                ("lock_expires_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Invoice",
                "verbose_name_plural": "Invoices",
                "ordering": ["created_at", "id"],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="invoice_status_created_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="LineItem",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("position", models.IntegerField()),
                ("description", models.CharField(max_length=255)),
                ("unit_price", models.DecimalField(decimal_places=2, max_digits=14)),
                ("quantity", models.DecimalField(decimal_places=3, default=Decimal("1"), max_digits=12)),
                ("discount", models.DecimalField(decimal_places=2, default=Decimal("0"), max_digits=14)),
                ("base_amount", models.DecimalField(decimal_places=2, default=Decimal("0"), max_digits=14)),
                ("vat_amount", models.DecimalField(decimal_places=2, default=Decimal("0"), max_digits=14)),
                ("line_total", models.DecimalField(decimal_places=2, default=Decimal("0"), max_digits=14)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="line_items",
                        to="invoicing.invoice",
                    ),
                ),
            ],
            options={
                "verbose_name": "Line Item",
                "verbose_name_plural": "Line Items",
                "ordering": ["position"],
                "unique_together": {("invoice", "position")},
            },
        ),
        migrations.CreateModel(
            name="SubmissionAttempt",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("attempt_number", models.IntegerField()),
                (
                    "outcome_kind",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("ACCEPTED", "Accepted"),
                            ("REJECTED", "Rejected"),
                            ("TRANSIENT", "Transient failure"),
                            ("INVALID", "Invalid line item"),
                            ("RETRY_CEILING", "Retry ceiling exceeded"),
                        ],
                        max_length=20,
                    ),
                ),
                ("status_code", models.IntegerField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True)),
                ("started_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("finished_at", models.DateTimeField(blank=True, null=True)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="submission_attempts",
                        to="invoicing.invoice",
                    ),
                ),
            ],
            options={
                "verbose_name": "Submission Attempt",
                "verbose_name_plural": "Submission Attempts",
                "ordering": ["-started_at", "-attempt_number"],
                "unique_together": {("invoice", "attempt_number")},
            },
        ),
    ]
