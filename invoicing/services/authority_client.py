"""
MRA EIS authority client: serialize, send once, classify.

submit() returns Accepted, Rejected or TransientFailure and never retries;
lookup() answers "was this invoice number already accepted?" for the worker's
idempotency check. Every call is written to AuthorityApiLog.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from datetime import timezone as dt_timezone
from email.utils import parsedate_to_datetime
from urllib.parse import quote

import requests
from django.conf import settings
from django.utils import timezone

from invoicing.models import Invoice
from invoicing.services.authority_logger import log_authority_call, safe_json
from invoicing.services.authority_payload import build_invoice_payload
from invoicing.services.http_client import authority_request

logger = logging.getLogger("invoicing")

TRANSIENT_STATUS_CODES = frozenset({401, 403, 408, 429})
DUPLICATE_MARKERS = ("duplicate", "already exists", "already submitted", "already been submitted")
REFERENCE_KEYS = (
    "reference",
    "authorityReference",
    "transactionReference",
    "referenceNumber",
    "invoiceReference",
    "fiscalReference",
)


@dataclass(frozen=True)
class Accepted:
    reference: str
    duplicate: bool = False
    status_code: int | None = None


@dataclass(frozen=True)
class Rejected:
    reason: str
    status_code: int | None = None


@dataclass(frozen=True)
class TransientFailure:
    cause: str
    status_code: int | None = None
    retry_after: float | None = None


SubmissionOutcome = Accepted | Rejected | TransientFailure


def extract_validation_errors(response_body, status_code: int, fallback_text: str = "") -> list[str]:
    """
    Extract a list of validation error strings from an authority response body.
    Handles common keys: detail, message, title, errors, validationErrors.
    """
    errors: list[str] = []
    if not response_body or not isinstance(response_body, dict):
        if fallback_text:
            errors.append(fallback_text)
        return errors

    detail = response_body.get("detail") or response_body.get("message") or response_body.get("title")
    if detail and isinstance(detail, str):
        errors.append(detail)
    elif detail and isinstance(detail, list):
        for item in detail:
            if isinstance(item, str):
                errors.append(item)
            elif isinstance(item, dict):
                msg = item.get("message") or item.get("detail") or item.get("msg") or str(item)
                errors.append(str(msg))

    for key in ("errors", "validationErrors", "validation_errors"):
        val = response_body.get(key)
        if isinstance(val, list):
            for item in val:
                if isinstance(item, str):
                    errors.append(item)
                elif isinstance(item, dict):
                    msg = item.get("message") or item.get("detail") or item.get("field") or str(item)
                    errors.append(str(msg))
        elif isinstance(val, dict):
            for field, messages in val.items():
                if isinstance(messages, list):
                    errors.extend(f"{field}: {m}" for m in messages)
                else:
                    errors.append(f"{field}: {messages}")

    if not errors and status_code >= 400 and fallback_text:
        errors.append(fallback_text)

    return errors


def extract_reference(body) -> str | None:
    """Authority reference from the body, top level or under data/result."""
    if not isinstance(body, dict):
        return None
    for container in (body, body.get("data"), body.get("result")):
        if not isinstance(container, dict):
            continue
        for key in REFERENCE_KEYS:
            val = container.get(key)
            if val not in (None, ""):
                return str(val).strip()[:128]
    return None


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Retry-After header as seconds: either delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if timezone.is_naive(when):
        when = timezone.make_aware(when, dt_timezone.utc)
    return max((when - (now or timezone.now())).total_seconds(), 0.0)


def _is_duplicate(status_code: int, messages: list[str]) -> bool:
    if status_code == 409:
        return True
    text = " ".join(messages).lower()
    return any(marker in text for marker in DUPLICATE_MARKERS)


def _explicit_failure(body) -> bool:
    if not isinstance(body, dict):
        return False
    return body.get("success") is False or body.get("isSuccess") is False


class AuthorityClient:
    """Stateless adapter over the authority's submit and lookup endpoints."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout_s: float = 20.0,
        submit_path: str | None = None,
        lookup_path: str | None = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.timeout_s = timeout_s
        self.submit_path = submit_path or getattr(
            settings, "EIS_SUBMIT_PATH", "/api/v1/sales/submit-sales-transaction"
        )
        self.lookup_path = lookup_path or getattr(
            settings, "EIS_LOOKUP_PATH", "/api/v1/sales/transactions/{invoice_number}"
        )

    @classmethod
    def from_config(cls, config) -> "AuthorityClient":
        return cls(
            base_url=config.authority_base_url,
            token=config.authority_token,
            timeout_s=config.authority_timeout_s,
        )

    def _headers(self, invoice_number: str | None = None) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if invoice_number:
            headers["Idempotency-Key"] = invoice_number
        return headers

    def submit(self, invoice: Invoice) -> SubmissionOutcome:
        """
        Send one invoice. Exactly one HTTP call, except that a duplicate response
        is resolved with one lookup of the same invoice number.
        """
        payload = build_invoice_payload(invoice)
        number = invoice.invoice_number
        url = f"{self.base_url}{self.submit_path}"
        try:
            response = authority_request(
                "POST", url, json=payload, headers=self._headers(number), timeout=self.timeout_s,
            )
        except requests.RequestException as e:
            log_authority_call(self.submit_path, "POST", request_payload=payload, error=e, invoice_number=number)
            return TransientFailure(cause=f"{type(e).__name__}: {e}")

        log_authority_call(self.submit_path, "POST", request_payload=payload, response=response, invoice_number=number)
        return self._classify_submit(number, response)

    def _classify_submit(self, invoice_number: str, response) -> SubmissionOutcome:
        status = response.status_code
        body = safe_json(response)
        retry_after = parse_retry_after(response.headers.get("Retry-After"))

        if 200 <= status < 300:
            messages = extract_validation_errors(body, status)
            if _explicit_failure(body):
                if _is_duplicate(status, messages):
                    return self._resolve_duplicate(invoice_number, status, messages)
                if messages:
                    return Rejected(reason="; ".join(messages), status_code=status)
            reference = extract_reference(body)
            if reference:
                return Accepted(reference=reference, status_code=status)
            return TransientFailure(
                cause=f"HTTP {status} without authority reference",
                status_code=status,
            )

        if status == 429 or status >= 500 or status in TRANSIENT_STATUS_CODES:
            return TransientFailure(
                cause=f"HTTP {status}: {(response.text or '')[:200]}".rstrip(": "),
                status_code=status,
                retry_after=retry_after,
            )

        messages = extract_validation_errors(body, status, fallback_text=f"HTTP {status}")
        if _is_duplicate(status, messages):
            return self._resolve_duplicate(invoice_number, status, messages)
        return Rejected(reason="; ".join(messages) or f"HTTP {status}", status_code=status)

    def _resolve_duplicate(self, invoice_number: str, status: int, messages: list[str]) -> SubmissionOutcome:
        found = self.lookup(invoice_number)
        if isinstance(found, Accepted):
            logger.info(
                "Duplicate response for %s resolved to existing reference %s",
                invoice_number, found.reference,
                extra={"invoice_number": invoice_number, "status_code": status},
            )
            return found
        if isinstance(found, TransientFailure):
            return TransientFailure(
                cause=f"Duplicate reported but lookup failed: {found.cause}",
                status_code=status,
                retry_after=found.retry_after,
            )
        reason = "; ".join(messages) or f"HTTP {status}"
        return Rejected(reason=f"Duplicate invoice number not accepted for this seller: {reason}", status_code=status)

    def lookup(self, invoice_number: str) -> Accepted | TransientFailure | None:
        """
        Ask the authority whether invoice_number is already accepted.
        Accepted with the existing reference, None if unknown, TransientFailure if undecidable.
        """
        path = self.lookup_path.format(invoice_number=quote(invoice_number, safe=""))
        url = f"{self.base_url}{path}"
        try:
            response = authority_request("GET", url, headers=self._headers(), timeout=self.timeout_s)
        except requests.RequestException as e:
            log_authority_call(path, "GET", error=e, invoice_number=invoice_number)
            return TransientFailure(cause=f"{type(e).__name__}: {e}")

        log_authority_call(path, "GET", response=response, invoice_number=invoice_number)
        status = response.status_code
        if status == 404:
            return None
        if 200 <= status < 300:
            body = safe_json(response)
            if _explicit_failure(body):
                return None
            reference = extract_reference(body)
            if reference:
                return Accepted(reference=reference, duplicate=True, status_code=status)
            return None
        return TransientFailure(
            cause=f"Lookup HTTP {status}",
            status_code=status,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
