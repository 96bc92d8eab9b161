"""
Submission pipeline configuration from Django settings (EIS_PIPELINE).
Validated once at load; the worker never reads settings directly.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

_POSITIVE_INT_KEYS = (
    "batch_size",
    "tick_interval_ms",
    "max_attempts",
    "backoff_base_ms",
    "backoff_cap_ms",
    "concurrency",
    "authority_timeout_ms",
    "lock_ttl_ms",
)

# The worker renews its lock before each client call. One client call is at most two
# HTTP requests (submit plus duplicate lookup), each bounded by a connect and a read timeout.
LOCK_TTL_TIMEOUT_MULTIPLE = 4

DEFAULTS = {
    "vat_rate": "0.175",
    "batch_size": 25,
    "tick_interval_ms": 30_000,
    "max_attempts": 5,
    "backoff_base_ms": 2_000,
    "backoff_cap_ms": 300_000,
    "concurrency": 4,
    "authority_timeout_ms": 20_000,
    "lock_ttl_ms": 90_000,
}


@dataclass(frozen=True)
class PipelineConfig:
    vat_rate: Decimal
    batch_size: int
    tick_interval_ms: int
    max_attempts: int
    backoff_base_ms: int
    backoff_cap_ms: int
    concurrency: int
    authority_timeout_ms: int
    lock_ttl_ms: int
    authority_base_url: str = ""
    authority_token: str = ""

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ImproperlyConfigured on inconsistent values."""
        if self.vat_rate < 0:
            raise ImproperlyConfigured(f"vat_rate must not be negative (got {self.vat_rate})")
        for key in _POSITIVE_INT_KEYS:
            value = getattr(self, key)
            if not isinstance(value, int) or value <= 0:
                raise ImproperlyConfigured(f"{key} must be a positive integer (got {value!r})")
        if self.backoff_cap_ms < self.backoff_base_ms:
            raise ImproperlyConfigured("backoff_cap_ms must be >= backoff_base_ms")
        if self.authority_timeout_ms >= self.tick_interval_ms:
            raise ImproperlyConfigured("authority_timeout_ms must be shorter than tick_interval_ms")
        if self.lock_ttl_ms <= LOCK_TTL_TIMEOUT_MULTIPLE * self.authority_timeout_ms:
            raise ImproperlyConfigured(
                f"lock_ttl_ms must be longer than {LOCK_TTL_TIMEOUT_MULTIPLE} x authority_timeout_ms "
                f"(got {self.lock_ttl_ms} for a {self.authority_timeout_ms}ms timeout)"
            )

    @property
    def tick_interval_s(self) -> float:
        return self.tick_interval_ms / 1000

    @property
    def authority_timeout_s(self) -> float:
        return self.authority_timeout_ms / 1000

    @classmethod
    def from_settings(cls, overrides: dict | None = None) -> "PipelineConfig":
        """Build from settings.EIS_PIPELINE plus the authority connection settings."""
        raw = dict(DEFAULTS)
        raw.update(getattr(settings, "EIS_PIPELINE", None) or {})
        raw.update(overrides or {})
        try:
            vat_rate = Decimal(str(raw["vat_rate"]))
        except InvalidOperation as e:
            raise ImproperlyConfigured(f"vat_rate is not a decimal: {raw['vat_rate']!r}") from e
        try:
            ints = {key: int(raw[key]) for key in _POSITIVE_INT_KEYS}
        except (TypeError, ValueError) as e:
            raise ImproperlyConfigured(f"EIS_PIPELINE: {e}") from e
        return cls(
            vat_rate=vat_rate,
            authority_base_url=raw.get("authority_base_url") or getattr(settings, "EIS_AUTHORITY_BASE_URL", ""),
            authority_token=raw.get("authority_token") or getattr(settings, "EIS_AUTHORITY_TOKEN", ""),
            **ints,
        )
