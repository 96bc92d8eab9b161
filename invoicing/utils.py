"""Utility functions for invoicing app."""

SENSITIVE_KEYS = frozenset({
    "authorization", "token", "accesstoken", "apitoken", "apikey",
    "password", "secret", "clientsecret",
})
SENSITIVE_HEADER_PREFIXES = ("bearer ", "basic ")


def mask_sensitive_fields(payload):
    """
    Mask sensitive fields before saving to logs. Call before AuthorityApiLog.create.
    Masks: Authorization, token, apiKey, password, secret (any case, _ or - separators).
    """
    return mask_sensitive_data(payload)


def mask_sensitive_data(obj):
    """Recursively mask sensitive fields in a JSON-serializable object."""
    if obj is None:
        return None
    if isinstance(obj, str):
        if obj.lower().startswith(SENSITIVE_HEADER_PREFIXES):
            return "[REDACTED]"
        return obj
    if isinstance(obj, (int, float, bool)):
        return obj
    if isinstance(obj, (list, tuple)):
        return [mask_sensitive_data(i) for i in obj]
    if isinstance(obj, dict):
        out = {}
        for k, v in obj.items():
            k_lower = str(k).lower().replace("_", "").replace("-", "")
            if k_lower in SENSITIVE_KEYS:
                out[k] = "[REDACTED]"
            else:
                out[k] = mask_sensitive_data(v)
        return out
    return obj
