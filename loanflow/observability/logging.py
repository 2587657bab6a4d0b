import json
import time
from loanflow.settings import settings

# Fields that carry customer PII or free text; redacted when PII redaction is enabled
SENSITIVE_KEYS = {
    "text", "message", "reply", "content",
    "mobile", "mobileNumber", "email", "pan", "otp",
    "bankAccountNumber", "verifiedValue", "documents",
}

def _redact_value(v):
    if isinstance(v, str) and len(v) > 0:
        return f"[REDACTED:{len(v)}chars]"
    if isinstance(v, dict):
        return {k: _redact_value(val) for k, val in v.items()}
    if isinstance(v, list):
        return f"[REDACTED:{len(v)}items]"
    return v

def _clean(fields: dict) -> dict:
    clean_fields = {}
    for k, v in fields.items():
        if k in SENSITIVE_KEYS:
            clean_fields[k] = _redact_value(v)
        elif isinstance(v, dict):
            clean_fields[k] = _clean(v)
        else:
            clean_fields[k] = v
    return clean_fields

def log(event: str, **fields):
    payload = {"ts": int(time.time()), "event": event}

    if settings.ENABLE_PII_REDACTION:
        payload.update(_clean(fields))
    else:
        payload.update(fields)

    print(json.dumps(payload, ensure_ascii=False, default=str))
