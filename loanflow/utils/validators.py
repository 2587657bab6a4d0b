"""
Format checks for everything a user can type into the onboarding chat.

All parsers return ``None`` (or raise ``ValidationError`` for the ``require_*``
helpers) and never touch the network.
"""
import re
from datetime import date, datetime
from typing import Dict, Optional, Tuple

from loanflow.errors import ValidationError

MOBILE_RE = re.compile(r"^\d{10}$")
EMAIL_RE = re.compile(r"^[^\s,@]+@[^\s,@]+\.[^\s,@]+$")
PAN_RE = re.compile(r"^[A-Z]{5}[0-9]{4}[A-Z]$")
OTP_RE = re.compile(r"^\d{6}$")
ACCOUNT_RE = re.compile(r"^[0-9]{9,18}$")
IFSC_RE = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
HTTPS_URL_RE = re.compile(r"^https://[^\s]+$")
ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")

MAX_INPUT_CHARS = 1000

_MOBILE_IN_TEXT = re.compile(r"mobile\s*[:=]?\s*(\+?91)?\s*(\d{10})\b", re.IGNORECASE)
_EMAIL_IN_TEXT = re.compile(r"email\s*[:=]?\s*([^\s,;]+@[^\s,;]+\.[^\s,;]+)", re.IGNORECASE)
_PAN_IN_TEXT = re.compile(r"\b([A-Z]{5}[0-9]{4}[A-Z])\b", re.IGNORECASE)
_OTP_IN_TEXT = re.compile(r"(?<!\d)(\d{6})(?!\d)")
_AMOUNT_IN_TEXT = re.compile(r"(?:₹|rs\.?|inr)?\s*(-?\d+(?:,\d+)*(?:\.\d{1,2})?)", re.IGNORECASE)
_ACCOUNT_IN_TEXT = re.compile(r"(?:account|a/c|acc)(?:\s*(?:number|no\.?))?\s*[:=]?\s*(\d+)", re.IGNORECASE)
_IFSC_IN_TEXT = re.compile(r"ifsc(?:\s*code)?\s*[:=]?\s*([A-Za-z0-9]+)", re.IGNORECASE)
_BANK_IN_TEXT = re.compile(r"bank(?:\s*name)?\s*[:=]\s*([^,;\n]+)", re.IGNORECASE)
_TYPE_IN_TEXT = re.compile(r"type\s*[:=]?\s*(savings?|current)", re.IGNORECASE)
_URL_IN_TEXT = re.compile(r"(https://[^\s,;]+)")

_YES = re.compile(r"^(yes|sure|okay|ok|y|yeah|yep|proceed|confirm|go ahead)\b", re.IGNORECASE)
_NO = re.compile(r"^(no|nope|n|never|not now|cancel|skip)\b", re.IGNORECASE)


def sanitize_input(text) -> str:
    if not isinstance(text, str):
        return ""
    text = _SCRIPT_RE.sub("", text)
    text = _TAG_RE.sub("", text)
    text = _WS_RE.sub(" ", text).strip()
    return text[:MAX_INPUT_CHARS]


def parse_consent(text: str) -> Optional[bool]:
    """True for yes, False for no, None when the answer is unclear."""
    t = (text or "").strip()
    if _NO.match(t):
        return False
    if _YES.match(t):
        return True
    return None


def parse_contact(text: str) -> Optional[Tuple[str, str]]:
    m = _MOBILE_IN_TEXT.search(text or "")
    e = _EMAIL_IN_TEXT.search(text or "")
    if not m or not e:
        return None
    mobile, email = m.group(2), e.group(1).strip().lower()
    if not MOBILE_RE.match(mobile) or not EMAIL_RE.match(email):
        return None
    return mobile, email


def parse_pan(text: str) -> Optional[str]:
    m = _PAN_IN_TEXT.search(text or "")
    return m.group(1).upper() if m else None


def parse_otp(text: str) -> Optional[str]:
    m = _OTP_IN_TEXT.search(text or "")
    return m.group(1) if m else None


def parse_amount(text: str) -> Optional[float]:
    m = _AMOUNT_IN_TEXT.search(text or "")
    if not m:
        return None
    try:
        return float(m.group(1).replace(",", ""))
    except ValueError:
        return None


def parse_bank_details(text: str) -> Optional[Dict[str, str]]:
    """
    Reads ``account: <digits>, ifsc: <code>, bank: <name>[, type: savings|current]``.
    Returns None when account or IFSC are missing or malformed.
    """
    acc = _ACCOUNT_IN_TEXT.search(text or "")
    ifsc = _IFSC_IN_TEXT.search(text or "")
    if not acc or not ifsc:
        return None
    account, code = acc.group(1), ifsc.group(1).upper()
    if not ACCOUNT_RE.match(account) or not IFSC_RE.match(code):
        return None
    bank = _BANK_IN_TEXT.search(text or "")
    kind = _TYPE_IN_TEXT.search(text or "")
    account_type = "SAVINGS_ACCOUNT"
    if kind and kind.group(1).lower().startswith("current"):
        account_type = "CURRENT_ACCOUNT"
    return {
        "bankAccountNumber": account,
        "ifscCode": code,
        "bankName": bank.group(1).strip() if bank else code[:4],
        "bankAccountType": account_type,
    }


def parse_document(text: str, allowed_types) -> Optional[Dict[str, str]]:
    """Finds a document type from `allowed_types` and an https link in free text."""
    upper = (text or "").upper().replace(" ", "_")
    doc_type = next((t for t in allowed_types if t in upper), None)
    url = _URL_IN_TEXT.search(text or "")
    if not doc_type or not url:
        return None
    return {"documentType": doc_type, "fileUrl": url.group(1)}


def require_years_ahead(value: str, min_years: int, max_years: int, today: date | None = None) -> str:
    if not ISO_DATE_RE.match(value or ""):
        raise ValidationError("endDate must be in YYYY-MM-DD format", field="endDate")
    try:
        end = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError("endDate is not a valid calendar date", field="endDate")
    base = today or date.today()
    years = (end - base).days / 365.25
    if years < min_years or years > max_years:
        raise ValidationError(
            f"endDate must be between {min_years} and {max_years} years from today", field="endDate"
        )
    return value
