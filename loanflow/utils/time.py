import random
import string
import time
from datetime import datetime, timezone

def now_ms() -> int:
    return int(time.time() * 1000)

def now_s() -> float:
    return time.time()

def provider_timestamp(at: datetime | None = None) -> str:
    """UTC timestamp in the yyyyMMddHHmmss form the provider signs over."""
    dt = at or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y%m%d%H%M%S")

def new_message_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"msg_{now_ms()}_{suffix}"

def iso_date_years_from(years: int, today: datetime | None = None) -> str:
    """Same calendar day `years` ahead (Feb 29 falls back to Feb 28)."""
    base = (today or datetime.now(timezone.utc)).date()
    try:
        target = base.replace(year=base.year + years)
    except ValueError:
        target = base.replace(year=base.year + years, day=28)
    return target.isoformat()
