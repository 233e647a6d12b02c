import time
import re
from datetime import datetime, timezone
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def now_ms() -> int:
    return int(time.time() * 1000)


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def today_utc() -> str:
    # YYYYMMDD, used in ticket numbers
    return datetime.now(timezone.utc).strftime("%Y%m%d")


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None

