from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    # Use UTC so stored timestamps compare consistently across regions.
    return datetime.now(timezone.utc)
