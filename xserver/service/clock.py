from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

# Components read time only through an injected clock so expiry logic can be
# driven deterministically in tests.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
