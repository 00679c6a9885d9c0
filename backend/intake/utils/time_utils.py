from __future__ import annotations

import time


def now_ms() -> int:
    """Return wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)
