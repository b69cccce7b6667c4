"""Wall-clock helper; patch ``clock.now_ms`` in tests to control time."""

import time


def now_ms() -> float:
    """Current Unix time in milliseconds."""
    return time.time() * 1000
