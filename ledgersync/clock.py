"""Epoch-millisecond timestamps and identifier helpers."""

import time
import uuid


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    """Generate a unique identifier such as ``exp_1a2b3c...``."""
    return f"{prefix}_{uuid.uuid4().hex}"
