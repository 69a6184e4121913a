from __future__ import annotations
import random, string, time


def new_job_id() -> str:
    suf = "".join(random.choice(string.ascii_lowercase + string.digits) for _ in range(9))
    return f"job-{int(time.time() * 1000)}-{suf}"


def elapsed_ms(start: float) -> int:
    """start lấy từ time.monotonic()."""
    return max(0, int((time.monotonic() - start) * 1000))
