"""
CPU-bound tasks executed inside worker processes.

Tasks are plain module-level functions so a spawned worker can import them.
They receive the job payload and return a JSON-serializable dict, raising
ValueError when the payload is unusable.
"""

import math
import time
from typing import Any


def _is_prime(candidate: int) -> bool:
    for divisor in range(2, math.isqrt(candidate) + 1):
        if candidate % divisor == 0:
            return False
    return True


def calculate_primes(limit: int) -> list[int]:
    """Enumerate all primes <= limit by trial division up to the square root."""
    return [n for n in range(2, limit + 1) if _is_prime(n)]


def count_primes(payload: dict[str, Any]) -> dict[str, Any]:
    """
    Reference workload: count the primes up to ``payload["limit"]``.

    Payload expected:
    {
        "limit": 100000,
        "includePrimes": false  # optional, returns the full list
    }
    """
    limit = payload.get("limit")
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValueError(f"limit must be an integer, got {limit!r}")
    if limit < 0:
        raise ValueError(f"limit must be a non-negative integer, got {limit}")

    started = time.perf_counter()
    primes = calculate_primes(limit)
    duration_ms = round((time.perf_counter() - started) * 1000, 3)

    result: dict[str, Any] = {"count": len(primes), "durationMs": duration_ms}
    if payload.get("includePrimes"):
        result["primes"] = primes
    return result
