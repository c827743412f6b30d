from __future__ import annotations

import logging
import math
import os
import random
import time
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


def env_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    return default if raw is None else str(raw)


def deep_merge(base: dict[str, Any], override: Any) -> dict[str, Any]:
    """Recursively merges `override` into `base`.

    Rules:
    - dict + dict: merge recursively
    - everything else: override replaces base

    Notes:
    - This mutates `base` and returns it.
    - Lists are replaced (not concatenated).
    """
    if not isinstance(base, dict):
        return base
    if override is None:
        return base
    if not isinstance(override, dict):
        logger.warning("deep_merge override ignored: expected dict, got %s", type(override).__name__)
        return base
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            deep_merge(base[k], v)
        else:
            base[k] = v
    return base


def is_finite(val: Any) -> bool:
    try:
        return math.isfinite(float(val))
    except (TypeError, ValueError):
        return False


def sign(x: float) -> float:
    if x > 0:
        return 1.0
    if x < 0:
        return -1.0
    return 0.0


def safe_divide(num: float, den: float, default: float = 0.0) -> float:
    """num / den, or `default` when den is zero or the result is not finite."""
    try:
        if den == 0:
            return default
        out = float(num) / float(den)
    except (TypeError, ValueError, ZeroDivisionError):
        return default
    return out if math.isfinite(out) else default


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


@dataclass(frozen=True)
class Backoff:
    base_s: float = 1.0
    max_s: float = 30.0
    jitter_pct: float = 0.25

    def delay(self, attempt: int) -> float:
        """Exponential backoff with jitter.

        attempt is 1-indexed.
        """
        a = max(1, int(attempt))
        d = min(self.max_s, self.base_s * (2 ** (a - 1)))
        j = max(0.0, float(self.jitter_pct))
        lo = d * (1.0 - j)
        hi = d * (1.0 + j)
        return random.uniform(lo, hi)


def now_ms() -> int:
    return int(time.time() * 1000)
