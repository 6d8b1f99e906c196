from __future__ import annotations

import random
from typing import Any, Dict, Mapping, Optional

RETRY_KEYS = ("max_retries", "retry_interval", "backoff", "jitter")

# camelCase spelling used by imported definitions; retryInterval is in milliseconds
_CAMEL_CASE_KEYS = {"maxRetries": "max_retries", "retryInterval": "retry_interval"}


def compute_backoff(
    attempt: int, base: float = 1.5, jitter: float = 0.5, interval: float = 0.0
) -> float:
    """Compute exponential backoff with jitter on top of a fixed interval.

    A ``base`` of 0 disables the exponential part.
    """
    delay = interval + (base ** attempt if base > 0 else 0.0)
    if jitter > 0:
        delay += random.uniform(0, jitter)
    return delay


def normalize_retry_config(config: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Return ``config`` with snake_case keys and ``retry_interval`` in seconds.

    ``maxRetries`` and ``retryInterval`` (milliseconds) are accepted as
    aliases. Unknown keys, duplicate settings and negative or non-numeric
    values raise ``ValueError``.
    """
    normalized: Dict[str, Any] = {}
    for key, value in (config or {}).items():
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ValueError(f"retry_config {key} must be a non-negative number, got {value!r}")
        if key == "retryInterval":
            value = value / 1000
        key = _CAMEL_CASE_KEYS.get(key, key)
        if key not in RETRY_KEYS:
            raise ValueError(
                f"Unknown retry_config key {key!r}; expected one of {', '.join(RETRY_KEYS)}"
            )
        if key in normalized:
            raise ValueError(f"retry_config sets {key} more than once")
        normalized[key] = value
    if "max_retries" in normalized:
        normalized["max_retries"] = int(normalized["max_retries"])
    return normalized


def retry_delay(attempt: int, retry_config: Mapping[str, Any]) -> float:
    """Delay before retry ``attempt`` as described by a flow's ``retry_config``.

    Recognised keys are ``retry_interval`` (seconds, default 0), ``backoff``
    (exponent base, default 0 for a flat interval) and ``jitter``.
    """
    return compute_backoff(
        attempt,
        base=float(retry_config.get("backoff", 0)),
        jitter=float(retry_config.get("jitter", 0)),
        interval=float(retry_config.get("retry_interval", 0)),
    )
