"""Prometheus metrics definitions for b2proxy.

All custom metrics use the ``b2proxy_`` prefix. HTTP-level metrics (request
count, duration, sizes) come from ``prometheus-fastapi-instrumentator`` and
are not duplicated here.

Counters reset to zero on restart.
"""

from __future__ import annotations

from prometheus_client import Counter

# Flag indicating whether metrics have been initialised via init_metrics().
_initialized: bool = False

# Per-step outcome counter  (labels: step, outcome)
upload_steps_total: Counter | None = None

# Whole-chain outcome counter  (labels: outcome)
uploads_total: Counter | None = None

bytes_uploaded_total: Counter | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    Must be called once when metrics are enabled. While metrics are disabled
    the module-level references stay ``None`` and callers skip recording.
    """
    global _initialized
    global upload_steps_total, uploads_total, bytes_uploaded_total

    if _initialized:
        return

    upload_steps_total = Counter(
        "b2proxy_upload_steps_total",
        "B2 API calls by upload step and outcome",
        ["step", "outcome"],
    )

    uploads_total = Counter(
        "b2proxy_uploads_total",
        "Upload chains by outcome",
        ["outcome"],
    )

    bytes_uploaded_total = Counter(
        "b2proxy_bytes_uploaded_total",
        "Total bytes forwarded to B2 upload URLs",
    )

    _initialized = True
