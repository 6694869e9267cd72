"""Price anomaly detection via a rolling z-score over recent closes.

The current close is compared against the mean and population standard
deviation of the closes immediately before it.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Sequence

import numpy as np

from cryptowatch.analysis.models import Anomaly, AnomalyType, Severity

logger = logging.getLogger("cryptowatch.anomaly")

DEFAULT_WINDOW = 20


def detect_anomaly(
    symbol: str,
    closes: Sequence[float],
    threshold: float = 5.0,
    window: int = DEFAULT_WINDOW,
    now: Optional[datetime] = None,
) -> Optional[Anomaly]:
    """Classify the latest close as a SPIKE/DROP when its z-score exceeds *threshold*.

    Uses the last *window* closes: the first ``window - 1`` form the
    baseline, the last one is the current price.

    Returns ``None`` during cold start (fewer than *window* closes) or
    when the current price is not anomalous.

    A perfectly flat baseline has no standard deviation.  If the current
    price equals it there is nothing to report; if it differs, the move
    is unbounded in z terms and is reported with severity HIGH and
    ``z_score=None`` instead of dividing by zero.
    """
    if window < 2:
        raise ValueError(f"anomaly window must be at least 2, got {window}")
    if len(closes) < window:
        logger.debug(
            "Anomaly check skipped for %s: %d/%d closes", symbol, len(closes), window
        )
        return None

    recent = np.asarray(closes[-window:], dtype=float)
    current = float(recent[-1])
    baseline = recent[:-1]
    mean = float(baseline.mean())
    std = float(baseline.std())

    if not np.isfinite(std) or not np.isfinite(current):
        logger.warning("Anomaly check skipped for %s: non-finite closes", symbol)
        return None

    if std == 0:
        if current == mean:
            return None
        z_score = None
        severity = Severity.HIGH
    else:
        z = abs(current - mean) / std
        if z <= threshold:
            return None
        z_score = round(z, 2)
        severity = Severity.HIGH if z > threshold * 2 else Severity.MEDIUM

    if now is None:
        now = datetime.now(timezone.utc)

    anomaly = Anomaly(
        symbol=symbol,
        current_price=current,
        avg_price=mean,
        z_score=z_score,
        threshold=threshold,
        type=AnomalyType.SPIKE if current > mean else AnomalyType.DROP,
        severity=severity,
        timestamp=now.isoformat(),
    )
    logger.warning(
        "Price anomaly detected for %s: %s (z=%s, severity=%s)",
        symbol, anomaly.type.value, z_score, severity.value,
    )
    return anomaly
