"""
Drift severity classification.

Shared by the drift engine and the reconciliation engine so both grade a
value change the same way.
"""

import re
from typing import Optional, Union

from .db.models import ClauseType, DriftSeverity

# Everything except digits, sign and decimal point is dropped before parsing
_NON_NUMERIC = re.compile(r"[^0-9.+\-]")
# Longest numeric prefix, the way a lenient float parser reads "12.5.3" as 12.5
_LEADING_NUMBER = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)")

HIGH_THRESHOLD_PCT = 10.0
MEDIUM_THRESHOLD_PCT = 5.0

_MAGNITUDE_CATEGORIES = {ClauseType.FINANCIAL.value, ClauseType.COVENANT.value}


def parse_numeric(value: Optional[str]) -> Optional[float]:
    """Parse a display value like "$1,150,000" or "4.50x"; None when not numeric."""
    if value is None:
        return None
    cleaned = _NON_NUMERIC.sub("", str(value))
    match = _LEADING_NUMBER.match(cleaned)
    if not match:
        return None
    return float(match.group(0))


def classify(
    category: Union[ClauseType, str],
    baseline_value: Optional[str],
    current_value: Optional[str],
) -> DriftSeverity:
    """
    Grade the change from baseline_value to current_value.

    Numeric financial/covenant changes are graded by percent change
    (>=10% HIGH, >=5% MEDIUM, else LOW). Non-numeric definition changes are
    MEDIUM. Everything else is LOW.
    """
    category = getattr(category, "value", category)
    baseline = parse_numeric(baseline_value)
    current = parse_numeric(current_value)

    if baseline is not None and current is not None:
        if baseline != 0 and category in _MAGNITUDE_CATEGORIES:
            pct_change = abs((current - baseline) / baseline) * 100
            if pct_change >= HIGH_THRESHOLD_PCT:
                return DriftSeverity.HIGH
            if pct_change >= MEDIUM_THRESHOLD_PCT:
                return DriftSeverity.MEDIUM
        return DriftSeverity.LOW

    if category == ClauseType.DEFINITION.value:
        return DriftSeverity.MEDIUM

    return DriftSeverity.LOW
