"""Standardized injury and illness rates.

All rates are normalized to 100 full-time workers (200,000 exposure hours a
year). Values stay exact Decimals; rounding happens only in present_rate().
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

from ..models.osha import OshaCounts, OshaRates

EXPOSURE_HOURS_BASE = Decimal(200000)
RATE_PLACES = Decimal("0.01")


def _rate(cases: int, total_hours_worked: Decimal) -> Decimal:
    if total_hours_worked <= 0:
        return Decimal(0)
    return Decimal(cases) * EXPOSURE_HOURS_BASE / total_hours_worked


def calculate_rates(counts: OshaCounts, total_hours_worked: Union[Decimal, int, str]) -> OshaRates:
    """TRIR, DART, LTIR and severity rate; zero hours gives zero rates."""
    hours = Decimal(total_hours_worked)
    return OshaRates(
        trir=_rate(counts.total_recordable, hours),
        dart_rate=_rate(counts.dart_cases, hours),
        ltir=_rate(counts.total_days_away, hours),
        severity_rate=_rate(counts.total_days_away_from_work, hours),
    )


def present_rate(value: Decimal) -> float:
    return float(Decimal(value).quantize(RATE_PLACES, rounding=ROUND_HALF_UP))
