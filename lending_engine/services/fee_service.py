from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal

from .errors import ValidationError
from .workflow import AUTO_APPROVED_SEVERITIES, DamageSeverity, ReturnStatus, parse_severity


_CENTS = Decimal("0.01")
_SECONDS_PER_DAY = 24 * 60 * 60


def money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(_CENTS, rounding=ROUND_HALF_UP)


def _as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    raise ValidationError("Return dates must be dates or datetimes.")


def compute_late_days(intended_return: date | datetime, actual_return: date | datetime) -> int:
    delta = _as_datetime(actual_return) - _as_datetime(intended_return)
    return max(0, math.floor(delta.total_seconds() / _SECONDS_PER_DAY))


def damage_fee_for(settings, severity: DamageSeverity) -> Decimal:
    if severity == DamageSeverity.NONE:
        return money(0)
    if severity == DamageSeverity.MINOR:
        return money(settings.minor_damage_fee)
    if severity == DamageSeverity.MODERATE:
        return money(settings.moderate_damage_fee)
    return money(settings.severe_damage_fee)


@dataclass(frozen=True)
class ReturnAssessment:
    severity: DamageSeverity
    late_days: int
    is_late: bool
    penalty_fee: Decimal
    damage_fee: Decimal
    total_fee: Decimal

    @property
    def needs_review(self) -> bool:
        return self.severity not in AUTO_APPROVED_SEVERITIES

    def to_dict(self) -> dict:
        return {
            "damageSeverity": self.severity.value,
            "lateDays": self.late_days,
            "isLate": self.is_late,
            "penaltyFee": str(self.penalty_fee),
            "damageFee": str(self.damage_fee),
            "totalFee": str(self.total_fee),
            "needsReview": self.needs_review,
        }


def assess_return(
    settings,
    intended_return_date: date | datetime,
    actual_return_date: date | datetime,
    damage_severity: str | DamageSeverity | None,
) -> ReturnAssessment:
    severity = parse_severity(damage_severity)
    late_days = compute_late_days(intended_return_date, actual_return_date)
    penalty_fee = money(Decimal(late_days) * money(settings.per_day_rate))
    damage_fee = damage_fee_for(settings, severity)
    return ReturnAssessment(
        severity=severity,
        late_days=late_days,
        is_late=late_days > 0,
        penalty_fee=penalty_fee,
        damage_fee=damage_fee,
        total_fee=money(penalty_fee + damage_fee),
    )


def settled_status(total_fee, is_fee_paid: bool) -> ReturnStatus:
    if money(total_fee) == 0 or is_fee_paid:
        return ReturnStatus.COMPLETED
    return ReturnStatus.APPROVED


def routed_status(assessment: ReturnAssessment, is_fee_paid: bool = False) -> ReturnStatus:
    if assessment.needs_review:
        return ReturnStatus.PENDING
    return settled_status(assessment.total_fee, is_fee_paid)
