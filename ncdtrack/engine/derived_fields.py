"""NCDTrack — Derived-Field Calculator.

Pure functions computing percentages, differences and clamps from raw
counters. Applied on every write and on every rollup; never reads storage.
Percentages are not additive, so district values are always re-derived
from summed counters rather than summed themselves.
"""

import math
from typing import Dict, List, Mapping, Tuple

from ncdtrack.config import settings
from ncdtrack.core.metric_registry import (
    MetricDomain,
    REDUCED_BUCKETS,
    WEIGHT_BUCKETS,
    clamp_rules,
)
from ncdtrack.models.engine_models import ClampCorrection, ClampResult


def percentage(numerator: float, denominator: float) -> float:
    """numerator / denominator * 100, or 0 when the denominator is not positive.

    Over-achievement is valid data: the result is not capped at 100.
    """
    if not denominator or denominator <= 0 or math.isnan(denominator):
        return 0.0
    if not numerator or numerator <= 0 or math.isnan(numerator):
        return 0.0
    return round(numerator / denominator * 100, settings.percentage_precision)


def difference(target: int, actual: int) -> int:
    """target - actual. Negative means over target."""
    return target - actual


def clamp_dependent(value: int, ceiling: int) -> ClampResult:
    """Force ``value`` down to ``ceiling`` and flag the correction."""
    if value > ceiling:
        return ClampResult(stored_value=ceiling, submitted_value=value, was_clamped=True)
    return ClampResult(stored_value=value, submitted_value=value, was_clamped=False)


def apply_clamps(
    domain: MetricDomain, counters: Mapping[str, int]
) -> Tuple[Dict[str, int], List[ClampCorrection]]:
    """Apply every clamp rule of a domain to merged counters."""
    clamped = dict(counters)
    corrections: List[ClampCorrection] = []
    for dependent, ceiling_field in clamp_rules(domain):
        ceiling = clamped.get(ceiling_field, 0)
        result = clamp_dependent(clamped.get(dependent, 0), ceiling)
        if result.was_clamped:
            clamped[dependent] = result.stored_value
            corrections.append(
                ClampCorrection(
                    field=dependent,
                    ceiling_field=ceiling_field,
                    ceiling_value=ceiling,
                    **result.model_dump(),
                )
            )
    return clamped, corrections


# ─────────────────────────────────────────────
# PER-DOMAIN DERIVATIONS
# ─────────────────────────────────────────────


def derive_carb(c: Mapping[str, int]) -> Dict[str, float]:
    target = c.get("target_population", 0)
    counted = c.get("carb_counted", 0)
    return {
        "percentage": percentage(counted, target),
        "remaining": difference(target, counted),
    }


def derive_prevention(c: Mapping[str, int]) -> Dict[str, float]:
    target = c.get("target_population", 0)
    visits = c.get("prevention_visit", 0)
    return {
        "officer_percentage": percentage(
            c.get("officer_provider", 0), c.get("total_officer", 0)
        ),
        "volunteer_percentage": percentage(
            c.get("volunteer_provider", 0), c.get("total_volunteer", 0)
        ),
        "visit_percentage": percentage(visits, target),
        "visit_remaining": difference(target, visits),
        "screened_total": c.get("normal_population", 0)
        + c.get("risk_population", 0)
        + c.get("sick_population", 0),
        "risk_to_normal_percentage": percentage(
            c.get("risk_to_normal", 0), c.get("risk_trained", 0)
        ),
        "weight_reduced_total": sum(c.get(b, 0) for b in WEIGHT_BUCKETS),
    }


def derive_remission(c: Mapping[str, int]) -> Dict[str, float]:
    reduced_total = sum(c.get(b, 0) for b in REDUCED_BUCKETS)
    followed_total = (
        c.get("stopped_medication", 0)
        + reduced_total
        + c.get("same_medication", 0)
        + c.get("increased_medication", 0)
        + c.get("pending_evaluation", 0)
        + c.get("lost_followup", 0)
    )
    return {
        "remission_percentage": percentage(
            c.get("ncds_remission", 0), c.get("trained", 0)
        ),
        "reduced_total": reduced_total,
        "followed_total": followed_total,
        "stopped_percentage": percentage(c.get("stopped_medication", 0), followed_total),
    }


_DERIVERS = {
    MetricDomain.CARB: derive_carb,
    MetricDomain.PREVENTION: derive_prevention,
    MetricDomain.REMISSION: derive_remission,
}


def derive(domain: MetricDomain, counters: Mapping[str, int]) -> Dict[str, float]:
    """Compute every derived field of a domain from its raw counters."""
    return _DERIVERS[domain](counters)
