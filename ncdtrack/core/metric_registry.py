"""NCDTrack — Unified Metric Registry.

Defines the canonical raw counters, derived fields and clamp rules for
each metric domain. The calculator, the rollup aggregator and the update
coordinator all read field lists from here so the three domains are
treated uniformly.
"""

from enum import Enum
from typing import Dict, List, Tuple


class MetricDomain(str, Enum):
    """Programme areas tracked per facility and per district."""

    CARB = "carb"
    PREVENTION = "prevention"
    REMISSION = "remission"


class FieldKind(str, Enum):
    """How a metric field is categorised."""

    COUNTER = "counter"  # Raw, caller-submitted, summed by rollup
    DERIVED = "derived"  # Computed on every write, never trusted from input


class MetricDefinition:
    """Describes a single metric field."""

    def __init__(
        self, name: str, kind: FieldKind, unit: str = "", description: str = ""
    ):
        self.name = name
        self.kind = kind
        self.unit = unit
        self.description = description

    def __repr__(self) -> str:
        return f"<Metric {self.name} ({self.kind.value})>"


def _counter(name: str, description: str = "") -> MetricDefinition:
    return MetricDefinition(name, FieldKind.COUNTER, "count", description)


def _derived(name: str, unit: str, description: str = "") -> MetricDefinition:
    return MetricDefinition(name, FieldKind.DERIVED, unit, description)


# ─────────────────────────────────────────────
# CARBOHYDRATE COUNTING
# ─────────────────────────────────────────────

CARB_METRICS: Dict[str, MetricDefinition] = {
    "target_population": _counter("target_population", "People targeted for carb counting"),
    "carb_counted": _counter("carb_counted", "People who completed carb counting"),
    "percentage": _derived("percentage", "%", "carb_counted / target_population"),
    "remaining": _derived("remaining", "count", "target_population - carb_counted"),
}


# ─────────────────────────────────────────────
# PREVENTION SCREENING
# ─────────────────────────────────────────────

WEIGHT_BUCKETS = (
    "weight_reduced_0_1",
    "weight_reduced_1_2",
    "weight_reduced_2_3",
    "weight_reduced_3_4",
    "weight_reduced_4_5",
    "weight_reduced_over_5",
)

PREVENTION_METRICS: Dict[str, MetricDefinition] = {
    "total_officer": _counter("total_officer", "Health officers in the facility"),
    "officer_provider": _counter("officer_provider", "Officers enrolled as providers"),
    "total_volunteer": _counter("total_volunteer", "Village health volunteers"),
    "volunteer_provider": _counter("volunteer_provider", "Volunteers enrolled as providers"),
    "target_population": _counter("target_population", "Population targeted for screening"),
    "prevention_visit": _counter("prevention_visit", "Prevention visits delivered"),
    "normal_population": _counter("normal_population", "Screened as normal"),
    "risk_population": _counter("risk_population", "Screened as at-risk"),
    "sick_population": _counter("sick_population", "Screened as sick"),
    "risk_trained": _counter("risk_trained", "At-risk people trained"),
    "risk_to_normal": _counter("risk_to_normal", "Trained at-risk people back to normal"),
    **{
        bucket: _counter(bucket, f"Weight reduced ({bucket[len('weight_reduced_'):]} kg)")
        for bucket in WEIGHT_BUCKETS
    },
    "officer_percentage": _derived("officer_percentage", "%"),
    "volunteer_percentage": _derived("volunteer_percentage", "%"),
    "visit_percentage": _derived("visit_percentage", "%"),
    "visit_remaining": _derived("visit_remaining", "count"),
    "screened_total": _derived("screened_total", "count", "normal + risk + sick"),
    "risk_to_normal_percentage": _derived("risk_to_normal_percentage", "%"),
    "weight_reduced_total": _derived("weight_reduced_total", "count"),
}


# ─────────────────────────────────────────────
# REMISSION
# ─────────────────────────────────────────────

REDUCED_BUCKETS = tuple(f"reduced_{i}" for i in range(1, 9)) + ("reduced_n",)

REMISSION_METRICS: Dict[str, MetricDefinition] = {
    "trained": _counter("trained", "Patients trained in the remission programme"),
    "ncds_remission": _counter("ncds_remission", "Patients in NCD remission"),
    "stopped_medication": _counter("stopped_medication", "Stopped all medication"),
    **{
        bucket: _counter(bucket, f"Medication reduced by {bucket[len('reduced_'):]}")
        for bucket in REDUCED_BUCKETS
    },
    "same_medication": _counter("same_medication", "No medication change"),
    "increased_medication": _counter("increased_medication", "Medication increased"),
    "pending_evaluation": _counter("pending_evaluation", "Awaiting evaluation"),
    "lost_followup": _counter("lost_followup", "Lost to follow-up"),
    "remission_percentage": _derived("remission_percentage", "%"),
    "reduced_total": _derived("reduced_total", "count"),
    "followed_total": _derived("followed_total", "count"),
    "stopped_percentage": _derived("stopped_percentage", "%"),
}


# ─────────────────────────────────────────────
# CLAMP RULES — (dependent, ceiling)
# ─────────────────────────────────────────────

CLAMP_RULES: Dict[MetricDomain, List[Tuple[str, str]]] = {
    MetricDomain.CARB: [],
    MetricDomain.PREVENTION: [("risk_to_normal", "risk_trained")],
    MetricDomain.REMISSION: [("ncds_remission", "trained")],
}


# ─────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────

DOMAIN_METRICS: Dict[MetricDomain, Dict[str, MetricDefinition]] = {
    MetricDomain.CARB: CARB_METRICS,
    MetricDomain.PREVENTION: PREVENTION_METRICS,
    MetricDomain.REMISSION: REMISSION_METRICS,
}


def get_metric(domain: MetricDomain, name: str) -> MetricDefinition | None:
    """Look up a metric by domain and name."""
    return DOMAIN_METRICS[domain].get(name)


def counter_fields(domain: MetricDomain) -> list[str]:
    """Raw counters of a domain, in declaration order."""
    return [
        m.name for m in DOMAIN_METRICS[domain].values() if m.kind == FieldKind.COUNTER
    ]


def derived_fields(domain: MetricDomain) -> list[str]:
    """Derived fields of a domain, in declaration order."""
    return [
        m.name for m in DOMAIN_METRICS[domain].values() if m.kind == FieldKind.DERIVED
    ]


def clamp_rules(domain: MetricDomain) -> list[tuple[str, str]]:
    """(dependent, ceiling) pairs enforced on every write."""
    return list(CLAMP_RULES[domain])
