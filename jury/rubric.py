"""Rubric engine: criterion validation and deterministic score derivation.

Schemes
-------
Two rubrics are in use and are kept as separate named schemes:

- **percentage**: six criteria scored 0-100 each. ``total_score`` is the
  plain mean; ``weighted_score`` applies the per-criterion weights (which sum
  to 1.0).
- **points**: six criteria with fixed point budgets (25/20/20/15/10/10, so
  the maximum is 100). ``total_score`` is the sum and ``weighted_score``
  equals it.

The grade is always computed from ``weighted_score``. Derived values are
rounded to two decimals, so deriving again from stored criteria reproduces
the stored numbers exactly.

Everything here is pure: no sessions, no clock.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from jury.errors import MissingCriterion, OutOfRange, UnknownCriterion, UnknownRubric

COMMENTS_THRESHOLD = 70.0

STRENGTH_RATIO = 0.8
WEAKNESS_RATIO = 0.6

# ---------------------------------------------------------------------------
# Grades
# ---------------------------------------------------------------------------

GRADE_THRESHOLDS: tuple[tuple[float, str], ...] = (
    (90, "A+"),
    (80, "A"),
    (70, "B+"),
    (60, "B"),
    (50, "C+"),
    (40, "C"),
    (30, "D"),
)
LOWEST_GRADE = "F"

GRADE_DESCRIPTIONS = {
    "A+": "Exceptional",
    "A": "Excellent",
    "B+": "Good",
    "B": "Satisfactory",
    "C+": "Needs Improvement",
    "C": "Poor",
    "D": "Very Poor",
    "F": "Unsatisfactory",
}

# Grade -> midpoint of its band, used when averaging grades
GRADE_POINTS = {"A+": 95, "A": 85, "B+": 75, "B": 65, "C+": 55, "C": 45, "D": 35, "F": 15}


def compute_grade(score: float) -> str:
    """Map a 0-100 score to a letter grade (monotonic step function)."""
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return LOWEST_GRADE


def grade_description(grade: str) -> str:
    return GRADE_DESCRIPTIONS.get(grade, "Unknown")


def grade_ranges() -> dict[str, dict[str, Any]]:
    ranges: dict[str, dict[str, Any]] = {}
    upper = 100
    for threshold, grade in GRADE_THRESHOLDS:
        ranges[grade] = {"min": threshold, "max": upper, "description": GRADE_DESCRIPTIONS[grade]}
        upper = threshold - 1
    ranges[LOWEST_GRADE] = {"min": 0, "max": upper, "description": GRADE_DESCRIPTIONS[LOWEST_GRADE]}
    return ranges


# ---------------------------------------------------------------------------
# Schemes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Criterion:
    key: str
    label: str
    max_score: float
    weight: float
    description: str = ""
    min_score: float = 0.0


@dataclass(frozen=True)
class RubricScheme:
    name: str
    label: str
    aggregation: str  # "mean" | "sum"
    criteria: tuple[Criterion, ...]

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(c.key for c in self.criteria)

    def criterion(self, key: str) -> Criterion:
        for c in self.criteria:
            if c.key == key:
                return c
        raise UnknownCriterion([key], self.name)


@dataclass(frozen=True)
class RubricResult:
    total_score: float
    weighted_score: float
    grade: str


PERCENTAGE = RubricScheme(
    name="percentage",
    label="Six criteria scored 0-100, weighted",
    aggregation="mean",
    criteria=(
        Criterion("innovation_differentiation", "Innovation & Differentiation", 100, 0.20,
                  "Uniqueness, creativity and competitive advantage"),
        Criterion("market_traction_growth", "Market Traction & Growth", 100, 0.20,
                  "Customer base, revenue growth and market penetration"),
        Criterion("impact_job_creation", "Impact & Job Creation", 100, 0.25,
                  "Jobs created, community impact and economic contribution"),
        Criterion("financial_health_governance", "Financial Health & Governance", 100, 0.15,
                  "Financial stability, record keeping and governance"),
        Criterion("inclusion_sustainability", "Inclusion & Sustainability", 100, 0.10,
                  "Women and youth inclusion, environmental practices"),
        Criterion("scalability_award_use", "Scalability & Award Use", 100, 0.10,
                  "Growth potential and planned use of the award"),
    ),
)

POINTS = RubricScheme(
    name="points",
    label="Six criteria with fixed point budgets totalling 100",
    aggregation="sum",
    criteria=(
        Criterion("business_viability_financial_health", "Business Viability & Financial Health", 25, 0.25,
                  "Revenue growth, profitability, financial management and projections"),
        Criterion("market_opportunity_traction", "Market Opportunity & Traction", 20, 0.20,
                  "Market size, customer validation, sales performance and positioning"),
        Criterion("social_impact_job_creation", "Social Impact & Job Creation", 20, 0.20,
                  "Employment generation, community impact, women and youth employment"),
        Criterion("innovation_technology_adoption", "Innovation & Technology Adoption", 15, 0.15,
                  "Use of technology, process and product innovation"),
        Criterion("sustainability_environmental_impact", "Sustainability & Environmental Impact", 10, 0.10,
                  "Environmental practices, resource efficiency and green initiatives"),
        Criterion("management_leadership", "Management & Leadership", 10, 0.10,
                  "Leadership quality, team management, planning and risk management"),
    ),
)

SCHEMES: dict[str, RubricScheme] = {s.name: s for s in (PERCENTAGE, POINTS)}


def get_scheme(name: str) -> RubricScheme:
    try:
        return SCHEMES[name]
    except KeyError:
        raise UnknownRubric(name, sorted(SCHEMES)) from None


# ---------------------------------------------------------------------------
# Validation & derivation
# ---------------------------------------------------------------------------


def _as_number(key: str, value: Any, criterion: Criterion) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise OutOfRange(key, value, criterion.min_score, criterion.max_score)
    if not math.isfinite(value) or not criterion.min_score <= value <= criterion.max_score:
        raise OutOfRange(key, value, criterion.min_score, criterion.max_score)
    return float(value)


def validate_criteria(scheme: RubricScheme, criteria: dict[str, Any]) -> dict[str, float]:
    """Check that *criteria* has exactly the scheme's keys, each in range.

    Returns the values as floats in scheme order. Out-of-range values are
    rejected, never clamped.
    """
    unknown = sorted(set(criteria) - set(scheme.keys))
    if unknown:
        raise UnknownCriterion(unknown, scheme.name)
    missing = [k for k in scheme.keys if criteria.get(k) is None]
    if missing:
        raise MissingCriterion(missing)
    return {c.key: _as_number(c.key, criteria[c.key], c) for c in scheme.criteria}


def derive(scheme: RubricScheme, criteria: dict[str, Any]) -> RubricResult:
    values = validate_criteria(scheme, criteria)
    if scheme.aggregation == "mean":
        total = sum(values.values()) / len(values)
        weighted = sum(values[c.key] * c.weight for c in scheme.criteria)
    else:
        total = sum(values.values())
        weighted = total
    weighted = round(weighted, 2)
    return RubricResult(total_score=round(total, 2), weighted_score=weighted, grade=compute_grade(weighted))


def comments_required(total_score: float, threshold: float = COMMENTS_THRESHOLD) -> bool:
    return total_score < threshold


def score_warnings(scheme: RubricScheme, criteria: dict[str, Any]) -> list[str]:
    """Non-fatal notes on unusually high or low criterion values."""
    warnings: list[str] = []
    for c in scheme.criteria:
        value = criteria.get(c.key)
        if value is None:
            continue
        if value > c.max_score * 0.8:
            warnings.append(f"High score for {c.label}: {value:g}/{c.max_score:g}")
        elif value < c.max_score * 0.2:
            warnings.append(f"Low score for {c.label}: {value:g}/{c.max_score:g}")
    return warnings


def _ratios(scheme: RubricScheme, criteria: dict[str, Any]) -> list[tuple[Criterion, float]]:
    return [(c, criteria[c.key] / c.max_score) for c in scheme.criteria if criteria.get(c.key) is not None]


def strengths(scheme: RubricScheme, criteria: dict[str, Any]) -> list[str]:
    return [c.label for c, ratio in _ratios(scheme, criteria) if ratio >= STRENGTH_RATIO]


def weaknesses(scheme: RubricScheme, criteria: dict[str, Any]) -> list[str]:
    return [c.label for c, ratio in _ratios(scheme, criteria) if ratio < WEAKNESS_RATIO]


def criteria_catalog(comments_threshold: float = COMMENTS_THRESHOLD) -> dict[str, Any]:
    """Criterion metadata for every scheme plus the grade bands."""
    return {
        "schemes": {
            scheme.name: {
                "label": scheme.label,
                "aggregation": scheme.aggregation,
                "max_total": 100,
                "criteria": [
                    {
                        "key": c.key,
                        "label": c.label,
                        "description": c.description,
                        "min_score": c.min_score,
                        "max_score": c.max_score,
                        "weight": c.weight,
                    }
                    for c in scheme.criteria
                ],
            }
            for scheme in SCHEMES.values()
        },
        "grade_ranges": grade_ranges(),
        "comments_threshold": comments_threshold,
    }
