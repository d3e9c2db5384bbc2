from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Sequence

from motcheck.config import FailureCategory, PredictionConfig
from motcheck.data_models import MotTestAttributes, PredictionAttributes, VehicleAttributes
from motcheck.record_normalizer import parse_date


@dataclass
class CategoryPattern:
    """Failures attributed to one category across the whole history."""

    count: int = 0
    description: str | None = None
    last_failure: date | None = None
    advisories: int = 0


def assign_category(text: str, categories: Sequence[FailureCategory]) -> FailureCategory | None:
    """First category in table order with a keyword contained in ``text``."""
    lowered = text.lower()
    for category in categories:
        if any(keyword in lowered for keyword in category.keywords):
            return category
    return None


def _format_month(d: date | None) -> str | None:
    return d.strftime("%B %Y") if d else None


def build_pattern_counts(
    mot_tests: Sequence[MotTestAttributes],
    categories: Sequence[FailureCategory],
) -> dict[str, CategoryPattern]:
    """Attribute every failure and advisory to at most one category.

    ``mot_tests`` is expected newest-first, so a category's description is
    the most recent failure text attributed to it.
    """
    patterns: dict[str, CategoryPattern] = {}
    for test in mot_tests:
        tested = parse_date(test.test_date)
        for item in test.failures:
            category = assign_category(item.text, categories)
            if category is None:
                continue
            pattern = patterns.setdefault(category.name, CategoryPattern())
            pattern.count += 1
            if pattern.description is None:
                pattern.description = item.text
            if tested and (pattern.last_failure is None or tested > pattern.last_failure):
                pattern.last_failure = tested
    for test in mot_tests:
        for item in test.advisories:
            category = assign_category(item.text, categories)
            if category is not None and category.name in patterns:
                patterns[category.name].advisories += 1
    return patterns


def _category_prediction(
    category: FailureCategory,
    pattern: CategoryPattern,
    cfg: PredictionConfig,
    today: date,
) -> PredictionAttributes:
    if pattern.count >= cfg.repeat_failure_threshold:
        risk, confidence = cfg.repeat_failure_score
    elif (
        pattern.last_failure is not None
        and (today - pattern.last_failure).days // 30 < cfg.recent_failure_months
    ):
        risk, confidence = cfg.recent_failure_score
    else:
        risk, confidence = cfg.past_failure_score

    text = f"Previously failed {pattern.count} times" if pattern.count > 1 else "Previous failure detected"
    if pattern.advisories:
        text += f"; {pattern.advisories} related advisor{'y' if pattern.advisories == 1 else 'ies'}"

    return PredictionAttributes(
        category=category.name,
        description=pattern.description or f"{category.name} issues detected",
        risk_level=risk,
        confidence=confidence,
        last_failure_date=_format_month(pattern.last_failure),
        pattern=text,
        recommendations=category.recommendations,
    )


def generate_predictions(
    vehicle: VehicleAttributes,
    mot_tests: Sequence[MotTestAttributes],
    config: PredictionConfig | None = None,
    today: date | None = None,
) -> list[PredictionAttributes]:
    """Derive heuristic risk predictions from a vehicle's MOT history.

    Each failure counts toward the first category in the table whose
    keywords it contains. ``mot_tests`` is expected newest-first. Never
    returns an empty list.
    """
    cfg = config or PredictionConfig()
    today = today or date.today()
    patterns = build_pattern_counts(mot_tests, cfg.categories)

    predictions: list[PredictionAttributes] = []
    for category in cfg.categories:
        if category.name in patterns:
            predictions.append(_category_prediction(category, patterns[category.name], cfg, today))

    if vehicle.year is not None:
        age = today.year - vehicle.year
        if age > cfg.old_vehicle_age_years:
            risk, confidence = cfg.age_score
            predictions.append(PredictionAttributes(
                category="Age-Related Wear",
                description="Components may show age-related deterioration",
                risk_level=risk,
                confidence=confidence,
                pattern=f"Vehicle is {age} years old",
                recommendations="Regular maintenance recommended for older vehicles",
            ))

    if vehicle.fuel_type and "diesel" in vehicle.fuel_type.lower():
        risk, confidence = cfg.diesel_score
        predictions.append(PredictionAttributes(
            category="Diesel Emissions",
            description="Diesel particulate filter and emissions system monitoring",
            risk_level=risk,
            confidence=confidence,
            pattern="Diesel vehicle analysis",
            recommendations="Regular highway driving helps maintain DPF system",
        ))

    if not predictions:
        risk, confidence = cfg.fallback_score
        predictions.append(PredictionAttributes(
            category="General Maintenance",
            description="Routine maintenance items to monitor",
            risk_level=risk,
            confidence=confidence,
            pattern="Preventive analysis",
            recommendations="Continue regular maintenance schedule",
        ))

    return predictions


def risk_sort_key(risk_level: str | None, config: PredictionConfig | None = None) -> int:
    """Sort key for display order HIGH > MEDIUM > LOW (use with reverse=True)."""
    order = (config or PredictionConfig()).risk_order
    return order.get(str(risk_level or "").upper(), 0)
