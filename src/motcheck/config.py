from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class FailureCategory:
    name: str
    keywords: tuple[str, ...]
    recommendations: str


DEFAULT_CATEGORIES: tuple[FailureCategory, ...] = (
    FailureCategory(
        name="Brake System",
        keywords=("brake", "disc", "pad", "handbrake"),
        recommendations="Replace brake components before next MOT",
    ),
    FailureCategory(
        name="Lighting System",
        keywords=("light", "bulb", "headlight", "indicator", "lamp"),
        recommendations="Check and replace faulty bulbs or electrical connections",
    ),
    FailureCategory(
        name="Tyre Condition",
        keywords=("tyre", "tire", "tread", "wheel"),
        recommendations="Monitor tyre condition and replace when worn",
    ),
    FailureCategory(
        name="Suspension System",
        keywords=("suspension", "shock", "spring", "strut"),
        recommendations="Have suspension components inspected professionally",
    ),
    FailureCategory(
        name="Exhaust System",
        keywords=("exhaust", "emission", "catalytic"),
        recommendations="Check exhaust system for leaks or component wear",
    ),
    FailureCategory(
        name="Windscreen System",
        keywords=("wiper", "windscreen", "washer"),
        recommendations="Replace wiper blades and check washer system",
    ),
)


@dataclass(frozen=True)
class PredictionConfig:
    categories: tuple[FailureCategory, ...] = DEFAULT_CATEGORIES
    repeat_failure_threshold: int = 2
    recent_failure_months: int = 12
    old_vehicle_age_years: int = 10
    # (risk_level, confidence)
    repeat_failure_score: tuple[str, int] = ("HIGH", 85)
    recent_failure_score: tuple[str, int] = ("MEDIUM", 65)
    past_failure_score: tuple[str, int] = ("LOW", 40)
    age_score: tuple[str, int] = ("MEDIUM", 60)
    diesel_score: tuple[str, int] = ("LOW", 45)
    fallback_score: tuple[str, int] = ("LOW", 35)
    risk_order: dict[str, int] = field(
        default_factory=lambda: {"HIGH": 3, "MEDIUM": 2, "LOW": 1}
    )
