from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(frozen=True)
class DefectItem:
    text: str
    type: str
    dangerous: bool = False


@dataclass(frozen=True)
class VehicleAttributes:
    registration: str
    make: str | None = None
    model: str | None = None
    year: int | None = None
    fuel_type: str | None = None
    engine_size: str | None = None
    colour: str | None = None
    mot_status: str | None = None
    mot_expiry_date: str | None = None

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class MotTestAttributes:
    test_date: str
    test_result: str
    expiry_date: str | None = None
    odometer_value: int | None = None
    odometer_unit: str | None = None
    test_number: str | None = None
    test_centre: str | None = None
    failures: tuple[DefectItem, ...] = field(default_factory=tuple)
    advisories: tuple[DefectItem, ...] = field(default_factory=tuple)

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["failures"] = [asdict(d) for d in self.failures]
        row["advisories"] = [asdict(d) for d in self.advisories]
        return row

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MotTestAttributes":
        return cls(
            test_date=row["test_date"],
            test_result=row["test_result"],
            expiry_date=row.get("expiry_date"),
            odometer_value=row.get("odometer_value"),
            odometer_unit=row.get("odometer_unit"),
            test_number=row.get("test_number"),
            test_centre=row.get("test_centre"),
            failures=tuple(DefectItem(**d) for d in row.get("failures") or []),
            advisories=tuple(DefectItem(**d) for d in row.get("advisories") or []),
        )


@dataclass(frozen=True)
class PredictionAttributes:
    category: str
    description: str
    risk_level: str
    confidence: int
    last_failure_date: str | None = None
    pattern: str | None = None
    recommendations: str | None = None

    def to_row(self) -> dict[str, Any]:
        return asdict(self)
