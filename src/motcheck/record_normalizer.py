"""Map raw MOT history payloads onto the canonical vehicle / MOT test shapes.

Two payload shapes are known: the DVSA MOT History API response and the
bundled fixture record. Each shape has its own field-name table; adding a
third source means adding a table entry and a rule to ``detect_shape``.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Literal

from motcheck.data_models import DefectItem, MotTestAttributes, VehicleAttributes
from motcheck.registration import clean_registration

logger = logging.getLogger(__name__)

RawShape = Literal["dvsa", "fixture"]

FAIL_TYPES = frozenset({"FAIL", "MAJOR", "DANGEROUS"})
ADVISORY_TYPES = frozenset({"ADVISORY", "MINOR"})

_RESULT_MAP = {
    "PASS": "PASS",
    "PASSED": "PASS",
    "FAIL": "FAIL",
    "FAILED": "FAIL",
}

_DATE_RE = re.compile(r"^\s*(\d{4})[.\-/](\d{1,2})[.\-/](\d{1,2})")
_YEAR_RE = re.compile(r"(?<!\d)(\d{4})(?!\d)")


@dataclass(frozen=True)
class ShapeFields:
    """Field names per payload shape, primary name first."""

    colour: tuple[str, ...]
    defects: tuple[str, ...]
    year_sources: tuple[str, ...]


SHAPES: dict[str, ShapeFields] = {
    "dvsa": ShapeFields(
        colour=("primaryColour", "colour"),
        defects=("defects", "rfrAndComments"),
        year_sources=("firstUsedDate", "registrationDate", "manufactureDate"),
    ),
    "fixture": ShapeFields(
        colour=("colour", "primaryColour"),
        defects=("defects", "rfrAndComments"),
        year_sources=("firstUsedDate",),
    ),
}


def detect_shape(raw: dict[str, Any]) -> RawShape:
    if "primaryColour" in raw or "vehicleId" in raw:
        return "dvsa"
    for test in raw.get("motTests") or []:
        if "rfrAndComments" in test or test.get("testResult") in ("PASSED", "FAILED"):
            return "dvsa"
    return "fixture"


def _first(data: dict[str, Any], names: tuple[str, ...]) -> Any:
    for name in names:
        if data.get(name) is not None:
            return data[name]
    return None


def parse_date(value: Any) -> date | None:
    if not value:
        return None
    m = _DATE_RE.match(str(value))
    if not m:
        return None
    try:
        return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    except ValueError:
        return None


def normalize_date(value: Any) -> str | None:
    """ISO ``YYYY-MM-DD`` when parseable, the raw string otherwise."""
    if value is None or value == "":
        return None
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else str(value)


def derive_year(raw: dict[str, Any], fields: ShapeFields, today: date | None = None) -> int:
    current_year = (today or date.today()).year
    for name in fields.year_sources:
        value = raw.get(name)
        if not value:
            continue
        m = _YEAR_RE.search(str(value))
        if m and 1885 <= int(m.group(1)) <= current_year + 1:
            return int(m.group(1))
    logger.warning(
        "No usable first-used date for %s, defaulting year to %d",
        raw.get("registration"), current_year,
    )
    return current_year


def classify_defects(items: list[dict[str, Any]]) -> tuple[tuple[DefectItem, ...], tuple[DefectItem, ...]]:
    failures: list[DefectItem] = []
    advisories: list[DefectItem] = []
    for item in items or []:
        kind = str(item.get("type") or "").strip().upper()
        defect = DefectItem(
            text=str(item.get("text") or ""),
            type=kind,
            dangerous=bool(item.get("dangerous")) or kind == "DANGEROUS",
        )
        if kind in FAIL_TYPES:
            failures.append(defect)
        elif kind in ADVISORY_TYPES:
            advisories.append(defect)
        else:
            logger.debug("Dropping defect with unrecognised type %r", kind)
    return tuple(failures), tuple(advisories)


def _odometer(value: Any) -> int | None:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _test_centre(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("name")
    if isinstance(value, str):
        return value or None
    return None


def normalize_mot_test(test: dict[str, Any], fields: ShapeFields) -> MotTestAttributes:
    failures, advisories = classify_defects(_first(test, fields.defects) or [])
    result = str(test.get("testResult") or "").strip().upper()
    number = test.get("motTestNumber")
    return MotTestAttributes(
        test_date=normalize_date(test.get("completedDate")) or "",
        test_result=_RESULT_MAP.get(result, result or "UNKNOWN"),
        expiry_date=normalize_date(test.get("expiryDate")),
        odometer_value=_odometer(test.get("odometerValue")),
        odometer_unit=test.get("odometerUnit"),
        test_number=str(number) if number is not None else None,
        test_centre=_test_centre(test.get("testCentre")),
        failures=failures,
        advisories=advisories,
    )


def normalize_record(
    raw: dict[str, Any], today: date | None = None,
) -> tuple[VehicleAttributes, list[MotTestAttributes]]:
    fields = SHAPES[detect_shape(raw)]
    tests = [normalize_mot_test(t, fields) for t in raw.get("motTests") or []]
    tests.sort(key=lambda t: t.test_date, reverse=True)
    latest = tests[0] if tests else None

    engine_size = raw.get("engineSize")
    vehicle = VehicleAttributes(
        registration=clean_registration(str(raw.get("registration") or "")),
        make=raw.get("make"),
        model=raw.get("model"),
        year=derive_year(raw, fields, today=today),
        fuel_type=raw.get("fuelType"),
        engine_size=str(engine_size) if engine_size is not None else None,
        colour=_first(raw, fields.colour),
        mot_status=latest.test_result if latest else "UNKNOWN",
        mot_expiry_date=latest.expiry_date if latest else None,
    )
    return vehicle, tests
