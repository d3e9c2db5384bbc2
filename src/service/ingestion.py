"""Vehicle lookup: serve stored MOT history or ingest it from the record source.

Flow for a registration lookup:

1. normalize the registration (ValidationError on bad format)
2. return the stored vehicle if there is one and no refresh was asked for
3. fetch the raw record from the configured source
4. normalize it into vehicle + MOT test attributes
5. persist the vehicle and its MOT tests
6. regenerate predictions from the stored MOT tests (delete, then insert)
7. assemble the vehicle, MOT tests (newest first) and predictions (by risk)

Steps 5 and 6 run inside one store transaction, so a vehicle never becomes
visible without its MOT tests and predictions.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Callable, Literal, Sequence

from motcheck.config import PredictionConfig
from motcheck.data_models import MotTestAttributes, PredictionAttributes, VehicleAttributes
from motcheck.errors import IngestionError, MotCheckError, NotFoundError, PersistenceError
from motcheck.predictions import generate_predictions
from motcheck.record_normalizer import normalize_record
from motcheck.registration import mask_registration, normalize_registration
from service.dvsa import RecordSource
from service.storage import VehicleStore

logger = logging.getLogger(__name__)

Outcome = Literal["cached", "ingested", "refreshed"]


@dataclass
class VehicleReport:
    vehicle: dict[str, Any]
    mot_tests: list[dict[str, Any]] = field(default_factory=list)
    predictions: list[dict[str, Any]] = field(default_factory=list)
    outcome: Outcome = "cached"

    @property
    def uuid(self) -> str:
        return self.vehicle["uuid"]


def _test_key(test: MotTestAttributes | dict[str, Any]) -> str:
    if isinstance(test, dict):
        number, tested, result = test.get("test_number"), test.get("test_date"), test.get("test_result")
    else:
        number, tested, result = test.test_number, test.test_date, test.test_result
    return number or f"{tested}:{result}"


class IngestionService:
    def __init__(
        self,
        store: VehicleStore,
        source: RecordSource,
        config: PredictionConfig | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.store = store
        self.source = source
        self.config = config or PredictionConfig()
        self._today = today

    async def lookup_registration(self, registration: str, refresh: bool = False) -> VehicleReport:
        reg = normalize_registration(registration)
        existing = await self.store.get_vehicle_by_registration(reg)
        if existing is not None and not refresh:
            logger.info("Serving stored MOT history for %s", mask_registration(reg))
            return await self._assemble(existing, "cached")

        try:
            raw = await self.source.fetch(reg)
            attrs, tests = normalize_record(raw, today=self._today())
            attrs = replace(attrs, registration=reg)
            if existing is None:
                vehicle = await self._ingest_new(attrs, tests)
                outcome: Outcome = "ingested"
            else:
                vehicle = await self._refresh_existing(existing, attrs, tests)
                outcome = "refreshed"
        except MotCheckError:
            raise
        except Exception as exc:
            logger.exception("Ingestion failed for %s", mask_registration(reg))
            raise IngestionError("Failed to fetch vehicle data") from exc

        return await self._assemble(vehicle, outcome)

    async def get_by_lookup_key(self, uuid: str) -> VehicleReport:
        vehicle = await self.store.get_vehicle_by_uuid(uuid)
        if vehicle is None:
            raise NotFoundError("Vehicle not found")
        return await self._assemble(vehicle, "cached")

    async def fetch_raw(self, registration: str) -> dict[str, Any]:
        return await self.source.fetch(normalize_registration(registration))

    async def _ingest_new(
        self, attrs: VehicleAttributes, tests: Sequence[MotTestAttributes],
    ) -> dict[str, Any]:
        try:
            async with self.store.transaction() as tx:
                vehicle = await tx.create_vehicle(attrs.to_row())
                for test in tests:
                    await tx.create_mot_test({**test.to_row(), "vehicle_id": vehicle["id"]})
                predictions = await self._regenerate_predictions(tx, vehicle["id"], attrs)
        except PersistenceError:
            # Lost a race with a concurrent first lookup of the same registration.
            winner = await self.store.get_vehicle_by_registration(attrs.registration)
            if winner is None:
                raise
            logger.info("Vehicle %s was ingested concurrently", mask_registration(attrs.registration))
            return winner

        logger.info(
            "Ingested %s: %d MOT tests, %d predictions",
            mask_registration(attrs.registration), len(tests), len(predictions),
        )
        return vehicle

    async def _refresh_existing(
        self,
        vehicle: dict[str, Any],
        attrs: VehicleAttributes,
        tests: Sequence[MotTestAttributes],
    ) -> dict[str, Any]:
        async with self.store.transaction() as tx:
            updated = await tx.update_vehicle(vehicle["id"], attrs.to_row())
            if updated is None:
                raise NotFoundError(f"Vehicle not found: {attrs.registration}")
            known = {_test_key(row) for row in await tx.get_mot_tests_by_vehicle_id(vehicle["id"])}
            new_tests = [t for t in tests if _test_key(t) not in known]
            for test in new_tests:
                await tx.create_mot_test({**test.to_row(), "vehicle_id": vehicle["id"]})
            await self._regenerate_predictions(tx, vehicle["id"], attrs)

        logger.info(
            "Refreshed %s: %d new MOT tests",
            mask_registration(attrs.registration), len(new_tests),
        )
        return updated

    async def _regenerate_predictions(
        self, tx: VehicleStore, vehicle_id: int, attrs: VehicleAttributes,
    ) -> list[PredictionAttributes]:
        stored = await tx.get_mot_tests_by_vehicle_id(vehicle_id)
        history = [MotTestAttributes.from_row(row) for row in stored]
        predictions = generate_predictions(attrs, history, config=self.config, today=self._today())
        await tx.delete_predictions_by_vehicle_id(vehicle_id)
        for pred in predictions:
            await tx.create_prediction({**pred.to_row(), "vehicle_id": vehicle_id})
        return predictions

    async def _assemble(self, vehicle: dict[str, Any], outcome: Outcome) -> VehicleReport:
        return VehicleReport(
            vehicle=vehicle,
            mot_tests=await self.store.get_mot_tests_by_vehicle_id(vehicle["id"]),
            predictions=await self.store.get_predictions_by_vehicle_id(vehicle["id"]),
            outcome=outcome,
        )
