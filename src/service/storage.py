from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Protocol
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from motcheck.errors import PersistenceError
from motcheck.predictions import risk_sort_key
from motcheck.registration import clean_registration
from service.settings import ServiceSettings

logger = logging.getLogger(__name__)

metadata = MetaData()

vehicles_table = Table(
    "vehicles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("uuid", String(32), nullable=False, unique=True),
    Column("registration", String(16), nullable=False, unique=True),
    Column("make", String(64), nullable=True),
    Column("model", String(128), nullable=True),
    Column("year", Integer, nullable=True),
    Column("fuel_type", String(32), nullable=True),
    Column("engine_size", String(16), nullable=True),
    Column("colour", String(32), nullable=True),
    Column("mot_status", String(16), nullable=True),
    Column("mot_expiry_date", String(32), nullable=True),
    Column("last_checked", DateTime(timezone=True), nullable=False),
)

mot_tests_table = Table(
    "mot_tests",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("vehicle_id", Integer, ForeignKey("vehicles.id"), nullable=False, index=True),
    Column("test_date", String(32), nullable=False),
    Column("test_result", String(16), nullable=False),
    Column("expiry_date", String(32), nullable=True),
    Column("odometer_value", Integer, nullable=True),
    Column("odometer_unit", String(8), nullable=True),
    Column("test_number", String(32), nullable=True),
    Column("test_centre", String(128), nullable=True),
    Column("failures", JSON, nullable=False, default=list),
    Column("advisories", JSON, nullable=False, default=list),
)

predictions_table = Table(
    "predictions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("vehicle_id", Integer, ForeignKey("vehicles.id"), nullable=False, index=True),
    Column("category", String(64), nullable=False),
    Column("description", Text, nullable=False),
    Column("risk_level", String(8), nullable=False),
    Column("confidence", Integer, nullable=False),
    Column("last_failure_date", String(32), nullable=True),
    Column("pattern", String(255), nullable=True),
    Column("recommendations", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

_IMMUTABLE_VEHICLE_FIELDS = frozenset({"id", "uuid", "registration"})


class VehicleStore(Protocol):
    async def connect(self) -> None: ...
    async def close(self) -> None: ...
    async def ping(self) -> bool: ...
    def transaction(self) -> Any: ...
    async def get_vehicle(self, vehicle_id: int) -> dict[str, Any] | None: ...
    async def get_vehicle_by_registration(self, registration: str) -> dict[str, Any] | None: ...
    async def get_vehicle_by_uuid(self, uuid: str) -> dict[str, Any] | None: ...
    async def create_vehicle(self, attrs: dict[str, Any]) -> dict[str, Any]: ...
    async def update_vehicle(self, vehicle_id: int, attrs: dict[str, Any]) -> dict[str, Any] | None: ...
    async def get_mot_tests_by_vehicle_id(self, vehicle_id: int) -> list[dict[str, Any]]: ...
    async def create_mot_test(self, attrs: dict[str, Any]) -> dict[str, Any]: ...
    async def get_predictions_by_vehicle_id(self, vehicle_id: int) -> list[dict[str, Any]]: ...
    async def create_prediction(self, attrs: dict[str, Any]) -> dict[str, Any]: ...
    async def delete_predictions_by_vehicle_id(self, vehicle_id: int) -> int: ...


def _vehicle_row(attrs: dict[str, Any]) -> dict[str, Any]:
    return {
        "uuid": uuid4().hex,
        "registration": clean_registration(attrs["registration"]),
        "make": attrs.get("make"),
        "model": attrs.get("model"),
        "year": attrs.get("year"),
        "fuel_type": attrs.get("fuel_type"),
        "engine_size": attrs.get("engine_size"),
        "colour": attrs.get("colour"),
        "mot_status": attrs.get("mot_status"),
        "mot_expiry_date": attrs.get("mot_expiry_date"),
        "last_checked": datetime.now(timezone.utc),
    }


def _mot_test_row(attrs: dict[str, Any]) -> dict[str, Any]:
    return {
        "vehicle_id": int(attrs["vehicle_id"]),
        "test_date": attrs["test_date"],
        "test_result": attrs["test_result"],
        "expiry_date": attrs.get("expiry_date"),
        "odometer_value": attrs.get("odometer_value"),
        "odometer_unit": attrs.get("odometer_unit"),
        "test_number": attrs.get("test_number"),
        "test_centre": attrs.get("test_centre"),
        "failures": list(attrs.get("failures") or []),
        "advisories": list(attrs.get("advisories") or []),
    }


def _prediction_row(attrs: dict[str, Any]) -> dict[str, Any]:
    confidence = int(attrs["confidence"])
    if not 0 <= confidence <= 100:
        raise PersistenceError(f"Confidence out of range: {confidence}")
    return {
        "vehicle_id": int(attrs["vehicle_id"]),
        "category": attrs["category"],
        "description": attrs["description"],
        "risk_level": str(attrs["risk_level"]).upper(),
        "confidence": confidence,
        "last_failure_date": attrs.get("last_failure_date"),
        "pattern": attrs.get("pattern"),
        "recommendations": attrs.get("recommendations"),
        "created_at": datetime.now(timezone.utc),
    }


def _vehicle_update(attrs: dict[str, Any]) -> dict[str, Any]:
    values = {
        k: v for k, v in attrs.items()
        if k in vehicles_table.c and k not in _IMMUTABLE_VEHICLE_FIELDS
    }
    values["last_checked"] = datetime.now(timezone.utc)
    return values


class MemoryStore:
    """Map-backed store for tests and single-process demos.

    ``transaction()`` journals every write and replays the undo entries in
    reverse when the block raises. Transactions are serialized.
    """

    def __init__(self) -> None:
        self._vehicles: dict[int, dict[str, Any]] = {}
        self._mot_tests: dict[int, dict[str, Any]] = {}
        self._predictions: dict[int, dict[str, Any]] = {}
        self._vehicle_ids = itertools.count(1)
        self._mot_test_ids = itertools.count(1)
        self._prediction_ids = itertools.count(1)
        self._journal: list[Callable[[], None]] | None = None
        self._tx_lock = asyncio.Lock()

    def _record_undo(self, undo: Callable[[], None]) -> None:
        if self._journal is not None:
            self._journal.append(undo)

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["MemoryStore"]:
        async with self._tx_lock:
            self._journal = []
            try:
                yield self
            except BaseException:
                for undo in reversed(self._journal):
                    undo()
                logger.warning("Rolled back %d in-memory writes", len(self._journal))
                raise
            finally:
                self._journal = None

    async def get_vehicle(self, vehicle_id: int) -> dict[str, Any] | None:
        row = self._vehicles.get(vehicle_id)
        return dict(row) if row else None

    async def get_vehicle_by_registration(self, registration: str) -> dict[str, Any] | None:
        reg = clean_registration(registration)
        for row in self._vehicles.values():
            if row["registration"] == reg:
                return dict(row)
        return None

    async def get_vehicle_by_uuid(self, uuid: str) -> dict[str, Any] | None:
        for row in self._vehicles.values():
            if row["uuid"] == uuid:
                return dict(row)
        return None

    async def create_vehicle(self, attrs: dict[str, Any]) -> dict[str, Any]:
        row = _vehicle_row(attrs)
        if await self.get_vehicle_by_registration(row["registration"]) is not None:
            raise PersistenceError(f"Vehicle {row['registration']} already exists")
        row["id"] = next(self._vehicle_ids)
        self._vehicles[row["id"]] = row
        self._record_undo(lambda: self._vehicles.pop(row["id"], None))
        return dict(row)

    async def update_vehicle(self, vehicle_id: int, attrs: dict[str, Any]) -> dict[str, Any] | None:
        existing = self._vehicles.get(vehicle_id)
        if existing is None:
            return None
        previous = dict(existing)
        existing.update(_vehicle_update(attrs))
        self._record_undo(lambda: self._vehicles.__setitem__(vehicle_id, previous))
        return dict(existing)

    async def get_mot_tests_by_vehicle_id(self, vehicle_id: int) -> list[dict[str, Any]]:
        rows = [dict(r) for r in self._mot_tests.values() if r["vehicle_id"] == vehicle_id]
        rows.sort(key=lambda r: (r["test_date"], r["id"]), reverse=True)
        return rows

    async def create_mot_test(self, attrs: dict[str, Any]) -> dict[str, Any]:
        row = _mot_test_row(attrs)
        if row["vehicle_id"] not in self._vehicles:
            raise PersistenceError(f"Vehicle {row['vehicle_id']} does not exist")
        row["id"] = next(self._mot_test_ids)
        self._mot_tests[row["id"]] = row
        self._record_undo(lambda: self._mot_tests.pop(row["id"], None))
        return dict(row)

    async def get_predictions_by_vehicle_id(self, vehicle_id: int) -> list[dict[str, Any]]:
        rows = [dict(r) for r in self._predictions.values() if r["vehicle_id"] == vehicle_id]
        rows.sort(key=lambda r: r["id"])
        rows.sort(key=lambda r: risk_sort_key(r["risk_level"]), reverse=True)
        return rows

    async def create_prediction(self, attrs: dict[str, Any]) -> dict[str, Any]:
        row = _prediction_row(attrs)
        if row["vehicle_id"] not in self._vehicles:
            raise PersistenceError(f"Vehicle {row['vehicle_id']} does not exist")
        row["id"] = next(self._prediction_ids)
        self._predictions[row["id"]] = row
        self._record_undo(lambda: self._predictions.pop(row["id"], None))
        return dict(row)

    async def delete_predictions_by_vehicle_id(self, vehicle_id: int) -> int:
        removed = {pid: r for pid, r in self._predictions.items() if r["vehicle_id"] == vehicle_id}
        for pid in removed:
            del self._predictions[pid]
        self._record_undo(lambda: self._predictions.update(removed))
        return len(removed)


class SqlStore:
    """SQLAlchemy Core store (PostgreSQL in production, SQLite in tests).

    Methods open their own transaction unless the store was handed out by
    ``transaction()``, in which case they all share that connection.
    """

    def __init__(self, dsn: str | None = None, engine: AsyncEngine | None = None) -> None:
        self.dsn = dsn
        self.engine = engine
        self._conn: AsyncConnection | None = None

    async def connect(self) -> None:
        try:
            if self.engine is None:
                self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Could not initialise SQL store: %s", exc)
            raise PersistenceError("Could not connect to the database") from exc

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception as exc:
            logger.warning("Storage ping failed: %s", exc)
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    @asynccontextmanager
    async def _begin(self) -> AsyncIterator[AsyncConnection]:
        if self.engine is None:
            raise PersistenceError("SQL store is not connected")
        try:
            if self._conn is not None:
                yield self._conn
            else:
                async with self.engine.begin() as conn:
                    yield conn
        except IntegrityError as exc:
            raise PersistenceError(f"Integrity violation: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            logger.exception("Database operation failed")
            raise PersistenceError("Database operation failed") from exc

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SqlStore"]:
        if self._conn is not None:
            yield self
            return
        async with self._begin() as conn:
            bound = SqlStore(dsn=self.dsn, engine=self.engine)
            bound._conn = conn
            yield bound

    async def _fetch_one(self, stmt: Any) -> dict[str, Any] | None:
        async with self._begin() as conn:
            row = (await conn.execute(stmt)).first()
        return dict(row._mapping) if row else None

    async def _fetch_all(self, stmt: Any) -> list[dict[str, Any]]:
        async with self._begin() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    async def _insert(self, table: Table, row: dict[str, Any]) -> dict[str, Any]:
        async with self._begin() as conn:
            result = await conn.execute(insert(table).values(**row))
            row["id"] = result.inserted_primary_key[0]
        return row

    async def get_vehicle(self, vehicle_id: int) -> dict[str, Any] | None:
        return await self._fetch_one(select(vehicles_table).where(vehicles_table.c.id == vehicle_id))

    async def get_vehicle_by_registration(self, registration: str) -> dict[str, Any] | None:
        stmt = select(vehicles_table).where(
            vehicles_table.c.registration == clean_registration(registration)
        )
        return await self._fetch_one(stmt)

    async def get_vehicle_by_uuid(self, uuid: str) -> dict[str, Any] | None:
        return await self._fetch_one(select(vehicles_table).where(vehicles_table.c.uuid == uuid))

    async def create_vehicle(self, attrs: dict[str, Any]) -> dict[str, Any]:
        return await self._insert(vehicles_table, _vehicle_row(attrs))

    async def update_vehicle(self, vehicle_id: int, attrs: dict[str, Any]) -> dict[str, Any] | None:
        async with self._begin() as conn:
            result = await conn.execute(
                update(vehicles_table)
                .where(vehicles_table.c.id == vehicle_id)
                .values(**_vehicle_update(attrs))
            )
            if result.rowcount == 0:
                return None
            row = (await conn.execute(
                select(vehicles_table).where(vehicles_table.c.id == vehicle_id)
            )).first()
        return dict(row._mapping) if row else None

    async def get_mot_tests_by_vehicle_id(self, vehicle_id: int) -> list[dict[str, Any]]:
        stmt = (
            select(mot_tests_table)
            .where(mot_tests_table.c.vehicle_id == vehicle_id)
            .order_by(mot_tests_table.c.test_date.desc(), mot_tests_table.c.id.desc())
        )
        return await self._fetch_all(stmt)

    async def create_mot_test(self, attrs: dict[str, Any]) -> dict[str, Any]:
        row = _mot_test_row(attrs)
        if await self.get_vehicle(row["vehicle_id"]) is None:
            raise PersistenceError(f"Vehicle {row['vehicle_id']} does not exist")
        return await self._insert(mot_tests_table, row)

    async def get_predictions_by_vehicle_id(self, vehicle_id: int) -> list[dict[str, Any]]:
        risk_rank = case(
            {"HIGH": 3, "MEDIUM": 2, "LOW": 1},
            value=predictions_table.c.risk_level,
            else_=0,
        )
        stmt = (
            select(predictions_table)
            .where(predictions_table.c.vehicle_id == vehicle_id)
            .order_by(risk_rank.desc(), predictions_table.c.id)
        )
        return await self._fetch_all(stmt)

    async def create_prediction(self, attrs: dict[str, Any]) -> dict[str, Any]:
        row = _prediction_row(attrs)
        if await self.get_vehicle(row["vehicle_id"]) is None:
            raise PersistenceError(f"Vehicle {row['vehicle_id']} does not exist")
        return await self._insert(predictions_table, row)

    async def delete_predictions_by_vehicle_id(self, vehicle_id: int) -> int:
        async with self._begin() as conn:
            result = await conn.execute(
                delete(predictions_table).where(predictions_table.c.vehicle_id == vehicle_id)
            )
        return int(result.rowcount or 0)


def build_store(settings: ServiceSettings) -> VehicleStore:
    backend = settings.storage_backend.strip().lower()
    if backend == "memory":
        return MemoryStore()
    if backend in ("sql", "postgres"):
        return SqlStore(dsn=settings.database_url)
    raise ValueError(f"Unknown STORAGE_BACKEND: {settings.storage_backend!r}")
