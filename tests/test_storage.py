import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from motcheck.errors import PersistenceError
from service.settings import ServiceSettings
from service.storage import MemoryStore, SqlStore, build_store


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request):
    if request.param == "memory":
        yield MemoryStore()
        return
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    sql_store = SqlStore(engine=engine)
    await sql_store.connect()
    yield sql_store
    await sql_store.close()


def _vehicle(registration="ab12 cde", **overrides):
    attrs = {
        "registration": registration,
        "make": "FORD",
        "model": "FOCUS",
        "year": 2018,
        "fuel_type": "Petrol",
        "mot_status": "PASS",
    }
    attrs.update(overrides)
    return attrs


def _mot_test(vehicle_id, test_date, number, failures=()):
    return {
        "vehicle_id": vehicle_id,
        "test_date": test_date,
        "test_result": "FAIL" if failures else "PASS",
        "test_number": number,
        "failures": [{"text": t, "type": "FAIL", "dangerous": False} for t in failures],
        "advisories": [],
    }


def _prediction(vehicle_id, category, risk_level, confidence=50):
    return {
        "vehicle_id": vehicle_id,
        "category": category,
        "description": f"{category} issues detected",
        "risk_level": risk_level,
        "confidence": confidence,
    }


@pytest.mark.asyncio
async def test_create_and_lookup_vehicle(store):
    vehicle = await store.create_vehicle(_vehicle())
    assert vehicle["registration"] == "AB12CDE"
    assert len(vehicle["uuid"]) == 32
    assert vehicle["last_checked"] is not None

    assert (await store.get_vehicle(vehicle["id"]))["make"] == "FORD"
    assert (await store.get_vehicle_by_registration("ab12cde"))["id"] == vehicle["id"]
    assert (await store.get_vehicle_by_uuid(vehicle["uuid"]))["id"] == vehicle["id"]
    assert await store.get_vehicle_by_registration("ZZ99ZZZ") is None
    assert await store.get_vehicle_by_uuid("missing") is None


@pytest.mark.asyncio
async def test_uuids_are_unique(store):
    first = await store.create_vehicle(_vehicle("AB12CDE"))
    second = await store.create_vehicle(_vehicle("CD34EFG"))
    assert first["uuid"] != second["uuid"]


@pytest.mark.asyncio
async def test_duplicate_registration_rejected(store):
    await store.create_vehicle(_vehicle("AB12CDE"))
    with pytest.raises(PersistenceError):
        await store.create_vehicle(_vehicle("ab12 cde"))


@pytest.mark.asyncio
async def test_update_vehicle_keeps_identity(store):
    vehicle = await store.create_vehicle(_vehicle())
    updated = await store.update_vehicle(
        vehicle["id"], {"mot_status": "FAIL", "uuid": "other", "registration": "XX11XXX"},
    )
    assert updated["mot_status"] == "FAIL"
    assert updated["uuid"] == vehicle["uuid"]
    assert updated["registration"] == "AB12CDE"
    assert await store.update_vehicle(9999, {"mot_status": "FAIL"}) is None


@pytest.mark.asyncio
async def test_mot_tests_newest_first(store):
    vehicle = await store.create_vehicle(_vehicle())
    for test_date, number in [("2022-03-01", "1"), ("2024-03-01", "3"), ("2023-03-01", "2")]:
        await store.create_mot_test(_mot_test(vehicle["id"], test_date, number, failures=["Brake disc worn"]))

    tests = await store.get_mot_tests_by_vehicle_id(vehicle["id"])
    assert [t["test_date"] for t in tests] == ["2024-03-01", "2023-03-01", "2022-03-01"]
    assert tests[0]["failures"] == [{"text": "Brake disc worn", "type": "FAIL", "dangerous": False}]
    assert await store.get_mot_tests_by_vehicle_id(9999) == []


@pytest.mark.asyncio
async def test_child_rows_require_vehicle(store):
    with pytest.raises(PersistenceError):
        await store.create_mot_test(_mot_test(9999, "2024-01-01", "1"))
    with pytest.raises(PersistenceError):
        await store.create_prediction(_prediction(9999, "Brake System", "LOW"))


@pytest.mark.asyncio
async def test_predictions_ordered_by_risk(store):
    vehicle = await store.create_vehicle(_vehicle())
    for category, risk in [("Tyre", "LOW"), ("Brake", "HIGH"), ("Lights", "medium"), ("Age", "MEDIUM")]:
        await store.create_prediction(_prediction(vehicle["id"], category, risk))

    preds = await store.get_predictions_by_vehicle_id(vehicle["id"])
    assert [p["category"] for p in preds] == ["Brake", "Lights", "Age", "Tyre"]
    assert preds[1]["risk_level"] == "MEDIUM"


@pytest.mark.asyncio
async def test_delete_predictions_returns_count(store):
    first = await store.create_vehicle(_vehicle("AB12CDE"))
    second = await store.create_vehicle(_vehicle("CD34EFG"))
    await store.create_prediction(_prediction(first["id"], "Brake", "HIGH"))
    await store.create_prediction(_prediction(first["id"], "Tyre", "LOW"))
    await store.create_prediction(_prediction(second["id"], "Brake", "LOW"))

    assert await store.delete_predictions_by_vehicle_id(first["id"]) == 2
    assert await store.get_predictions_by_vehicle_id(first["id"]) == []
    assert len(await store.get_predictions_by_vehicle_id(second["id"])) == 1
    assert await store.delete_predictions_by_vehicle_id(first["id"]) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("confidence", [-1, 101])
async def test_confidence_must_be_a_percentage(store, confidence):
    vehicle = await store.create_vehicle(_vehicle())
    with pytest.raises(PersistenceError):
        await store.create_prediction(_prediction(vehicle["id"], "Brake", "LOW", confidence=confidence))


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(store):
    with pytest.raises(RuntimeError):
        async with store.transaction() as tx:
            vehicle = await tx.create_vehicle(_vehicle())
            await tx.create_mot_test(_mot_test(vehicle["id"], "2024-01-01", "1"))
            await tx.create_prediction(_prediction(vehicle["id"], "Brake", "LOW"))
            raise RuntimeError("boom")

    assert await store.get_vehicle_by_registration("AB12CDE") is None


@pytest.mark.asyncio
async def test_transaction_rolls_back_updates_and_deletes(store):
    vehicle = await store.create_vehicle(_vehicle())
    await store.create_prediction(_prediction(vehicle["id"], "Brake", "HIGH"))

    with pytest.raises(RuntimeError):
        async with store.transaction() as tx:
            await tx.update_vehicle(vehicle["id"], {"mot_status": "FAIL"})
            await tx.delete_predictions_by_vehicle_id(vehicle["id"])
            raise RuntimeError("boom")

    assert (await store.get_vehicle(vehicle["id"]))["mot_status"] == "PASS"
    assert [p["category"] for p in await store.get_predictions_by_vehicle_id(vehicle["id"])] == ["Brake"]


@pytest.mark.asyncio
async def test_transaction_commits(store):
    async with store.transaction() as tx:
        vehicle = await tx.create_vehicle(_vehicle())
        await tx.create_mot_test(_mot_test(vehicle["id"], "2024-01-01", "1"))

    assert len(await store.get_mot_tests_by_vehicle_id(vehicle["id"])) == 1


@pytest.mark.asyncio
async def test_sql_ping_logs_failure(caplog):
    engine = create_async_engine("sqlite+aiosqlite:////nonexistent-motcheck-dir/motcheck.db")
    sql_store = SqlStore(engine=engine)
    with caplog.at_level("WARNING", logger="service.storage"):
        assert await sql_store.ping() is False
    await sql_store.close()
    assert any("Storage ping failed" in r.getMessage() for r in caplog.records)


def test_build_store(monkeypatch):
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    assert isinstance(build_store(ServiceSettings()), MemoryStore)

    monkeypatch.setenv("STORAGE_BACKEND", "postgres")
    monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://u:p@db:5432/motcheck")
    sql_store = build_store(ServiceSettings())
    assert isinstance(sql_store, SqlStore)
    assert sql_store.dsn.endswith("/motcheck")

    monkeypatch.setenv("STORAGE_BACKEND", "filesystem")
    with pytest.raises(ValueError):
        build_store(ServiceSettings())
