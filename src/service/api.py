from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from motcheck.config import PredictionConfig
from motcheck.errors import MotCheckError
from service.dvsa import RecordSource, build_record_source
from service.ingestion import IngestionService, VehicleReport
from service.logging_config import configure_logging, correlation_id, new_correlation_id
from service.settings import ServiceSettings
from service.storage import VehicleStore, build_store

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"


# ── Response Models ─────────────────────────────────────────────────

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DefectOut(CamelModel):
    text: str
    type: str
    dangerous: bool = False


class VehicleOut(CamelModel):
    id: int
    uuid: str
    registration: str
    make: str | None = None
    model: str | None = None
    year: int | None = None
    fuel_type: str | None = None
    engine_size: str | None = None
    colour: str | None = None
    mot_status: str | None = None
    mot_expiry_date: str | None = None
    last_checked: datetime


class MotTestOut(CamelModel):
    id: int
    vehicle_id: int
    test_date: str
    test_result: str
    expiry_date: str | None = None
    odometer_value: int | None = None
    odometer_unit: str | None = None
    test_number: str | None = None
    test_centre: str | None = None
    failures: list[DefectOut] = Field(default_factory=list)
    advisories: list[DefectOut] = Field(default_factory=list)


class PredictionOut(CamelModel):
    id: int
    vehicle_id: int
    category: str
    description: str
    risk_level: str
    confidence: int = Field(ge=0, le=100)
    last_failure_date: str | None = None
    pattern: str | None = None
    recommendations: str | None = None
    created_at: datetime


class VehicleHistoryResponse(CamelModel):
    vehicle: VehicleOut
    mot_tests: list[MotTestOut]
    predictions: list[PredictionOut]

    @classmethod
    def from_report(cls, report: VehicleReport) -> "VehicleHistoryResponse":
        return cls(
            vehicle=VehicleOut(**report.vehicle),
            mot_tests=[MotTestOut(**t) for t in report.mot_tests],
            predictions=[PredictionOut(**p) for p in report.predictions],
        )


class VehicleLookupResponse(VehicleHistoryResponse):
    uuid: str

    @classmethod
    def from_report(cls, report: VehicleReport) -> "VehicleLookupResponse":
        base = VehicleHistoryResponse.from_report(report)
        return cls(
            vehicle=base.vehicle,
            mot_tests=base.mot_tests,
            predictions=base.predictions,
            uuid=report.uuid,
        )


class ErrorResponse(BaseModel):
    message: str
    error: str


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


# ── In-process Metrics ──────────────────────────────────────────────

_counters: dict[str, int] = defaultdict(int)
_latencies: dict[str, list[float]] = defaultdict(list)


def _record_latency(name: str, seconds: float) -> None:
    _latencies[name].append(seconds)
    _counters[f"{name}_count"] += 1


def _percentile_ms(values: list[float], q: float) -> float:
    if not values:
        return 0
    ordered = sorted(values)
    return round(ordered[min(int(len(ordered) * q), len(ordered) - 1)] * 1000, 1)


# ── App Factory ─────────────────────────────────────────────────────

_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    code: {"model": ErrorResponse} for code in (400, 401, 403, 404, 429, 500, 503)
}


def create_app(
    settings: ServiceSettings | None = None,
    store: VehicleStore | None = None,
    source: RecordSource | None = None,
) -> FastAPI:
    settings = settings or ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    store = store or build_store(settings)
    source = source or build_record_source(settings)
    prediction_config = PredictionConfig()
    ingestion = IngestionService(store=store, source=source, config=prediction_config)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await store.connect()
        logger.info("MOT history service started (source=%s)", source.status()["source"])
        try:
            yield
        finally:
            await store.close()

    app = FastAPI(title="MOT History & Risk Prediction API", version=API_VERSION, lifespan=lifespan)

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        cid = request.headers.get("X-Correlation-ID") or new_correlation_id()
        correlation_id.set(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response

    @app.exception_handler(MotCheckError)
    async def motcheck_error_handler(_: Request, exc: MotCheckError) -> JSONResponse:
        _counters[f"error_{exc.kind}"] += 1
        if exc.status_code >= 500:
            logger.error("%s: %s", exc.kind, exc.message)
        else:
            logger.info("%s: %s", exc.kind, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(message=exc.message, error=exc.kind).model_dump(),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(_: Request, exc: Exception) -> JSONResponse:
        _counters["error_internal"] += 1
        logger.error("Unhandled error: %s", exc, exc_info=exc)
        return JSONResponse(status_code=500, content={"message": "Internal server error"})

    router = APIRouter(responses=_ERROR_RESPONSES)

    # ── Vehicle Lookup ──────────────────────────────────────────────

    @router.get("/vehicle/registration/{registration}", response_model=VehicleLookupResponse)
    async def lookup_by_registration(registration: str, refresh: bool = False) -> VehicleLookupResponse:
        t0 = time.monotonic()
        report = await ingestion.lookup_registration(registration, refresh=refresh)
        _counters[f"lookup_{report.outcome}"] += 1
        _record_latency("lookup", time.monotonic() - t0)
        return VehicleLookupResponse.from_report(report)

    @router.get("/vehicle/{uuid}", response_model=VehicleHistoryResponse)
    async def get_by_uuid(uuid: str) -> VehicleHistoryResponse:
        report = await ingestion.get_by_lookup_key(uuid)
        return VehicleHistoryResponse.from_report(report)

    # ── External Source Diagnostics ─────────────────────────────────

    @router.get("/externalSource/vehicle/{registration}")
    async def external_source_vehicle(registration: str) -> dict[str, Any]:
        t0 = time.monotonic()
        payload = await ingestion.fetch_raw(registration)
        _record_latency("external_fetch", time.monotonic() - t0)
        return payload

    @router.get("/externalSource/status")
    async def external_source_status() -> dict[str, Any]:
        return {
            "externalSource": source.status(),
            "predictionEngine": {
                "status": "active",
                "service": "heuristic-predictions",
                "version": API_VERSION,
                "categories": [c.name for c in prediction_config.categories],
            },
        }

    # ── Health ──────────────────────────────────────────────────────

    @router.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @router.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {
            "storage": await store.ping(),
            "external_source": bool(source.status()["configured"]),
        }
        if not checks["storage"]:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    @router.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        lookups = _latencies.get("lookup", [])
        return {
            "counters": dict(_counters),
            "lookup_latency": {
                "count": len(lookups),
                "p50_ms": _percentile_ms(lookups, 0.5),
                "p95_ms": _percentile_ms(lookups, 0.95),
                "p99_ms": _percentile_ms(lookups, 0.99),
            },
        }

    app.include_router(router)
    app.include_router(router, prefix="/api")

    return app


app = create_app()
