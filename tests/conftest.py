import copy
from typing import Any

import pytest


SCENARIO_RECORD: dict[str, Any] = {
    "registration": "AB12CDE",
    "make": "VAUXHALL",
    "model": "ASTRA",
    "firstUsedDate": "2012-06-01",
    "fuelType": "Petrol",
    "primaryColour": "Silver",
    "engineSize": "1598",
    "motTests": [
        {
            "completedDate": "2024-01-10T09:41:12.000Z",
            "testResult": "FAILED",
            "odometerValue": "81234",
            "odometerUnit": "mi",
            "motTestNumber": "501234567890",
            "defects": [
                {"text": "Front brake disc worn", "type": "FAIL", "dangerous": False},
                {"text": "Tyre tread low", "type": "ADVISORY", "dangerous": False},
            ],
        }
    ],
}


class StubSource:
    def __init__(self, record: dict[str, Any] | None = None, error: Exception | None = None) -> None:
        self.record = record or SCENARIO_RECORD
        self.error = error
        self.calls = 0

    async def fetch(self, registration: str) -> dict[str, Any]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.record)

    def status(self) -> dict[str, Any]:
        return {"source": "stub", "configured": True, "token_cached": False}


@pytest.fixture
def scenario_record() -> dict[str, Any]:
    return copy.deepcopy(SCENARIO_RECORD)


@pytest.fixture
def stub_source() -> StubSource:
    return StubSource()
