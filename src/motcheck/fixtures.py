from __future__ import annotations

from typing import Any


def fixture_record(registration: str) -> dict[str, Any]:
    """Canned MOT history in the fixture payload shape, for demo deployments."""
    return {
        "registration": registration,
        "make": "Ford",
        "model": "Focus",
        "firstUsedDate": "2018.03.15",
        "fuelType": "Petrol",
        "engineSize": "1596",
        "colour": "Blue",
        "motTests": [
            {
                "completedDate": "2024.03.15",
                "testResult": "PASS",
                "expiryDate": "2025.03.15",
                "odometerValue": "45231",
                "odometerUnit": "mi",
                "motTestNumber": "123456789012",
                "testCentre": {"name": "Quick Fit Motors", "number": "V12345"},
                "defects": [],
            },
            {
                "completedDate": "2024.03.08",
                "testResult": "FAIL",
                "expiryDate": None,
                "odometerValue": "45228",
                "odometerUnit": "mi",
                "motTestNumber": "123456789011",
                "testCentre": {"name": "Quick Fit Motors", "number": "V12345"},
                "defects": [
                    {
                        "text": "Front brake disc significantly and obviously worn on both sides",
                        "type": "FAIL",
                        "dangerous": False,
                    },
                    {
                        "text": "Windscreen wiper blade deteriorated, torn or holed",
                        "type": "FAIL",
                        "dangerous": False,
                    },
                ],
            },
            {
                "completedDate": "2023.03.22",
                "testResult": "PASS",
                "expiryDate": "2024.03.22",
                "odometerValue": "38452",
                "odometerUnit": "mi",
                "motTestNumber": "123456789010",
                "testCentre": {"name": "AutoTest Centre", "number": "V54321"},
                "defects": [
                    {
                        "text": "Nearside rear tyre tread depth low",
                        "type": "ADVISORY",
                        "dangerous": False,
                    }
                ],
            },
        ],
    }
