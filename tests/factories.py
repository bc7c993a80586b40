"""Record builders shared by the engine tests."""

from typing import Any, Dict

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


def vehicle_data(vehicle_id: str, **overrides) -> Dict[str, Any]:
    data = {"id": vehicle_id, "make": "Honda", "model": "Civic", "year": 2020}
    data.update(overrides)
    return data


def expense_data(expense_id: str, **overrides) -> Dict[str, Any]:
    data = {
        "id": expense_id,
        "category": "fuel",
        "amount": 42.5,
        "date": "2024-03-01T08:00:00+00:00",
        "tags": ["commute"],
        "volume": 11.2,
    }
    data.update(overrides)
    return data
