"""Cost extractor — flattens TravelCompositor package detail into a cost breakdown."""

from dataclasses import dataclass
from typing import Any

# Line-item lists in a package detail; transports are air, the rest land
AIR_CATEGORIES = ("transports",)
LAND_CATEGORIES = ("hotels", "transfers", "closedTours", "tickets", "cars")


@dataclass(frozen=True)
class CostBreakdown:
    air_cost: float = 0.0
    land_cost: float = 0.0
    agency_fee: float = 0.0
    flight_departure_date: str | None = None
    airline_code: str | None = None
    airline_name: str | None = None
    flight_numbers: str | None = None


def _dig(obj: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _amount(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return 0.0
    return 0.0


def _items(detail: dict, category: str) -> list[dict]:
    items = detail.get(category)
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def _net_cost(item: dict) -> float:
    """Net provider cost, falling back to the item's total price."""
    net = _dig(item, "priceBreakdown", "netProvider", "microsite", "amount")
    if net:
        return _amount(net)
    return _amount(_dig(item, "totalPrice", "amount"))


def _agency_fee(item: dict) -> float:
    return _amount(_dig(item, "priceBreakdown", "agencyFee", "microsite", "amount"))


def extract_costs(detail: Any) -> CostBreakdown:
    """
    Sum air/land costs and agency fees across every line item and capture
    the primary flight descriptor (first non-empty value per field, in
    transport order).
    """
    if not isinstance(detail, dict):
        return CostBreakdown()

    air_cost = 0.0
    land_cost = 0.0
    agency_fee = 0.0
    departure_date = None
    airline_code = None
    airline_name = None
    flight_numbers: list[str] = []

    for category in AIR_CATEGORIES:
        for transport in _items(detail, category):
            air_cost += _net_cost(transport)
            agency_fee += _agency_fee(transport)

            if not departure_date and transport.get("departureDate"):
                departure_date = transport["departureDate"]
            if not airline_code and transport.get("marketingAirlineCode"):
                airline_code = transport["marketingAirlineCode"]
            if not airline_name and transport.get("company"):
                airline_name = transport["company"]
            if transport.get("transportNumber"):
                flight_numbers.append(str(transport["transportNumber"]))

    for category in LAND_CATEGORIES:
        for item in _items(detail, category):
            land_cost += _net_cost(item)
            agency_fee += _agency_fee(item)

    return CostBreakdown(
        air_cost=air_cost,
        land_cost=land_cost,
        agency_fee=agency_fee,
        flight_departure_date=departure_date,
        airline_code=airline_code,
        airline_name=airline_name,
        flight_numbers="/".join(flight_numbers) if flight_numbers else None,
    )
