from app.services.cost_extractor import CostBreakdown, extract_costs


def _priced(net=None, total=None, fee=None, **fields):
    item = dict(fields)
    breakdown = {}
    if net is not None:
        breakdown["netProvider"] = {"microsite": {"amount": net}}
    if fee is not None:
        breakdown["agencyFee"] = {"microsite": {"amount": fee}}
    if breakdown:
        item["priceBreakdown"] = breakdown
    if total is not None:
        item["totalPrice"] = {"amount": total}
    return item


def test_sums_air_land_and_fees():
    detail = {
        "transports": [
            _priced(net=300, fee=20, departureDate="2026-03-01", marketingAirlineCode="AV",
                    company="Avianca", transportNumber="AV123"),
            _priced(net=280, fee=15, departureDate="2026-03-08", marketingAirlineCode="CM",
                    company="Copa", transportNumber="CM456"),
        ],
        "hotels": [_priced(net=700, fee=50)],
        "transfers": [_priced(total=40)],
        "closedTours": [_priced(net=90)],
        "tickets": [_priced(total=25, fee=5)],
        "cars": [],
    }

    costs = extract_costs(detail)

    assert costs.air_cost == 580
    assert costs.land_cost == 700 + 40 + 90 + 25
    assert costs.agency_fee == 20 + 15 + 50 + 5
    assert costs.flight_departure_date == "2026-03-01"
    assert costs.airline_code == "AV"
    assert costs.airline_name == "Avianca"
    assert costs.flight_numbers == "AV123/CM456"


def test_net_cost_falls_back_to_total_price():
    detail = {"hotels": [_priced(net=0, total=150), _priced(total=100)]}
    assert extract_costs(detail).land_cost == 250


def test_flight_descriptor_is_first_non_empty_in_order():
    detail = {
        "transports": [
            _priced(net=10, departureDate="", company=None, transportNumber=""),
            _priced(net=10, departureDate="2026-05-02", marketingAirlineCode="LA", company="LATAM"),
            _priced(net=10, departureDate="2026-05-09", marketingAirlineCode="AA", company="American",
                    transportNumber="AA900"),
        ],
    }

    costs = extract_costs(detail)

    assert costs.flight_departure_date == "2026-05-02"
    assert costs.airline_code == "LA"
    assert costs.airline_name == "LATAM"
    assert costs.flight_numbers == "AA900"


def test_missing_everything_yields_zero_breakdown():
    assert extract_costs({}) == CostBreakdown()
    assert extract_costs(None) == CostBreakdown()
    assert extract_costs("not a dict") == CostBreakdown()


def test_malformed_items_are_ignored():
    detail = {
        "transports": [None, "junk", {"priceBreakdown": "nope", "totalPrice": {"amount": "abc"}}],
        "hotels": {"not": "a list"},
        "cars": [{"totalPrice": {"amount": "120.50"}}, {"totalPrice": {"amount": True}}],
    }

    costs = extract_costs(detail)

    assert costs.air_cost == 0
    assert costs.land_cost == 120.5
    assert costs.flight_numbers is None
