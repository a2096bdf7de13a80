from dataclasses import replace
import datetime

import cta_proxy
from cta_proxy import DisplayArrival, aggregate_arrivals, holiday_item, transform_arrival


CHICAGO = cta_proxy.CTA_TIMEZONE
NOW = datetime.datetime(2024, 12, 20, 17, 30, 0, tzinfo=CHICAGO)


def raw(minutes, prdt=True, **fields):
    record = {
        "staNm": "Belmont",
        "stpDe": "Service toward Kimball",
        "rn": "415",
        "rt": "Brn",
        "destNm": "Kimball",
        "arrT": (NOW + datetime.timedelta(minutes=minutes)).replace(tzinfo=None).isoformat(),
        "isApp": "0",
        "isSch": "1",
        "isDly": "0",
        "flags": None,
    }
    if prdt:
        record["prdt"] = NOW.replace(tzinfo=None).isoformat()
    record.update(fields)
    return record


def display(minutes):
    return DisplayArrival(
        route="Brown",
        route_full="Brown Line",
        station_name="Belmont",
        stop_description=None,
        arrival_time=minutes,
        route_number="415",
        destination="Kimball",
        is_scheduled=False,
        is_arriving=False,
        is_delayed=False,
        is_holiday=False,
        is_pride=False,
    )


def test_holiday_run_example():
    arrival = transform_arrival(raw(5, prdt=False, rn="1224"), now=NOW)
    assert arrival.route == "Brown"
    assert arrival.is_holiday is True
    assert arrival.is_pride is False
    assert arrival.arrival_time == 5


def test_route_names():
    expected = {"G": "Green", "Brn": "Brown", "Org": "Orange", "P": "Purple", "Y": "Yellow"}
    for code, name in expected.items():
        arrival = transform_arrival(raw(1, rt=code), now=NOW)
        assert arrival.route == name
        assert arrival.route_full == f"{name} Line"
    assert transform_arrival(raw(1, rt="Pink"), now=NOW).route == "Pink"


def test_holiday_takes_precedence_over_pride():
    for rn in ("1224", "1225"):
        arrival = transform_arrival(raw(3, rn=rn, flags="H"), now=NOW)
        assert (arrival.is_holiday, arrival.is_pride) == (True, False)


def test_pride_marker():
    arrival = transform_arrival(raw(3, rn="1226", flags="H"), now=NOW)
    assert (arrival.is_holiday, arrival.is_pride) == (False, True)

    arrival = transform_arrival(raw(3, rn="1226", flags=None), now=NOW)
    assert (arrival.is_holiday, arrival.is_pride) == (False, False)


def test_offset_uses_prediction_time_when_present():
    record = raw(6)
    record["prdt"] = (NOW - datetime.timedelta(minutes=2)).replace(tzinfo=None).isoformat()
    assert transform_arrival(record, now=NOW).arrival_time == 8


def test_offset_rounds_down_and_can_be_negative():
    record = raw(0, prdt=False)
    record["arrT"] = (NOW + datetime.timedelta(seconds=119)).replace(tzinfo=None).isoformat()
    assert transform_arrival(record, now=NOW).arrival_time == 1

    record["arrT"] = (NOW - datetime.timedelta(seconds=30)).replace(tzinfo=None).isoformat()
    assert transform_arrival(record, now=NOW).arrival_time == -1


def test_threshold_boundary():
    assert transform_arrival(raw(4), 4, now=NOW).arrival_time == 4
    assert transform_arrival(raw(3), 4, now=NOW) is None
    assert transform_arrival(raw(-3), -5, now=NOW).arrival_time == -3


def test_unparseable_arrival_is_dropped():
    assert transform_arrival(raw(1, arrT="not a time"), now=NOW) is None


def test_flags_and_destination_prefix():
    arrival = transform_arrival(
        raw(2, isApp="1", isDly="1"), now=NOW, destination_prefix="To "
    )
    assert arrival.destination == "To Kimball"
    assert (arrival.is_scheduled, arrival.is_arriving, arrival.is_delayed) == (True, True, True)


def test_aggregate_is_stable_and_filtered():
    first = [display(5), display(1)]
    second = [display(5), display(-2)]
    second[0] = replace(second[0], route_number="999")

    merged = aggregate_arrivals([first, second], min_minutes=0)
    assert [a.arrival_time for a in merged] == [1, 5, 5]
    assert [a.route_number for a in merged[1:]] == ["415", "999"]


def test_aggregate_prepends_holiday_unfiltered():
    holiday = replace(display(30), is_holiday=True)
    merged = aggregate_arrivals([[display(2), display(0)]], min_minutes=40, holiday=holiday)
    assert merged == [holiday]


def test_holiday_item_from_follow_response():
    data = {"ctatt": {"errCd": "0", "errNm": None, "eta": [raw(7, rn="1225", rt="G")]}}
    item = holiday_item(data, now=NOW)
    assert item.route == "Holiday Train on Green"
    assert item.route_full == "Holiday Train on Green"
    assert item.destination == "To Kimball"
    assert item.arrival_time == 7
    assert (item.is_holiday, item.is_pride) == (True, False)


def test_holiday_item_absent():
    assert holiday_item({"ctatt": {"errCd": "502", "errNm": "No trains"}}) is None
    assert holiday_item({"ctatt": {"errCd": "0", "errNm": None, "eta": []}}) is None
