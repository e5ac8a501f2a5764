from datetime import datetime, timezone

import pytest

from firewatch.records import (
    IncidentRecord,
    ResourceCounts,
    extract_coords,
    is_concluded,
    parse_timestamp,
    pretty_time,
    prop_str,
    resolve_id,
    to_count,
    to_number,
)


@pytest.mark.parametrize("value, expected", [
    (5, 5.0),
    (2.5, 2.5),
    (" 7 ", 7.0),
    ("abc", None),
    ("", None),
    (None, None),
    (True, None),
    (float("nan"), None),
    ([1], None),
    (10**400, None),
    ("1e400", None),
])
def test_to_number(value, expected):
    assert to_number(value) == expected


def test_to_count_treats_junk_as_zero():
    assert to_count("12") == 12
    assert to_count("n/a") == 0
    assert to_count(None) == 0


def test_resolve_id_prefers_first_usable_key():
    assert resolve_id({"id": "2024123", "uid": "x"}) == "2024123"
    assert resolve_id({"id": "", "globalId": 42.0}) == "42"
    assert resolve_id({"id": 0, "uid": "u1"}) == "u1"
    assert resolve_id({"name": "no id"}) is None


def test_prop_str_renders_numbers_without_decimals():
    assert prop_str({"man": 12.0}, "man") == "12"
    assert prop_str({"a": "  ", "b": "x"}, "a", "b") == "x"
    assert prop_str({}, "a") == ""


@pytest.mark.parametrize("value", [
    "2025-08-01T10:30:00Z",
    "2025-08-01T10:30:00+00:00",
    "2025-08-01 10:30:00",
    "01/08/2025 10:30",
    1754044200,
    1754044200000,
    "1754044200",
    {"sec": 1754044200},
])
def test_parse_timestamp_encodings(value):
    assert parse_timestamp(value) == datetime(2025, 8, 1, 10, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", ["yesterday", "", None, {"foo": 1}, -5, True, "²", "9" * 400, 10**400])
def test_parse_timestamp_unreadable_is_none(value):
    assert parse_timestamp(value) is None


def test_extract_coords_geojson_is_lon_lat():
    assert extract_coords({"type": "Point", "coordinates": [-8.09, 39.8]}) == (39.8, -8.09)
    assert extract_coords(None, {"lat": "39.8", "lng": "-8.09"}) == (39.8, -8.09)
    assert extract_coords({"coordinates": ["x", 1]}) is None


def test_from_feature_maps_upstream_fields():
    rec = IncidentRecord.from_feature(
        {
            "id": "2025050012345",
            "concelho": "Sertã",
            "district": "Castelo Branco",
            "freguesia": "Cernache do Bonjardim",
            "natureza": "Mato",
            "naturezaCode": "3103",
            "status": "Em Curso",
            "statusCode": "5",
            "man": "23",
            "terrain": 7,
            "aerial": "bad",
            "extra": "  EN238 cortada ",
            "dateTime": {"sec": 1754044200},
        },
        {"type": "Point", "coordinates": [-8.09, 39.8]},
    )
    assert rec.id == "2025050012345"
    assert rec.area_name == "Sertã"
    assert rec.parish == "Cernache do Bonjardim"
    assert rec.status_code == 5.0
    assert rec.resources == ResourceCounts(personnel=23, ground_vehicles=7)
    assert rec.annotation == "EN238 cortada"
    assert rec.coordinates == (39.8, -8.09)


def test_from_feature_tolerates_missing_properties():
    rec = IncidentRecord.from_feature(None)
    assert rec.id is None
    assert rec.area_name == ""
    assert rec.resources == ResourceCounts()


def test_resource_diff_reports_old_and_new():
    before = ResourceCounts(personnel=0, aircraft=1)
    after = ResourceCounts(personnel=5, aircraft=1)
    assert before.diff(after) == {"personnel": (0, 5)}
    assert ResourceCounts.from_dict(after.to_dict()) == after


def test_is_concluded_is_accent_insensitive_substring():
    assert is_concluded("Conclusão")
    assert is_concluded("EM CONCLUSAO")
    assert not is_concluded("Em Curso")


def test_out_of_range_values_degrade_to_absent():
    rec = IncidentRecord.from_feature({
        "id": "1", "concelho": "Sertã", "man": 10**400, "terrain": 4,
        "statusCode": 10**400, "dateTime": "²",
    })
    assert rec.resources == ResourceCounts(ground_vehicles=4)
    assert rec.status_code is None
    assert pretty_time(rec.created) == ""
