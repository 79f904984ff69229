"""
Tests for feed normalization.
"""

from datetime import datetime, timezone

import pytest

from neowatch.services.neo_processing import (
    flatten_feed,
    normalize_feed_record,
    parse_approach_datetime,
    pick_close_approach,
    to_float,
    to_risk_input,
)


def test_to_float_tolerates_garbage():
    assert to_float("12.5") == 12.5
    assert to_float(None) is None
    assert to_float("n/a") is None


class TestPickCloseApproach:

    def test_prefers_earth_entry(self):
        asteroid = {"close_approach_data": [
            {"orbiting_body": "Mars", "close_approach_date": "2026-03-02"},
            {"orbiting_body": "Earth", "close_approach_date": "2026-03-05"},
        ]}
        idx, entry = pick_close_approach(asteroid)
        assert idx == 1
        assert entry["orbiting_body"] == "Earth"

    def test_matches_requested_date(self):
        asteroid = {"close_approach_data": [
            {"orbiting_body": "Earth", "close_approach_date": "2026-03-01"},
            {"orbiting_body": "Earth", "close_approach_date": "2026-03-04"},
        ]}
        idx, _ = pick_close_approach(asteroid, "2026-03-04")
        assert idx == 1

    def test_falls_back_to_first_entry(self):
        asteroid = {"close_approach_data": [{"orbiting_body": "Venus"}]}
        assert pick_close_approach(asteroid) == (0, {"orbiting_body": "Venus"})

    def test_no_entries(self):
        assert pick_close_approach({}) == (None, {})


class TestParseApproachDatetime:

    def test_full_timestamp(self):
        parsed = parse_approach_datetime({"close_approach_date_full": "2026-Mar-02 18:45"})
        assert parsed == datetime(2026, 3, 2, 18, 45, tzinfo=timezone.utc)

    def test_date_only_is_midnight_utc(self):
        parsed = parse_approach_datetime({"close_approach_date": "2026-03-02"})
        assert parsed == datetime(2026, 3, 2, tzinfo=timezone.utc)

    def test_unparseable_full_falls_back_to_date(self):
        parsed = parse_approach_datetime({
            "close_approach_date_full": "not a date",
            "close_approach_date": "2026-03-02",
        })
        assert parsed == datetime(2026, 3, 2, tzinfo=timezone.utc)

    def test_missing(self):
        assert parse_approach_datetime({}) is None


class TestNormalizeFeedRecord:

    def test_maps_nasa_fields(self, raw_neo, now):
        record = normalize_feed_record(raw_neo(hazardous=True, diameter_max=120.0, lunar=5.0, velocity=12.0))

        assert record.neo_reference_id == "3542519"
        assert record.name == "(2010 PK9)"
        assert record.is_potentially_hazardous is True
        assert record.estimated_diameter_max_m == 120.0
        assert record.miss_distance_lunar == 5.0
        assert record.relative_velocity_kps == 12.0
        assert record.orbiting_body == "Earth"
        assert record.close_approach_date == now.replace(hour=18)
        assert record.raw_data["id"] == "3542519"

    def test_missing_id_is_rejected(self, raw_neo):
        raw = raw_neo()
        raw.pop("id")
        raw.pop("neo_reference_id")
        with pytest.raises(ValueError):
            normalize_feed_record(raw)

    def test_non_mapping_is_rejected(self):
        with pytest.raises(TypeError):
            normalize_feed_record(["not", "a", "record"])

    @pytest.mark.parametrize(
        "field,value",
        [
            ("close_approach_data", ["garbage"]),
            ("close_approach_data", "garbage"),
            ("estimated_diameter", {"meters": [120.0]}),
            ("estimated_diameter", 120.0),
        ],
    )
    def test_malformed_nested_values_are_rejected(self, raw_neo, field, value):
        raw = raw_neo()
        raw[field] = value
        with pytest.raises(ValueError):
            normalize_feed_record(raw)

    @pytest.mark.parametrize("field", ["miss_distance", "relative_velocity"])
    def test_malformed_approach_measurements_are_rejected(self, raw_neo, field):
        raw = raw_neo()
        raw["close_approach_data"][0][field] = "far"
        with pytest.raises(ValueError):
            normalize_feed_record(raw)

    def test_sparse_record_scores_with_defaults(self):
        record = normalize_feed_record({"id": "99"})

        assert record.name == "99"
        assert record.close_approach_date is None
        neo = to_risk_input(record)
        assert neo.diameter_max_m == 0.0
        assert neo.miss_distance_lunar == 0.0
        assert neo.velocity_kps == 0.0
        assert neo.is_hazardous is False


def test_flatten_feed_orders_by_date():
    feed = {
        "2026-03-04": [{"id": "c"}],
        "2026-03-02": [{"id": "a"}, {"id": "b"}],
        "2026-03-03": [],
    }
    assert [item["id"] for item in flatten_feed(feed)] == ["a", "b", "c"]
    assert flatten_feed(None) == []
