"""Tests for tier projection of stored reports."""

import copy

import pytest

from conftest import make_place, well_served_places
from errors import InvalidInput
from places import Coordinate
from plan_gate import RECOMMENDATIONS_UNAVAILABLE, project
from score_engine import score

ORIGIN = Coordinate(19.0760, 72.8777)


@pytest.fixture()
def report():
    places = well_served_places() + [
        make_place("Metro Mall", {"shopping_mall"}, 4.1, 1500),
        make_place("Ring Road Bus Depot", {"bus_station"}, 3.5, 1800),
    ]
    return score(ORIGIN, places)


class TestFreeTier:
    def test_only_score_and_three_places(self, report):
        view = project(report, "free")
        assert view["location_score"] == report.location_score
        assert len(view["nearby_places"]) == 3
        assert len(view["distances"]) <= 3
        assert "growth_prediction" not in view
        assert "recommendations" not in view
        assert "essential_coverage" not in view

    def test_distances_match_listed_places(self, report):
        view = project(report, "free")
        names = {p["name"] for p in view["nearby_places"]}
        assert set(view["distances"]) <= names

    def test_short_report(self):
        small = score(ORIGIN, [make_place("Clinic", {"clinic"})])
        view = project(small, "free")
        assert len(view["nearby_places"]) == 1


class TestPaidTier:
    def test_full_places_and_growth(self, report):
        view = project(report, "paid")
        assert len(view["nearby_places"]) == len(report.nearby_places)
        assert view["distances"] == report.distances
        assert view["growth_prediction"] == report.growth_prediction
        assert "recommendations" not in view

    def test_basic_alias(self, report):
        assert project(report, "basic")["tier"] == "paid"


class TestProTier:
    def test_includes_recommendations(self, report):
        report.recommendations = ["Strong rental demand near the bus stand."]
        view = project(report, "pro")
        assert view["recommendations"] == report.recommendations
        assert "warnings" not in view

    def test_narrative_failure_omits_and_warns(self, report):
        view = project(report, "pro")
        assert "recommendations" not in view
        assert view["warnings"] == [RECOMMENDATIONS_UNAVAILABLE]
        assert view["location_score"] == report.location_score
        assert view["growth_prediction"] == report.growth_prediction

    def test_warning_not_duplicated(self, report):
        report.warnings.append(RECOMMENDATIONS_UNAVAILABLE)
        assert project(report, "pro")["warnings"] == [RECOMMENDATIONS_UNAVAILABLE]


class TestProjectionPurity:
    def test_report_not_modified(self, report):
        before = copy.deepcopy(report.to_dict())
        for tier in ("free", "paid", "pro"):
            project(report, tier)
        assert report.to_dict() == before

    def test_unknown_tier(self, report):
        with pytest.raises(InvalidInput):
            project(report, "platinum")
