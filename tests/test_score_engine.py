"""Tests for the essential-service classifier and score engine."""

import pytest

from conftest import make_place, remote_places, three_domain_places, well_served_places
from errors import InsufficientData
from places import Coordinate, Place
from score_engine import (
    ScoredReport,
    classify,
    coverage,
    essential_domains,
    growth_prediction,
    location_score,
    score,
)
from scoring_config import PiecewiseKnot, apply_piecewise

ORIGIN = Coordinate(12.9716, 77.5946)


class TestClassify:
    def test_clinic_only_counts_as_health(self):
        place = Place(place_id="p1", name="Clinic", tags=frozenset({"clinic"}))
        assert classify(place) is True
        assert essential_domains(place) == frozenset({"health"})

    def test_tag_intersection_not_equality(self):
        place = Place(
            place_id="p1", name="Mall",
            tags=frozenset({"point_of_interest", "shopping_mall", "establishment"}),
        )
        assert essential_domains(place) == frozenset({"retail"})

    def test_multi_domain_place(self):
        place = Place(
            place_id="p1", name="Station Mart",
            tags=frozenset({"train_station", "convenience_store"}),
        )
        assert essential_domains(place) == frozenset({"transit", "retail"})

    def test_non_essential(self):
        place = Place(place_id="p1", name="Cafe", tags=frozenset({"cafe", "food"}))
        assert classify(place) is False

    def test_no_tags(self):
        assert classify(Place(place_id="p1", name="Unknown")) is False


class TestCoverage:
    def test_canonical_order(self):
        assert coverage(well_served_places()) == ["education", "health", "transit", "retail"]

    def test_three_domains(self):
        assert coverage(three_domain_places()) == ["education", "health", "retail"]

    def test_remote(self):
        assert coverage(remote_places()) == []


class TestLocationScore:
    def test_well_served_location(self):
        assert location_score(well_served_places()) == pytest.approx(4.81, abs=0.01)

    def test_within_bounds(self):
        for places in (well_served_places(), three_domain_places(), remote_places()):
            s = location_score(places)
            assert 0.1 <= s <= 5.0

    def test_more_coverage_scores_higher(self):
        full = well_served_places()
        partial = [p for p in full if "school" not in p.tags]
        assert location_score(full) > location_score(partial)

    def test_closer_essentials_score_higher(self):
        near = [make_place("Clinic", {"clinic"}, 4.0, 300)]
        far = [make_place("Clinic", {"clinic"}, 4.0, 4500)]
        assert location_score(near) > location_score(far)

    def test_unrated_places_use_neutral_rating(self):
        unrated = [make_place("Clinic", {"clinic"}, None, 300)]
        rated_low = [make_place("Clinic", {"clinic"}, 1.0, 300)]
        assert location_score(unrated) > location_score(rated_low)


class TestGrowthPrediction:
    def test_well_served_location(self):
        assert growth_prediction(well_served_places()) == pytest.approx(5.1, abs=0.05)

    def test_deterministic(self):
        places = well_served_places()
        assert growth_prediction(places) == growth_prediction(list(places))

    def test_sparse_area_is_negative(self):
        assert growth_prediction(remote_places()) < 0

    def test_generic_tags_do_not_add_diversity(self):
        plain = [make_place("A", {"cafe"})]
        noisy = [make_place("A", {"cafe", "point_of_interest", "establishment"})]
        assert growth_prediction(plain) == growth_prediction(noisy)


class TestScore:
    def test_empty_places_raises_insufficient_data(self):
        with pytest.raises(InsufficientData):
            score(ORIGIN, [])

    def test_report_fields(self):
        places = well_served_places()
        report = score(ORIGIN, places)
        assert report.location_score == location_score(places)
        assert report.growth_prediction == growth_prediction(places)
        assert report.nearby_places == places
        assert report.essential_coverage == ["education", "health", "transit", "retail"]
        assert report.recommendations is None
        assert report.model_version == "1.0.0"

    def test_distances_keyed_by_name(self):
        report = score(ORIGIN, well_served_places())
        hospital = report.distances["City Hospital"]
        assert hospital["distance"]["value"] == 400
        assert hospital["duration"]["value"] == 80

    def test_duplicate_names_keep_first(self):
        places = [
            make_place("Fresh Mart", {"supermarket"}, 4.0, 300, place_id="a"),
            make_place("Fresh Mart", {"supermarket"}, 4.0, 900, place_id="b"),
        ]
        report = score(ORIGIN, places)
        assert report.distances["Fresh Mart"]["distance"]["value"] == 300

    def test_same_input_same_report(self):
        places = well_served_places()
        assert score(ORIGIN, places).to_dict() == score(ORIGIN, places).to_dict()

    def test_serialization_preserves_report(self):
        report = score(ORIGIN, well_served_places())
        report.recommendations = ["Buy early."]
        restored = ScoredReport.from_dict(report.to_dict())
        assert restored.to_dict() == report.to_dict()
        assert restored.nearby_places[0].tags == report.nearby_places[0].tags


class TestApplyPiecewise:
    KNOTS = (PiecewiseKnot(0, 0), PiecewiseKnot(10, 100))

    def test_interpolates(self):
        assert apply_piecewise(self.KNOTS, 2.5) == 25

    def test_clamps(self):
        assert apply_piecewise(self.KNOTS, -5) == 0
        assert apply_piecewise(self.KNOTS, 50) == 100

    def test_empty_knots(self):
        with pytest.raises(ValueError):
            apply_piecewise((), 1)
