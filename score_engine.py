"""
Essential-service classifier and location score engine.

A place is "essential" when its category tags intersect one of the
canonical domain sets in scoring_config.ESSENTIAL_CATEGORIES.  Matching is
always set intersection over the full tag set: a place tagged only
"clinic" still counts as health coverage.

score() is deterministic: the same coordinate and places always produce
the same ScoredReport, which is what makes re-reads of a stored session
idempotent.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from errors import InsufficientData
from places import Coordinate, Place
from scoring_config import (
    ESSENTIAL_CATEGORIES,
    ESSENTIAL_DOMAINS,
    SCORING_MODEL,
    apply_piecewise,
)

logger = logging.getLogger(__name__)

# Tags Google attaches to nearly everything; they say nothing about diversity.
GENERIC_TAGS = frozenset({"point_of_interest", "establishment"})


@dataclass
class ScoredReport:
    """Full, ungated analysis result. Computed once at session creation."""
    location_score: float
    growth_prediction: float
    nearby_places: List[Place] = field(default_factory=list)
    distances: Dict[str, dict] = field(default_factory=dict)
    essential_coverage: List[str] = field(default_factory=list)
    recommendations: Optional[List[str]] = None
    warnings: List[str] = field(default_factory=list)
    model_version: str = ""

    def to_dict(self) -> dict:
        return {
            "location_score": self.location_score,
            "growth_prediction": self.growth_prediction,
            "nearby_places": [p.to_dict() for p in self.nearby_places],
            "distances": dict(self.distances),
            "essential_coverage": list(self.essential_coverage),
            "recommendations": (
                list(self.recommendations) if self.recommendations is not None else None
            ),
            "warnings": list(self.warnings),
            "model_version": self.model_version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScoredReport":
        recs = data.get("recommendations")
        return cls(
            location_score=data["location_score"],
            growth_prediction=data["growth_prediction"],
            nearby_places=[Place.from_dict(p) for p in data.get("nearby_places", [])],
            distances=dict(data.get("distances") or {}),
            essential_coverage=list(data.get("essential_coverage") or []),
            recommendations=list(recs) if recs is not None else None,
            warnings=list(data.get("warnings") or []),
            model_version=data.get("model_version", ""),
        )


# =============================================================================
# Classification
# =============================================================================

def essential_domains(place: Place) -> FrozenSet[str]:
    """Domains (health/transit/retail/education) this place provides."""
    return frozenset(
        domain for domain, tags in ESSENTIAL_CATEGORIES.items()
        if place.tags & tags
    )


def classify(place: Place) -> bool:
    """True if the place covers at least one essential domain."""
    return bool(essential_domains(place))


def coverage(places: Iterable[Place]) -> List[str]:
    """Essential domains covered by *places*, in canonical domain order."""
    covered: Set[str] = set()
    for p in places:
        covered |= essential_domains(p)
    return [d for d in ESSENTIAL_DOMAINS if d in covered]


# =============================================================================
# Score components
# =============================================================================

def _rating_factor(places: List[Place]) -> float:
    """Average rating of the top-N rated places, as a 0..1 factor."""
    cfg = SCORING_MODEL.location
    ratings = sorted(
        (min(5.0, max(0.0, float(p.rating))) for p in places if p.rating is not None),
        reverse=True,
    )[:cfg.top_n_rated]
    if not ratings:
        return cfg.unrated_factor
    return (sum(ratings) / len(ratings)) / 5.0


def _proximity_factor(places: List[Place]) -> float:
    """Inverse-distance factor over essential places with a known travel distance."""
    km = [p.travel.distance_m / 1000.0 for p in places if p.travel and classify(p)]
    if not km:
        return 0.0
    return apply_piecewise(SCORING_MODEL.proximity_knots, sum(km) / len(km))


def location_score(places: List[Place]) -> float:
    cfg = SCORING_MODEL.location
    covered = len(coverage(places)) / len(ESSENTIAL_DOMAINS)
    raw = (
        cfg.coverage * covered
        + cfg.rating * _rating_factor(places)
        + cfg.proximity * _proximity_factor(places)
    )
    score = max(cfg.min_score, min(cfg.max_score, raw * cfg.max_score))
    return round(score, 2)


def growth_prediction(places: List[Place]) -> float:
    """Annual growth estimate (percent) from amenity density and diversity."""
    g = SCORING_MODEL.growth
    density = min(1.0, len(places) / g.density_saturation)
    tags: Set[str] = set()
    for p in places:
        tags |= p.tags - GENERIC_TAGS
    covered = len(coverage(places)) / len(ESSENTIAL_DOMAINS)
    diversity = (covered + min(1.0, len(tags) / g.tag_saturation)) / 2
    index = g.density_weight * density + g.diversity_weight * diversity
    return round(apply_piecewise(g.knots, index), 1)


def score(coordinate: Coordinate, places: List[Place]) -> ScoredReport:
    """Score a coordinate from its nearby places.

    Raises InsufficientData when the provider returned nothing at all;
    that is a data-availability failure, not a policy decision.
    """
    if not places:
        raise InsufficientData(
            f"No places found near {coordinate.lat:.5f},{coordinate.lng:.5f}"
        )

    distances: Dict[str, dict] = {}
    for p in places:
        if p.travel and p.name not in distances:
            distances[p.name] = p.travel.to_dict()

    report = ScoredReport(
        location_score=location_score(places),
        growth_prediction=growth_prediction(places),
        nearby_places=list(places),
        distances=distances,
        essential_coverage=coverage(places),
        model_version=SCORING_MODEL.version,
    )
    logger.info(
        "Scored %s,%s: score=%.2f growth=%.1f%% coverage=%s places=%d",
        coordinate.lat, coordinate.lng, report.location_score,
        report.growth_prediction, ",".join(report.essential_coverage) or "-",
        len(places),
    )
    return report
