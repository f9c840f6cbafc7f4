"""
Plan Gate: restricts a stored ScoredReport to what a tier may see.

Pure projection with no I/O.  The stored report is never modified, so a
read for any tier never triggers recomputation.
"""

from typing import List

from errors import InvalidInput
from scoring_config import SCORING_MODEL, normalize_tier
from score_engine import ScoredReport

RECOMMENDATIONS_UNAVAILABLE = "Recommendations are temporarily unavailable for this report."


def _place_names(report: ScoredReport, limit=None) -> List[str]:
    places = report.nearby_places if limit is None else report.nearby_places[:limit]
    return [p.name for p in places]


def project(report: ScoredReport, tier: str) -> dict:
    """Return the tier-specific view of *report*."""
    canonical = normalize_tier(tier)
    if not canonical:
        raise InvalidInput(f"Unknown tier: {tier!r}")

    if canonical == "free":
        cap = SCORING_MODEL.plans.free_place_cap
        places = report.nearby_places[:cap]
        names = _place_names(report, cap)
        distances = {}
        for name in names:
            if name in report.distances and len(distances) < cap:
                distances[name] = report.distances[name]
        return {
            "tier": "free",
            "location_score": report.location_score,
            "nearby_places": [p.to_dict() for p in places],
            "distances": distances,
        }

    view = {
        "tier": canonical,
        "location_score": report.location_score,
        "growth_prediction": report.growth_prediction,
        "nearby_places": [p.to_dict() for p in report.nearby_places],
        "distances": dict(report.distances),
        "essential_coverage": list(report.essential_coverage),
    }
    if canonical == "pro":
        warnings = list(report.warnings)
        if report.recommendations is not None:
            view["recommendations"] = list(report.recommendations)
        elif RECOMMENDATIONS_UNAVAILABLE not in warnings:
            warnings.append(RECOMMENDATIONS_UNAVAILABLE)
        if warnings:
            view["warnings"] = warnings
    return view
