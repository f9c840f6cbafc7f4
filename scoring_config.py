"""
Scoring model configuration for PlotScore.

Owns every numeric constant that affects the location score, the growth
estimate, and what each plan tier is allowed to see.  Provider search
parameters live here too so validation and scoring always look at the
same radius.

Frozen dataclasses give type checking without a YAML/JSON indirection.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class PiecewiseKnot:
    """A single (x, y) breakpoint on a piecewise linear curve."""
    x: float
    y: float


@dataclass(frozen=True)
class SearchConfig:
    """How nearby places are gathered from the provider."""
    radius_m: int
    max_places: int
    search_types: Tuple[str, ...]


@dataclass(frozen=True)
class LocationScoreWeights:
    """Weights of the three location-score components (sum to 1.0)."""
    coverage: float
    rating: float
    proximity: float
    top_n_rated: int            # how many of the best-rated places feed the rating term
    unrated_factor: float       # rating term when no place carries a rating
    min_score: float
    max_score: float


@dataclass(frozen=True)
class GrowthModel:
    """Growth estimate = curve(density/diversity index), in percent."""
    density_saturation: int     # place count at which density maxes out
    tag_saturation: int         # distinct category tags at which diversity maxes out
    density_weight: float
    diversity_weight: float
    knots: Tuple[PiecewiseKnot, ...]


@dataclass(frozen=True)
class PlanLimits:
    free_place_cap: int


@dataclass(frozen=True)
class ScoringModel:
    """Top-level container. Bump `version` on every change that alters outputs."""
    version: str
    search: SearchConfig
    location: LocationScoreWeights
    proximity_knots: Tuple[PiecewiseKnot, ...]
    growth: GrowthModel
    plans: PlanLimits


# =============================================================================
# Essential categories
# =============================================================================

# A place covers a domain when its tag set intersects the domain's set.
ESSENTIAL_CATEGORIES: Dict[str, FrozenSet[str]] = {
    "health": frozenset({"hospital", "health", "doctor", "clinic"}),
    "transit": frozenset({
        "subway_station", "bus_station", "train_station",
        "transit_station", "light_rail_station",
    }),
    "retail": frozenset({
        "shopping_mall", "supermarket", "grocery_or_supermarket",
        "store", "convenience_store",
    }),
    "education": frozenset({"school"}),
}

ESSENTIAL_DOMAINS: Tuple[str, ...] = ("education", "health", "transit", "retail")


# =============================================================================
# Tiers and prices
# =============================================================================

TIERS: Tuple[str, ...] = ("free", "paid", "pro")

# Legacy name for the middle tier, still accepted from older clients.
TIER_ALIASES: Dict[str, str] = {"basic": "paid"}

# Base prices in the base currency (INR).
TIER_BASE_PRICES: Dict[str, int] = {
    "free": 0,
    "paid": 99,
    "pro": 199,
}

PROPERTY_TYPES: Tuple[str, ...] = (
    "residential", "commercial", "industrial", "agricultural", "mixed", "land",
)


# =============================================================================
# Pure helpers
# =============================================================================

def apply_piecewise(knots: Tuple[PiecewiseKnot, ...], x: float) -> float:
    """Evaluate a piecewise linear curve at *x*, clamping outside the knot range."""
    if not knots:
        raise ValueError("knots must not be empty")
    if x <= knots[0].x:
        return knots[0].y
    if x >= knots[-1].x:
        return knots[-1].y
    for i in range(1, len(knots)):
        if x <= knots[i].x:
            k0, k1 = knots[i - 1], knots[i]
            dx = k1.x - k0.x
            if dx == 0:
                return k1.y
            t = (x - k0.x) / dx
            return k0.y + t * (k1.y - k0.y)
    return knots[-1].y


def normalize_tier(tier) -> str:
    """Return the canonical tier name, or '' if *tier* is not a known tier."""
    if not isinstance(tier, str):
        return ""
    key = tier.strip().lower()
    key = TIER_ALIASES.get(key, key)
    return key if key in TIERS else ""


# =============================================================================
# SCORING_MODEL: current production values
# =============================================================================

# Average distance (km) to essential places -> proximity factor 0..1.
# Flat inside 500 m, then decays; nothing useful beyond 10 km.
_PROXIMITY_KNOTS = (
    PiecewiseKnot(0.0, 1.0),
    PiecewiseKnot(0.5, 1.0),
    PiecewiseKnot(1.0, 0.85),
    PiecewiseKnot(3.0, 0.55),
    PiecewiseKnot(5.0, 0.25),
    PiecewiseKnot(10.0, 0.0),
)

# Density/diversity index 0..1 -> annual growth percent.
# Sparse, single-purpose areas land in negative territory.
_GROWTH_KNOTS = (
    PiecewiseKnot(0.0, -8.0),
    PiecewiseKnot(0.25, -2.0),
    PiecewiseKnot(0.5, 3.0),
    PiecewiseKnot(0.75, 7.0),
    PiecewiseKnot(1.0, 12.0),
)


SCORING_MODEL = ScoringModel(
    version="1.0.0",

    search=SearchConfig(
        radius_m=5000,
        max_places=25,
        search_types=(
            "hospital", "doctor", "school", "transit_station", "bus_station",
            "supermarket", "store", "bank", "restaurant", "park",
        ),
    ),

    location=LocationScoreWeights(
        coverage=0.5,
        rating=0.25,
        proximity=0.25,
        top_n_rated=5,
        unrated_factor=0.5,
        min_score=0.1,
        max_score=5.0,
    ),

    proximity_knots=_PROXIMITY_KNOTS,

    growth=GrowthModel(
        density_saturation=20,
        tag_saturation=12,
        density_weight=0.5,
        diversity_weight=0.5,
        knots=_GROWTH_KNOTS,
    ),

    plans=PlanLimits(free_place_cap=3),
)

# Validate at import time (ValueError, not assert, so python -O keeps it).
_w = SCORING_MODEL.location
if abs(_w.coverage + _w.rating + _w.proximity - 1.0) >= 0.001:
    raise ValueError("Location score weights must sum to 1.0")
_g = SCORING_MODEL.growth
if abs(_g.density_weight + _g.diversity_weight - 1.0) >= 0.001:
    raise ValueError("Growth weights must sum to 1.0")
