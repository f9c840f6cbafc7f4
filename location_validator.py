"""
Location Validator: decides whether a coordinate is fit to analyse.

Policy by number of essential domains present within the search radius:
  0  -> high risk, hard block (can_proceed=False, no override)
  1  -> high risk, may proceed only with an explicit acknowledgement
  2  -> medium risk, proceeds normally
  3+ -> low risk, valid, no issues
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import List, Optional

from places import Coordinate, Place, PlacesClient
from score_engine import coverage
from scoring_config import ESSENTIAL_DOMAINS

logger = logging.getLogger(__name__)

UNINHABITABLE_ISSUE = (
    "Location appears to be an uninhabitable/remote area: no schools, health "
    "care, transit or retail were found nearby."
)


@dataclass
class ValidationResult:
    is_valid: bool
    can_proceed: bool
    risk_level: str                 # "low" | "medium" | "high"
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    confidence: float = 0.0         # 0..1
    covered_domains: List[str] = field(default_factory=list)

    @property
    def requires_acknowledgement(self) -> bool:
        return self.can_proceed and self.risk_level == "high"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ValidationResult":
        return cls(**data)


def _missing(covered: List[str]) -> List[str]:
    return [d for d in ESSENTIAL_DOMAINS if d not in covered]


def assess(places: List[Place]) -> ValidationResult:
    """Apply the risk policy to an already-fetched place list. Pure."""
    covered = coverage(places)
    confidence = max(0.0, min(1.0, len(covered) / len(ESSENTIAL_DOMAINS)))
    missing = ", ".join(_missing(covered))

    if not covered:
        return ValidationResult(
            is_valid=False,
            can_proceed=False,
            risk_level="high",
            issues=[UNINHABITABLE_ISSUE],
            recommendations=["Choose a location closer to an inhabited area."],
            confidence=confidence,
            covered_domains=covered,
        )
    if len(covered) == 1:
        return ValidationResult(
            is_valid=False,
            can_proceed=True,
            risk_level="high",
            issues=[f"Only {covered[0]} services were found nearby; missing {missing}."],
            recommendations=[
                "Not recommended: proceed only if you accept the limited "
                "infrastructure around this location."
            ],
            confidence=confidence,
            covered_domains=covered,
        )
    if len(covered) == 2:
        return ValidationResult(
            is_valid=False,
            can_proceed=True,
            risk_level="medium",
            issues=[f"Limited essential services nearby; missing {missing}."],
            recommendations=[f"Check access to {missing} before committing."],
            confidence=confidence,
            covered_domains=covered,
        )
    return ValidationResult(
        is_valid=True,
        can_proceed=True,
        risk_level="low",
        confidence=confidence,
        covered_domains=covered,
    )


def validate(
    maps: PlacesClient,
    coordinate: Coordinate,
    places: Optional[List[Place]] = None,
) -> ValidationResult:
    """Validate a coordinate, fetching nearby places unless already supplied.

    ProviderUnavailable from the places client propagates.
    """
    if places is None:
        places = maps.nearby_places(coordinate)
    result = assess(places)
    logger.info(
        "Validated %s: risk=%s can_proceed=%s covered=%s",
        coordinate.as_param(), result.risk_level, result.can_proceed,
        ",".join(result.covered_domains) or "-",
    )
    return result
