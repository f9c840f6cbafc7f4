"""
Places / geocoding collaborator for PlotScore.

Wraps the Google Maps Web Services used by the pipeline:
  - Geocoding (free text -> point + formatted address)
  - Places Nearby Search (point -> ranked points of interest)
  - Distance Matrix (point -> travel distance/duration to each place)

Every transport or provider failure surfaces as ProviderUnavailable so the
validator and score engine can propagate it without inspecting requests
internals.  ZERO_RESULTS is not a failure.
"""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

import requests

from errors import InvalidInput, ProviderUnavailable
from ps_trace import get_trace, set_trace
from scoring_config import SCORING_MODEL

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class Coordinate:
    lat: float
    lng: float

    def as_param(self) -> str:
        return f"{self.lat},{self.lng}"


@dataclass(frozen=True)
class TravelDistance:
    distance_m: int
    distance_text: str
    duration_s: int
    duration_text: str

    def to_dict(self) -> dict:
        return {
            "distance": {"text": self.distance_text, "value": self.distance_m},
            "duration": {"text": self.duration_text, "value": self.duration_s},
        }


@dataclass(frozen=True)
class Place:
    """A provider-supplied point of interest. Immutable."""
    place_id: str
    name: str
    tags: FrozenSet[str] = field(default_factory=frozenset)
    rating: Optional[float] = None      # 0-5 when the provider has one
    vicinity: str = ""
    travel: Optional[TravelDistance] = None

    def to_dict(self) -> dict:
        return {
            "place_id": self.place_id,
            "name": self.name,
            "types": sorted(self.tags),
            "rating": self.rating,
            "vicinity": self.vicinity,
            "distance": self.travel.to_dict() if self.travel else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Place":
        travel = None
        d = data.get("distance")
        if d:
            travel = TravelDistance(
                distance_m=int(d["distance"]["value"]),
                distance_text=d["distance"].get("text", ""),
                duration_s=int(d["duration"]["value"]),
                duration_text=d["duration"].get("text", ""),
            )
        return cls(
            place_id=data.get("place_id", ""),
            name=data.get("name", ""),
            tags=frozenset(data.get("types") or ()),
            rating=data.get("rating"),
            vicinity=data.get("vicinity", ""),
            travel=travel,
        )


def parse_coordinate(lat, lng) -> Coordinate:
    """Validate raw lat/lng input. Raises InvalidInput before any I/O."""
    if isinstance(lat, bool) or isinstance(lng, bool):
        raise InvalidInput("lat and lng must be numbers")
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        raise InvalidInput("lat and lng must be numbers") from None
    if math.isnan(lat_f) or math.isnan(lng_f):
        raise InvalidInput("lat and lng must be numbers")
    if not -90 <= lat_f <= 90:
        raise InvalidInput(f"lat {lat_f} out of range [-90, 90]")
    if not -180 <= lng_f <= 180:
        raise InvalidInput(f"lng {lng_f} out of range [-180, 180]")
    return Coordinate(lat_f, lng_f)


# =============================================================================
# API CLIENT
# =============================================================================

class PlacesClient:
    """Client for the Google Maps Web Services."""

    # Per-call timeout in seconds.  p99 for these endpoints is well under 2 s.
    DEFAULT_TIMEOUT = 10

    # Distance Matrix accepts up to 25 destinations per request.
    DISTANCE_MATRIX_MAX_DESTINATIONS = 25

    def __init__(self, api_key: str):
        self.api_key = api_key
        self.base_url = "https://maps.googleapis.com/maps/api"
        self.session = requests.Session()
        self.session.trust_env = False

    def _traced_get(self, endpoint_name: str, url: str, params: dict) -> dict:
        """GET with trace recording. Transport errors become ProviderUnavailable."""
        t0 = time.time()
        try:
            response = self.session.get(url, params=params, timeout=self.DEFAULT_TIMEOUT)
            data = response.json()
        except requests.RequestException as e:
            logger.warning("Google Maps %s request failed: %s", endpoint_name, e)
            raise ProviderUnavailable(f"Places provider unreachable ({endpoint_name})") from e
        except ValueError as e:
            raise ProviderUnavailable(f"Places provider returned invalid JSON ({endpoint_name})") from e
        elapsed_ms = int((time.time() - t0) * 1000)
        provider_status = data.get("status", "") if isinstance(data, dict) else ""
        trace = get_trace()
        if trace:
            trace.record_call(
                service="google_maps",
                endpoint=endpoint_name,
                elapsed_ms=elapsed_ms,
                status_code=response.status_code,
                provider_status=provider_status,
            )
        if not isinstance(data, dict):
            raise ProviderUnavailable(f"Unexpected {endpoint_name} response")
        return data

    def geocode(self, address: str) -> Tuple[Coordinate, str]:
        """Resolve free text to a point and the provider's formatted address."""
        url = f"{self.base_url}/geocode/json"
        data = self._traced_get("geocode", url, {"address": address, "key": self.api_key})
        status = data.get("status")
        if status == "ZERO_RESULTS":
            raise InvalidInput(f"Geocoding failed: no match for {address!r}")
        if status != "OK" or not data.get("results"):
            raise ProviderUnavailable(f"Geocoding failed: {status}")
        top = data["results"][0]
        location = top["geometry"]["location"]
        return Coordinate(location["lat"], location["lng"]), top.get("formatted_address", address)

    def places_nearby(self, origin: Coordinate, place_type: str, radius_meters: int) -> List[Dict]:
        url = f"{self.base_url}/place/nearbysearch/json"
        params = {
            "location": origin.as_param(),
            "radius": radius_meters,
            "type": place_type,
            "key": self.api_key,
        }
        data = self._traced_get("places_nearby", url, params)
        if data.get("status") not in ("OK", "ZERO_RESULTS"):
            raise ProviderUnavailable(f"Places API failed: {data.get('status')}")
        return data.get("results", [])

    def travel_distances(
        self,
        origin: Coordinate,
        destinations: List[Coordinate],
    ) -> List[Optional[TravelDistance]]:
        """Driving distance/duration to each destination, None where unreachable.

        Batches into requests of up to 25 destinations per call.
        """
        if not destinations:
            return []
        url = f"{self.base_url}/distancematrix/json"
        results: List[Optional[TravelDistance]] = []
        for i in range(0, len(destinations), self.DISTANCE_MATRIX_MAX_DESTINATIONS):
            chunk = destinations[i:i + self.DISTANCE_MATRIX_MAX_DESTINATIONS]
            params = {
                "origins": origin.as_param(),
                "destinations": "|".join(d.as_param() for d in chunk),
                "units": "metric",
                "key": self.api_key,
            }
            data = self._traced_get("distance_matrix", url, params)
            if data.get("status") != "OK":
                raise ProviderUnavailable(f"Distance Matrix API failed: {data.get('status')}")
            elements = data["rows"][0]["elements"]
            if len(elements) != len(chunk):
                raise ProviderUnavailable("Distance Matrix returned a misaligned row")
            for elem in elements:
                if elem.get("status") != "OK":
                    results.append(None)
                    continue
                results.append(TravelDistance(
                    distance_m=int(elem["distance"]["value"]),
                    distance_text=elem["distance"].get("text", ""),
                    duration_s=int(elem["duration"]["value"]),
                    duration_text=elem["duration"].get("text", ""),
                ))
        return results

    def nearby_places(self, origin: Coordinate) -> List[Place]:
        """Collect unique nearby places within the scoring radius, nearest first.

        One Nearby Search per configured type runs in parallel; each thread
        gets its own client since requests.Session is not thread-safe.
        Any provider failure propagates.
        """
        search = SCORING_MODEL.search
        parent_trace = get_trace()

        def _search(place_type):
            set_trace(parent_trace)
            return PlacesClient(self.api_key).places_nearby(origin, place_type, search.radius_m)

        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [(t, pool.submit(_search, t)) for t in search.search_types]
            raw_by_type = [(t, f.result()) for t, f in futures]

        raw: List[Dict] = []
        for _t, results in raw_by_type:
            raw.extend(results)
        unique = _dedupe_by_place_id(raw)[:search.max_places]
        if not unique:
            return []

        coords = [
            Coordinate(p["geometry"]["location"]["lat"], p["geometry"]["location"]["lng"])
            for p in unique
        ]
        travel = self.travel_distances(origin, coords)

        places: List[Place] = []
        for p, t in zip(unique, travel):
            if t is None or t.distance_m > search.radius_m:
                continue
            places.append(Place(
                place_id=p["place_id"],
                name=p.get("name", ""),
                tags=frozenset(p.get("types") or ()),
                rating=p.get("rating"),
                vicinity=p.get("vicinity") or p.get("formatted_address", ""),
                travel=t,
            ))
        places.sort(key=lambda pl: (pl.travel.distance_m, pl.name))
        logger.info(
            "Found %d places within %dm of %s (%d raw results)",
            len(places), search.radius_m, origin.as_param(), len(raw),
        )
        return places


def _dedupe_by_place_id(places: List[Dict]) -> List[Dict]:
    """Remove duplicate places by place_id, preserving first occurrence."""
    seen: set = set()
    unique: List[Dict] = []
    for p in places:
        pid = p.get("place_id")
        if pid and pid not in seen and p.get("geometry"):
            seen.add(pid)
            unique.append(p)
    return unique
