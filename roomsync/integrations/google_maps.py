"""Google Maps API integration — address geocoding and travel time.

Uses the Places API (New) Text Search endpoint to turn a member's raw
address into coordinates, and the Distance Matrix API to estimate the
travel time between two coordinates for a given travel mode.

Gracefully degrades: returns None on any failure (no API key, timeout,
invalid response, no route, etc.). Callers fall back to an estimate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

_PLACES_TEXT_SEARCH_URL = "https://places.googleapis.com/v1/places:searchText"
_TIMEOUT_SECONDS = 5


@dataclass
class GeocodedAddress:
    """Result of a successful Places API lookup."""

    formatted_address: str
    lat: float
    lng: float


async def geocode_address(raw_address: str, api_key: str) -> GeocodedAddress | None:
    """Resolve a raw address to coordinates, or None on any failure."""
    if not raw_address or not api_key:
        return None

    try:
        async with httpx.AsyncClient(timeout=_TIMEOUT_SECONDS) as client:
            resp = await client.post(
                _PLACES_TEXT_SEARCH_URL,
                json={"textQuery": raw_address},
                headers={
                    "X-Goog-Api-Key": api_key,
                    "X-Goog-FieldMask": "places.formattedAddress,places.location",
                },
            )
            resp.raise_for_status()
            data = resp.json()

        places = data.get("places", [])
        if not places:
            logger.info("No Places results for '%s'", raw_address)
            return None

        place = places[0]
        location = place.get("location") or {}
        if "latitude" not in location or "longitude" not in location:
            logger.info("Places result for '%s' has no location", raw_address)
            return None

        return GeocodedAddress(
            formatted_address=place.get("formattedAddress", raw_address),
            lat=float(location["latitude"]),
            lng=float(location["longitude"]),
        )
    except Exception as exc:
        logger.warning("Google Maps geocoding failed for '%s': %s", raw_address, exc)
        return None


# ---------------------------------------------------------------------------
# Distance Matrix API: travel time calculation
# ---------------------------------------------------------------------------

_DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"


@dataclass
class TravelTimeResult:
    """Result of a successful Distance Matrix API lookup."""

    duration_seconds: int
    distance_meters: int


async def get_travel_time(
    origin: tuple[float, float],
    destination: tuple[float, float],
    mode: str,
    api_key: str,
) -> TravelTimeResult | None:
    """Travel time between two (lat, lng) points via Distance Matrix API.

    `mode` is one of driving, walking, bicycling, transit.
    Returns None on any failure, including "no route".
    """
    if not api_key:
        return None

    try:
        async with httpx.AsyncClient(timeout=_TIMEOUT_SECONDS) as client:
            resp = await client.get(
                _DISTANCE_MATRIX_URL,
                params={
                    "origins": f"{origin[0]},{origin[1]}",
                    "destinations": f"{destination[0]},{destination[1]}",
                    "mode": mode,
                    "key": api_key,
                },
            )
            resp.raise_for_status()
            data = resp.json()

        if data.get("status") != "OK":
            logger.warning("Distance Matrix API status: %s", data.get("status"))
            return None

        rows = data.get("rows", [])
        if not rows:
            return None

        element = rows[0].get("elements", [{}])[0]
        if element.get("status") != "OK":
            logger.info(
                "Distance Matrix element status: %s for %s → %s (%s)",
                element.get("status"), origin, destination, mode,
            )
            return None

        return TravelTimeResult(
            duration_seconds=int(element["duration"]["value"]),
            distance_meters=int(element["distance"]["value"]),
        )
    except Exception as exc:
        logger.warning(
            "Distance Matrix API failed for %s → %s (%s): %s",
            origin, destination, mode, exc,
        )
        return None
