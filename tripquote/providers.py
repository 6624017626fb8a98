"""Provider capability interfaces and the OpenRouteService adapter."""
from __future__ import annotations

import logging
import os
from typing import Any, List, Mapping, Optional, Protocol, Sequence

import openrouteservice as ors
from openrouteservice import exceptions as ors_exceptions

from tripquote.errors import InvalidInput
from tripquote.models import Coordinates, LocationPoint, RouteData
from tripquote.throttle import PROVIDER_TIMEOUT

logger = logging.getLogger(__name__)

ORS_BASE_URL = os.environ.get("ORS_BASE_URL", "https://api.openrouteservice.org")
ORS_PROFILE = os.environ.get("ORS_PROFILE", "driving-car")


class GeocodingProvider(Protocol):
    def search(self, text: str, *, country: Optional[str], size: int) -> List[LocationPoint]:
        ...

    def reverse(self, coords: Coordinates) -> Optional[str]:
        ...


class RoutingProvider(Protocol):
    def route(self, origin: Coordinates, destination: Coordinates) -> Optional[RouteData]:
        """Return the driving route, or ``None`` when no drivable route exists."""
        ...


def build_ors_client(
    api_key: Optional[str] = None,
    *,
    base_url: str = ORS_BASE_URL,
    timeout: float = PROVIDER_TIMEOUT,
) -> "ors.Client":
    """Return an OpenRouteService client whose own retries are switched off.

    Retrying and spacing are the job of :class:`tripquote.throttle.RateLimitedClient`.
    """
    key = api_key or os.environ.get("ORS_API_KEY")
    if not key:
        raise RuntimeError("Set ORS_API_KEY env var (export ORS_API_KEY=YOUR_KEY)")
    return ors.Client(
        key=key,
        base_url=base_url,
        timeout=timeout,
        retry_timeout=timeout,
        retry_over_query_limit=False,
    )


def _is_routable_point_error(exc: Exception) -> bool:
    if isinstance(exc, ors_exceptions.ApiError):
        for payload in (arg for arg in exc.args if isinstance(arg, dict)):
            error = payload.get("error") or {}
            if not isinstance(error, dict):
                continue
            message = str(error.get("message") or "").lower()
            if error.get("code") == 2010 or "could not find routable point" in message:
                return True
        for text_arg in (arg for arg in exc.args if isinstance(arg, str)):
            if "could not find routable point" in text_arg.lower():
                return True
        return False

    text = " ".join(str(arg) for arg in getattr(exc, "args", ())).lower()
    return "could not find routable point" in text or '"code": 2010' in text


def _feature_to_point(feature: Mapping[str, Any], query: str) -> Optional[LocationPoint]:
    try:
        lon, lat = feature["geometry"]["coordinates"][:2]
        coords = Coordinates(latitude=float(lat), longitude=float(lon))
    except (KeyError, TypeError, ValueError, InvalidInput) as exc:
        logger.debug("Skipping malformed geocode feature for %r: %s", query, exc)
        return None
    props = feature.get("properties") or {}
    address = props.get("label") or props.get("name") or query
    return LocationPoint(coords=coords, address=str(address), name=props.get("name"))


def _parse_route(collection: Mapping[str, Any]) -> Optional[RouteData]:
    features: Sequence[Mapping[str, Any]] = collection.get("features") or []
    if not features:
        return None
    feature = features[0]
    summary = (feature.get("properties") or {}).get("summary") or {}
    meters = float(summary.get("distance", 0.0))
    seconds = float(summary.get("duration", 0.0))
    geometry = tuple(
        Coordinates(latitude=float(lat), longitude=float(lon))
        for lon, lat, *_rest in (feature.get("geometry") or {}).get("coordinates") or []
    )
    return RouteData(
        distance_km=round(meters / 1000.0, 3),
        duration_sec=int(round(seconds)),
        geometry=geometry,
    )


class OpenRouteServiceProvider:
    """Pelias geocoding and directions through the ``openrouteservice`` SDK."""

    def __init__(
        self,
        client: Optional["ors.Client"] = None,
        *,
        profile: str = ORS_PROFILE,
        layers: Optional[Sequence[str]] = None,
    ) -> None:
        self.client = client if client is not None else build_ors_client()
        self.profile = profile
        self.layers = list(layers) if layers else None

    def search(self, text: str, *, country: Optional[str] = None, size: int = 5) -> List[LocationPoint]:
        params: dict = {"text": text, "size": size}
        if country:
            params["country"] = country
        if self.layers:
            params["layers"] = self.layers
        res = self.client.pelias_search(**params)
        points = (_feature_to_point(feat, text) for feat in res.get("features") or [])
        return [point for point in points if point is not None]

    def reverse(self, coords: Coordinates) -> Optional[str]:
        res = self.client.pelias_reverse(point=coords.as_lon_lat(), size=1)
        for feat in res.get("features") or []:
            props = feat.get("properties") or {}
            label = props.get("label") or props.get("name")
            if label:
                return str(label)
        return None

    def route(self, origin: Coordinates, destination: Coordinates) -> Optional[RouteData]:
        try:
            collection = self.client.directions(
                coordinates=[origin.as_lon_lat(), destination.as_lon_lat()],
                profile=self.profile,
                format="geojson",
            )
        except ors_exceptions.ApiError as exc:
            if not _is_routable_point_error(exc):
                raise
            logger.warning("ORS could not find a routable point: %s", exc)
            return None
        return _parse_route(collection)


__all__ = [
    "GeocodingProvider",
    "ORS_BASE_URL",
    "ORS_PROFILE",
    "OpenRouteServiceProvider",
    "RoutingProvider",
    "build_ors_client",
]
