"""
Venue geocoding client (Nominatim or Google Maps)
Turns a venue address into the position the geofence is checked against.
"""
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any

import httpx
import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import GeocodingFailed, NotFound, ValidationFailed
from ..models.models import VenueLocation
from .audit import record_audit
from .permissions import require_role
from .time_rules import ensure_utc, utcnow, isoformat_utc

logger = structlog.get_logger(__name__)

GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
NOMINATIM_SEARCH_URL = "https://nominatim.openstreetmap.org/search"
MIN_ADDRESS_LENGTH = 5


@dataclass(frozen=True)
class GeocodeResult:
    latitude: float
    longitude: float
    formatted_address: str
    confidence: str  # high|medium|low
    source: str  # google|nominatim


class GeocodingClient:
    """Client for the configured geocoding provider"""

    # Nominatim usage policy: at most one request per second per client
    _nominatim_lock = threading.Lock()
    _nominatim_last_call = 0.0

    def __init__(
        self,
        provider: Optional[str] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
        min_interval: float = 1.1,
    ):
        self.provider = (provider or settings.geocoding_provider).lower()
        self.api_key = api_key or settings.google_maps_api_key
        self.transport = transport
        self.min_interval = min_interval

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=10.0, transport=self.transport)

    def geocode(self, address: str) -> GeocodeResult:
        if not address or len(address.strip()) < MIN_ADDRESS_LENGTH:
            raise ValidationFailed("Address too short", details={"code": "INVALID_ADDRESS"})
        if self.provider == "google":
            return self._geocode_google(address.strip())
        return self._geocode_nominatim(address.strip())

    def _geocode_google(self, address: str) -> GeocodeResult:
        if not self.api_key:
            logger.error("geocode_missing_api_key", provider="google")
            raise GeocodingFailed("Geocoding not configured", details={"code": "MISSING_API_KEY"})

        try:
            with self._client() as client:
                response = client.get(GOOGLE_GEOCODE_URL, params={"address": address, "key": self.api_key})
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("geocode_request_failed", provider="google", error=str(e))
            raise GeocodingFailed("Geocoding request failed", details={"code": "API_ERROR"})

        status = data.get("status")
        if status == "ZERO_RESULTS":
            raise GeocodingFailed("Address not found", details={"code": "NO_RESULTS"}, status_code=400)
        if status != "OK":
            logger.error("geocode_api_error", provider="google", status=status, message=data.get("error_message"))
            raise GeocodingFailed(data.get("error_message") or "Geocoding failed", details={"code": "API_ERROR"})

        result = data["results"][0]
        geometry = result["geometry"]
        confidence = {"ROOFTOP": "high", "APPROXIMATE": "low"}.get(geometry.get("location_type"), "medium")
        return GeocodeResult(
            latitude=float(geometry["location"]["lat"]),
            longitude=float(geometry["location"]["lng"]),
            formatted_address=result.get("formatted_address", address),
            confidence=confidence,
            source="google",
        )

    def _wait_for_nominatim_slot(self) -> None:
        cls = GeocodingClient
        elapsed = time.monotonic() - cls._nominatim_last_call
        if elapsed < self.min_interval:
            time.sleep(self.min_interval - elapsed)
        cls._nominatim_last_call = time.monotonic()

    def _geocode_nominatim(self, address: str) -> GeocodeResult:
        with GeocodingClient._nominatim_lock:
            self._wait_for_nominatim_slot()
            try:
                with self._client() as client:
                    response = client.get(
                        NOMINATIM_SEARCH_URL,
                        params={"q": address, "format": "json", "limit": 1},
                        headers={"User-Agent": settings.geocoder_user_agent},
                    )
                    response.raise_for_status()
                    results = response.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.error("geocode_request_failed", provider="nominatim", error=str(e))
                raise GeocodingFailed("Geocoding request failed", details={"code": "API_ERROR"})

        if not results:
            raise GeocodingFailed("Address not found", details={"code": "NO_RESULTS"}, status_code=400)

        result = results[0]
        return GeocodeResult(
            latitude=float(result["lat"]),
            longitude=float(result["lon"]),
            formatted_address=result.get("display_name", address),
            confidence="high" if float(result.get("importance") or 0) > 0.5 else "medium",
            source="nominatim",
        )


def geocode_address(address: str, client: Optional[GeocodingClient] = None) -> GeocodeResult:
    return (client or GeocodingClient()).geocode(address)


def geocode_location(
    db: Session,
    actor_id: str,
    org_id: str,
    location_id: str,
    force_refresh: bool = False,
    client: Optional[GeocodingClient] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Geocode a venue's address and store its position.
    The only writer of a venue's coordinates. The HTTP call happens before
    any row is modified, so no transaction is held across it.
    """
    now = ensure_utc(now) if now else utcnow()
    require_role(db, actor_id, org_id)

    venue = db.query(VenueLocation).filter(
        VenueLocation.id == location_id,
        VenueLocation.organization_id == org_id,
    ).first()
    if not venue:
        raise NotFound("Location not found")
    if not venue.address:
        raise ValidationFailed("Location has no address")

    if venue.is_geocoded and not force_refresh:
        return {
            "locationId": venue.id,
            "message": "Already geocoded",
            "latitude": venue.latitude,
            "longitude": venue.longitude,
            "geocodedAt": isoformat_utc(venue.geocoded_at),
        }

    # Release the read transaction before the network call
    db.rollback()
    result = geocode_address(venue.address, client)

    try:
        previous = {"latitude": venue.latitude, "longitude": venue.longitude}
        venue.latitude = result.latitude
        venue.longitude = result.longitude
        if venue.geofence_radius is None:
            venue.geofence_radius = settings.default_geofence_radius_m
        venue.geocoded_at = now
        venue.geocode_source = result.source
        venue.updated_at = now
        record_audit(
            db,
            action="location.geocoded",
            entity_type="location",
            entity_id=venue.id,
            actor_id=actor_id,
            org_id=org_id,
            changes={"before": previous, "after": {"latitude": result.latitude, "longitude": result.longitude}},
            metadata={"source": result.source, "confidence": result.confidence, "address": result.formatted_address},
            timestamp=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("location_geocoded", location_id=venue.id, source=result.source, confidence=result.confidence)
    return {
        "locationId": venue.id,
        "message": "Geocoded",
        "latitude": result.latitude,
        "longitude": result.longitude,
        "formattedAddress": result.formatted_address,
        "confidence": result.confidence,
        "source": result.source,
        "geocodedAt": isoformat_utc(now),
    }
