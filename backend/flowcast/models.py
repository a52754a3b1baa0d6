from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .geo import bearing_deg


class LatLng(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class Position(BaseModel):
    """One location sample from the device sensor.

    Negative ``horizontal_accuracy`` marks an invalid fix; the position source drops those.
    """

    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    horizontal_accuracy: float
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    speed_mps: float | None = None

    @property
    def coordinate(self) -> LatLng:
        return LatLng(lat=self.lat, lon=self.lon)

    @property
    def speed_mph(self) -> float:
        return max(0.0, float(self.speed_mps or 0.0)) * 2.23694

    def bearing_to(self, other: Position | LatLng) -> float:
        return bearing_deg(self.lat, self.lon, other.lat, other.lon)


class Heading(BaseModel):
    model_config = ConfigDict(frozen=True)

    true_heading: float = Field(..., ge=0.0, le=360.0)
    accuracy: float
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class AuthorizationState(str, Enum):
    UNDETERMINED = "undetermined"
    GRANTED = "granted"
    DENIED = "denied"


class DirectionsMode(str, Enum):
    AUTOMOBILE = "automobile"
    WALKING = "walking"
    CYCLING = "cycling"
    TRANSIT = "transit"


class TravelMode(str, Enum):
    """Modes offered to the user when comparing routes."""

    CAR = "car"
    TRANSIT = "transit"
    WALK = "walk"
    BIKE = "bike"
    RIDESHARE = "rideshare"

    @property
    def directions_mode(self) -> DirectionsMode:
        return _TRAVEL_TO_DIRECTIONS[self]

    @property
    def supported(self) -> bool:
        # Bike and rideshare need provider integrations that are not wired up.
        return self not in (TravelMode.BIKE, TravelMode.RIDESHARE)


_TRAVEL_TO_DIRECTIONS: dict[TravelMode, DirectionsMode] = {
    TravelMode.CAR: DirectionsMode.AUTOMOBILE,
    TravelMode.TRANSIT: DirectionsMode.TRANSIT,
    TravelMode.WALK: DirectionsMode.WALKING,
    TravelMode.BIKE: DirectionsMode.WALKING,
    TravelMode.RIDESHARE: DirectionsMode.AUTOMOBILE,
}


class RouteStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    instruction: str = ""
    distance_m: float = Field(default=0.0, ge=0.0)
    geometry: tuple[tuple[float, float], ...] = ()  # (lat, lon)

    @property
    def anchor(self) -> LatLng | None:
        """Start of the step geometry, used for proximity-based advancement."""
        if not self.geometry:
            return None
        lat, lon = self.geometry[0]
        return LatLng(lat=lat, lon=lon)


class Route(BaseModel):
    model_config = ConfigDict(frozen=True)

    route_id: str
    steps: tuple[RouteStep, ...] = ()
    total_duration_s: float = Field(default=0.0, ge=0.0)
    total_distance_m: float = Field(default=0.0, ge=0.0)
    advisory_notices: tuple[str, ...] = ()
    mode: DirectionsMode = DirectionsMode.AUTOMOBILE

    @property
    def geometry(self) -> list[tuple[float, float]]:
        points: list[tuple[float, float]] = []
        for step in self.steps:
            for point in step.geometry:
                if points and points[-1] == point:
                    continue
                points.append(point)
        return points


class RouteRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    origin: LatLng
    destination: LatLng
    transport_mode: DirectionsMode = DirectionsMode.AUTOMOBILE
    alternates_requested: bool = True


class Destination(BaseModel):
    model_config = ConfigDict(frozen=True)

    coordinate: LatLng
    name: str | None = None


class NavigationPhase(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    ROUTES_AVAILABLE = "routes_available"
    NAVIGATING = "navigating"


class NavigationState(BaseModel):
    is_navigating: bool = False
    current_step_index: int = Field(default=0, ge=0)
    should_recenter: bool = False


class MapRegion(BaseModel):
    model_config = ConfigDict(frozen=True)

    center: LatLng
    span_deg: float = Field(default=0.05, gt=0.0)


class CongestionLevel(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HEAVY = "heavy"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class TrafficSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    coordinates: tuple[tuple[float, float], ...]  # (lat, lon)
    congestion_level: CongestionLevel
    vehicle_count: int = Field(..., ge=1)


class TrafficPrediction(BaseModel):
    model_config = ConfigDict(frozen=True)

    day_name: str
    morning: CongestionLevel
    afternoon: CongestionLevel
    evening: CongestionLevel


class RouteOption(BaseModel):
    mode: TravelMode
    route: Route | None = None
    is_calculating: bool = False
    error: str | None = None


class Place(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)

    @property
    def coordinate(self) -> LatLng:
        return LatLng(lat=self.lat, lon=self.lon)


class SavedTrip(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = ""
    user_id: str
    name: str
    source: Place
    destination: Place
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    frequently_used: bool = False

    @field_validator("name")
    @classmethod
    def _clean_name(cls, v: str) -> str:
        cleaned = v.strip()
        if not cleaned:
            raise ValueError("trip name cannot be empty")
        return cleaned

    def to_record(self) -> dict[str, Any]:
        """Flat storage shape (the id is the record key, not a field)."""
        return {
            "userId": self.user_id,
            "name": self.name,
            "sourceName": self.source.name,
            "sourceLatitude": self.source.lat,
            "sourceLongitude": self.source.lon,
            "destinationName": self.destination.name,
            "destinationLatitude": self.destination.lat,
            "destinationLongitude": self.destination.lon,
            "createdAt": self.created_at.isoformat(),
            "frequentlyUsed": self.frequently_used,
        }

    @classmethod
    def from_record(cls, trip_id: str, data: dict[str, Any]) -> SavedTrip | None:
        try:
            return cls(
                id=trip_id,
                user_id=data["userId"],
                name=data["name"],
                source=Place(
                    name=data["sourceName"],
                    lat=data["sourceLatitude"],
                    lon=data["sourceLongitude"],
                ),
                destination=Place(
                    name=data["destinationName"],
                    lat=data["destinationLatitude"],
                    lon=data["destinationLongitude"],
                ),
                created_at=data["createdAt"],
                frequently_used=data["frequentlyUsed"],
            )
        except (KeyError, TypeError, ValidationError):
            return None


# ---- HTTP shell payloads ----


class PositionSample(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    horizontal_accuracy: float = 5.0
    speed_mps: float | None = None

    def to_position(self) -> Position:
        return Position(
            lat=self.lat,
            lon=self.lon,
            horizontal_accuracy=self.horizontal_accuracy,
            speed_mps=self.speed_mps,
        )


class HeadingSample(BaseModel):
    true_heading: float = Field(..., ge=0.0, le=360.0)
    accuracy: float = 5.0


class AuthorizationUpdate(BaseModel):
    state: AuthorizationState


class DestinationRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    name: str | None = None
    # Block until the request settles instead of returning as soon as it is queued.
    wait: bool = False


class TrafficSearchRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    wait: bool = False


class RouteOptionsRequest(BaseModel):
    source: LatLng
    destination: LatLng


class ModeSelection(BaseModel):
    mode: TravelMode


class TripInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    source: Place
    destination: Place
    frequently_used: bool = False


class SignInRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=200)
