from __future__ import annotations

import hashlib
import time
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Final, Protocol

import httpx

from .metrics_store import CallOutcome, record_provider_call
from .models import DirectionsMode, LatLng, Route, RouteStep
from .settings import settings
from .single_flight import ProviderThrottle


class DirectionsError(RuntimeError):
    pass


class RateLimitedError(DirectionsError):
    """The provider throttled us; ``retry_after_s`` is its reset hint when it sent one."""

    def __init__(self, message: str, *, retry_after_s: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_s = retry_after_s


class NoRouteError(DirectionsError):
    pass


class ProviderTransportError(DirectionsError):
    pass


class UnsupportedModeError(DirectionsError):
    pass


class DirectionsProvider(Protocol):
    async def calculate_routes(
        self,
        origin: LatLng,
        destination: LatLng,
        *,
        mode: DirectionsMode,
        want_alternates: bool,
    ) -> list[Route]: ...


_NO_ROUTE_CODES: Final[set[str]] = {"NoRoute", "NoSegment"}
_RATE_LIMIT_STATUS: Final[int] = 429
_COMPASS: Final[tuple[str, ...]] = ("north", "northeast", "east", "southeast", "south", "southwest", "west", "northwest")


def _format_osrm_error(resp: httpx.Response) -> str:
    """Best-effort decode of OSRM JSON error payloads."""
    try:
        data = resp.json()
        if isinstance(data, dict):
            code = data.get("code")
            message = data.get("message")
            if code and message:
                return f"OSRM {resp.status_code} {code}: {message}"
            if code:
                return f"OSRM {resp.status_code} {code}"
            if message:
                return f"OSRM {resp.status_code}: {message}"
    except ValueError:
        pass

    body = (resp.text or "").strip().replace("\n", " ")
    if len(body) > 240:
        body = body[:240] + "..."
    if body:
        return f"OSRM {resp.status_code}: {body}"
    return f"OSRM HTTP {resp.status_code}"


def parse_retry_after_s(headers: httpx.Headers | dict[str, str] | None) -> float | None:
    """Seconds until the provider's rate limit resets, if the response says so."""
    if headers is None:
        return None
    text = str(headers.get("Retry-After") or "").strip()
    if text:
        try:
            seconds = float(text)
            if seconds >= 0.0:
                return seconds
        except ValueError:
            pass
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            return max(0.0, (parsed.astimezone(UTC) - datetime.now(UTC)).total_seconds())

    reset = str(headers.get("X-RateLimit-Reset") or "").strip()
    if reset:
        try:
            value = float(reset)
        except ValueError:
            return None
        # Some gateways send an epoch timestamp rather than a delta.
        if value > 1_000_000_000:
            return max(0.0, value - time.time())
        return max(0.0, value)
    return None


def _compass_direction(bearing: float) -> str:
    return _COMPASS[int(((float(bearing) % 360.0) + 22.5) // 45.0) % 8]


def _ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def step_instruction(step: dict[str, Any]) -> str:
    maneuver = step.get("maneuver") or {}
    kind = str(maneuver.get("type") or "")
    modifier = str(maneuver.get("modifier") or "").strip()
    name = str(step.get("name") or "").strip()
    onto = f" onto {name}" if name else ""

    if kind == "depart":
        direction = _compass_direction(float(maneuver.get("bearing_after") or 0.0))
        return f"Head {direction}" + (f" on {name}" if name else "")
    if kind == "arrive":
        return "Arrive at your destination" + (f" on {name}" if name else "")
    if kind in {"roundabout", "rotary", "exit roundabout", "exit rotary"}:
        exit_number = maneuver.get("exit")
        if isinstance(exit_number, int) and exit_number > 0:
            return f"At the roundabout, take the {_ordinal(exit_number)} exit{onto}"
        return f"Enter the roundabout{onto}"
    if kind == "merge":
        return f"Merge {modifier}{onto}" if modifier else f"Merge{onto}"
    if kind == "on ramp":
        return f"Take the ramp{onto}"
    if kind == "off ramp":
        return f"Take the exit{onto}"
    if kind == "fork":
        return f"Keep {modifier} at the fork{onto}" if modifier else f"Continue at the fork{onto}"
    if kind == "end of road":
        return f"Turn {modifier} at the end of the road{onto}" if modifier else f"At the end of the road, continue{onto}"
    if kind in {"new name", "continue", "notification"}:
        if modifier and modifier not in {"straight", "uturn"}:
            return f"Continue {modifier}{onto}"
        if modifier == "uturn":
            return f"Make a U-turn{onto}"
        return f"Continue{onto}"
    if kind == "turn" and modifier == "uturn":
        return f"Make a U-turn{onto}"
    if modifier == "straight":
        return f"Continue straight{onto}"
    if modifier:
        return f"Turn {modifier}{onto}"
    return f"Continue{onto}"


def _step_geometry(step: dict[str, Any]) -> tuple[tuple[float, float], ...]:
    geometry = step.get("geometry") or {}
    coords = geometry.get("coordinates") if isinstance(geometry, dict) else None
    if not isinstance(coords, list):
        return ()
    points: list[tuple[float, float]] = []
    for pt in coords:
        if isinstance(pt, (list, tuple)) and len(pt) >= 2:
            lon, lat = float(pt[0]), float(pt[1])
            points.append((lat, lon))
    return tuple(points)


def _advisory_notices(steps: list[dict[str, Any]]) -> tuple[str, ...]:
    classes: set[str] = set()
    for step in steps:
        for intersection in step.get("intersections") or []:
            for cls in (intersection or {}).get("classes") or []:
                classes.add(str(cls))
    notices: list[str] = []
    if "toll" in classes:
        notices.append("This route has tolls.")
    if "ferry" in classes:
        notices.append("This route includes a ferry.")
    if "restricted" in classes:
        notices.append("This route passes through restricted-access roads.")
    return tuple(notices)


def _route_signature(steps: tuple[RouteStep, ...]) -> str:
    coords = [pt for step in steps for pt in step.geometry]
    n = len(coords)
    stride = max(1, n // 30)
    sample = coords[::stride][:40]

    # round for stability; avoid huge hash variability
    parts = [f"{lat:.4f},{lon:.4f}" for lat, lon in sample]
    return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()[:16]


def parse_osrm_route(raw: dict[str, Any], *, mode: DirectionsMode) -> Route:
    raw_steps: list[dict[str, Any]] = []
    for leg in raw.get("legs") or []:
        raw_steps.extend((leg or {}).get("steps") or [])

    steps = tuple(
        RouteStep(
            instruction=step_instruction(step),
            distance_m=max(0.0, float(step.get("distance") or 0.0)),
            geometry=_step_geometry(step),
        )
        for step in raw_steps
    )
    return Route(
        route_id=_route_signature(steps),
        steps=steps,
        total_duration_s=max(0.0, float(raw.get("duration") or 0.0)),
        total_distance_m=max(0.0, float(raw.get("distance") or 0.0)),
        advisory_notices=_advisory_notices(raw_steps),
        mode=mode,
    )


class OSRMDirectionsClient:
    """Single-attempt OSRM adapter: retries belong to the queues that call it."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.osrm_base_url).rstrip("/")
        # trust_env=False keeps proxy env vars from hijacking requests to a local OSRM.
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s or settings.directions_timeout_s, connect=5.0),
            trust_env=False,
            headers={"accept": "application/json"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def profile_for(self, mode: DirectionsMode) -> str:
        profile = {
            DirectionsMode.AUTOMOBILE: settings.osrm_profile_automobile,
            DirectionsMode.WALKING: settings.osrm_profile_walking,
            DirectionsMode.CYCLING: settings.osrm_profile_cycling,
            DirectionsMode.TRANSIT: settings.osrm_profile_transit,
        }[DirectionsMode(mode)]
        if not profile:
            raise UnsupportedModeError(f"no OSRM profile configured for mode={DirectionsMode(mode).value}")
        return profile

    async def calculate_routes(
        self,
        origin: LatLng,
        destination: LatLng,
        *,
        mode: DirectionsMode = DirectionsMode.AUTOMOBILE,
        want_alternates: bool = False,
    ) -> list[Route]:
        profile = self.profile_for(mode)
        coords = f"{origin.lon},{origin.lat};{destination.lon},{destination.lat}"
        url = f"{self.base_url}/route/v1/{profile}/{coords}"
        params = {
            "alternatives": "true" if want_alternates else "false",
            "overview": "full",
            "geometries": "geojson",
            "steps": "true",
        }

        try:
            resp = await self._client.get(url, params=params)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            msg = str(e).strip() or repr(e)
            raise ProviderTransportError(f"{type(e).__name__}: {msg}") from e

        if resp.status_code == _RATE_LIMIT_STATUS:
            raise RateLimitedError(
                _format_osrm_error(resp),
                retry_after_s=parse_retry_after_s(resp.headers),
            )

        data: Any
        try:
            data = resp.json()
        except ValueError:
            data = None

        if isinstance(data, dict) and data.get("code") in _NO_ROUTE_CODES:
            raise NoRouteError(f"OSRM {data.get('code')}: {data.get('message') or 'no route found'}")
        if resp.status_code >= 400:
            raise ProviderTransportError(_format_osrm_error(resp))
        if not isinstance(data, dict):
            raise ProviderTransportError("OSRM returned a non-JSON response")
        if data.get("code") != "Ok":
            raise ProviderTransportError(
                f"OSRM error code={data.get('code')} message={data.get('message')}"
            )

        routes = data.get("routes", [])
        if not isinstance(routes, list):
            raise ProviderTransportError("OSRM response has no routes list")
        parsed = [parse_osrm_route(r, mode=DirectionsMode(mode)) for r in routes if isinstance(r, dict)]
        return parsed if want_alternates else parsed[:1]


class MeteredDirections:
    """Wraps a provider with per-caller metrics and an optional shared throttle."""

    def __init__(
        self,
        provider: DirectionsProvider,
        *,
        endpoint: str,
        throttle: ProviderThrottle | None = None,
    ) -> None:
        self._provider = provider
        self.endpoint = endpoint
        self._throttle = throttle

    async def calculate_routes(
        self,
        origin: LatLng,
        destination: LatLng,
        *,
        mode: DirectionsMode,
        want_alternates: bool,
    ) -> list[Route]:
        if self._throttle is not None:
            await self._throttle.acquire()
        t0 = time.perf_counter()
        outcome: CallOutcome = "ok"
        try:
            return await self._provider.calculate_routes(
                origin,
                destination,
                mode=mode,
                want_alternates=want_alternates,
            )
        except RateLimitedError:
            outcome = "rate_limited"
            raise
        except NoRouteError:
            outcome = "no_route"
            raise
        except DirectionsError:
            outcome = "error"
            raise
        finally:
            record_provider_call(
                self.endpoint,
                duration_ms=(time.perf_counter() - t0) * 1000.0,
                outcome=outcome,
            )
