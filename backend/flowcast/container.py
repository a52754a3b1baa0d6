from __future__ import annotations

import random
from dataclasses import dataclass
from pathlib import Path

from .identity import SessionIdentity
from .logging_utils import log_event
from .position_source import FilteredPositionSource
from .request_queue import RequestQueue
from .route_options import RouteOptionsPlanner
from .route_session import RouteSession
from .routing_osrm import DirectionsProvider, MeteredDirections, OSRMDirectionsClient
from .settings import settings
from .single_flight import ProviderThrottle, Sleep
from .traffic_simulator import TrafficSimulator
from .trip_store import JsonTripStore, SavedTripsManager


@dataclass
class NavigationStack:
    directions: DirectionsProvider
    position_source: FilteredPositionSource
    queue: RequestQueue
    session: RouteSession
    traffic: TrafficSimulator
    route_options: RouteOptionsPlanner
    trips: JsonTripStore
    saved_trips: SavedTripsManager
    identity: SessionIdentity

    def start(self) -> None:
        """Hook managers to the position stream and start the traffic timer (needs a running loop)."""
        self.position_source.request_permission()
        self.session.attach()
        self.traffic.attach()
        self.traffic.generate_predictions()
        self.traffic.start()

    def end_navigation(self) -> None:
        self.session.end_navigation()
        self.traffic.cancel()

    async def aclose(self) -> None:
        self.session.detach()
        self.saved_trips.close()
        await self.traffic.aclose()
        await self.queue.aclose()
        aclose = getattr(self.directions, "aclose", None)
        if aclose is not None:
            await aclose()
        log_event("navigation_stack_closed")


def build_stack(
    *,
    directions: DirectionsProvider | None = None,
    trips_root: str | Path | None = None,
    sleep: Sleep | None = None,
    rng: random.Random | None = None,
) -> NavigationStack:
    """Wire every manager around one directions provider and one position stream."""
    provider = directions or OSRMDirectionsClient()
    throttle = ProviderThrottle(settings.provider_min_interval_s, sleep=sleep)
    position_source = FilteredPositionSource()

    queue = RequestQueue(
        MeteredDirections(provider, endpoint="directions:route_queue", throttle=throttle),
        position_source,
        sleep=sleep,
    )
    session = RouteSession(position_source, queue)
    traffic = TrafficSimulator(
        MeteredDirections(provider, endpoint="directions:traffic", throttle=throttle),
        position_source,
        rng=rng,
        sleep=sleep,
    )
    route_options = RouteOptionsPlanner(
        MeteredDirections(provider, endpoint="directions:route_options", throttle=throttle)
    )
    trips = JsonTripStore(trips_root)
    log_event(
        "navigation_stack_built",
        provider=type(provider).__name__,
        provider_min_interval_s=throttle.min_interval_s,
    )
    return NavigationStack(
        directions=provider,
        position_source=position_source,
        queue=queue,
        session=session,
        traffic=traffic,
        route_options=route_options,
        trips=trips,
        saved_trips=SavedTripsManager(trips),
        identity=SessionIdentity(),
    )
