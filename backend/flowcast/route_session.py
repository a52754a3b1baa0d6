from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .geo import haversine_m
from .logging_utils import log_event
from .models import (
    Destination,
    LatLng,
    MapRegion,
    NavigationPhase,
    NavigationState,
    Position,
    Route,
    RouteStep,
    SavedTrip,
)
from .observable import ObservableState
from .position_source import PositionSource
from .request_queue import RequestQueue, RouteOutcome, RouteProgress
from .route_errors import RouteIssue
from .settings import settings


class NavigationStateError(RuntimeError):
    """An intent that the current navigation phase does not allow."""


class RouteSession:
    """Navigation state machine driven by destination intents and position updates.

    Published fields (read via properties, ``snapshot()`` or ``subscribe``):
    route, available_routes, current_step, step_index, is_navigating, show_route_choices,
    should_recenter, destination_name, region, is_calculating, issue, route_error, error.

    Results from the request queue are applied only for the most recent ``set_destination``;
    everything older is dropped on arrival.
    """

    def __init__(
        self,
        position_source: PositionSource,
        queue: RequestQueue,
        *,
        step_threshold_m: float | None = None,
        region_span_deg: float | None = None,
    ) -> None:
        self._position_source = position_source
        self._queue = queue
        self.step_threshold_m = (
            settings.step_advance_threshold_m if step_threshold_m is None else float(step_threshold_m)
        )
        self.region_span_deg = settings.map_region_span_deg if region_span_deg is None else float(region_span_deg)
        self._pending_generation: int | None = None
        self._detach: Callable[[], None] | None = None

        self._state = ObservableState(
            "route_session",
            route=None,
            available_routes=(),
            current_step=None,
            step_index=0,
            is_navigating=False,
            show_route_choices=False,
            should_recenter=False,
            destination_name=None,
            region=self._region_around(self._current_coordinate()),
            is_calculating=False,
            issue=None,
            route_error=None,
            error=None,
        )

    # ---- published state ----

    @property
    def route(self) -> Route | None:
        return self._state.get("route")

    @property
    def available_routes(self) -> tuple[Route, ...]:
        return self._state.get("available_routes")

    @property
    def current_step(self) -> RouteStep | None:
        return self._state.get("current_step")

    @property
    def step_index(self) -> int:
        return self._state.get("step_index")

    @property
    def is_navigating(self) -> bool:
        return self._state.get("is_navigating")

    @property
    def show_route_choices(self) -> bool:
        return self._state.get("show_route_choices")

    @property
    def should_recenter(self) -> bool:
        return self._state.get("should_recenter")

    @property
    def destination_name(self) -> str | None:
        return self._state.get("destination_name")

    @property
    def region(self) -> MapRegion:
        return self._state.get("region")

    @property
    def is_calculating(self) -> bool:
        return self._state.get("is_calculating")

    @property
    def issue(self) -> RouteIssue | None:
        return self._state.get("issue")

    @property
    def route_error(self) -> str | None:
        return self._state.get("route_error")

    @property
    def error(self) -> str | None:
        return self._state.get("error")

    @property
    def phase(self) -> NavigationPhase:
        if self.is_navigating:
            return NavigationPhase.NAVIGATING
        if self.is_calculating:
            return NavigationPhase.PENDING
        if self.available_routes:
            return NavigationPhase.ROUTES_AVAILABLE
        return NavigationPhase.IDLE

    @property
    def navigation_state(self) -> NavigationState:
        return NavigationState(
            is_navigating=self.is_navigating,
            current_step_index=self.step_index,
            should_recenter=self.should_recenter,
        )

    def snapshot(self) -> dict[str, Any]:
        data = self._state.snapshot()
        data["phase"] = self.phase
        data["navigation"] = self.navigation_state
        return data

    def subscribe(self, listener: Callable[[str, Any], None]) -> Callable[[], None]:
        return self._state.subscribe(listener)

    # ---- position stream ----

    def attach(self) -> None:
        if self._detach is None:
            self._detach = self._position_source.subscribe(self.on_position_update)

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None

    # ---- intents ----

    def set_destination(self, destination: Destination | LatLng, name: str | None = None) -> int:
        if isinstance(destination, LatLng):
            destination = Destination(coordinate=destination, name=name)
        elif name is not None:
            destination = destination.model_copy(update={"name": name})

        if self.is_calculating:
            # Never dropped: the queue supersedes the older request.
            log_event("route_calculation_in_progress", pending_generation=self._pending_generation)

        self._state.update(issue=None, route_error=None, error=None, is_calculating=True)
        generation = self._queue.enqueue(destination, self._on_resolved, on_progress=self._on_progress)
        self._pending_generation = generation
        return generation

    def set_destination_from_trip(self, trip: SavedTrip) -> int:
        return self.set_destination(
            Destination(coordinate=trip.destination.coordinate, name=trip.destination.name)
        )

    def select_route(self, route: Route | str) -> Route:
        if self.is_navigating:
            raise NavigationStateError("cannot change the selected route while navigating")

        if isinstance(route, str):
            match = next((r for r in self.available_routes if r.route_id == route), None)
            if match is None:
                raise KeyError(route)
            route = match

        self._state.update(
            route=route,
            step_index=0,
            current_step=route.steps[0] if route.steps else None,
            show_route_choices=False,
        )
        log_event("route_selected", route_id=route.route_id)
        return route

    def start_navigation(self) -> None:
        route = self.route
        if route is None:
            raise NavigationStateError("no route selected")

        self._state.update(
            step_index=0,
            current_step=route.steps[0] if route.steps else None,
            is_navigating=True,
            show_route_choices=False,
        )
        log_event("navigation_started", route_id=route.route_id, step_count=len(route.steps))

    def next_step(self) -> bool:
        route = self.route
        if route is None or self.step_index >= len(route.steps) - 1:
            return False

        index = self.step_index + 1
        self._state.update(step_index=index, current_step=route.steps[index])
        log_event("navigation_step_advanced", route_id=route.route_id, step_index=index)
        return True

    def on_position_update(self, position: Position) -> None:
        if not self.is_navigating:
            self._state.update(region=self._region_around(position.coordinate))
            return

        step = self.current_step
        anchor = step.anchor if step is not None else None
        if anchor is None:
            return
        if haversine_m(position.lat, position.lon, anchor.lat, anchor.lon) < self.step_threshold_m:
            self.next_step()

    def recenter_on_user(self) -> None:
        self._state.update(should_recenter=True)

    def consume_recenter(self) -> bool:
        """Called by the map once it has moved its camera."""
        if not self.should_recenter:
            return False
        self._state.update(should_recenter=False)
        return True

    def end_navigation(self) -> None:
        self._state.update(
            route=None,
            available_routes=(),
            current_step=None,
            step_index=0,
            is_navigating=False,
            show_route_choices=False,
            should_recenter=False,
            destination_name=None,
            region=self._region_around(self._current_coordinate()),
        )
        log_event("navigation_ended")

    # ---- queue callbacks ----

    def _on_progress(self, progress: RouteProgress) -> None:
        if progress.generation != self._pending_generation:
            return
        if progress.stage == "locating":
            self._state.update(destination_name=progress.destination.name)
        elif progress.stage == "retrying" and progress.issue is not None:
            self._state.update(issue=progress.issue, route_error=progress.issue.message)

    def _on_resolved(self, outcome: RouteOutcome) -> None:
        if outcome.status == "cancelled" or outcome.generation != self._pending_generation:
            log_event(
                "route_outcome_discarded",
                level=logging.DEBUG,
                generation=outcome.generation,
                status=outcome.status,
            )
            return
        self._pending_generation = None

        if outcome.status == "resolved":
            if self.is_navigating:
                log_event("route_update_suppressed", generation=outcome.generation)
                self._state.update(is_calculating=False, issue=None, route_error=None)
                return

            routes = outcome.routes
            first = routes[0]
            self._state.update(
                available_routes=routes,
                route=first,
                step_index=0,
                current_step=first.steps[0] if first.steps else None,
                show_route_choices=True,
                is_calculating=False,
                issue=None,
                route_error=None,
                error=None,
            )
            return

        issue = outcome.issue
        self._state.update(
            is_calculating=False,
            issue=issue,
            route_error=issue.message if issue is not None else None,
            error=outcome.error_detail,
        )

    # ---- helpers ----

    def _current_coordinate(self) -> LatLng:
        position = self._position_source.position
        if position is None:
            return LatLng(lat=0.0, lon=0.0)
        return position.coordinate

    def _region_around(self, center: LatLng) -> MapRegion:
        return MapRegion(center=center, span_deg=self.region_span_deg)
