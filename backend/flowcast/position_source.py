from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Literal, Protocol

from .geo import haversine_m, heading_delta_deg
from .logging_utils import log_event
from .models import AuthorizationState, Heading, Position
from .observable import ObservableState
from .route_errors import RouteIssue, make_issue
from .settings import settings

PositionListener = Callable[[Position], None]
HeadingListener = Callable[[Heading], None]
SensorFailure = Literal["denied", "location_unknown", "unknown"]


class PositionSource(Protocol):
    @property
    def position(self) -> Position | None: ...

    @property
    def heading(self) -> Heading | None: ...

    @property
    def authorization_state(self) -> AuthorizationState: ...

    def subscribe(
        self,
        on_position: PositionListener,
        on_heading: HeadingListener | None = None,
    ) -> Callable[[], None]: ...

    def request_permission(self) -> AuthorizationState: ...


def _grant() -> AuthorizationState:
    return AuthorizationState.GRANTED


class FilteredPositionSource:
    """Fan-out of device samples with the delta filtering the sensor would apply.

    Samples with negative accuracy are invalid. A position is only accepted once it
    moved more than ``min_distance_m`` from the last accepted one, a heading once it
    turned more than ``min_heading_delta_deg``. Only the previous accepted sample is kept.
    """

    def __init__(
        self,
        *,
        authorizer: Callable[[], AuthorizationState] | None = None,
        min_distance_m: float | None = None,
        min_heading_delta_deg: float | None = None,
    ) -> None:
        self._authorizer = authorizer or _grant
        self.min_distance_m = (
            settings.position_min_distance_m if min_distance_m is None else float(min_distance_m)
        )
        self.min_heading_delta_deg = (
            settings.heading_min_delta_deg if min_heading_delta_deg is None else float(min_heading_delta_deg)
        )
        self._state = ObservableState(
            "position_source",
            position=None,
            heading=None,
            authorization_state=AuthorizationState.UNDETERMINED,
            is_updating=False,
            issue=None,
        )
        self._subscribers: list[tuple[PositionListener, HeadingListener | None]] = []

    @property
    def position(self) -> Position | None:
        return self._state.get("position")

    @property
    def heading(self) -> Heading | None:
        return self._state.get("heading")

    @property
    def authorization_state(self) -> AuthorizationState:
        return self._state.get("authorization_state")

    @property
    def is_updating(self) -> bool:
        return self._state.get("is_updating")

    @property
    def issue(self) -> RouteIssue | None:
        return self._state.get("issue")

    def snapshot(self) -> dict[str, Any]:
        return self._state.snapshot()

    def observe(self, listener: Callable[[str, Any], None]) -> Callable[[], None]:
        return self._state.subscribe(listener)

    def subscribe(
        self,
        on_position: PositionListener,
        on_heading: HeadingListener | None = None,
    ) -> Callable[[], None]:
        entry = (on_position, on_heading)
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return _unsubscribe

    def request_permission(self) -> AuthorizationState:
        log_event("location_permission_requested")
        state = self._authorizer()
        self.set_authorization(state)
        return state

    def set_authorization(self, state: AuthorizationState) -> None:
        state = AuthorizationState(state)
        if state is AuthorizationState.GRANTED:
            self._state.update(authorization_state=state, is_updating=True, issue=None)
        elif state is AuthorizationState.DENIED:
            self._state.update(
                authorization_state=state,
                is_updating=False,
                position=None,
                heading=None,
                issue=make_issue("permission_denied"),
            )
        else:
            self._state.update(authorization_state=state, is_updating=False, position=None, heading=None)
        log_event("location_authorization_changed", authorization_state=state.value)

    def report_failure(self, kind: SensorFailure) -> None:
        log_event("location_sensor_failed", level=logging.WARNING, kind=kind)
        if kind == "denied":
            self.set_authorization(AuthorizationState.DENIED)
        elif kind == "location_unknown":
            self._state.update(issue=make_issue("location_unavailable"))
        else:
            self._state.update(issue=make_issue("location_unavailable", sensor_failure=kind))

    def ingest_position(self, sample: Position) -> bool:
        if not self.is_updating:
            return False
        if sample.horizontal_accuracy < 0:
            log_event("position_sample_rejected", level=logging.DEBUG, reason="invalid_accuracy")
            return False

        previous = self.position
        if previous is not None:
            moved_m = haversine_m(previous.lat, previous.lon, sample.lat, sample.lon)
            if moved_m <= self.min_distance_m:
                log_event(
                    "position_sample_rejected",
                    level=logging.DEBUG,
                    reason="below_distance_filter",
                    moved_m=round(moved_m, 2),
                )
                return False

        self._state.update(position=sample)
        for on_position, _ in list(self._subscribers):
            on_position(sample)
        return True

    def ingest_heading(self, sample: Heading) -> bool:
        if not self.is_updating:
            return False
        if sample.accuracy < 0:
            return False

        previous = self.heading
        if previous is not None:
            if heading_delta_deg(previous.true_heading, sample.true_heading) <= self.min_heading_delta_deg:
                return False

        self._state.update(heading=sample)
        for _, on_heading in list(self._subscribers):
            if on_heading is not None:
                on_heading(sample)
        return True
