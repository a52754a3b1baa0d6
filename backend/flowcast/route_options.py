from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from .logging_utils import log_event
from .models import LatLng, RouteOption, TravelMode
from .observable import ObservableState
from .route_errors import make_issue
from .routing_osrm import DirectionsError, DirectionsProvider, NoRouteError, UnsupportedModeError


def _blank_options() -> tuple[RouteOption, ...]:
    return tuple(RouteOption(mode=mode) for mode in TravelMode)


def _error_message(exc: DirectionsError) -> str:
    if isinstance(exc, UnsupportedModeError):
        return make_issue("mode_unsupported").message
    if isinstance(exc, NoRouteError):
        return make_issue("no_routes_found").message
    return make_issue("provider_error").message


class RouteOptionsPlanner:
    """One best route per travel mode, for the side-by-side comparison sheet."""

    def __init__(self, provider: DirectionsProvider) -> None:
        self._provider = provider
        self._generation = 0
        self._state = ObservableState(
            "route_options",
            options=_blank_options(),
            selected_mode=TravelMode.CAR,
        )

    @property
    def options(self) -> tuple[RouteOption, ...]:
        return self._state.get("options")

    @property
    def selected_mode(self) -> TravelMode:
        return self._state.get("selected_mode")

    def option_for(self, mode: TravelMode) -> RouteOption:
        return next(option for option in self.options if option.mode is mode)

    def snapshot(self) -> dict[str, Any]:
        return self._state.snapshot()

    def subscribe(self, listener: Callable[[str, Any], None]) -> Callable[[], None]:
        return self._state.subscribe(listener)

    def select_mode(self, mode: TravelMode) -> None:
        self._state.update(selected_mode=TravelMode(mode))

    def clear(self) -> None:
        self._generation += 1
        self._state.update(options=_blank_options(), selected_mode=TravelMode.CAR)

    async def calculate_routes(self, source: LatLng, destination: LatLng) -> tuple[RouteOption, ...]:
        self._generation += 1
        generation = self._generation

        for mode in TravelMode:
            if mode.supported:
                self._set_option(mode, generation, route=None, is_calculating=True, error=None)
            else:
                self._set_option(
                    mode,
                    generation,
                    route=None,
                    is_calculating=False,
                    error=make_issue("mode_unsupported").message,
                )

        await asyncio.gather(
            *[self._calculate_one(mode, source, destination, generation) for mode in TravelMode if mode.supported]
        )
        log_event(
            "route_options_calculated",
            generation=generation,
            routed=[o.mode.value for o in self.options if o.route is not None],
            failed=[o.mode.value for o in self.options if o.error is not None],
        )
        return self.options

    async def _calculate_one(self, mode: TravelMode, source: LatLng, destination: LatLng, generation: int) -> None:
        try:
            routes = await self._provider.calculate_routes(
                source,
                destination,
                mode=mode.directions_mode,
                want_alternates=False,
            )
        except DirectionsError as exc:
            log_event(
                "route_option_failed",
                level=logging.WARNING,
                mode=mode.value,
                error=f"{type(exc).__name__}: {exc}",
            )
            self._set_option(mode, generation, route=None, is_calculating=False, error=_error_message(exc))
            return

        if not routes:
            self._set_option(
                mode,
                generation,
                route=None,
                is_calculating=False,
                error=make_issue("no_routes_found").message,
            )
            return
        self._set_option(mode, generation, route=routes[0], is_calculating=False, error=None)

    def _set_option(self, mode: TravelMode, generation: int, **fields: Any) -> None:
        if generation != self._generation:
            return
        options = tuple(
            option.model_copy(update=fields) if option.mode is mode else option for option in self.options
        )
        self._state.update(options=options)
