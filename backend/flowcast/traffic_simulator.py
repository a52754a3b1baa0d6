from __future__ import annotations

import asyncio
import calendar
import logging
import random
import time
from collections.abc import Callable
from datetime import date, timedelta
from typing import Any

from .geo import evenly_spaced_bearings, planar_offset
from .logging_utils import log_event
from .models import CongestionLevel, DirectionsMode, LatLng, Position, Route, TrafficPrediction, TrafficSegment
from .observable import ObservableState
from .position_source import PositionSource
from .request_queue import retry_delay_s
from .route_errors import RouteIssue, make_issue
from .routing_osrm import DirectionsError, DirectionsProvider, RateLimitedError
from .settings import settings
from .single_flight import SingleFlightQueue, Sleep


def random_congestion(rng: random.Random) -> CongestionLevel:
    """Weighted draw: 30% low, 40% moderate, 30% heavy."""
    roll = rng.random()
    if roll < 0.3:
        return CongestionLevel.LOW
    if roll < 0.7:
        return CongestionLevel.MODERATE
    return CongestionLevel.HEAVY


def forecast_day_name(offset: int, day: date) -> str:
    if offset == 0:
        return "Today"
    if offset == 1:
        return "Tomorrow"
    return calendar.day_name[day.weekday()]


class TrafficSimulator:
    """Synthetic congestion around a focal point, for visualisation only.

    Each cycle routes from the focal point to points on a ring around it and turns every
    returned step into a randomly coloured segment. Cycles run one at a time; a searched
    location supersedes whatever cycle is in flight. Output replaces the previous set wholesale.
    """

    def __init__(
        self,
        provider: DirectionsProvider,
        position_source: PositionSource,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep | None = None,
        endpoint: str = "directions:traffic",
    ) -> None:
        self._provider = provider
        self._position_source = position_source
        self._rng = rng or random.Random(settings.traffic_seed)
        self._clock = clock
        self._sleep: Sleep = sleep or asyncio.sleep
        self.endpoint = endpoint

        self.refresh_interval_s = float(settings.traffic_refresh_interval_s)
        self.min_interval_s = float(settings.traffic_min_interval_s)
        self.bearing_count = int(settings.traffic_bearing_count)
        self.radius_deg = float(settings.traffic_radius_deg)
        self.max_requests_per_cycle = int(settings.traffic_max_requests_per_cycle)
        self.forecast_days = int(settings.traffic_forecast_days)

        self._searched: LatLng | None = None
        self._retry_not_before: float | None = None
        self._timer: asyncio.Task[None] | None = None
        self._detach: Callable[[], None] | None = None
        self._queue: SingleFlightQueue[LatLng] = SingleFlightQueue(
            "traffic_generation",
            self._generate,
            cooldown_s=settings.traffic_queue_delay_s,
            sleep=self._sleep,
        )
        self._state = ObservableState(
            "traffic_simulator",
            segments=(),
            predictions=(),
            focal_point=None,
            is_generating=False,
            issue=None,
            last_generated_at=None,
        )

    @property
    def segments(self) -> tuple[TrafficSegment, ...]:
        return self._state.get("segments")

    @property
    def predictions(self) -> tuple[TrafficPrediction, ...]:
        return self._state.get("predictions")

    @property
    def focal_point(self) -> LatLng | None:
        return self._state.get("focal_point")

    @property
    def is_generating(self) -> bool:
        return self._state.get("is_generating")

    @property
    def issue(self) -> RouteIssue | None:
        return self._state.get("issue")

    @property
    def last_generated_at(self) -> float | None:
        return self._state.get("last_generated_at")

    def snapshot(self) -> dict[str, Any]:
        return self._state.snapshot()

    def subscribe(self, listener: Callable[[str, Any], None]) -> Callable[[], None]:
        return self._state.subscribe(listener)

    # ---- triggers ----

    def refresh(self) -> bool:
        """Timer tick. Returns False when debounced, backing off or without a focal point."""
        last = self.last_generated_at
        if last is not None and self._clock() - last < self.min_interval_s:
            log_event(
                "traffic_generation_skipped",
                level=logging.DEBUG,
                reason="min_interval",
                since_last_s=round(self._clock() - last, 3),
            )
            return False
        if self._retry_not_before is not None and self._clock() < self._retry_not_before:
            log_event(
                "traffic_generation_skipped",
                level=logging.DEBUG,
                reason="rate_limit_backoff",
                wait_s=round(self._retry_not_before - self._clock(), 3),
            )
            return False
        if self._queue.is_processing:
            log_event("traffic_generation_skipped", level=logging.DEBUG, reason="in_progress")
            return False

        focal = self._searched
        if focal is None:
            position = self._position_source.position
            focal = position.coordinate if position is not None else None
        if focal is None:
            log_event("traffic_generation_skipped", level=logging.DEBUG, reason="no_focal_point")
            return False

        self._queue.submit(focal)
        return True

    def generate_traffic_for_searched_location(self, coordinate: LatLng) -> int:
        """User search: cancel the running cycle and generate around ``coordinate`` now."""
        self._searched = coordinate
        self._state.update(focal_point=coordinate)
        generation = self._queue.submit(coordinate)
        log_event("traffic_search_requested", generation=generation, focal_point=coordinate.model_dump())
        return generation

    def cancel(self) -> int:
        return self._queue.supersede()

    def generate_predictions(self, today: date | None = None) -> tuple[TrafficPrediction, ...]:
        start = today or date.today()
        predictions = []
        for offset in range(self.forecast_days):
            day = start + timedelta(days=offset)
            predictions.append(
                TrafficPrediction(
                    day_name=forecast_day_name(offset, day),
                    morning=random_congestion(self._rng),
                    afternoon=random_congestion(self._rng),
                    evening=random_congestion(self._rng),
                )
            )
        result = tuple(predictions)
        self._state.update(predictions=result)
        return result

    # ---- lifecycle ----

    def attach(self) -> None:
        if self._detach is None:
            self._detach = self._position_source.subscribe(self._on_position)

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None

    def start(self) -> None:
        if self._timer is None or self._timer.done():
            self._timer = asyncio.get_running_loop().create_task(self._run_timer(), name="traffic-timer")

    async def join(self) -> None:
        await self._queue.join()

    async def aclose(self) -> None:
        self.detach()
        timer = self._timer
        self._timer = None
        if timer is not None and not timer.done():
            timer.cancel()
            await asyncio.gather(timer, return_exceptions=True)
        await self._queue.aclose()
        self._state.update(is_generating=False)

    async def _run_timer(self) -> None:
        while True:
            self.refresh()
            await self._sleep(self.refresh_interval_s)

    def _on_position(self, position: Position) -> None:
        # First fix seeds the map before the timer's next tick.
        if self.last_generated_at is None and self._searched is None and not self._queue.is_processing:
            self.refresh()

    # ---- generation ----

    async def _generate(self, focal: LatLng, generation: int) -> None:
        self._state.update(is_generating=True, focal_point=focal)
        try:
            routes, rate_limited, failures, retry_after_s = await self._queue.call(self._fan_out(focal), generation)
        finally:
            if self._queue.pending_count == 0:
                self._state.update(is_generating=False)

        if rate_limited:
            backoff_s = retry_delay_s(
                retry_after_s,
                cap_s=max(self.min_interval_s, settings.route_retry_delay_cap_s),
            )
            self._retry_not_before = self._clock() + backoff_s
            log_event(
                "traffic_generation_rate_limited",
                level=logging.WARNING,
                generation=generation,
                completed=len(routes),
                backoff_s=backoff_s,
            )
            self._state.update(issue=make_issue("rate_limited_retrying", abandoned_cycle=True))
            return

        segments = self._segments_from(routes)
        if not segments and failures:
            log_event("traffic_generation_failed", level=logging.WARNING, generation=generation, failures=failures)
            self._state.update(issue=make_issue("provider_error"))
            return

        self._retry_not_before = None
        self._state.update(segments=segments, issue=None, last_generated_at=self._clock())
        log_event(
            "traffic_generation_completed",
            generation=generation,
            segment_count=len(segments),
            route_count=len(routes),
            failures=failures,
        )

    def _targets(self, focal: LatLng) -> list[LatLng]:
        targets = []
        for bearing in evenly_spaced_bearings(self.bearing_count):
            lat, lon = planar_offset(focal.lat, focal.lon, bearing=bearing, radius_deg=self.radius_deg)
            targets.append(LatLng(lat=lat, lon=lon))
        return targets

    async def _fan_out(self, focal: LatLng) -> tuple[list[Route], bool, int, float | None]:
        """Route to every ring point; stop the whole cycle on the first rate-limit signal."""
        sem = asyncio.Semaphore(self.max_requests_per_cycle)

        async def one(target: LatLng) -> list[Route]:
            async with sem:
                return await self._provider.calculate_routes(
                    focal,
                    target,
                    mode=DirectionsMode.AUTOMOBILE,
                    want_alternates=False,
                )

        tasks = [asyncio.ensure_future(one(target)) for target in self._targets(focal)]
        results: dict[int, list[Route]] = {}
        failures = 0
        rate_limited = False
        retry_after_s: float | None = None
        try:
            pending = set(tasks)
            while pending and not rate_limited:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    try:
                        results[tasks.index(task)] = task.result()
                    except RateLimitedError as exc:
                        rate_limited = True
                        retry_after_s = exc.retry_after_s
                    except DirectionsError as exc:
                        failures += 1
                        log_event(
                            "traffic_route_failed",
                            level=logging.DEBUG,
                            error=f"{type(exc).__name__}: {exc}",
                        )
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        routes = [route for idx in sorted(results) for route in results[idx]]
        return routes, rate_limited, failures, retry_after_s

    def _segments_from(self, routes: list[Route]) -> tuple[TrafficSegment, ...]:
        segments = []
        for route in routes:
            for step in route.steps:
                if len(step.geometry) < 2:
                    continue
                segments.append(
                    TrafficSegment(
                        coordinates=step.geometry,
                        congestion_level=random_congestion(self._rng),
                        vehicle_count=self._rng.randint(1, 3),
                    )
                )
        return tuple(segments)
