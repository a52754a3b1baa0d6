from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

from .logging_utils import log_event
from .metrics_store import record_retry
from .models import Destination, DirectionsMode, LatLng, Route, RouteRequest
from .position_source import PositionSource
from .route_errors import RouteIssue, make_issue
from .routing_osrm import DirectionsError, DirectionsProvider, NoRouteError, RateLimitedError
from .settings import settings
from .single_flight import SingleFlightQueue, Sleep, Superseded

OutcomeStatus = Literal["resolved", "no_routes", "location_unavailable", "provider_error", "cancelled"]
ProgressStage = Literal["locating", "requesting", "retrying"]


@dataclass(frozen=True)
class RouteOutcome:
    status: OutcomeStatus
    generation: int
    destination: Destination
    routes: tuple[Route, ...] = ()
    issue: RouteIssue | None = None
    retry_count: int = 0
    error_detail: str | None = None


@dataclass(frozen=True)
class RouteProgress:
    stage: ProgressStage
    generation: int
    destination: Destination
    attempt: int = 0
    delay_s: float | None = None
    issue: RouteIssue | None = None


ResolvedCallback = Callable[[RouteOutcome], None]
ProgressCallback = Callable[[RouteProgress], None]


@dataclass
class _QueuedRequest:
    destination: Destination
    on_resolved: ResolvedCallback | None = None
    on_progress: ProgressCallback | None = None
    retry_count: int = field(default=0)


def retry_delay_s(
    retry_after_s: float | None,
    *,
    cap_s: float | None = None,
    fallback_s: float | None = None,
) -> float:
    """Delay before retrying a rate-limited request: hint + 1s, capped; flat fallback without a hint."""
    cap = settings.route_retry_delay_cap_s if cap_s is None else float(cap_s)
    fallback = settings.route_retry_fallback_delay_s if fallback_s is None else float(fallback_s)
    if retry_after_s is None:
        return fallback
    return min(max(0.0, float(retry_after_s)) + 1.0, cap)


class RequestQueue:
    """Serialises directions requests: one in flight, FIFO, rate-limit aware.

    Each ``enqueue`` supersedes everything issued before it, so only the newest
    destination can ever resolve with routes; older entries resolve as ``cancelled``.
    """

    def __init__(
        self,
        provider: DirectionsProvider,
        position_source: PositionSource,
        *,
        sleep: Sleep | None = None,
        on_status: ProgressCallback | None = None,
        endpoint: str = "directions:route_queue",
        max_retries: int | None = None,
        cooldown_s: float | None = None,
        location_attempts: int | None = None,
        location_poll_s: float | None = None,
    ) -> None:
        self._provider = provider
        self._position_source = position_source
        self.on_status = on_status
        self.endpoint = endpoint
        self.max_retries = settings.route_rate_limit_max_retries if max_retries is None else int(max_retries)
        self.location_attempts = (
            settings.location_fix_attempts if location_attempts is None else max(1, int(location_attempts))
        )
        self.location_poll_s = settings.location_fix_poll_s if location_poll_s is None else float(location_poll_s)
        self._queue: SingleFlightQueue[_QueuedRequest] = SingleFlightQueue(
            "route_requests",
            self._process,
            cooldown_s=settings.route_queue_cooldown_s if cooldown_s is None else cooldown_s,
            sleep=sleep,
        )

    @property
    def generation(self) -> int:
        return self._queue.generation

    @property
    def is_processing(self) -> bool:
        return self._queue.is_processing

    @property
    def pending_count(self) -> int:
        return self._queue.pending_count

    def is_current(self, generation: int) -> bool:
        return self._queue.is_current(generation)

    def enqueue(
        self,
        destination: Destination,
        on_resolved: ResolvedCallback | None = None,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> int:
        busy = self._queue.is_processing
        generation = self._queue.submit(
            _QueuedRequest(destination=destination, on_resolved=on_resolved, on_progress=on_progress)
        )
        log_event(
            "route_request_enqueued",
            generation=generation,
            destination_name=destination.name,
            destination=destination.coordinate.model_dump(),
            waiting_behind_active=busy,
        )
        return generation

    def cancel_active(self) -> int:
        """Invalidate the in-flight call and anything still queued."""
        return self._queue.supersede()

    async def join(self) -> None:
        await self._queue.join()

    async def aclose(self) -> None:
        await self._queue.aclose()

    async def _process(self, entry: _QueuedRequest, generation: int) -> None:
        try:
            outcome = await self._service(entry, generation)
        except Superseded:
            outcome = RouteOutcome(
                status="cancelled",
                generation=generation,
                destination=entry.destination,
                retry_count=entry.retry_count,
            )
            log_event("route_request_superseded", level=logging.DEBUG, generation=generation)

        if entry.on_resolved is not None:
            entry.on_resolved(outcome)

    def _progress(self, entry: _QueuedRequest, progress: RouteProgress) -> None:
        if self.on_status is not None:
            self.on_status(progress)
        if entry.on_progress is not None:
            entry.on_progress(progress)

    async def _await_origin(self, generation: int) -> LatLng | None:
        for attempt in range(self.location_attempts):
            position = self._position_source.position
            if position is not None:
                return position.coordinate
            if attempt < self.location_attempts - 1:
                await self._queue.pause(self.location_poll_s, generation)
        return None

    async def _service(self, entry: _QueuedRequest, generation: int) -> RouteOutcome:
        self._queue.ensure_current(generation)
        self._progress(entry, RouteProgress(stage="locating", generation=generation, destination=entry.destination))

        origin = await self._await_origin(generation)
        if origin is None:
            log_event(
                "route_request_location_unavailable",
                level=logging.WARNING,
                generation=generation,
                attempts=self.location_attempts,
            )
            return RouteOutcome(
                status="location_unavailable",
                generation=generation,
                destination=entry.destination,
                issue=make_issue("location_unavailable"),
            )

        request = RouteRequest(
            origin=origin,
            destination=entry.destination.coordinate,
            transport_mode=DirectionsMode.AUTOMOBILE,
            alternates_requested=True,
        )

        while True:
            self._progress(
                entry,
                RouteProgress(
                    stage="requesting",
                    generation=generation,
                    destination=entry.destination,
                    attempt=entry.retry_count + 1,
                ),
            )
            try:
                routes = await self._queue.call(
                    self._provider.calculate_routes(
                        request.origin,
                        request.destination,
                        mode=request.transport_mode,
                        want_alternates=request.alternates_requested,
                    ),
                    generation,
                )
            except RateLimitedError as exc:
                if entry.retry_count >= self.max_retries:
                    log_event(
                        "route_request_retries_exhausted",
                        level=logging.WARNING,
                        generation=generation,
                        retry_count=entry.retry_count,
                    )
                    return RouteOutcome(
                        status="provider_error",
                        generation=generation,
                        destination=entry.destination,
                        issue=make_issue("provider_error", rate_limited=True),
                        retry_count=entry.retry_count,
                        error_detail=str(exc),
                    )

                delay = retry_delay_s(exc.retry_after_s)
                entry.retry_count += 1
                record_retry(self.endpoint)
                issue = make_issue("rate_limited_retrying", attempt=entry.retry_count, delay_s=delay)
                log_event(
                    "route_request_rate_limited",
                    level=logging.WARNING,
                    generation=generation,
                    retry_after_s=exc.retry_after_s,
                    delay_s=delay,
                    retry=entry.retry_count,
                    max_retries=self.max_retries,
                )
                self._progress(
                    entry,
                    RouteProgress(
                        stage="retrying",
                        generation=generation,
                        destination=entry.destination,
                        attempt=entry.retry_count,
                        delay_s=delay,
                        issue=issue,
                    ),
                )
                await self._queue.pause(delay, generation)
                continue
            except NoRouteError as exc:
                log_event("route_request_no_routes", generation=generation, detail=str(exc))
                return RouteOutcome(
                    status="no_routes",
                    generation=generation,
                    destination=entry.destination,
                    issue=make_issue("no_routes_found"),
                    retry_count=entry.retry_count,
                )
            except DirectionsError as exc:
                log_event(
                    "route_request_failed",
                    level=logging.WARNING,
                    generation=generation,
                    error=f"{type(exc).__name__}: {exc}",
                )
                return RouteOutcome(
                    status="provider_error",
                    generation=generation,
                    destination=entry.destination,
                    issue=make_issue("provider_error"),
                    retry_count=entry.retry_count,
                    error_detail=str(exc),
                )

            if not routes:
                log_event("route_request_no_routes", generation=generation)
                return RouteOutcome(
                    status="no_routes",
                    generation=generation,
                    destination=entry.destination,
                    issue=make_issue("no_routes_found"),
                    retry_count=entry.retry_count,
                )

            log_event(
                "route_request_resolved",
                generation=generation,
                route_count=len(routes),
                retry_count=entry.retry_count,
            )
            return RouteOutcome(
                status="resolved",
                generation=generation,
                destination=entry.destination,
                routes=tuple(routes),
                retry_count=entry.retry_count,
            )
