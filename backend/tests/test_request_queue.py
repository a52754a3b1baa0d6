from __future__ import annotations

import asyncio
from typing import Any

from flowcast.metrics_store import metrics_snapshot, reset_metrics
from flowcast.models import AuthorizationState, Destination, DirectionsMode, LatLng, Position, Route, RouteStep
from flowcast.position_source import FilteredPositionSource
from flowcast.request_queue import RequestQueue, RouteOutcome, RouteProgress, retry_delay_s
from flowcast.routing_osrm import NoRouteError, ProviderTransportError, RateLimitedError


def _route(route_id: str) -> Route:
    return Route(
        route_id=route_id,
        steps=(
            RouteStep(instruction="Head north", distance_m=120.0, geometry=((51.5, -0.12), (51.501, -0.12))),
            RouteStep(instruction="Arrive", distance_m=0.0, geometry=((51.501, -0.12),)),
        ),
        total_duration_s=60.0,
        total_distance_m=120.0,
    )


def _destination(name: str = "Office") -> Destination:
    return Destination(coordinate=LatLng(lat=51.52, lon=-0.1), name=name)


def _located_source() -> FilteredPositionSource:
    source = FilteredPositionSource()
    source.set_authorization(AuthorizationState.GRANTED)
    assert source.ingest_position(Position(lat=51.5, lon=-0.12, horizontal_accuracy=5.0))
    return source


class ScriptedProvider:
    def __init__(self, script: list[Any]) -> None:
        self._script = list(script)
        self.calls: list[tuple[LatLng, LatLng, DirectionsMode, bool]] = []

    async def calculate_routes(self, origin, destination, *, mode, want_alternates):  # noqa: ANN001
        self.calls.append((origin, destination, mode, want_alternates))
        item = self._script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class GatedProvider:
    """First call hangs until cancelled; later calls return ``routes``."""

    def __init__(self, routes: list[Route]) -> None:
        self._routes = routes
        self.calls = 0
        self.started = asyncio.Event()

    async def calculate_routes(self, origin, destination, *, mode, want_alternates):  # noqa: ANN001
        self.calls += 1
        if self.calls == 1:
            self.started.set()
            await asyncio.Event().wait()
        return list(self._routes)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _run_one(queue: RequestQueue, destination: Destination) -> tuple[list[RouteOutcome], list[RouteProgress]]:
    outcomes: list[RouteOutcome] = []
    progress: list[RouteProgress] = []

    async def _go() -> None:
        queue.enqueue(destination, outcomes.append, on_progress=progress.append)
        await queue.join()

    asyncio.run(_go())
    return outcomes, progress


def test_retry_delay_uses_hint_plus_one_capped_at_five() -> None:
    assert retry_delay_s(2.0) == 3.0
    assert retry_delay_s(0.0) == 1.0
    assert retry_delay_s(4.5) == 5.0
    assert retry_delay_s(30.0) == 5.0
    assert retry_delay_s(None) == 5.0


def test_rate_limited_once_then_two_routes_waits_three_seconds() -> None:
    reset_metrics()
    provider = ScriptedProvider([RateLimitedError("OSRM 429", retry_after_s=2.0), [_route("a"), _route("b")]])
    sleep = RecordingSleep()
    queue = RequestQueue(provider, _located_source(), sleep=sleep)

    outcomes, progress = _run_one(queue, _destination())

    assert sleep.delays == [3.0]
    assert len(outcomes) == 1
    outcome = outcomes[0]
    assert outcome.status == "resolved"
    assert [r.route_id for r in outcome.routes] == ["a", "b"]
    assert outcome.retry_count == 1
    assert outcome.issue is None

    assert [p.stage for p in progress] == ["locating", "requesting", "retrying", "requesting"]
    retrying = progress[2]
    assert retrying.issue is not None
    assert retrying.issue.reason_code == "rate_limited_retrying"
    assert retrying.issue.retrying is True
    assert retrying.delay_s == 3.0

    origin, destination, mode, want_alternates = provider.calls[0]
    assert origin == LatLng(lat=51.5, lon=-0.12)
    assert destination == LatLng(lat=51.52, lon=-0.1)
    assert mode is DirectionsMode.AUTOMOBILE
    assert want_alternates is True

    snap = metrics_snapshot()
    assert snap["endpoints"]["directions:route_queue"]["retry_count"] == 1  # type: ignore[index]


def test_exhausted_retries_surface_provider_error() -> None:
    provider = ScriptedProvider([RateLimitedError("OSRM 429") for _ in range(4)])
    sleep = RecordingSleep()
    queue = RequestQueue(provider, _located_source(), sleep=sleep)

    outcomes, _ = _run_one(queue, _destination())

    assert sleep.delays == [5.0, 5.0, 5.0]
    assert len(provider.calls) == 4
    outcome = outcomes[0]
    assert outcome.status == "provider_error"
    assert outcome.retry_count == 3
    assert outcome.issue is not None
    assert outcome.issue.reason_code == "provider_error"
    assert outcome.issue.message == "Unable to calculate route. Please try again."
    assert outcome.issue.retrying is False


def test_non_rate_limit_errors_fail_without_retry() -> None:
    provider = ScriptedProvider([ProviderTransportError("ConnectError: refused")])
    sleep = RecordingSleep()
    queue = RequestQueue(provider, _located_source(), sleep=sleep)

    outcomes, _ = _run_one(queue, _destination())

    assert sleep.delays == []
    assert len(provider.calls) == 1
    assert outcomes[0].status == "provider_error"
    assert outcomes[0].error_detail == "ConnectError: refused"


def test_empty_and_no_route_results_report_no_routes() -> None:
    for result in ([], NoRouteError("OSRM NoRoute: impossible")):
        provider = ScriptedProvider([result])
        queue = RequestQueue(provider, _located_source(), sleep=RecordingSleep())

        outcomes, _ = _run_one(queue, _destination())

        assert outcomes[0].status == "no_routes"
        assert outcomes[0].issue is not None
        assert outcomes[0].issue.message == "No routes found"


def test_missing_position_fails_after_bounded_polling() -> None:
    source = FilteredPositionSource()
    source.set_authorization(AuthorizationState.GRANTED)
    provider = ScriptedProvider([])
    sleep = RecordingSleep()
    queue = RequestQueue(provider, source, sleep=sleep, location_attempts=3, location_poll_s=0.1)

    outcomes, _ = _run_one(queue, _destination())

    assert sleep.delays == [0.1, 0.1]
    assert provider.calls == []
    assert outcomes[0].status == "location_unavailable"
    assert outcomes[0].issue is not None
    assert outcomes[0].issue.message == "Unable to get current location"


def test_default_location_polling_is_twenty_attempts() -> None:
    source = FilteredPositionSource()
    source.set_authorization(AuthorizationState.GRANTED)
    sleep = RecordingSleep()
    queue = RequestQueue(ScriptedProvider([]), source, sleep=sleep)

    outcomes, _ = _run_one(queue, _destination())

    assert queue.location_attempts == 20
    assert sleep.delays == [0.1] * 19
    assert outcomes[0].status == "location_unavailable"


def test_new_destination_cancels_in_flight_call_and_cools_down() -> None:
    provider = GatedProvider([_route("fresh")])
    sleep = RecordingSleep()
    queue = RequestQueue(provider, _located_source(), sleep=sleep)
    outcomes: list[RouteOutcome] = []

    async def _go() -> None:
        first = queue.enqueue(_destination("Old"), outcomes.append)
        await provider.started.wait()
        second = queue.enqueue(_destination("New"), outcomes.append)
        assert second == first + 1
        await queue.join()

    asyncio.run(_go())

    assert [o.status for o in outcomes] == ["cancelled", "resolved"]
    assert outcomes[0].destination.name == "Old"
    assert outcomes[0].issue is None
    assert outcomes[1].destination.name == "New"
    assert [r.route_id for r in outcomes[1].routes] == ["fresh"]
    # cooldown between the two items, because the first one reached the provider
    assert sleep.delays == [0.5]


def test_superseded_entries_that_never_started_skip_the_provider() -> None:
    provider = ScriptedProvider([[_route("latest")]])
    sleep = RecordingSleep()
    queue = RequestQueue(provider, _located_source(), sleep=sleep)
    outcomes: list[RouteOutcome] = []

    async def _go() -> None:
        for name in ("A", "B", "C"):
            queue.enqueue(_destination(name), outcomes.append)
        assert queue.pending_count == 3
        await queue.join()

    asyncio.run(_go())

    assert [(o.destination.name, o.status) for o in outcomes] == [
        ("A", "cancelled"),
        ("B", "cancelled"),
        ("C", "resolved"),
    ]
    assert len(provider.calls) == 1
    assert sleep.delays == []


def test_cancel_active_drops_the_running_request() -> None:
    provider = GatedProvider([_route("unused")])
    queue = RequestQueue(provider, _located_source(), sleep=RecordingSleep())
    outcomes: list[RouteOutcome] = []

    async def _go() -> None:
        queue.enqueue(_destination(), outcomes.append)
        await provider.started.wait()
        queue.cancel_active()
        await queue.join()

    asyncio.run(_go())

    assert [o.status for o in outcomes] == ["cancelled"]
    assert queue.is_processing is False


def test_queue_level_status_callback_sees_every_request() -> None:
    seen: list[tuple[str, int]] = []
    provider = ScriptedProvider([[_route("a")]])
    queue = RequestQueue(
        provider,
        _located_source(),
        sleep=RecordingSleep(),
        on_status=lambda p: seen.append((p.stage, p.generation)),
    )

    _run_one(queue, _destination())

    assert seen == [("locating", 1), ("requesting", 1)]
