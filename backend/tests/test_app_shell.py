from __future__ import annotations

import random
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from flowcast.container import NavigationStack, build_stack
from flowcast.main import app, navigation_stack
from flowcast.metrics_store import reset_metrics
from flowcast.models import DirectionsMode, LatLng, Route, RouteStep
from flowcast.routing_osrm import ProviderTransportError
from flowcast.settings import settings


def _route(route_id: str, origin: LatLng, destination: LatLng) -> Route:
    mid = ((origin.lat + destination.lat) / 2.0, (origin.lon + destination.lon) / 2.0)
    return Route(
        route_id=route_id,
        steps=(
            RouteStep(instruction="Head north", distance_m=500.0, geometry=((origin.lat, origin.lon), mid)),
            RouteStep(instruction="Turn right", distance_m=500.0, geometry=(mid, (destination.lat, destination.lon))),
            RouteStep(instruction="Arrive", geometry=((destination.lat, destination.lon),)),
        ),
        total_duration_s=300.0,
        total_distance_m=1_000.0,
    )


class FakeDirections:
    async def calculate_routes(self, origin, destination, *, mode, want_alternates):  # noqa: ANN001
        routes = [_route(f"{mode.value}-fast", origin, destination), _route(f"{mode.value}-scenic", origin, destination)]
        return routes if want_alternates else routes[:1]


class DownDirections:
    async def calculate_routes(self, origin, destination, *, mode, want_alternates):  # noqa: ANN001
        raise ProviderTransportError("ConnectError: refused")


async def _no_sleep(_seconds: float) -> None:
    return None


def _stack(tmp_path: Path, directions: Any) -> NavigationStack:
    stack = build_stack(directions=directions, trips_root=tmp_path / "trips", sleep=_no_sleep, rng=random.Random(3))
    stack.session.attach()
    return stack


@pytest.fixture
def client_for(tmp_path: Path, monkeypatch):  # noqa: ANN001, ANN201
    monkeypatch.setattr(settings, "out_dir", str(tmp_path / "out"))
    reset_metrics()
    clients: list[TestClient] = []

    def _make(directions: Any) -> tuple[TestClient, NavigationStack]:
        stack = _stack(tmp_path, directions)
        app.dependency_overrides[navigation_stack] = lambda: stack
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client, stack

    try:
        yield _make
    finally:
        for client in clients:
            client.__exit__(None, None, None)
        app.dependency_overrides.clear()


def _locate(client: TestClient) -> None:
    assert client.post("/location/permission").json()["authorization_state"] == "granted"
    resp = client.post("/location/position", json={"lat": 51.5, "lon": -0.12, "horizontal_accuracy": 5.0})
    assert resp.status_code == 200
    assert resp.json()["accepted"] is True


def test_health_and_metrics(client_for) -> None:  # noqa: ANN001
    client, _ = client_for(FakeDirections())
    assert client.get("/health").json() == {"status": "ok"}
    metrics = client.get("/metrics").json()
    assert metrics["total_requests"] == 0


def test_navigation_lifecycle_over_http(client_for) -> None:  # noqa: ANN001
    client, stack = client_for(FakeDirections())
    _locate(client)

    resp = client.post("/navigation/destination", json={"lat": 51.52, "lon": -0.1, "name": "Office", "wait": True})
    assert resp.status_code == 200
    session = resp.json()["session"]
    assert session["phase"] == "routes_available"
    assert [r["route_id"] for r in session["available_routes"]] == ["automobile-fast", "automobile-scenic"]
    assert session["route"]["route_id"] == "automobile-fast"
    assert session["show_route_choices"] is True
    assert session["destination_name"] == "Office"

    resp = client.post("/navigation/routes/automobile-scenic/select")
    assert resp.json()["route"]["route_id"] == "automobile-scenic"
    assert resp.json()["show_route_choices"] is False

    resp = client.post("/navigation/start")
    assert resp.status_code == 200
    assert resp.json()["is_navigating"] is True
    assert resp.json()["current_step"]["instruction"] == "Head north"

    resp = client.post("/navigation/next-step")
    assert resp.json()["advanced"] is True
    assert resp.json()["session"]["step_index"] == 1
    assert resp.json()["session"]["navigation"]["current_step_index"] == 1

    client.post("/navigation/recenter")
    assert client.post("/navigation/recenter/consume").json() == {"recentered": True}

    resp = client.post("/navigation/end")
    body = resp.json()
    assert body["route"] is None
    assert body["available_routes"] == []
    assert body["is_navigating"] is False
    assert body["phase"] == "idle"
    assert body["region"]["center"] == {"lat": 51.5, "lon": -0.12}

    metrics = client.get("/metrics").json()
    assert metrics["endpoints"]["directions:route_queue"]["request_count"] == 1
    assert stack.session.route is None


def test_invalid_transitions_are_rejected(client_for) -> None:  # noqa: ANN001
    client, _ = client_for(FakeDirections())

    assert client.post("/navigation/start").status_code == 409
    assert client.post("/navigation/routes/nope/select").status_code == 404


def test_location_endpoints(client_for) -> None:  # noqa: ANN001
    client, _ = client_for(FakeDirections())
    # not authorised yet
    resp = client.post("/location/position", json={"lat": 51.5, "lon": -0.12})
    assert resp.json()["accepted"] is False

    _locate(client)
    resp = client.post("/location/heading", json={"true_heading": 90.0, "accuracy": 5.0})
    assert resp.json()["accepted"] is True

    resp = client.post("/location/authorization", json={"state": "denied"})
    body = resp.json()
    assert body["position"] is None
    assert body["issue"]["reason_code"] == "permission_denied"


def test_traffic_search_and_forecast(client_for) -> None:  # noqa: ANN001
    client, _ = client_for(FakeDirections())

    resp = client.post("/traffic/search", json={"lat": 51.5, "lon": -0.12, "wait": True})
    traffic = resp.json()["traffic"]
    assert traffic["focal_point"] == {"lat": 51.5, "lon": -0.12}
    assert len(traffic["segments"]) == 12

    forecast = client.get("/traffic/forecast").json()["predictions"]
    assert len(forecast) == 5
    assert forecast[0]["day_name"] == "Today"
    assert forecast[1]["day_name"] == "Tomorrow"


def test_route_options_comparison(client_for) -> None:  # noqa: ANN001
    client, _ = client_for(FakeDirections())
    payload = {"source": {"lat": 51.5, "lon": -0.12}, "destination": {"lat": 51.52, "lon": -0.1}}

    resp = client.post("/route-options", json=payload)
    assert resp.status_code == 200
    options = {o["mode"]: o for o in resp.json()["options"]}
    assert options["car"]["route"]["route_id"] == "automobile-fast"
    assert options["bike"]["error"] == "Mode not supported"

    assert client.post("/route-options/select", json={"mode": "walk"}).json()["selected_mode"] == "walk"
    assert client.delete("/route-options").json()["selected_mode"] == "car"


def test_route_options_provider_outage_is_bad_gateway(client_for) -> None:  # noqa: ANN001
    client, _ = client_for(DownDirections())
    payload = {"source": {"lat": 51.5, "lon": -0.12}, "destination": {"lat": 51.52, "lon": -0.1}}

    resp = client.post("/route-options", json=payload)

    assert resp.status_code == 502
    assert resp.json()["detail"] == "Unable to calculate route. Please try again."


def test_trips_require_identity(client_for) -> None:  # noqa: ANN001
    client, _ = client_for(FakeDirections())

    assert client.get("/trips").status_code == 401

    client.post("/session/sign-in", json={"user_id": "u9"})
    assert client.get("/trips").json() == {"saved_trips": [], "frequent_trips": []}

    client.post("/session/sign-out")
    assert client.get("/trips").status_code == 401


def test_trip_lifecycle_over_http(client_for) -> None:  # noqa: ANN001
    client, stack = client_for(FakeDirections())
    _locate(client)
    me = {"x-user-id": "u1"}
    body = {
        "name": "Commute",
        "source": {"name": "Home", "lat": 51.45, "lon": -0.2},
        "destination": {"name": "Work", "lat": 51.52, "lon": -0.1},
    }

    created = client.post("/trips", json=body, headers=me)
    assert created.status_code == 200
    trip_id = created.json()["id"]
    assert created.json()["user_id"] == "u1"

    listing = client.get("/trips", headers=me).json()
    assert [t["id"] for t in listing["saved_trips"]] == [trip_id]
    assert listing["frequent_trips"] == []

    toggled = client.post(f"/trips/{trip_id}/favorite", headers=me)
    assert toggled.json()["frequently_used"] is True
    assert [t["id"] for t in client.get("/trips", headers=me).json()["frequent_trips"]] == [trip_id]

    # other users cannot see or touch it
    assert client.delete(f"/trips/{trip_id}", headers={"x-user-id": "u2"}).status_code == 404
    assert client.post("/trips/not-a-trip/navigate", headers=me).status_code == 404

    resp = client.post(f"/trips/{trip_id}/navigate", headers=me)
    assert resp.status_code == 200
    assert resp.json()["generation"] >= 1

    assert client.delete(f"/trips/{trip_id}", headers=me).json() == {"deleted": trip_id}
    assert client.get("/trips", headers=me).json()["saved_trips"] == []
    assert stack.trips.list_trips("u1") == []
