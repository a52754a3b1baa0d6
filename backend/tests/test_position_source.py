from __future__ import annotations

import pytest

from flowcast.geo import bearing_deg, haversine_m, heading_delta_deg, planar_offset
from flowcast.models import AuthorizationState, Heading, LatLng, Position
from flowcast.position_source import FilteredPositionSource


def _granted(**kwargs) -> FilteredPositionSource:  # noqa: ANN003
    source = FilteredPositionSource(**kwargs)
    source.set_authorization(AuthorizationState.GRANTED)
    return source


def _pos(lat: float, lon: float = -0.12, accuracy: float = 5.0) -> Position:
    return Position(lat=lat, lon=lon, horizontal_accuracy=accuracy)


def test_samples_are_ignored_until_authorised() -> None:
    source = FilteredPositionSource()
    assert source.authorization_state is AuthorizationState.UNDETERMINED

    assert source.ingest_position(_pos(51.5)) is False
    assert source.position is None


def test_request_permission_uses_authorizer() -> None:
    source = FilteredPositionSource(authorizer=lambda: AuthorizationState.DENIED)

    assert source.request_permission() is AuthorizationState.DENIED
    assert source.authorization_state is AuthorizationState.DENIED
    assert source.issue is not None
    assert source.issue.reason_code == "permission_denied"


def test_invalid_accuracy_is_dropped() -> None:
    source = _granted()
    assert source.ingest_position(_pos(51.5, accuracy=-1.0)) is False
    assert source.position is None


def test_distance_filter_only_passes_moves_over_five_metres() -> None:
    source = _granted()
    received: list[Position] = []
    source.subscribe(received.append)

    assert source.ingest_position(_pos(51.5)) is True
    # ~3.3 m north
    assert source.ingest_position(_pos(51.50003)) is False
    # ~11 m north of the last accepted sample
    assert source.ingest_position(_pos(51.5001)) is True

    assert [p.lat for p in received] == [51.5, 51.5001]
    assert source.position is not None and source.position.lat == 51.5001


def test_heading_filter_uses_wraparound_delta() -> None:
    source = _granted()
    headings: list[Heading] = []
    source.subscribe(lambda _p: None, headings.append)

    assert source.ingest_heading(Heading(true_heading=358.0, accuracy=5.0)) is True
    assert source.ingest_heading(Heading(true_heading=2.0, accuracy=5.0)) is False
    assert source.ingest_heading(Heading(true_heading=10.0, accuracy=5.0)) is True
    assert source.ingest_heading(Heading(true_heading=90.0, accuracy=-1.0)) is False

    assert [h.true_heading for h in headings] == [358.0, 10.0]


def test_unsubscribe_stops_fan_out() -> None:
    source = _granted()
    first: list[Position] = []
    second: list[Position] = []
    unsubscribe = source.subscribe(first.append)
    source.subscribe(second.append)

    source.ingest_position(_pos(51.5))
    unsubscribe()
    source.ingest_position(_pos(51.6))

    assert len(first) == 1
    assert len(second) == 2


def test_denied_authorisation_clears_position_and_heading() -> None:
    source = _granted()
    source.ingest_position(_pos(51.5))
    source.ingest_heading(Heading(true_heading=90.0, accuracy=5.0))

    source.set_authorization(AuthorizationState.DENIED)

    assert source.position is None
    assert source.heading is None
    assert source.issue is not None
    assert source.issue.message.startswith("Location access was denied")

    source.set_authorization(AuthorizationState.GRANTED)
    assert source.issue is None
    assert source.is_updating is True


def test_undetermined_clears_without_issue() -> None:
    source = _granted()
    source.ingest_position(_pos(51.5))

    source.set_authorization(AuthorizationState.UNDETERMINED)

    assert source.position is None
    assert source.issue is None
    assert source.is_updating is False


def test_sensor_failures_map_to_issues() -> None:
    source = _granted()
    source.report_failure("location_unknown")
    assert source.issue is not None
    assert source.issue.reason_code == "location_unavailable"

    source.report_failure("denied")
    assert source.authorization_state is AuthorizationState.DENIED
    assert source.issue is not None
    assert source.issue.reason_code == "permission_denied"


def test_observe_reports_published_changes() -> None:
    source = FilteredPositionSource()
    changes: list[str] = []
    source.observe(lambda name, _value: changes.append(name))

    source.set_authorization(AuthorizationState.GRANTED)
    source.set_authorization(AuthorizationState.GRANTED)

    assert changes == ["authorization_state", "is_updating"]


def test_custom_filter_thresholds() -> None:
    source = _granted(min_distance_m=50.0, min_heading_delta_deg=20.0)
    source.ingest_position(_pos(51.5))
    # ~33 m
    assert source.ingest_position(_pos(51.5003)) is False
    source.ingest_heading(Heading(true_heading=0.0, accuracy=1.0))
    assert source.ingest_heading(Heading(true_heading=15.0, accuracy=1.0)) is False


def test_position_speed_and_bearing_helpers() -> None:
    pos = Position(lat=51.5, lon=-0.12, horizontal_accuracy=5.0, speed_mps=10.0)
    assert pos.speed_mph == pytest.approx(22.3694)
    assert Position(lat=0.0, lon=0.0, horizontal_accuracy=1.0, speed_mps=-3.0).speed_mph == 0.0

    assert pos.bearing_to(LatLng(lat=52.5, lon=-0.12)) == pytest.approx(0.0, abs=1e-6)
    assert pos.bearing_to(LatLng(lat=51.5, lon=0.0)) == pytest.approx(90.0, abs=0.1)


def test_geo_helpers() -> None:
    assert haversine_m(51.5, -0.12, 51.5, -0.12) == 0.0
    assert haversine_m(0.0, 0.0, 1.0, 0.0) == pytest.approx(111_195.0, rel=1e-3)
    assert bearing_deg(0.0, 0.0, 0.0, 1.0) == pytest.approx(90.0)
    assert heading_delta_deg(359.0, 1.0) == pytest.approx(2.0)
    assert heading_delta_deg(90.0, 270.0) == pytest.approx(180.0)

    lat, lon = planar_offset(10.0, 179.995, bearing=90.0, radius_deg=0.01)
    assert lat == pytest.approx(10.0)
    assert lon == pytest.approx(-179.995)
