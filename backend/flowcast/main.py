from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .container import NavigationStack, build_stack
from .identity import require_user
from .logging_utils import log_event
from .metrics_store import metrics_snapshot
from .models import (
    AuthorizationUpdate,
    DestinationRequest,
    Heading,
    HeadingSample,
    LatLng,
    ModeSelection,
    PositionSample,
    RouteOptionsRequest,
    SavedTrip,
    SignInRequest,
    TrafficSearchRequest,
    TripInput,
)
from .route_errors import make_issue
from .route_session import NavigationStateError
from .trip_store import SavedTripsError


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.stack = build_stack()
    app.state.stack.start()
    yield
    await app.state.stack.aclose()


app = FastAPI(title="Flowcast Navigation Core", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def navigation_stack(request: Request) -> NavigationStack:
    stack: NavigationStack | None = getattr(request.app.state, "stack", None)  # type: ignore[attr-defined]
    if stack is None:
        raise HTTPException(status_code=503, detail="navigation stack not initialised")
    return stack


StackDep = Annotated[NavigationStack, Depends(navigation_stack)]


def current_user(request: Request, stack: StackDep) -> str:
    return require_user(request, stack.identity)


UserDep = Annotated[str, Depends(current_user)]


def _session_payload(stack: NavigationStack) -> dict[str, Any]:
    return stack.session.snapshot()


def _owned_trip(stack: NavigationStack, trip_id: str, user_id: str) -> SavedTrip:
    try:
        trip = stack.trips.get(trip_id)
    except (KeyError, ValueError) as e:
        raise HTTPException(status_code=404, detail="trip not found") from e
    if trip.user_id != user_id:
        raise HTTPException(status_code=404, detail="trip not found")
    return trip


def _trips_payload(stack: NavigationStack, user_id: str) -> dict[str, Any]:
    if stack.saved_trips.user_id != user_id:
        try:
            stack.saved_trips.fetch_saved_trips(user_id)
        except SavedTripsError as e:
            raise HTTPException(status_code=500, detail=e.message) from e
    return {
        "saved_trips": list(stack.saved_trips.saved_trips),
        "frequent_trips": list(stack.saved_trips.frequent_trips),
    }


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> dict[str, object]:
    return metrics_snapshot()


# ---- identity ----


@app.post("/session/sign-in")
async def sign_in(req: SignInRequest, stack: StackDep) -> dict[str, str | None]:
    try:
        stack.identity.sign_in(req.user_id)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return {"user_id": stack.identity.current_user_id()}


@app.post("/session/sign-out")
async def sign_out(stack: StackDep) -> dict[str, str | None]:
    stack.identity.sign_out()
    stack.saved_trips.close()
    return {"user_id": None}


# ---- location ----


@app.get("/location")
async def get_location(stack: StackDep) -> dict[str, Any]:
    data = stack.position_source.snapshot()
    position = stack.position_source.position
    data["speed_mph"] = round(position.speed_mph, 2) if position is not None else None
    return data


@app.post("/location/permission")
async def request_permission(stack: StackDep) -> dict[str, Any]:
    state = stack.position_source.request_permission()
    return {"authorization_state": state}


@app.post("/location/authorization")
async def set_authorization(req: AuthorizationUpdate, stack: StackDep) -> dict[str, Any]:
    stack.position_source.set_authorization(req.state)
    return stack.position_source.snapshot()


@app.post("/location/position")
async def ingest_position(req: PositionSample, stack: StackDep) -> dict[str, Any]:
    accepted = stack.position_source.ingest_position(req.to_position())
    return {"accepted": accepted, "position": stack.position_source.position}


@app.post("/location/heading")
async def ingest_heading(req: HeadingSample, stack: StackDep) -> dict[str, Any]:
    accepted = stack.position_source.ingest_heading(
        Heading(true_heading=req.true_heading, accuracy=req.accuracy)
    )
    return {"accepted": accepted, "heading": stack.position_source.heading}


# ---- navigation ----


@app.get("/navigation/session")
async def get_session(stack: StackDep) -> dict[str, Any]:
    return _session_payload(stack)


@app.post("/navigation/destination")
async def set_destination(req: DestinationRequest, stack: StackDep) -> dict[str, Any]:
    generation = stack.session.set_destination(LatLng(lat=req.lat, lon=req.lon), name=req.name)
    if req.wait:
        await stack.queue.join()
    return {"generation": generation, "session": _session_payload(stack)}


@app.post("/navigation/routes/{route_id}/select")
async def select_route(route_id: str, stack: StackDep) -> dict[str, Any]:
    try:
        stack.session.select_route(route_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail="route not found") from e
    except NavigationStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return _session_payload(stack)


@app.post("/navigation/start")
async def start_navigation(stack: StackDep) -> dict[str, Any]:
    try:
        stack.session.start_navigation()
    except NavigationStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return _session_payload(stack)


@app.post("/navigation/next-step")
async def next_step(stack: StackDep) -> dict[str, Any]:
    advanced = stack.session.next_step()
    return {"advanced": advanced, "session": _session_payload(stack)}


@app.post("/navigation/recenter")
async def recenter(stack: StackDep) -> dict[str, Any]:
    stack.session.recenter_on_user()
    return _session_payload(stack)


@app.post("/navigation/recenter/consume")
async def consume_recenter(stack: StackDep) -> dict[str, bool]:
    return {"recentered": stack.session.consume_recenter()}


@app.post("/navigation/end")
async def end_navigation(stack: StackDep) -> dict[str, Any]:
    stack.end_navigation()
    return _session_payload(stack)


# ---- traffic ----


@app.get("/traffic")
async def get_traffic(stack: StackDep) -> dict[str, Any]:
    return stack.traffic.snapshot()


@app.post("/traffic/refresh")
async def refresh_traffic(stack: StackDep) -> dict[str, Any]:
    started = stack.traffic.refresh()
    return {"started": started, "traffic": stack.traffic.snapshot()}


@app.post("/traffic/search")
async def search_traffic(req: TrafficSearchRequest, stack: StackDep) -> dict[str, Any]:
    generation = stack.traffic.generate_traffic_for_searched_location(LatLng(lat=req.lat, lon=req.lon))
    if req.wait:
        await stack.traffic.join()
    return {"generation": generation, "traffic": stack.traffic.snapshot()}


@app.get("/traffic/forecast")
async def traffic_forecast(stack: StackDep) -> dict[str, Any]:
    predictions = stack.traffic.predictions or stack.traffic.generate_predictions()
    return {"predictions": list(predictions)}


@app.post("/traffic/forecast")
async def regenerate_forecast(stack: StackDep) -> dict[str, Any]:
    return {"predictions": list(stack.traffic.generate_predictions())}


# ---- route options ----


@app.get("/route-options")
async def get_route_options(stack: StackDep) -> dict[str, Any]:
    return stack.route_options.snapshot()


@app.post("/route-options")
async def compare_route_options(req: RouteOptionsRequest, stack: StackDep) -> dict[str, Any]:
    options = await stack.route_options.calculate_routes(req.source, req.destination)
    supported = [o for o in options if o.mode.supported]
    provider_message = make_issue("provider_error").message
    if supported and all(o.route is None and o.error == provider_message for o in supported):
        log_event("route_options_unavailable", modes=[o.mode.value for o in supported])
        raise HTTPException(status_code=502, detail=provider_message)
    return stack.route_options.snapshot()


@app.post("/route-options/select")
async def select_route_option(req: ModeSelection, stack: StackDep) -> dict[str, Any]:
    stack.route_options.select_mode(req.mode)
    return stack.route_options.snapshot()


@app.delete("/route-options")
async def clear_route_options(stack: StackDep) -> dict[str, Any]:
    stack.route_options.clear()
    return stack.route_options.snapshot()


# ---- saved trips ----


@app.get("/trips")
async def list_trips(stack: StackDep, user_id: UserDep) -> dict[str, Any]:
    return _trips_payload(stack, user_id)


@app.post("/trips")
async def save_trip(req: TripInput, stack: StackDep, user_id: UserDep) -> SavedTrip:
    trip = SavedTrip(
        user_id=user_id,
        name=req.name,
        source=req.source,
        destination=req.destination,
        frequently_used=req.frequently_used,
    )
    try:
        return stack.saved_trips.save_trip(trip)
    except SavedTripsError as e:
        raise HTTPException(status_code=500, detail=e.message) from e


@app.delete("/trips/{trip_id}")
async def delete_trip(trip_id: str, stack: StackDep, user_id: UserDep) -> dict[str, str]:
    trip = _owned_trip(stack, trip_id, user_id)
    try:
        stack.saved_trips.delete_trip(trip.id)
    except SavedTripsError as e:
        raise HTTPException(status_code=500, detail=e.message) from e
    return {"deleted": trip.id}


@app.post("/trips/{trip_id}/favorite")
async def toggle_favorite(trip_id: str, stack: StackDep, user_id: UserDep) -> SavedTrip:
    trip = _owned_trip(stack, trip_id, user_id)
    _trips_payload(stack, user_id)
    try:
        return stack.saved_trips.toggle_frequent(trip.id)
    except SavedTripsError as e:
        raise HTTPException(status_code=500, detail=e.message) from e


@app.post("/trips/{trip_id}/navigate")
async def navigate_to_trip(trip_id: str, stack: StackDep, user_id: UserDep) -> dict[str, Any]:
    trip = _owned_trip(stack, trip_id, user_id)
    generation = stack.session.set_destination_from_trip(trip)
    return {"generation": generation, "session": _session_payload(stack)}
