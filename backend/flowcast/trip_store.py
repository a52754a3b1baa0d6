from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal, Protocol

from .logging_utils import log_event
from .models import SavedTrip
from .observable import ObservableState
from .settings import settings

TripsListener = Callable[[list[SavedTrip]], None]
SavedTripsErrorCode = Literal["fetch", "save", "delete", "update"]

SAVED_TRIPS_MESSAGES: dict[str, str] = {
    "fetch": "Failed to fetch saved routes",
    "save": "Failed to save route",
    "delete": "Failed to delete route",
    "update": "Failed to update route",
}


class SavedTripsError(Exception):
    def __init__(self, code: SavedTripsErrorCode) -> None:
        super().__init__(SAVED_TRIPS_MESSAGES[code])
        self.code = code
        self.message = SAVED_TRIPS_MESSAGES[code]


class TripStore(Protocol):
    def subscribe_trips(self, user_id: str, listener: TripsListener) -> Callable[[], None]: ...

    def save(self, trip: SavedTrip) -> SavedTrip: ...

    def delete(self, trip_id: str) -> None: ...

    def toggle_favorite(self, trip_id: str) -> SavedTrip: ...

    def get(self, trip_id: str) -> SavedTrip: ...


class JsonTripStore:
    """One JSON record per trip plus an id index, with per-user live listeners.

    Listeners get the user's full list (newest first) on subscribe and after every
    change that touches that user.
    """

    def __init__(self, root: str | Path | None = None) -> None:
        if root is None:
            root = settings.trips_dir or Path(settings.out_dir) / "trips"
        self.root = Path(root)
        self._listeners: dict[str, list[TripsListener]] = {}

    def _trips_dir(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def _index_path(self) -> Path:
        return self._trips_dir() / "index.json"

    def _trip_path(self, trip_id: str) -> Path:
        try:
            valid_id = str(uuid.UUID(trip_id))
        except (ValueError, TypeError) as e:
            raise KeyError("trip not found") from e
        return self._trips_dir() / f"{valid_id}.json"

    def _load_index_ids(self) -> list[str]:
        path = self._index_path()
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return []
        ids = raw.get("ids") if isinstance(raw, dict) else None
        if not isinstance(ids, list):
            return []
        return [item for item in ids if isinstance(item, str)]

    def _save_index_ids(self, ids: list[str]) -> None:
        deduped = list(dict.fromkeys(ids))
        self._index_path().write_text(json.dumps({"ids": deduped}, indent=2), encoding="utf-8")

    def _write(self, trip: SavedTrip) -> None:
        self._trip_path(trip.id).write_text(json.dumps(trip.to_record(), indent=2), encoding="utf-8")

    def get(self, trip_id: str) -> SavedTrip:
        path = self._trip_path(trip_id)
        if not path.exists():
            raise KeyError("trip not found")
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise ValueError("trip file is invalid JSON") from e
        trip = SavedTrip.from_record(path.stem, raw) if isinstance(raw, dict) else None
        if trip is None:
            raise ValueError("trip file payload is invalid")
        return trip

    def list_trips(self, user_id: str) -> list[SavedTrip]:
        out: list[SavedTrip] = []
        for trip_id in self._load_index_ids():
            try:
                trip = self.get(trip_id)
            except (KeyError, ValueError):
                continue
            if trip.user_id == user_id:
                out.append(trip)
        out.sort(key=lambda trip: trip.created_at, reverse=True)
        return out

    def subscribe_trips(self, user_id: str, listener: TripsListener) -> Callable[[], None]:
        self._listeners.setdefault(user_id, []).append(listener)
        listener(self.list_trips(user_id))

        def _unsubscribe() -> None:
            listeners = self._listeners.get(user_id, [])
            if listener in listeners:
                listeners.remove(listener)

        return _unsubscribe

    def save(self, trip: SavedTrip) -> SavedTrip:
        saved = trip.model_copy(update={"id": str(uuid.uuid4())})
        self._write(saved)
        ids = self._load_index_ids()
        ids.insert(0, saved.id)
        self._save_index_ids(ids)
        log_event("trip_saved", trip_id=saved.id, user_id=saved.user_id)
        self._notify(saved.user_id)
        return saved

    def delete(self, trip_id: str) -> None:
        trip = self.get(trip_id)
        self._trip_path(trip.id).unlink()
        self._save_index_ids([item for item in self._load_index_ids() if item != trip.id])
        log_event("trip_deleted", trip_id=trip.id, user_id=trip.user_id)
        self._notify(trip.user_id)

    def toggle_favorite(self, trip_id: str) -> SavedTrip:
        trip = self.get(trip_id)
        updated = trip.model_copy(update={"frequently_used": not trip.frequently_used})
        self._write(updated)
        log_event("trip_favorite_toggled", trip_id=trip.id, frequently_used=updated.frequently_used)
        self._notify(updated.user_id)
        return updated

    def _notify(self, user_id: str) -> None:
        listeners = list(self._listeners.get(user_id, []))
        if not listeners:
            return
        trips = self.list_trips(user_id)
        for listener in listeners:
            try:
                listener(trips)
            except Exception as exc:
                log_event(
                    "trip_listener_failed",
                    level=logging.ERROR,
                    user_id=user_id,
                    error=f"{type(exc).__name__}: {exc}",
                )


class SavedTripsManager:
    """Live view of one user's saved trips, with the favourites split out."""

    def __init__(self, store: TripStore) -> None:
        self._store = store
        self._unsubscribe: Callable[[], None] | None = None
        self.user_id: str | None = None
        self._state = ObservableState("saved_trips", saved_trips=(), frequent_trips=())

    @property
    def saved_trips(self) -> tuple[SavedTrip, ...]:
        return self._state.get("saved_trips")

    @property
    def frequent_trips(self) -> tuple[SavedTrip, ...]:
        return self._state.get("frequent_trips")

    def snapshot(self) -> dict[str, Any]:
        return self._state.snapshot()

    def subscribe(self, listener: Callable[[str, Any], None]) -> Callable[[], None]:
        return self._state.subscribe(listener)

    def fetch_saved_trips(self, user_id: str) -> None:
        self.close()
        try:
            self._unsubscribe = self._store.subscribe_trips(user_id, self._on_trips)
        except OSError as exc:
            log_event("saved_trips_fetch_failed", level=logging.ERROR, user_id=user_id, error=str(exc))
            raise SavedTripsError("fetch") from exc
        self.user_id = user_id

    def save_trip(self, trip: SavedTrip) -> SavedTrip:
        try:
            return self._store.save(trip)
        except OSError as exc:
            log_event("saved_trip_save_failed", level=logging.ERROR, error=str(exc))
            raise SavedTripsError("save") from exc

    def delete_trip(self, trip_id: str) -> None:
        try:
            self._store.delete(trip_id)
        except (KeyError, ValueError, OSError) as exc:
            log_event("saved_trip_delete_failed", level=logging.WARNING, trip_id=trip_id, error=str(exc))
            raise SavedTripsError("delete") from exc

    def toggle_frequent(self, trip_id: str) -> SavedTrip:
        if not any(trip.id == trip_id for trip in self.saved_trips):
            raise SavedTripsError("update")
        try:
            return self._store.toggle_favorite(trip_id)
        except (KeyError, ValueError, OSError) as exc:
            log_event("saved_trip_update_failed", level=logging.WARNING, trip_id=trip_id, error=str(exc))
            raise SavedTripsError("update") from exc

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.user_id = None

    def _on_trips(self, trips: list[SavedTrip]) -> None:
        saved = tuple(trips)
        self._state.update(
            saved_trips=saved,
            frequent_trips=tuple(trip for trip in saved if trip.frequently_used),
        )
