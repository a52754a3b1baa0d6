from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .logging_utils import log_event

Listener = Callable[[str, Any], None]


class ObservableState:
    """Fixed set of named fields that notifies listeners when a value actually changes.

    Owners mutate through ``update``; everything else reads via ``get``/``snapshot``
    or subscribes. Not thread-safe: all updates happen on the owner's event loop.
    """

    def __init__(self, owner: str, **initial: Any) -> None:
        self._owner = owner
        self._values: dict[str, Any] = dict(initial)
        self._listeners: list[Listener] = []

    def get(self, name: str) -> Any:
        return self._values[name]

    def snapshot(self) -> dict[str, Any]:
        return dict(self._values)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def update(self, **changes: Any) -> list[str]:
        unknown = [name for name in changes if name not in self._values]
        if unknown:
            raise KeyError(f"{self._owner} has no published field(s): {', '.join(sorted(unknown))}")

        changed: list[str] = []
        for name, value in changes.items():
            if self._values[name] == value and type(self._values[name]) is type(value):
                continue
            self._values[name] = value
            changed.append(name)

        for name in changed:
            self._notify(name, self._values[name])
        return changed

    def _notify(self, name: str, value: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(name, value)
            except Exception as exc:
                log_event(
                    "state_listener_failed",
                    level=logging.ERROR,
                    owner=self._owner,
                    field=name,
                    error=f"{type(exc).__name__}: {exc}",
                )
