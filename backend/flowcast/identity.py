from __future__ import annotations

from typing import Protocol

from fastapi import HTTPException, Request

from .logging_utils import log_event
from .settings import settings


class IdentityProvider(Protocol):
    def current_user_id(self) -> str | None: ...


class SessionIdentity:
    """In-process signed-in user; stands in for the managed identity service."""

    def __init__(self, user_id: str | None = None) -> None:
        self._user_id = user_id.strip() if user_id and user_id.strip() else None

    def current_user_id(self) -> str | None:
        return self._user_id

    def sign_in(self, user_id: str) -> None:
        cleaned = (user_id or "").strip()
        if not cleaned:
            raise ValueError("user id cannot be empty")
        self._user_id = cleaned
        log_event("user_signed_in", user_id=cleaned)

    def sign_out(self) -> None:
        if self._user_id is not None:
            log_event("user_signed_out", user_id=self._user_id)
        self._user_id = None


def _user_from_request(request: Request) -> str | None:
    value = request.headers.get(settings.identity_header, "").strip()
    return value or None


def require_user(request: Request, identity: IdentityProvider) -> str:
    """Header identity wins; otherwise the in-process signed-in user."""
    user_id = _user_from_request(request) or identity.current_user_id()
    if user_id is None:
        raise HTTPException(status_code=401, detail="missing user identity")
    return user_id
