"""Async client for the hosted auth and table provider."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Tuple

import httpx

from .config import PortalSettings
from .errors import ProviderError
from .models import Session, User

logger = logging.getLogger("partnerportal.provider")

STORAGE_KEY = "provider_session"

_AUTH_PREFIX = "/auth/v1"
_REST_PREFIX = "/rest/v1"


class AuthEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


SessionListener = Callable[[AuthEvent, Optional[Session]], None]


def _normalize_base_url(base_url: str) -> str:
    cleaned = (base_url or "").strip()
    if not cleaned:
        raise ValueError("Provider URL must not be empty")
    return cleaned.rstrip("/")


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("msg", "message", "error_description", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return default


def _extract_error_code(payload: object) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for key in ("error_code", "code", "error"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _raise_for_error(response: httpx.Response, default: str) -> None:
    if response.status_code < 400:
        return
    try:
        payload: object = response.json()
    except ValueError:
        payload = response.text
    raise ProviderError(
        _extract_error_message(payload, default),
        status_code=response.status_code,
        code=_extract_error_code(payload),
    )


def _json_payload(response: httpx.Response, description: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise ProviderError(f"Provider returned an invalid {description} response") from exc


async def _send(http: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> httpx.Response:
    try:
        return await http.request(method, url, **kwargs)
    except httpx.RequestError as exc:
        raise ProviderError(f"Failed to contact the provider: {exc}") from exc


class Subscription:
    """Handle returned by :meth:`AuthClient.on_session_change`."""

    def __init__(self, listeners: Dict[int, SessionListener], key: int) -> None:
        self._listeners = listeners
        self._key = key

    @property
    def active(self) -> bool:
        return self._key in self._listeners

    def unsubscribe(self) -> None:
        self._listeners.pop(self._key, None)


@dataclass(frozen=True)
class SignUpResult:
    user: User
    session: Optional[Session]

    @property
    def confirmation_required(self) -> bool:
        return self.session is None


class AuthClient:
    """Auth surface of the provider bound to one client's session storage.

    The storage mapping plays the role of the browser's local storage: the
    current session is persisted under a single key, and every change to it
    is pushed to listeners registered with :meth:`on_session_change`.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        storage: MutableMapping[str, Any],
        *,
        storage_key: str = STORAGE_KEY,
    ) -> None:
        self._http = http
        self._storage = storage
        self._storage_key = storage_key
        self._listeners: Dict[int, SessionListener] = {}
        self._ids = itertools.count(1)

    def on_session_change(self, callback: SessionListener) -> Subscription:
        key = next(self._ids)
        self._listeners[key] = callback
        return Subscription(self._listeners, key)

    async def get_session(self) -> Optional[Session]:
        """Return the persisted session, refreshing it when the token expired."""

        raw = self._storage.get(self._storage_key)
        if not raw:
            return None
        try:
            session = Session.from_payload(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding malformed persisted provider session")
            self._storage.pop(self._storage_key, None)
            return None

        if not session.is_expired():
            return session

        try:
            refreshed = await self._refresh(session.refresh_token)
        except ProviderError as exc:
            if exc.status_code is not None and 400 <= exc.status_code < 500:
                logger.info("Persisted session was rejected on refresh: %s", exc.message)
                self._storage.pop(self._storage_key, None)
                self._notify(AuthEvent.SIGNED_OUT, None)
            else:
                logger.warning("Unable to refresh persisted session: %s", exc.message)
            return None

        self._save(refreshed)
        self._notify(AuthEvent.TOKEN_REFRESHED, refreshed)
        return refreshed

    async def sign_in(self, email: str, password: str) -> Session:
        response = await _send(
            self._http,
            "POST",
            f"{_AUTH_PREFIX}/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        _raise_for_error(response, "Sign in failed")
        session = self._session_from_response(response, "Login failed. Please try again.")
        self._save(session)
        self._notify(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_up(
        self,
        email: str,
        password: str,
        metadata: Mapping[str, str],
    ) -> SignUpResult:
        response = await _send(
            self._http,
            "POST",
            f"{_AUTH_PREFIX}/signup",
            json={"email": email, "password": password, "data": dict(metadata)},
        )
        _raise_for_error(response, "Sign up failed")
        payload = _json_payload(response, "sign up")
        if not isinstance(payload, dict):
            raise ProviderError("Registration failed. Please try again.")

        if payload.get("access_token"):
            session = self._session_from_response(response, "Registration failed. Please try again.")
            self._save(session)
            self._notify(AuthEvent.SIGNED_IN, session)
            return SignUpResult(user=session.user, session=session)

        user_payload = payload.get("user") if isinstance(payload.get("user"), dict) else payload
        try:
            user = User.from_payload(user_payload)
        except ValueError as exc:
            raise ProviderError("Registration failed. Please try again.") from exc
        return SignUpResult(user=user, session=None)

    async def sign_out(self) -> None:
        raw = self._storage.get(self._storage_key)
        access_token = raw.get("access_token") if isinstance(raw, dict) else None
        if access_token:
            response = await _send(
                self._http,
                "POST",
                f"{_AUTH_PREFIX}/logout",
                headers={"Authorization": f"Bearer {access_token}"},
            )
            # An already revoked token means the session is gone server side.
            if response.status_code not in (401, 403, 404):
                _raise_for_error(response, "Sign out failed")

        self._storage.pop(self._storage_key, None)
        self._notify(AuthEvent.SIGNED_OUT, None)

    async def _refresh(self, refresh_token: str) -> Session:
        response = await _send(
            self._http,
            "POST",
            f"{_AUTH_PREFIX}/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        _raise_for_error(response, "Session refresh failed")
        return self._session_from_response(response, "Session refresh failed")

    @staticmethod
    def _session_from_response(response: httpx.Response, failure: str) -> Session:
        payload = _json_payload(response, "session")
        if not isinstance(payload, dict):
            raise ProviderError(failure)
        try:
            return Session.from_payload(payload)
        except (TypeError, ValueError) as exc:
            raise ProviderError(failure) from exc

    def _save(self, session: Session) -> None:
        self._storage[self._storage_key] = session.to_storage()

    def _notify(self, event: AuthEvent, session: Optional[Session]) -> None:
        for listener in list(self._listeners.values()):
            listener(event, session)


def _parse_content_range(value: Optional[str]) -> int:
    if not value or "/" not in value:
        raise ProviderError("Provider did not report a row count")
    total = value.rsplit("/", 1)[1].strip()
    if not total.isdigit():
        raise ProviderError("Provider did not report a row count")
    return int(total)


class DataClient:
    """Table surface of the provider, authorised as the signed-in user."""

    def __init__(self, http: httpx.AsyncClient, access_token: str) -> None:
        if not access_token:
            raise ValueError("An access token is required for table queries")
        self._http = http
        self._access_token = access_token

    def _headers(self, **extra: str) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self._access_token}"}
        headers.update(extra)
        return headers

    @staticmethod
    def _filter_params(filters: Optional[Mapping[str, object]]) -> List[Tuple[str, str]]:
        params: List[Tuple[str, str]] = []
        for column, value in (filters or {}).items():
            params.append((column, f"eq.{value}"))
        return params

    async def select(
        self,
        table: str,
        *,
        columns: Iterable[str] | str = "*",
        filters: Optional[Mapping[str, object]] = None,
        order: Optional[str] = None,
        descending: bool = False,
    ) -> List[Dict[str, Any]]:
        column_list = columns if isinstance(columns, str) else ",".join(columns)
        params = [("select", column_list), *self._filter_params(filters)]
        if order:
            params.append(("order", f"{order}.{'desc' if descending else 'asc'}"))

        response = await _send(
            self._http,
            "GET",
            f"{_REST_PREFIX}/{table}",
            params=params,
            headers=self._headers(),
        )
        _raise_for_error(response, f"Failed to read from {table}")
        rows = _json_payload(response, "table")
        if not isinstance(rows, list):
            raise ProviderError(f"Provider returned an unexpected payload for {table}")
        return [row for row in rows if isinstance(row, dict)]

    async def count(self, table: str, *, filters: Optional[Mapping[str, object]] = None) -> int:
        params = [("select", "*"), *self._filter_params(filters)]
        response = await _send(
            self._http,
            "HEAD",
            f"{_REST_PREFIX}/{table}",
            params=params,
            headers=self._headers(Prefer="count=exact"),
        )
        _raise_for_error(response, f"Failed to count rows in {table}")
        return _parse_content_range(response.headers.get("content-range"))

    async def insert(self, table: str, record: Mapping[str, Any]) -> None:
        response = await _send(
            self._http,
            "POST",
            f"{_REST_PREFIX}/{table}",
            json=[dict(record)],
            headers=self._headers(Prefer="return=minimal"),
        )
        _raise_for_error(response, f"Failed to insert into {table}")


class ProviderClient:
    """Owns the shared HTTP connection pool to the hosted provider."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        api_key = (api_key or "").strip()
        if not api_key:
            raise ValueError("Provider API key must not be empty")
        options: Dict[str, Any] = {
            "base_url": _normalize_base_url(base_url),
            "headers": {"apikey": api_key, "Authorization": f"Bearer {api_key}"},
        }
        if timeout is not None:
            options["timeout"] = timeout
        if transport is not None:
            options["transport"] = transport
        self._http = httpx.AsyncClient(**options)

    @classmethod
    def from_settings(
        cls,
        settings: PortalSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ProviderClient":
        return cls(
            settings.provider_url,
            settings.provider_key,
            timeout=settings.provider_timeout,
            transport=transport,
        )

    def auth(self, storage: MutableMapping[str, Any]) -> AuthClient:
        return AuthClient(self._http, storage)

    def data(self, session: Session) -> DataClient:
        return DataClient(self._http, session.access_token)

    async def aclose(self) -> None:
        await self._http.aclose()


__all__ = [
    "STORAGE_KEY",
    "AuthClient",
    "AuthEvent",
    "DataClient",
    "ProviderClient",
    "SessionListener",
    "SignUpResult",
    "Subscription",
]
