"""Per-client session store driven by provider session notifications."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional, Tuple

from .errors import DuplicateAccount, InvalidCredentials, ProviderError, ValidationError
from .models import Session, User
from .provider import AuthClient, AuthEvent, SignUpResult, Subscription

logger = logging.getLogger("partnerportal.sessions")

_INVALID_CREDENTIAL_CODES = {"invalid_credentials"}
_PROVIDER_INVALID_CREDENTIALS = "Invalid login credentials"
_PROVIDER_DUPLICATE_CODES = {"user_already_exists", "email_exists"}
_PROVIDER_DUPLICATE_MESSAGE = "User already registered"

# Checked in this order; the first blank one is reported.
REGISTRATION_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("email", "Email is required"),
    ("password", "Password is required"),
    ("first_name", "First name is required"),
    ("last_name", "Last name is required"),
    ("company_name", "Company name is required"),
    ("phone", "Phone number is required"),
)


class AuthState(str, Enum):
    UNINITIALIZED = "uninitialized"
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of the store; replaced whole on every transition."""

    state: AuthState
    session: Optional[Session] = None

    @property
    def is_authenticated(self) -> bool:
        return self.state is AuthState.AUTHENTICATED

    @property
    def user(self) -> Optional[User]:
        return self.session.user if self.session is not None else None

    @staticmethod
    def from_session(session: Optional[Session]) -> "SessionSnapshot":
        if session is None:
            return SessionSnapshot(AuthState.UNAUTHENTICATED)
        return SessionSnapshot(AuthState.AUTHENTICATED, session)


StateListener = Callable[[AuthEvent, SessionSnapshot], None]


def _is_invalid_credentials(exc: ProviderError) -> bool:
    if exc.code in _INVALID_CREDENTIAL_CODES:
        return True
    return exc.message == _PROVIDER_INVALID_CREDENTIALS


def _is_duplicate_account(exc: ProviderError) -> bool:
    if exc.code in _PROVIDER_DUPLICATE_CODES:
        return True
    return _PROVIDER_DUPLICATE_MESSAGE in exc.message


class SessionStore:
    """Single source of truth for who, if anyone, is signed in.

    Apart from the one-off restore in :meth:`initialize`, the only writer is
    the consumer task started by :meth:`subscribe`, which applies provider
    notifications one at a time in the order they were emitted. Everything
    else only reads :attr:`snapshot`.
    """

    def __init__(self, auth: AuthClient) -> None:
        self._auth = auth
        self._snapshot = SessionSnapshot(AuthState.UNINITIALIZED)
        self._initialized = False
        self._closed = False
        self._subscription: Optional[Subscription] = None
        self._queue: Optional[asyncio.Queue[Tuple[AuthEvent, Optional[Session]]]] = None
        self._consumer: Optional[asyncio.Task[None]] = None
        self._listeners: List[StateListener] = []

    @classmethod
    @contextlib.asynccontextmanager
    async def open(
        cls,
        auth: AuthClient,
        on_change: Optional[StateListener] = None,
    ) -> AsyncIterator["SessionStore"]:
        """Initialize and subscribe a store, tearing it down on exit."""

        store = cls(auth)
        store.subscribe(on_change)
        try:
            await store.initialize()
            yield store
        finally:
            await store.teardown()

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def state(self) -> AuthState:
        return self._snapshot.state

    @property
    def is_authenticated(self) -> bool:
        return self._snapshot.is_authenticated

    @property
    def user(self) -> Optional[User]:
        return self._snapshot.user

    @property
    def session(self) -> Optional[Session]:
        return self._snapshot.session

    async def initialize(self) -> None:
        if self._initialized:
            raise RuntimeError("Session store has already been initialized")
        self._initialized = True
        session = await self._auth.get_session()
        # Notifications emitted while the stored session was being restored
        # (a token refresh, say) describe the same outcome; apply them first.
        await self.settle()
        if not self._closed:
            self._snapshot = SessionSnapshot.from_session(session)

    def subscribe(self, on_change: Optional[StateListener] = None) -> None:
        """Start applying provider notifications to this store."""

        if self._closed:
            raise RuntimeError("Session store has been torn down")
        if on_change is not None:
            self._listeners.append(on_change)
        if self._subscription is not None:
            return

        queue: asyncio.Queue[Tuple[AuthEvent, Optional[Session]]] = asyncio.Queue()
        self._queue = queue
        self._subscription = self._auth.on_session_change(
            lambda event, session: queue.put_nowait((event, session))
        )
        self._consumer = asyncio.create_task(self._consume(queue))

    async def settle(self) -> None:
        """Wait until every notification received so far has been applied."""

        if self._queue is not None and not self._closed:
            await self._queue.join()

    async def teardown(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._subscription is not None:
            self._subscription.unsubscribe()
        if self._consumer is not None:
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer
        self._listeners.clear()

    async def _consume(self, queue: asyncio.Queue[Tuple[AuthEvent, Optional[Session]]]) -> None:
        while True:
            event, session = await queue.get()
            try:
                if self._closed:
                    continue
                self._snapshot = SessionSnapshot.from_session(session)
                logger.debug("Session store applied %s (%s)", event.value, self._snapshot.state.value)
                for listener in list(self._listeners):
                    try:
                        listener(event, self._snapshot)
                    except Exception:  # pragma: no cover - listener bugs must not stop the channel
                        logger.exception("Session listener failed while handling %s", event.value)
            finally:
                queue.task_done()

    async def login(self, email: str, password: str) -> None:
        try:
            await self._auth.sign_in(email, password)
        except ProviderError as exc:
            if _is_invalid_credentials(exc):
                raise InvalidCredentials() from exc
            raise
        await self.settle()

    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        company_name: str,
        phone: str,
    ) -> SignUpResult:
        values = {
            "email": email,
            "password": password,
            "first_name": first_name,
            "last_name": last_name,
            "company_name": company_name,
            "phone": phone,
        }
        for field_name, message in REGISTRATION_FIELDS:
            if not (values[field_name] or "").strip():
                raise ValidationError(field_name, message)

        metadata = {
            "first_name": first_name.strip(),
            "last_name": last_name.strip(),
            "company_name": company_name.strip(),
            "phone": phone.strip(),
        }
        try:
            result = await self._auth.sign_up(email, password, metadata)
        except ProviderError as exc:
            if _is_duplicate_account(exc):
                raise DuplicateAccount() from exc
            raise
        await self.settle()
        return result

    async def logout(self) -> None:
        try:
            await self._auth.sign_out()
        except ProviderError as exc:
            raise ProviderError(
                "Failed to log out. Please try again.",
                status_code=exc.status_code,
                code=exc.code,
            ) from exc
        await self.settle()


__all__ = [
    "REGISTRATION_FIELDS",
    "AuthState",
    "SessionSnapshot",
    "SessionStore",
    "StateListener",
]
