from __future__ import annotations

import json
import time

import httpx
import pytest

from portal.errors import ProviderError
from portal.provider import STORAGE_KEY, AuthEvent, DataClient, ProviderClient


EMAIL = "partner@example.com"
PASSWORD = "correct-horse"


@pytest.mark.anyio
async def test_sign_in_persists_session_and_notifies(fake_provider) -> None:
    user = fake_provider.add_user(EMAIL, PASSWORD, first_name="Pat")
    storage: dict = {}
    auth = fake_provider.client().auth(storage)
    events = []
    auth.on_session_change(lambda event, session: events.append((event, session)))

    session = await auth.sign_in(EMAIL, PASSWORD)

    assert session.user.id == user["id"]
    assert session.user.metadata == {"first_name": "Pat"}
    assert storage[STORAGE_KEY]["access_token"] == session.access_token
    assert events == [(AuthEvent.SIGNED_IN, session)]

    request = fake_provider.requests_to("POST", "/auth/v1/token")[0]
    assert request.url.params["grant_type"] == "password"
    assert request.headers["apikey"] == "anon-test-key"


@pytest.mark.anyio
async def test_sign_in_rejection_carries_provider_message_and_code(fake_provider) -> None:
    fake_provider.add_user(EMAIL, PASSWORD)
    auth = fake_provider.client().auth({})

    with pytest.raises(ProviderError) as excinfo:
        await auth.sign_in(EMAIL, "wrong")

    assert excinfo.value.message == "Invalid login credentials"
    assert excinfo.value.code == "invalid_credentials"
    assert excinfo.value.status_code == 400


@pytest.mark.anyio
async def test_get_session_restores_unexpired_session_without_network(fake_provider) -> None:
    user = fake_provider.add_user(EMAIL, PASSWORD)
    storage = {STORAGE_KEY: fake_provider.issue_session(user)}
    auth = fake_provider.client().auth(storage)

    session = await auth.get_session()

    assert session is not None
    assert session.user.email == EMAIL
    assert fake_provider.requests == []


@pytest.mark.anyio
async def test_get_session_refreshes_expired_token(fake_provider) -> None:
    user = fake_provider.add_user(EMAIL, PASSWORD)
    stored = fake_provider.issue_session(user)
    stored["expires_at"] = int(time.time()) - 60
    storage = {STORAGE_KEY: stored}
    auth = fake_provider.client().auth(storage)
    events = []
    auth.on_session_change(lambda event, session: events.append(event))

    session = await auth.get_session()

    assert session is not None
    assert session.access_token != stored["access_token"]
    assert storage[STORAGE_KEY]["access_token"] == session.access_token
    assert events == [AuthEvent.TOKEN_REFRESHED]


@pytest.mark.anyio
async def test_get_session_drops_session_when_refresh_is_rejected(fake_provider) -> None:
    user = fake_provider.add_user(EMAIL, PASSWORD)
    stored = fake_provider.issue_session(user)
    stored["expires_at"] = int(time.time()) - 60
    fake_provider.refresh_tokens.clear()
    storage = {STORAGE_KEY: stored}
    auth = fake_provider.client().auth(storage)
    events = []
    auth.on_session_change(lambda event, session: events.append((event, session)))

    assert await auth.get_session() is None
    assert STORAGE_KEY not in storage
    assert events == [(AuthEvent.SIGNED_OUT, None)]


@pytest.mark.anyio
async def test_get_session_keeps_session_when_refresh_fails_on_server(fake_provider) -> None:
    user = fake_provider.add_user(EMAIL, PASSWORD)
    stored = fake_provider.issue_session(user)
    stored["expires_at"] = int(time.time()) - 60
    fake_provider.fail("POST", "/auth/v1/token", 503, {"msg": "Service unavailable"})
    storage = {STORAGE_KEY: stored}
    auth = fake_provider.client().auth(storage)
    events = []
    auth.on_session_change(lambda event, session: events.append(event))

    assert await auth.get_session() is None
    assert storage[STORAGE_KEY] == stored
    assert AuthEvent.SIGNED_OUT not in events
    assert events == []


@pytest.mark.anyio
async def test_get_session_discards_malformed_storage(fake_provider) -> None:
    storage = {STORAGE_KEY: {"access_token": "only-half"}}
    auth = fake_provider.client().auth(storage)

    assert await auth.get_session() is None
    assert STORAGE_KEY not in storage


@pytest.mark.anyio
async def test_sign_up_without_confirmation_returns_session(fake_provider) -> None:
    fake_provider.require_confirmation = False
    storage: dict = {}
    auth = fake_provider.client().auth(storage)

    result = await auth.sign_up(EMAIL, PASSWORD, {"first_name": "Pat"})

    assert not result.confirmation_required
    assert result.session is not None
    assert STORAGE_KEY in storage


@pytest.mark.anyio
async def test_sign_up_with_confirmation_returns_user_only(fake_provider) -> None:
    storage: dict = {}
    auth = fake_provider.client().auth(storage)

    result = await auth.sign_up(EMAIL, PASSWORD, {"company_name": "Acme"})

    assert result.confirmation_required
    assert result.user.email == EMAIL
    assert result.user.metadata == {"company_name": "Acme"}
    assert storage == {}
    body = json.loads(fake_provider.requests_to("POST", "/auth/v1/signup")[0].content)
    assert body["data"] == {"company_name": "Acme"}


@pytest.mark.anyio
async def test_sign_out_revokes_and_clears_storage(fake_provider) -> None:
    user = fake_provider.add_user(EMAIL, PASSWORD)
    stored = fake_provider.issue_session(user)
    storage = {STORAGE_KEY: stored, "unrelated": 1}
    auth = fake_provider.client().auth(storage)
    events = []
    auth.on_session_change(lambda event, session: events.append(event))

    await auth.sign_out()

    assert storage == {"unrelated": 1}
    assert stored["access_token"] not in fake_provider.access_tokens
    assert events == [AuthEvent.SIGNED_OUT]


@pytest.mark.anyio
async def test_sign_out_propagates_server_errors(fake_provider) -> None:
    user = fake_provider.add_user(EMAIL, PASSWORD)
    storage = {STORAGE_KEY: fake_provider.issue_session(user)}
    fake_provider.fail("POST", "/auth/v1/logout", 500, {"msg": "database unavailable"})
    auth = fake_provider.client().auth(storage)

    with pytest.raises(ProviderError, match="database unavailable"):
        await auth.sign_out()
    assert STORAGE_KEY in storage


@pytest.mark.anyio
async def test_unsubscribed_listener_receives_nothing(fake_provider) -> None:
    fake_provider.add_user(EMAIL, PASSWORD)
    auth = fake_provider.client().auth({})
    events = []
    subscription = auth.on_session_change(lambda event, session: events.append(event))
    subscription.unsubscribe()

    await auth.sign_in(EMAIL, PASSWORD)

    assert not subscription.active
    assert events == []


@pytest.mark.anyio
async def test_data_client_filters_orders_and_counts(fake_provider) -> None:
    user = fake_provider.add_user(EMAIL, PASSWORD)
    fake_provider.add_referral(user["id"], business_name="First")
    fake_provider.add_referral(user["id"], business_name="Second", status="approved")
    fake_provider.add_referral("someone-else", business_name="Other")
    session = await fake_provider.client().auth({}).sign_in(EMAIL, PASSWORD)
    data = fake_provider.client().data(session)

    rows = await data.select(
        "referrals",
        filters={"partner_id": user["id"]},
        order="created_at",
        descending=True,
    )
    assert [row["business_name"] for row in rows] == ["Second", "First"]

    assert await data.count("referrals", filters={"partner_id": user["id"]}) == 2
    assert await data.count("referrals", filters={"partner_id": user["id"], "status": "declined"}) == 0

    count_request = fake_provider.requests_to("HEAD", "/rest/v1/referrals")[0]
    assert count_request.headers["prefer"] == "count=exact"
    assert count_request.headers["authorization"] == f"Bearer {session.access_token}"


@pytest.mark.anyio
async def test_data_client_reports_table_errors(fake_provider) -> None:
    fake_provider.fail("GET", "/rest/v1/referrals", 400, {"message": "column does not exist"})
    data = DataClient(httpx.AsyncClient(base_url="https://provider.test", transport=fake_provider.transport), "token")

    with pytest.raises(ProviderError, match="column does not exist"):
        await data.select("referrals")


@pytest.mark.anyio
async def test_transport_failures_become_provider_errors() -> None:
    def _explode(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = ProviderClient("https://provider.test", "key", transport=httpx.MockTransport(_explode))

    with pytest.raises(ProviderError, match="Failed to contact the provider"):
        await client.auth({}).sign_in(EMAIL, PASSWORD)


def test_provider_client_requires_url_and_key() -> None:
    with pytest.raises(ValueError):
        ProviderClient("", "key")
    with pytest.raises(ValueError):
        ProviderClient("https://provider.test", "  ")
