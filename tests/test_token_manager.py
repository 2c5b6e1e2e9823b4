"""Unit tests for the JWT token manager state machine."""

import asyncio
import base64
from dataclasses import replace

import pytest

from conftest import TEST_KEY, FakeRefreshClient, make_jwt, refresh_result, trusted_device
from storefront_auth.service.errors import RefreshRejectedError, TokenRefreshError
from storefront_auth.service.events import TOKENS_UPDATED_CHANNEL
from storefront_auth.service.refresh_client import RefreshResult
from storefront_auth.service.token_manager import JWTTokenManager, decode_jwt_payload
from storefront_auth.service.token_store import SecureTokenStore
from storefront_auth.storage.models import TokenEventType, TokenRecord


async def _store(token_store, clock, *, access_token=None, lifetime=3600, refresh="r1", **claims):
    exp = int(clock.now()) + lifetime
    record = TokenRecord(
        access_token=access_token or make_jwt(exp, **claims),
        refresh_token=refresh,
        expires_at=exp * 1000,
    )
    await token_store.store_tokens(record)
    return record


def _collect(manager):
    events = []
    for event_type in TokenEventType:
        manager.add_event_listener(event_type, events.append)
    return events


def _token_with_raw_payload(payload_json):
    segment = base64.urlsafe_b64encode(payload_json.encode()).decode().rstrip("=")
    return f"eyJhbGciOiJIUzI1NiJ9.{segment}.signature"


class TestValidation:
    """Tests for token validation."""

    async def test_no_token_is_quiet(self, manager, refresh_client):
        """Without a token, validation returns False and emits nothing."""
        events = _collect(manager)
        assert await manager.validate_and_refresh_if_needed() is False
        assert events == []
        assert refresh_client.calls == []

    async def test_no_token_current_validation(self, manager):
        result = await manager.validate_current_token()
        assert (result.is_valid, result.is_expired, result.needs_refresh) == (False, True, True)

    async def test_non_string_token_is_invalid(self, manager):
        result = await manager.validate_token(None)
        assert result.is_valid is False

    @pytest.mark.parametrize("bad_token", ["not-a-jwt", "a.b", "a.b.c.d"])
    async def test_malformed_structure_wipes_storage(self, manager, token_store, clock, bad_token):
        """A token without exactly three segments is invalid and clears storage."""
        await _store(token_store, clock, access_token=bad_token)
        result = await manager.validate_current_token()
        assert (result.is_valid, result.is_expired, result.needs_refresh) == (False, True, True)
        assert token_store.get_access_token() is None
        assert token_store.get_token_record() is None

    async def test_undecodable_payload_wipes_storage(self, manager, token_store, clock):
        await _store(token_store, clock, access_token="a.b.c")
        result = await manager.validate_current_token()
        assert result.is_valid is False
        assert token_store.get_access_token() is None

    async def test_corrupted_token_emits_expired(self, manager, token_store, clock):
        """A present but corrupted token is reported as expired."""
        events = _collect(manager)
        await _store(token_store, clock, access_token="garbage")
        assert await manager.validate_and_refresh_if_needed() is False
        assert [e.type for e in events] == [TokenEventType.TOKEN_EXPIRED]

    @pytest.mark.parametrize("remaining,needs_refresh", [(300, True), (301, False)])
    async def test_refresh_buffer_boundary(self, manager, clock, remaining, needs_refresh):
        """Refresh is needed at exactly the buffer and not one second before."""
        token = make_jwt(int(clock.now()) + remaining)
        result = await manager.validate_token(token)
        assert result.is_valid is True
        assert result.time_to_expiry == remaining
        assert result.needs_refresh is needs_refresh

    async def test_round_trip_needs_refresh_near_expiry(self, manager, token_store, clock):
        record = await _store(token_store, clock, lifetime=3600)
        assert token_store.get_access_token() == record.access_token
        assert token_store.is_token_expiring_soon() is False
        clock.advance(3595)
        result = await manager.validate_current_token()
        assert result.is_valid is True
        assert result.needs_refresh is True

    async def test_expired_token_emits_expired(self, manager, token_store, clock, refresh_client):
        events = _collect(manager)
        await _store(token_store, clock, lifetime=60)
        clock.advance(61)
        assert await manager.validate_and_refresh_if_needed() is False
        assert [e.type for e in events] == [TokenEventType.TOKEN_EXPIRED]
        assert refresh_client.calls == []

    async def test_valid_token_far_from_expiry(self, manager, token_store, clock, refresh_client):
        await _store(token_store, clock, lifetime=3600)
        assert await manager.validate_and_refresh_if_needed() is True
        assert refresh_client.calls == []

    async def test_device_bound_token_on_changed_device(self, manager, token_store, clock, fingerprinter, signals):
        """A token carrying device_id is invalid once the device no longer matches."""
        await fingerprinter.validate_device_for_auth()
        token = make_jwt(int(clock.now()) + 3600, device_id="dev-1")
        assert (await manager.validate_token(token)).is_valid is True
        signals.update(replace(trusted_device(), screen_resolution="1280x720"))
        assert (await manager.validate_token(token)).is_valid is False

    async def test_stale_device_registration_does_not_block_token(
        self, manager, clock, fingerprinter, signals
    ):
        """A device registration past its max age no longer binds the token."""
        await fingerprinter.validate_device_for_auth()
        clock.advance(31 * 24 * 3600)
        signals.update(replace(trusted_device(), screen_resolution="1280x720"))
        assert await fingerprinter.is_stored_fingerprint_expired() is True
        token = make_jwt(int(clock.now()) + 3600, device_id="dev-1")
        assert (await manager.validate_token(token)).is_valid is True

    @pytest.mark.parametrize(
        "payload_json",
        ['{"sub":"x","exp":1e999}', '{"sub":"x","exp":NaN}', '{"sub":"x","exp":"soon"}'],
    )
    async def test_unusable_expiry_wipes_storage(self, manager, token_store, clock, payload_json):
        """A non-finite or non-numeric exp claim is treated as a corrupted token."""
        events = _collect(manager)
        await _store(token_store, clock, access_token=_token_with_raw_payload(payload_json))
        assert await manager.validate_and_refresh_if_needed() is False
        assert token_store.get_access_token() is None
        assert token_store.get_token_record() is None
        assert [e.type for e in events] == [TokenEventType.TOKEN_EXPIRED]


class TestRefresh:
    """Tests for refresh, retry and failure handling."""

    async def test_refresh_when_needed(self, manager, token_store, clock, refresh_client, bus):
        """A token inside the buffer is refreshed and the new pair stored."""
        events = _collect(manager)
        pings = []

        async def on_ping(message):
            pings.append(message)

        await bus.subscribe(TOKENS_UPDATED_CHANNEL, on_ping)
        await _store(token_store, clock, lifetime=200)
        new = refresh_result(clock)
        refresh_client.responses = [new]

        assert await manager.validate_and_refresh_if_needed() is True
        await bus.drain()

        assert refresh_client.calls == ["r1"]
        assert token_store.get_access_token() == new.access_token
        assert token_store.get_token_record().refresh_token == "refresh-2"
        assert [e.type for e in events] == [
            TokenEventType.TOKEN_REFRESHED,
            TokenEventType.TOKEN_ROTATED,
        ]
        assert events[0].data["rotated"] is True
        assert pings and pings[0]["origin"] == "tab-a"

    async def test_customer_without_id_keeps_new_pair(self, manager, token_store, clock, refresh_client):
        """A rotated pair is stored even when the customer payload is unusable."""
        await _store(token_store, clock, lifetime=100)
        exp = int(clock.now()) + 3600
        new_token = make_jwt(exp)
        refresh_client.responses = [
            RefreshResult(access_token=new_token, refresh_token="r2", token_expiry=exp, customer={"email": "a@b.c"})
        ]

        assert await manager.refresh_token() is True
        assert token_store.get_access_token() == new_token
        assert await token_store.get_refresh_token() == "r2"
        assert token_store.get_customer_data() is None

    async def test_no_rotation_event_when_refresh_token_reused(self, manager, token_store, clock, refresh_client):
        events = _collect(manager)
        await _store(token_store, clock)
        refresh_client.responses = [refresh_result(clock, refresh_token="r1")]
        assert await manager.refresh_token() is True
        assert [e.type for e in events] == [TokenEventType.TOKEN_REFRESHED]
        assert events[0].data["rotated"] is False

    async def test_single_flight(self, manager, token_store, clock, refresh_client):
        """Concurrent refresh requests share one network call."""
        await _store(token_store, clock, lifetime=100)
        refresh_client.gate = asyncio.Event()
        refresh_client.responses = [refresh_result(clock)]

        tasks = [asyncio.create_task(manager.refresh_token()) for _ in range(5)]
        tasks.append(asyncio.create_task(manager.validate_and_refresh_if_needed()))
        tasks.append(asyncio.create_task(manager.force_refresh()))
        for _ in range(5):
            await asyncio.sleep(0)
        assert manager.is_refreshing is True
        refresh_client.gate.set()

        results = await asyncio.gather(*tasks)
        assert all(results)
        assert len(refresh_client.calls) == 1
        assert manager.is_refreshing is False

    async def test_single_flight_failure(self, manager, token_store, clock, refresh_client):
        """Concurrent callers of a failing refresh share one retry cycle and one logout."""
        events = _collect(manager)
        await _store(token_store, clock, lifetime=100)
        refresh_client.gate = asyncio.Event()
        refresh_client.responses = [TokenRefreshError("down") for _ in range(3)]

        tasks = [asyncio.create_task(manager.refresh_token()) for _ in range(5)]
        for _ in range(5):
            await asyncio.sleep(0)
        refresh_client.gate.set()

        results = await asyncio.gather(*tasks)
        assert results == [False] * 5
        assert len(refresh_client.calls) == 3
        assert [e.type for e in events] == [
            TokenEventType.REFRESH_FAILED,
            TokenEventType.TOKEN_EXPIRED,
        ]
        assert manager.is_refreshing is False

    async def test_retry_with_linear_backoff_then_success(self, manager, token_store, clock, refresh_client):
        await _store(token_store, clock)
        refresh_client.responses = [TokenRefreshError("boom"), refresh_result(clock)]
        assert await manager.refresh_token() is True
        assert len(refresh_client.calls) == 2
        assert clock.sleeps == [1.0]

    async def test_retry_exhaustion_logs_out(self, manager, token_store, clock, refresh_client, fingerprinter):
        """Three failures emit refresh_failed then token_expired and wipe state."""
        events = _collect(manager)
        await _store(token_store, clock)
        refresh_client.responses = [
            TokenRefreshError("down"),
            RefreshRejectedError("HTTP 500: Internal Server Error", status_code=500),
            TokenRefreshError("down"),
        ]

        assert await manager.refresh_token() is False
        assert len(refresh_client.calls) == 3
        assert clock.sleeps == [1.0, 2.0]
        assert [e.type for e in events] == [
            TokenEventType.REFRESH_FAILED,
            TokenEventType.TOKEN_EXPIRED,
        ]
        assert events[1].data["reason"] == "refresh_failed"
        assert token_store.get_access_token() is None
        assert await token_store.get_refresh_token() is None
        assert await fingerprinter.get_stored_fingerprint() is None

    async def test_high_risk_device_refused_without_network(
        self, manager, token_store, clock, refresh_client, fingerprinter, signals
    ):
        """A device that no longer matches is refused before any network call."""
        events = _collect(manager)
        await _store(token_store, clock)
        await fingerprinter.validate_device_for_auth()
        signals.update(replace(trusted_device(), user_agent="Something/1.0 entirely different"))
        refresh_client.responses = [refresh_result(clock)]

        assert await manager.refresh_token() is False
        assert refresh_client.calls == []
        assert clock.sleeps == []
        assert [e.type for e in events] == [
            TokenEventType.REFRESH_FAILED,
            TokenEventType.TOKEN_EXPIRED,
        ]
        assert events[1].data["reason"] == "device_risk_high"
        assert token_store.get_access_token() is None

    async def test_missing_refresh_token_fails_fast(self, manager, refresh_client, clock):
        events = _collect(manager)
        assert await manager.refresh_token() is False
        assert refresh_client.calls == []
        assert clock.sleeps == []
        assert events[0].data["reason"] == "no_refresh_token"

    async def test_expiry_from_expires_in(self, manager, token_store, clock, refresh_client):
        await _store(token_store, clock)
        refresh_client.responses = [
            RefreshResult(access_token=make_jwt(int(clock.now()) + 10), refresh_token="r2", expires_in=900)
        ]
        assert await manager.refresh_token() is True
        assert token_store.get_token_expiration() == int(clock.now() * 1000) + 900_000

    async def test_expiry_from_iso_timestamp(self, manager, token_store, clock, refresh_client):
        await _store(token_store, clock)
        refresh_client.responses = [
            RefreshResult(
                access_token=make_jwt(int(clock.now()) + 10),
                refresh_token="r2",
                token_expiry="2023-11-14T23:13:20Z",
            )
        ]
        assert await manager.refresh_token() is True
        assert token_store.get_token_expiration() == 1_700_003_600_000

    async def test_expiry_from_token_exp(self, manager, token_store, clock, refresh_client):
        await _store(token_store, clock)
        exp = int(clock.now()) + 1234
        refresh_client.responses = [RefreshResult(access_token=make_jwt(exp), refresh_token="r2")]
        assert await manager.refresh_token() is True
        assert token_store.get_token_expiration() == exp * 1000


class TestCrossInstance:
    """Tests for sibling instance coordination over the event bus."""

    def _sibling(self, kv, clock, fingerprinter, bus):
        store = SecureTokenStore(
            kv, encryption_key=TEST_KEY, clock=clock, fingerprinter=fingerprinter, event_bus=bus, origin="tab-b"
        )
        client = FakeRefreshClient()
        manager = JWTTokenManager(store, client, fingerprinter, clock=clock, event_bus=bus, origin="tab-b")
        return manager, store, client

    async def test_sibling_adopts_refreshed_pair(
        self, manager, token_store, clock, refresh_client, kv, fingerprinter, bus
    ):
        """After one instance refreshes, the sibling reloads instead of refreshing."""
        sibling, sibling_store, sibling_client = self._sibling(kv, clock, fingerprinter, bus)
        await manager.start()
        await sibling.start()
        await _store(token_store, clock, lifetime=200)
        await sibling_store.reload()

        new = refresh_result(clock)
        refresh_client.responses = [new]
        assert await manager.refresh_token() is True
        await bus.drain()

        assert sibling_store.get_access_token() == new.access_token
        assert sibling_client.calls == []
        await manager.cleanup()
        await sibling.cleanup()

    async def test_sibling_told_when_tokens_cleared(
        self, manager, token_store, clock, refresh_client, kv, fingerprinter, bus
    ):
        sibling, sibling_store, _ = self._sibling(kv, clock, fingerprinter, bus)
        sibling_events = _collect(sibling)
        await sibling.start()
        await _store(token_store, clock)
        await sibling_store.reload()

        await manager.clear_session()
        await bus.drain()

        assert sibling_store.get_access_token() is None
        assert [e.type for e in sibling_events] == [TokenEventType.TOKEN_EXPIRED]
        assert sibling_events[0].data["reason"] == "cleared_elsewhere"
        await sibling.cleanup()

    async def test_own_ping_is_ignored(self, manager, token_store, clock, refresh_client, bus, monkeypatch):
        await manager.start()
        await _store(token_store, clock, lifetime=200)
        refresh_client.responses = [refresh_result(clock)]
        reloads = []
        original_reload = token_store.reload

        async def counting_reload():
            reloads.append(1)
            await original_reload()

        monkeypatch.setattr(token_store, "reload", counting_reload)
        assert await manager.refresh_token() is True
        reloads_during_refresh = len(reloads)
        await bus.drain()
        assert len(reloads) == reloads_during_refresh
        assert len(refresh_client.calls) == 1
        await manager.cleanup()


class TestMonitoringAndReads:
    """Tests for passive monitoring, claims and status."""

    async def test_monitor_refreshes_before_expiry(self, token_store, clock, fingerprinter, bus):
        client = FakeRefreshClient([refresh_result(clock)])
        manager = JWTTokenManager(
            token_store, client, fingerprinter, clock=clock, event_bus=bus, monitor_interval_seconds=1
        )
        await _store(token_store, clock, lifetime=200)
        manager.start_monitoring()
        for _ in range(20):
            await asyncio.sleep(0)
            if client.calls:
                break
        for _ in range(5):
            await asyncio.sleep(0)
        assert client.calls == ["r1"]
        assert manager.get_status()["has_refresh_timer"] is True
        await manager.cleanup()
        assert manager.get_status()["has_refresh_timer"] is False

    async def test_store_session_tokens_starts_monitoring(self, manager, clock):
        exp = int(clock.now()) + 3600
        await manager.store_session_tokens(TokenRecord(make_jwt(exp), "r1", exp * 1000))
        assert manager.get_status()["has_refresh_timer"] is True
        await manager.clear_session()
        assert manager.get_status()["has_refresh_timer"] is False

    async def test_claims_permissions_and_roles(self, manager, token_store, clock):
        assert manager.get_current_token_claims() is None
        assert manager.has_permission("orders:read") is False
        await _store(
            token_store, clock, role="customer", permissions=["orders:read"], email="jane@example.com"
        )
        claims = manager.get_current_token_claims()
        assert claims.sub == "cust-1"
        assert claims.email == "jane@example.com"
        assert manager.has_permission("orders:read") is True
        assert manager.has_permission("orders:write") is False
        assert manager.has_role("customer") is True
        assert manager.has_role("admin") is False

    async def test_expiration_info_and_status(self, manager, token_store, clock):
        await _store(token_store, clock, lifetime=1000)
        info = manager.get_token_expiration_info()
        assert info.time_to_expiry == 1000
        assert info.is_expired is False
        assert info.needs_refresh is False

        def listener(event):
            return None

        manager.add_event_listener("token_refreshed", listener)
        status = manager.get_status()
        assert status == {
            "is_refreshing": False,
            "has_refresh_timer": False,
            "event_listener_count": 1,
            "token_valid": True,
            "time_to_expiry": 1000,
        }
        manager.remove_event_listener(TokenEventType.TOKEN_REFRESHED, listener)
        assert manager.get_status()["event_listener_count"] == 0

    async def test_async_listener_failure_does_not_break_emit(self, manager, token_store, clock):
        seen = []

        async def broken(event):
            raise RuntimeError("listener bug")

        manager.add_event_listener(TokenEventType.TOKEN_EXPIRED, broken)
        manager.add_event_listener(TokenEventType.TOKEN_EXPIRED, seen.append)
        await _store(token_store, clock, access_token="garbage")
        await manager.validate_and_refresh_if_needed()
        assert len(seen) == 1

    def test_decode_jwt_payload(self):
        assert decode_jwt_payload(make_jwt(10, role="x"))["role"] == "x"
        assert decode_jwt_payload("a.b.c") is None
        assert decode_jwt_payload("only-one") is None

    def test_max_retries_validated(self, token_store, refresh_client, clock):
        with pytest.raises(ValueError):
            JWTTokenManager(token_store, refresh_client, clock=clock, max_retries=0)
