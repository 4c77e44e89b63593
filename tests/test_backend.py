"""
FleetPulse Backend Tests
========================

The hosted backend is replaced by httpx.MockTransport handlers that assert
on the outgoing requests and answer like PostgREST / GoTrue / the
create_user edge function would.

Tech Stack: pytest, pytest-asyncio, httpx
"""

import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from fleetpulse.backend.accounts import AccountManager, can_create_account
from fleetpulse.backend.auth import MockAuthProvider, SupabaseAuthClient
from fleetpulse.backend.realtime import RealtimeNotification, SnapshotRefresher
from fleetpulse.backend.rows import event_to_row, normalize_role, row_to_vehicle
from fleetpulse.backend.store import InMemoryTelemetryStore
from fleetpulse.backend.supabase import SupabaseTelemetryStore
from fleetpulse.errors import AuthError, BackendConnectionError, DataError
from fleetpulse.integrity import seal_event, verify_event
from fleetpulse.models import (
    EventType,
    GeoPoint,
    Severity,
    Trip,
    TripSummary,
    UserProfile,
    UserRole,
    Vehicle,
    VehicleStatus,
)


def transport(handler):
    return httpx.MockTransport(handler)


def body_of(request):
    return json.loads(request.content) if request.content else None


# =============================================================================
# TELEMETRY STORE
# =============================================================================

class TestSupabaseTelemetryStore:
    """PostgREST reads and writes."""

    @pytest.mark.asyncio
    async def test_fetch_samples_skips_malformed_rows(self, test_config):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            seen["apikey"] = request.headers["apikey"]
            return httpx.Response(200, json=[
                {"lat": 0, "lng": 0, "speed": 10, "created_at": "2024-05-06T08:00:00+00:00"},
                {"lng": 0, "speed": 5, "created_at": "2024-05-06T08:00:01+00:00"},
                {"lat": 0, "lng": 0, "speed": None, "created_at": "2024-05-06T08:00:02+00:00"},
            ])

        store = SupabaseTelemetryStore(test_config.backend, transport=transport(handler))
        samples = await store.fetch_samples("trip-1")
        await store.close()

        assert seen["path"] == "/rest/v1/trip_logs"
        assert seen["params"]["trip_id"] == "eq.trip-1"
        assert seen["params"]["order"] == "created_at.asc"
        assert seen["apikey"] == "anon-test-key"
        assert [s.speed_kmh for s in samples] == [10, 0]

    @pytest.mark.asyncio
    async def test_append_event_keeps_seal_and_takes_backend_id(self, test_config, t0):
        captured = {}

        def handler(request):
            captured["body"] = body_of(request)
            captured["prefer"] = request.headers.get("Prefer")
            return httpx.Response(201, json=[{"id": "srv-42"}])

        event = seal_event(
            EventType.SOS, Severity.CRITICAL, user_id="user-1", vehicle_id="veh-1",
            location=GeoPoint(lat=-24.1, lng=-65.2), timestamp=t0,
        )
        store = SupabaseTelemetryStore(test_config.backend, access_token="jwt", transport=transport(handler))
        stored = await store.append_event(event)

        assert stored.id == "srv-42"
        assert stored.integrity_hash == event.integrity_hash
        assert verify_event(stored)
        assert captured["body"]["legal_hash"] == event.integrity_hash
        assert captured["body"]["location"] == {"lat": -24.1, "lng": -65.2}
        assert captured["prefer"] == "return=representation"

    @pytest.mark.asyncio
    async def test_fetch_security_events(self, test_config, t0):
        event = seal_event(EventType.GEOFENCE_VIOLATION, Severity.HIGH, vehicle_id="veh-1", timestamp=t0)
        good = {"id": "e-1", **event_to_row(event)}
        unknown_severity = {**good, "id": "e-2", "severity": "catastrophic"}
        resolved = {**good, "id": "e-3", "type": "SOS_RESOLVED", "severity": "info"}
        seen = {}

        def handler(request):
            seen["timestamp"] = request.url.params.get_list("timestamp")
            return httpx.Response(200, json=[good, unknown_severity, resolved])

        store = SupabaseTelemetryStore(test_config.backend, transport=transport(handler))
        events = await store.fetch_security_events(t0 - timedelta(days=7), t0)

        assert [e.id for e in events] == ["e-1", "e-3"]
        assert events[1].type == EventType.SOS_RESOLVED
        assert verify_event(events[0])
        assert seen["timestamp"][0].startswith("gte.")
        assert seen["timestamp"][1].startswith("lt.")

    @pytest.mark.asyncio
    async def test_create_and_finish_trip(self, test_config, t0):
        requests = []

        def handler(request):
            requests.append(request)
            if request.method == "POST":
                row = {"id": "trip-9", **body_of(request)}
                return httpx.Response(201, json=[row])
            return httpx.Response(204)

        store = SupabaseTelemetryStore(test_config.backend, transport=transport(handler))
        trip = await store.create_trip(
            Trip(plate="AUTO-001", vehicle_id="veh-1", driver_id="driver-1", start_time=t0)
        )
        await store.finish_trip(
            trip.id, TripSummary(max_speed_kmh=88.04, avg_speed_kmh=41.26), ended_at=t0
        )

        assert trip.id == "trip-9"
        patch = requests[1]
        assert patch.method == "PATCH"
        assert patch.url.params["id"] == "eq.trip-9"
        assert body_of(patch) == {
            "end_time": t0.isoformat(),
            "status": "finalizado",
            "max_speed": 88.0,
            "avg_speed": 41.3,
        }

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, test_config):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(503, json={"message": "upstream down"})
            return httpx.Response(200, json=[])

        store = SupabaseTelemetryStore(test_config.backend, transport=transport(handler))
        assert await store.fetch_vehicles() == []
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_insert_not_retried(self, test_config, t0):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return httpx.Response(504, json={"message": "gateway timeout"})

        event = seal_event(EventType.SOS, Severity.CRITICAL, vehicle_id="veh-1", timestamp=t0)
        store = SupabaseTelemetryStore(test_config.backend, transport=transport(handler))
        with pytest.raises(BackendConnectionError):
            await store.append_event(event)

        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_finish_trip_retried(self, test_config):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(503, json={"message": "upstream down"})
            return httpx.Response(204)

        store = SupabaseTelemetryStore(test_config.backend, transport=transport(handler))
        await store.finish_trip("trip-1", TripSummary())

        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_fetch_trips_most_recent_first(self, test_config):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json=[
                {"id": "trip-2", "plate": "AB123CD", "vehicle_id": "veh-1", "driver_id": "driver-1",
                 "start_time": "2024-05-06T10:00:00+00:00", "status": "finalizado", "max_speed": 80},
                {"id": "trip-1", "plate": "AB123CD", "vehicle_id": "veh-1", "driver_id": "driver-1",
                 "start_time": "2024-05-06T08:00:00+00:00"},
            ])

        store = SupabaseTelemetryStore(test_config.backend, transport=transport(handler))
        trips = await store.fetch_trips(company_id="company-1")

        assert seen["path"] == "/rest/v1/trips"
        assert seen["params"]["order"] == "start_time.desc"
        assert seen["params"]["company_id"] == "eq.company-1"
        assert "driver_id" not in seen["params"]
        assert [t.id for t in trips] == ["trip-2", "trip-1"]
        assert trips[0].max_speed == 80

    @pytest.mark.asyncio
    async def test_unreachable_backend(self, test_config):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            raise httpx.ConnectError("connection refused", request=request)

        store = SupabaseTelemetryStore(test_config.backend, transport=transport(handler))
        with pytest.raises(BackendConnectionError):
            await store.fetch_vehicles()
        assert calls["n"] == test_config.backend.retry_attempts
        assert not await store.health_check()

    @pytest.mark.asyncio
    async def test_expired_token_is_auth_error(self, test_config):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return httpx.Response(401, json={"message": "JWT expired"})

        store = SupabaseTelemetryStore(test_config.backend, transport=transport(handler))
        with pytest.raises(AuthError) as exc_info:
            await store.fetch_vehicles()
        assert "JWT expired" in str(exc_info.value)
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_rejected_payload_is_data_error(self, test_config):
        def handler(request):
            return httpx.Response(400, json={"message": "invalid input syntax for type uuid"})

        store = SupabaseTelemetryStore(test_config.backend, transport=transport(handler))
        with pytest.raises(DataError):
            await store.fetch_trip("not-a-uuid")

    @pytest.mark.asyncio
    async def test_vehicles_filtered_by_company(self, test_config):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json=[
                {"id": "veh-1", "plate": "AB123CD", "status": "online", "lat": -24.1, "lng": -65.2},
            ])

        store = SupabaseTelemetryStore(test_config.backend, transport=transport(handler))
        vehicles = await store.fetch_vehicles("company-1")

        assert seen["params"]["company_id"] == "eq.company-1"
        assert vehicles[0].status == VehicleStatus.ONLINE


class TestRowMapping:

    def test_vehicle_defaults(self):
        vehicle = row_to_vehicle({"id": 7, "plate": "AB123CD", "status": None, "speed": None})
        assert vehicle.id == "7"
        assert vehicle.status == VehicleStatus.OFFLINE
        assert vehicle.speed == 0.0

    def test_unknown_role_is_conductor(self):
        assert normalize_role("superuser") == UserRole.CONDUCTOR
        assert normalize_role(None) == UserRole.CONDUCTOR
        assert normalize_role("admin") == UserRole.ADMIN


# =============================================================================
# AUTH
# =============================================================================

class TestSupabaseAuthClient:

    @pytest.mark.asyncio
    async def test_sign_in(self, test_config):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["grant_type"] = request.url.params["grant_type"]
            seen["body"] = body_of(request)
            return httpx.Response(200, json={
                "access_token": "jwt-abc",
                "refresh_token": "refresh-abc",
                "expires_in": 3600,
                "user": {"id": "user-1", "email": "ops@example.com"},
            })

        auth = SupabaseAuthClient(test_config.backend, transport=transport(handler))
        session = await auth.sign_in_with_password("ops@example.com", "secret")

        assert seen["path"] == "/auth/v1/token"
        assert seen["grant_type"] == "password"
        assert seen["body"] == {"email": "ops@example.com", "password": "secret"}
        assert session.access_token == "jwt-abc"
        assert session.user_id == "user-1"
        assert session.expires_at is not None

    @pytest.mark.asyncio
    async def test_invalid_credentials(self, test_config):
        def handler(request):
            return httpx.Response(400, json={
                "error": "invalid_grant",
                "error_description": "Invalid login credentials",
            })

        auth = SupabaseAuthClient(test_config.backend, transport=transport(handler))
        with pytest.raises(AuthError) as exc_info:
            await auth.sign_in_with_password("ops@example.com", "wrong")
        assert str(exc_info.value) == "Invalid login credentials"

    @pytest.mark.asyncio
    async def test_get_user_id(self, test_config):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer jwt-abc"
            return httpx.Response(200, json={"id": "user-1"})

        auth = SupabaseAuthClient(test_config.backend, transport=transport(handler))
        assert await auth.get_user_id("jwt-abc") == "user-1"


class TestMockAuthProvider:

    @pytest.mark.asyncio
    async def test_sign_in_and_out(self):
        auth = MockAuthProvider()
        user_id = auth.add_user("Ops@Example.com", "secret")

        session = await auth.sign_in_with_password("ops@example.com", "secret")
        assert await auth.get_user_id(session.access_token) == user_id

        await auth.sign_out(session)
        with pytest.raises(AuthError):
            await auth.get_user_id(session.access_token)

    @pytest.mark.asyncio
    async def test_wrong_password(self):
        auth = MockAuthProvider()
        auth.add_user("ops@example.com", "secret")
        with pytest.raises(AuthError):
            await auth.sign_in_with_password("ops@example.com", "nope")


# =============================================================================
# ACCOUNTS
# =============================================================================

def profile(role, company_id="company-1", user_id="caller-1"):
    return UserProfile(id=user_id, full_name="Caller", company_id=company_id, role=role)


class TestAccountPermissions:

    @pytest.mark.parametrize(
        "caller,target,allowed",
        [
            (UserRole.ADMIN, UserRole.COORDINATOR, True),
            (UserRole.ADMIN, UserRole.CONDUCTOR, True),
            (UserRole.ADMIN, UserRole.ADMIN, False),
            (UserRole.COORDINATOR, UserRole.CONDUCTOR, True),
            (UserRole.COORDINATOR, UserRole.COORDINATOR, False),
            (UserRole.CONDUCTOR, UserRole.CONDUCTOR, False),
            (None, UserRole.CONDUCTOR, False),
        ],
    )
    def test_role_rule(self, caller, target, allowed):
        assert can_create_account(caller, target) is allowed


class TestAccountManager:

    @pytest.mark.asyncio
    async def test_forbidden_never_reaches_backend(self, test_config):
        def handler(request):
            raise AssertionError("request should not be sent")

        accounts = AccountManager(test_config.backend, transport=transport(handler))
        with pytest.raises(AuthError):
            await accounts.create_account(
                profile(UserRole.COORDINATOR), "new@example.com", "pw", "New", role="coordinator"
            )

    @pytest.mark.asyncio
    async def test_admin_creates_coordinator(self, test_config):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = body_of(request)
            return httpx.Response(200, json={"user": {
                "id": "user-9", "email": "coord@example.com",
                "full_name": "Coord", "role": "coordinator",
            }})

        accounts = AccountManager(test_config.backend, access_token="jwt", transport=transport(handler))
        created = await accounts.create_account(
            profile(UserRole.ADMIN), "coord@example.com", "pw", "Coord", role="coordinator"
        )

        assert seen["path"] == "/functions/v1/create_user"
        assert seen["body"]["role"] == "coordinator"
        assert seen["body"]["company_id"] == "company-1"
        assert created.id == "user-9"
        assert created.role == UserRole.COORDINATOR

    @pytest.mark.asyncio
    async def test_backend_forbidden(self, test_config):
        def handler(request):
            return httpx.Response(403, json={"error": "Forbidden"})

        accounts = AccountManager(test_config.backend, transport=transport(handler))
        with pytest.raises(AuthError) as exc_info:
            await accounts.create_account(profile(UserRole.ADMIN), "x@example.com", "pw", "X")
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_list_profiles_scoped_by_role(self, test_config):
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            return httpx.Response(200, json=[
                {"id": "u-1", "full_name": "Ana", "role": "conductor", "company_id": "company-1"},
                {"id": "u-2", "full_name": "Beto", "role": "owner", "company_id": "company-1"},
            ])

        accounts = AccountManager(test_config.backend, transport=transport(handler))
        await accounts.list_profiles(profile(UserRole.ADMIN))
        listed = await accounts.list_profiles(profile(UserRole.COORDINATOR))

        assert "company_id" not in seen[0]
        assert seen[1]["company_id"] == "eq.company-1"
        assert seen[1]["order"] == "full_name.asc"
        assert [p.role for p in listed] == [UserRole.CONDUCTOR, UserRole.CONDUCTOR]


# =============================================================================
# REALTIME
# =============================================================================

class GatedStore(InMemoryTelemetryStore):
    """Blocks vehicle fetches until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.vehicle_fetches = 0

    async def fetch_vehicles(self, company_id=None):
        self.vehicle_fetches += 1
        await self.gate.wait()
        return await super().fetch_vehicles(company_id)


class TestSnapshotRefresher:

    @pytest.mark.asyncio
    async def test_burst_is_coalesced(self):
        store = GatedStore()
        store.add_vehicle(Vehicle(id="veh-1", plate="AB123CD", status=VehicleStatus.ONLINE))
        refresher = SnapshotRefresher(store)
        update = RealtimeNotification("vehicles", "UPDATE", {"id": "veh-1"})

        first = asyncio.create_task(refresher.handle(update))
        for _ in range(5):
            await asyncio.sleep(0)
        for _ in range(4):
            await refresher.handle(update)
        store.gate.set()
        await first

        assert store.vehicle_fetches == 2
        assert [v.id for v in refresher.vehicles] == ["veh-1"]

    @pytest.mark.asyncio
    async def test_critical_insert_raises_alert(self, memory_store, t0):
        raised = []

        async def on_alert(alert):
            raised.append(alert)

        event = seal_event(EventType.SOS, Severity.CRITICAL, vehicle_id="veh-1", timestamp=t0)
        await memory_store.append_event(event)
        record = {"id": event.id, **event_to_row(event)}

        refresher = SnapshotRefresher(memory_store, on_alert=on_alert, clock=lambda: t0)
        await refresher.handle(RealtimeNotification("security_events", "INSERT", record))

        assert len(raised) == 1
        assert raised[0].id == f"alert-{event.id}"
        assert raised[0].type == "sos"
        assert raised[0].vehicle_id == "veh-1"
        assert [e.id for e in refresher.events] == [event.id]

    @pytest.mark.asyncio
    async def test_medium_insert_raises_no_alert(self, memory_store, t0):
        event = seal_event(EventType.FATIGUE_ALERT, Severity.MEDIUM, timestamp=t0)
        record = {"id": event.id, **event_to_row(event)}

        refresher = SnapshotRefresher(memory_store, clock=lambda: t0)
        await refresher.handle(RealtimeNotification("security_events", "INSERT", record))

        assert refresher.alerts == []
        assert refresher.refresh_counts["events"] == 1

    @pytest.mark.asyncio
    async def test_unknown_table_ignored(self, memory_store):
        refresher = SnapshotRefresher(memory_store)
        await refresher.handle(RealtimeNotification("companies", "UPDATE", {}))
        assert refresher.refresh_counts == {"vehicles": 0, "events": 0}

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_snapshot(self, memory_store):
        memory_store.add_vehicle(Vehicle(id="veh-1", plate="AB123CD"))
        refresher = SnapshotRefresher(memory_store)
        await refresher.refresh_all()

        memory_store.set_available(False)
        await refresher.handle(RealtimeNotification("vehicles", "UPDATE", {}))

        assert [v.id for v in refresher.vehicles] == ["veh-1"]
