from __future__ import annotations

import pytest

from carelink.alerts.dispatcher import AlertDispatcher
from carelink.errors import InvalidCoordinates
from carelink.geo.filter import LocationFilter
from carelink.geo.geofence import GeofenceEvaluator
from carelink.models import User
from carelink.realtime.hub import ConnectionHub
from carelink.realtime.presence import PresenceRegistry
from carelink.tracking import LocationService, validate_coordinates

from fakes import FakeEmail, FakeSms, FakeSocket, FakeStore, ManualClock


class Tracker:
    """A LocationService wired to fakes, with one caregiver online."""

    def __init__(self, store: FakeStore | None = None, *, safe_radius: float = 5.0) -> None:
        self.store = store or FakeStore()
        self.presence = PresenceRegistry()
        self.hub = ConnectionHub()
        self.clock = ManualClock()
        self.sms = FakeSms()
        self.email = FakeEmail()
        self.caregiver = FakeSocket()
        self.hub.attach("c-care", self.caregiver)
        self.presence.register("c-care", "care-1", "Bob", "caregiver")
        self.dispatcher = AlertDispatcher(
            hub=self.hub,
            presence=self.presence,
            sms=self.sms,
            email=self.email,
            sms_cooldown_seconds=30,
            clock=self.clock,
        )
        self.service = LocationService(
            store=self.store,
            location_filter=LocationFilter(),
            geofence=GeofenceEvaluator(),
            dispatcher=self.dispatcher,
            default_safe_radius_m=safe_radius,
        )


@pytest.fixture
def tracker() -> Tracker:
    return Tracker()


def test_validate_coordinates_messages() -> None:
    assert validate_coordinates("12.5", -3) == (12.5, -3.0)
    with pytest.raises(InvalidCoordinates, match="must be numbers"):
        validate_coordinates("north", 0)
    with pytest.raises(InvalidCoordinates, match="must be numbers"):
        validate_coordinates(float("inf"), 0)
    with pytest.raises(InvalidCoordinates, match="Latitude out of range"):
        validate_coordinates(90.5, 0)
    with pytest.raises(InvalidCoordinates, match="Longitude out of range"):
        validate_coordinates(0, -180.01)


@pytest.mark.asyncio
async def test_first_update_initializes_home(tracker: Tracker) -> None:
    result = await tracker.service.update("elder-1", 0.0, 0.0, 10)

    assert result.message == "Home location initialized"
    assert not result.alert_active
    assert result.distance_m is None
    sample = tracker.store.locations["elder-1"]
    assert (sample.reference_latitude, sample.reference_longitude) == (0.0, 0.0)
    assert sample.outside_radius is False
    assert tracker.sms.sent == []


@pytest.mark.asyncio
async def test_breach_alerts_once_then_suppresses_sms(tracker: Tracker) -> None:
    await tracker.service.update("elder-1", 0.0, 0.0, 10)

    breach = await tracker.service.update("elder-1", 0.0, 0.002, 10)
    tracker.clock.advance(1)
    repeat = await tracker.service.update("elder-1", 0.0, 0.002, 10)

    assert breach.alert_active and breach.alert_id is not None
    assert breach.message == "Location updated; geofence alert triggered"
    assert breach.distance_m == pytest.approx(222.4, abs=0.1)
    assert repeat.alert_active and repeat.alert_id is None
    assert repeat.message == "Location updated; alert already active"
    assert repeat.dispatch is not None and repeat.dispatch.sms_suppressed

    alerts = tracker.caregiver.of_type("geofence:alert")
    assert len(alerts) == 1
    assert alerts[0]["alertId"] == breach.alert_id
    assert alerts[0]["patientName"] == "Patient #elder-1"
    assert alerts[0]["distance"] == 222
    assert len(tracker.sms.sent) == 1
    assert tracker.store.locations["elder-1"].outside_radius is True


@pytest.mark.asyncio
async def test_jitter_is_not_reported_as_movement() -> None:
    tracker = Tracker(safe_radius=10)
    await tracker.service.update("elder-1", 0.0, 0.0, 100)

    # ~22m drift with 100m accuracy stays under the 30m noise threshold
    result = await tracker.service.update("elder-1", 0.0, 0.0002, 100)

    assert (result.latitude, result.longitude) == (0.0, 0.0)
    assert not result.alert_active
    assert result.distance_m == 0.0
    assert tracker.store.locations["elder-1"].longitude == 0.0002


@pytest.mark.asyncio
async def test_invalid_coordinates_change_nothing(tracker: Tracker) -> None:
    with pytest.raises(InvalidCoordinates):
        await tracker.service.update("elder-1", 91.0, 0.0)

    assert tracker.store.location_writes == 0
    assert not tracker.service.filter.knows("elder-1")
    assert not tracker.service.geofence.knows("elder-1")


@pytest.mark.asyncio
async def test_store_failure_propagates_without_alerting(tracker: Tracker) -> None:
    await tracker.service.update("elder-1", 0.0, 0.0, 10)
    tracker.store.fail_location_writes = True

    with pytest.raises(RuntimeError):
        await tracker.service.update("elder-1", 0.0, 0.002, 10)

    assert tracker.caregiver.of_type("geofence:alert") == []
    assert tracker.sms.sent == []


@pytest.mark.asyncio
async def test_crossing_is_alerted_once_store_recovers(tracker: Tracker) -> None:
    await tracker.service.update("elder-1", 0.0, 0.0, 10)
    tracker.store.fail_location_writes = True
    with pytest.raises(RuntimeError):
        await tracker.service.update("elder-1", 0.0, 0.002, 10)
    tracker.store.fail_location_writes = False

    retry = await tracker.service.update("elder-1", 0.0, 0.002, 10)
    again = await tracker.service.update("elder-1", 0.0, 0.002, 10)

    assert retry.fence.just_breached
    assert retry.alert_id is not None
    assert not again.fence.just_breached
    assert len(tracker.caregiver.of_type("geofence:alert")) == 1
    assert tracker.store.locations["elder-1"].outside_radius is True


@pytest.mark.asyncio
async def test_user_profile_drives_radius_name_and_home(tracker: Tracker) -> None:
    user = User(
        id="elder-1",
        name="Alice",
        safe_radius_meters=500,
        emergency_contacts=[{"name": "Carol", "email": "carol@example.com"}],
    )
    tracker.store.users["elder-1"] = user

    await tracker.service.update("elder-1", 0.0, 0.0, 10)
    inside = await tracker.service.update("elder-1", 0.0, 0.002, 10)
    outside = await tracker.service.update("elder-1", 0.0, 0.006, 10)

    assert (user.home_latitude, user.home_longitude) == (0.0, 0.0)
    assert not inside.alert_active
    assert outside.alert_active
    assert user.alert_active is True
    assert (user.current_latitude, user.current_longitude) == (0.0, 0.006)
    assert tracker.sms.sent[0]["patient_name"] == "Alice"
    assert tracker.sms.sent[0]["safe_radius"] == 500
    assert [sent[0].id for sent in tracker.email.sent] == ["elder-1"]


@pytest.mark.asyncio
async def test_configured_home_takes_priority_over_first_fix(tracker: Tracker) -> None:
    tracker.store.users["elder-1"] = User(
        id="elder-1", name="Alice", home_latitude=0.0, home_longitude=0.0, safe_radius_meters=50
    )

    result = await tracker.service.update("elder-1", 0.0, 0.002, 10)

    assert result.fence.just_breached
    assert result.alert_id is not None


@pytest.mark.asyncio
async def test_restart_restores_state_without_realerting(tracker: Tracker) -> None:
    await tracker.service.update("elder-1", 0.0, 0.0, 10)
    await tracker.service.update("elder-1", 0.0, 0.002, 10)

    restarted = Tracker(tracker.store)
    result = await restarted.service.update("elder-1", 0.0, 0.002, 10)

    assert result.alert_active
    assert result.alert_id is None
    assert restarted.caregiver.of_type("geofence:alert") == []
    assert restarted.service.geofence.reference("elder-1") == (0.0, 0.0)


@pytest.mark.asyncio
async def test_returning_home_clears_alert(tracker: Tracker) -> None:
    await tracker.service.update("elder-1", 0.0, 0.0, 10)
    await tracker.service.update("elder-1", 0.0, 0.002, 10)

    result = await tracker.service.update("elder-1", 0.0, 0.0, 10)

    assert not result.alert_active
    assert result.message == "Location updated; inside safe zone"
    assert tracker.store.locations["elder-1"].outside_radius is False
