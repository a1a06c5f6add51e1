"""Location update pipeline: jitter filter, geofence, persistence, alerts."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from .alerts.dispatcher import AlertDispatcher, BreachEvent, DispatchReport
from .errors import InvalidCoordinates
from .geo.filter import LocationFilter
from .geo.geofence import GeofenceEvaluator, GeofenceResult
from .models import LocationSample, User
from .store import DocumentStore


logger = logging.getLogger("carelink")


def validate_coordinates(latitude: Any, longitude: Any) -> tuple[float, float]:
    try:
        lat = float(latitude)
        lng = float(longitude)
    except (TypeError, ValueError) as exc:
        raise InvalidCoordinates("Latitude/longitude must be numbers") from exc
    if not math.isfinite(lat) or not math.isfinite(lng):
        raise InvalidCoordinates("Latitude/longitude must be numbers")
    if lat < -90 or lat > 90:
        raise InvalidCoordinates("Latitude out of range")
    if lng < -180 or lng > 180:
        raise InvalidCoordinates("Longitude out of range")
    return lat, lng


@dataclass
class LocationUpdateResult:
    latitude: float
    longitude: float
    fence: GeofenceResult
    message: str
    alert_id: str | None = None
    dispatch: DispatchReport | None = None

    @property
    def alert_active(self) -> bool:
        return self.fence.outside_radius

    @property
    def distance_m(self) -> float | None:
        if self.fence.initialized:
            return None
        return self.fence.distance_m


class LocationService:
    def __init__(
        self,
        *,
        store: DocumentStore,
        location_filter: LocationFilter,
        geofence: GeofenceEvaluator,
        dispatcher: AlertDispatcher,
        default_safe_radius_m: float = 200.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.store = store
        self.filter = location_filter
        self.geofence = geofence
        self.dispatcher = dispatcher
        self.default_safe_radius_m = default_safe_radius_m
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def safe_radius_for(self, user: User | None) -> float:
        if user is not None and user.safe_radius_meters:
            return float(user.safe_radius_meters)
        return self.default_safe_radius_m

    async def update(
        self,
        user_id: str,
        latitude: Any,
        longitude: Any,
        accuracy: float | None = None,
    ) -> LocationUpdateResult:
        """Run one raw fix through the pipeline.

        Raises ``InvalidCoordinates`` before touching any state, and lets
        store failures propagate.  Alert delivery problems never raise.
        """
        lat, lng = validate_coordinates(latitude, longitude)

        async with self._lock_for(user_id):
            user = await self.store.find_user_by_id(user_id)
            await self._restore(user_id, user)

            fix = self.filter.assess(user_id, lat, lng, accuracy)
            safe_radius = self.safe_radius_for(user)
            fence = self.geofence.assess(user_id, fix.latitude, fix.longitude, safe_radius)
            logger.info(
                "User %s: lat=%.6f lng=%.6f acc=%s | dist=%.1fm radius=%sm outside=%s",
                user_id,
                fix.latitude,
                fix.longitude,
                accuracy,
                fence.distance_m,
                safe_radius,
                fence.outside_radius,
            )

            await self.store.upsert_location(
                user_id,
                {
                    "latitude": lat,
                    "longitude": lng,
                    "accuracy": accuracy,
                    "accepted_latitude": fix.latitude,
                    "accepted_longitude": fix.longitude,
                    "reference_latitude": fence.reference_lat,
                    "reference_longitude": fence.reference_lng,
                    "distance_meters": fence.distance_m,
                    "outside_radius": fence.outside_radius,
                    "timestamp": self._clock(),
                },
            )
            if user is not None:
                user.current_latitude = fix.latitude
                user.current_longitude = fix.longitude
                if not user.has_home_location:
                    user.home_latitude = fence.reference_lat
                    user.home_longitude = fence.reference_lng
                user.alert_active = fence.outside_radius
                await self.store.save_user(user)

            # Memory only advances once both writes have succeeded.
            self.filter.commit(user_id, fix)
            self.geofence.commit(user_id, fence)

        result = LocationUpdateResult(
            latitude=fix.latitude,
            longitude=fix.longitude,
            fence=fence,
            message=self._describe(fence),
        )
        if fence.outside_radius:
            breach = BreachEvent(
                user_id=user_id,
                patient_name=(user.name if user is not None and user.name else f"Patient #{user_id}"),
                distance_m=fence.distance_m,
                safe_radius_m=safe_radius,
                latitude=fix.latitude,
                longitude=fix.longitude,
                user=user,
            )
            try:
                if fence.just_breached:
                    result.dispatch = await self.dispatcher.dispatch(breach)
                    result.alert_id = breach.alert_id
                else:
                    result.dispatch = await self.dispatcher.repeat(breach)
            except Exception as exc:
                logger.exception("Alert dispatch for user %s failed: %s", user_id, exc)
        return result

    async def latest(self, user_id: str) -> LocationSample | None:
        return await self.store.find_latest_location(user_id)

    async def _restore(self, user_id: str, user: User | None) -> None:
        """Prime filter and geofence memory from persisted state after a restart."""
        if self.geofence.knows(user_id):
            return
        sample = await self.store.find_latest_location(user_id)
        if sample is not None:
            self.filter.prime(user_id, sample.accepted_latitude, sample.accepted_longitude)
        if user is not None and user.has_home_location:
            outside = sample.outside_radius if sample is not None else bool(user.alert_active)
            self.geofence.prime(user_id, user.home_latitude, user.home_longitude, outside=outside)
        elif sample is not None:
            self.geofence.prime(
                user_id,
                sample.reference_latitude,
                sample.reference_longitude,
                outside=sample.outside_radius,
            )

    @staticmethod
    def _describe(fence: GeofenceResult) -> str:
        if fence.initialized:
            return "Home location initialized"
        if fence.just_breached:
            return "Location updated; geofence alert triggered"
        if fence.outside_radius:
            return "Location updated; alert already active"
        return "Location updated; inside safe zone"
