"""GPS jitter filter.

WiFi and IP based geolocation can report ~76 m accuracy yet wobble by
5-10 m between readings while the device sits still.  A new fix only
counts as movement when it is further from the last accepted fix than
a noise threshold scaled from the reported accuracy.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from .distance import haversine_distance_m


logger = logging.getLogger("carelink")

JITTER_FACTOR = 0.3
MIN_JITTER_THRESHOLD_M = 3.0
DEFAULT_ACCURACY_M = 100.0


@dataclass(frozen=True)
class AcceptedFix:
    """Result of filtering one raw fix."""

    latitude: float
    longitude: float
    is_real_movement: bool
    movement_m: float = 0.0
    noise_threshold_m: float = 0.0


class LocationFilter:
    """Keeps the last accepted fix per user and decides what is real movement."""

    def __init__(
        self,
        *,
        jitter_factor: float = JITTER_FACTOR,
        min_threshold_m: float = MIN_JITTER_THRESHOLD_M,
        default_accuracy_m: float = DEFAULT_ACCURACY_M,
    ) -> None:
        self.jitter_factor = jitter_factor
        self.min_threshold_m = min_threshold_m
        self.default_accuracy_m = default_accuracy_m
        self._last_accepted: dict[str, tuple[float, float]] = {}

    def noise_threshold(self, accuracy_m: float | None) -> float:
        accuracy = self._normalise_accuracy(accuracy_m)
        return max(accuracy * self.jitter_factor, self.min_threshold_m)

    def _normalise_accuracy(self, accuracy_m: float | None) -> float:
        if accuracy_m is None or not math.isfinite(accuracy_m) or accuracy_m <= 0:
            return self.default_accuracy_m
        return accuracy_m

    def knows(self, user_id: str) -> bool:
        return user_id in self._last_accepted

    def prime(self, user_id: str, latitude: float, longitude: float) -> None:
        """Seed the last accepted fix, e.g. from a persisted sample after a restart."""
        self._last_accepted.setdefault(user_id, (latitude, longitude))

    def last_accepted(self, user_id: str) -> tuple[float, float] | None:
        return self._last_accepted.get(user_id)

    def accept(
        self,
        user_id: str,
        raw_lat: float,
        raw_lng: float,
        accuracy_m: float | None = None,
    ) -> AcceptedFix:
        fix = self.assess(user_id, raw_lat, raw_lng, accuracy_m)
        self.commit(user_id, fix)
        return fix

    def commit(self, user_id: str, fix: AcceptedFix) -> None:
        """Make ``fix`` the last accepted position if it was real movement."""
        if fix.is_real_movement:
            self._last_accepted[user_id] = (fix.latitude, fix.longitude)

    def assess(
        self,
        user_id: str,
        raw_lat: float,
        raw_lng: float,
        accuracy_m: float | None = None,
    ) -> AcceptedFix:
        """Filter one raw fix without changing the remembered position."""
        threshold = self.noise_threshold(accuracy_m)
        previous = self._last_accepted.get(user_id)
        if previous is None:
            return AcceptedFix(raw_lat, raw_lng, True, 0.0, threshold)

        movement = haversine_distance_m(previous[0], previous[1], raw_lat, raw_lng)
        if movement < threshold:
            logger.debug(
                "User %s: jitter %.1fm < threshold %.1fm, kept stable position",
                user_id,
                movement,
                threshold,
            )
            return AcceptedFix(previous[0], previous[1], False, movement, threshold)

        logger.debug(
            "User %s: real move %.1fm >= threshold %.1fm, position accepted",
            user_id,
            movement,
            threshold,
        )
        return AcceptedFix(raw_lat, raw_lng, True, movement, threshold)
