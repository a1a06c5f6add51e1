"""Edge-triggered geofence evaluation around a fixed home point."""

from __future__ import annotations

from dataclasses import dataclass, field

from .distance import haversine_distance_m


@dataclass(frozen=True)
class GeofenceResult:
    distance_m: float
    outside_radius: bool
    just_breached: bool
    reference_lat: float
    reference_lng: float
    initialized: bool = False


@dataclass
class _FenceState:
    reference_lat: float
    reference_lng: float
    outside: bool = False


@dataclass
class GeofenceEvaluator:
    """Tracks each user's home point and whether they were last seen outside it.

    The first accepted fix of a user becomes their home point and never
    raises an alert.  After that ``just_breached`` is only true on the
    sample that crosses from inside to outside.
    """

    _fences: dict[str, _FenceState] = field(default_factory=dict)

    def knows(self, user_id: str) -> bool:
        return user_id in self._fences

    def reference(self, user_id: str) -> tuple[float, float] | None:
        state = self._fences.get(user_id)
        if state is None:
            return None
        return state.reference_lat, state.reference_lng

    def prime(
        self,
        user_id: str,
        reference_lat: float,
        reference_lng: float,
        *,
        outside: bool = False,
    ) -> None:
        """Restore a known home point (and last outside flag) without evaluating."""
        if user_id in self._fences:
            return
        self._fences[user_id] = _FenceState(
            reference_lat, reference_lng, outside=outside
        )

    def evaluate(
        self,
        user_id: str,
        accepted_lat: float,
        accepted_lng: float,
        safe_radius_m: float,
    ) -> GeofenceResult:
        result = self.assess(user_id, accepted_lat, accepted_lng, safe_radius_m)
        self.commit(user_id, result)
        return result

    def assess(
        self,
        user_id: str,
        accepted_lat: float,
        accepted_lng: float,
        safe_radius_m: float,
    ) -> GeofenceResult:
        """Evaluate a position against the remembered fence without changing it."""
        state = self._fences.get(user_id)
        if state is None:
            return GeofenceResult(0.0, False, False, accepted_lat, accepted_lng, initialized=True)

        distance = haversine_distance_m(
            state.reference_lat, state.reference_lng, accepted_lat, accepted_lng
        )
        outside = distance > safe_radius_m
        return GeofenceResult(
            distance,
            outside,
            outside and not state.outside,
            state.reference_lat,
            state.reference_lng,
        )

    def commit(self, user_id: str, result: GeofenceResult) -> None:
        """Record ``result`` as the user's latest fence state."""
        self._fences[user_id] = _FenceState(
            result.reference_lat, result.reference_lng, outside=result.outside_radius
        )
