import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from . import auth as auth_utils
from .errors import InvalidCoordinates
from .runtime import CareRuntime, get_runtime
from .schemas import LatestLocationOut, LocationUpdate, LocationUpdateOut
from .settings import CAREGIVING_ROLES, settings


logger = logging.getLogger("carelink")

router = APIRouter(prefix="/api/location", tags=["location"])

DEV_USER_ID = "1"

limiter = Limiter(key_func=get_remote_address)


def _update_rate_limit() -> str:
    return f"{settings.rate_limit_max_requests} per {settings.rate_limit_window_seconds} second"


def _ensure_https(request: Request) -> None:
    if not settings.require_https:
        return
    if request.url.scheme == "https":
        return
    forwarded_proto = request.headers.get("x-forwarded-proto", "")
    if "https" in forwarded_proto.lower():
        return
    raise HTTPException(status_code=403, detail="HTTPS is required")


def _resolve_subject(current_user: Optional[dict[str, Any]], body_user_id: Optional[str]) -> str:
    if current_user is not None:
        return str(current_user["uid"])
    if not settings.disable_authentication:
        raise HTTPException(status_code=401, detail="Missing Bearer token")
    return (body_user_id or "").strip() or DEV_USER_ID


@router.post("/update", response_model=LocationUpdateOut, response_model_exclude_none=True)
@limiter.limit(
    _update_rate_limit,
    exempt_when=lambda: settings.disable_rate_limiting,
    error_message="Too many location updates, please slow down.",
)
async def update_location(
    payload: LocationUpdate,
    request: Request,
    current_user: Optional[dict] = Depends(auth_utils.get_optional_user),
    runtime: CareRuntime = Depends(get_runtime),
) -> LocationUpdateOut:
    """Record the caller's current position and evaluate their geofence.

    The response reflects only whether the location was stored; alert
    delivery (socket, SMS, email) happens alongside and its failures are
    logged, not returned.  Out-of-range coordinates are rejected with a
    400 before any state changes.
    """
    _ensure_https(request)
    user_id = _resolve_subject(current_user, payload.user_id)
    try:
        result = await runtime.locations.update(
            user_id,
            payload.latitude,
            payload.longitude,
            payload.accuracy,
        )
    except InvalidCoordinates as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    except Exception as exc:
        logger.exception("Location update for %s failed: %s", user_id, exc)
        raise HTTPException(
            status_code=500, detail="Internal server error processing location update"
        ) from exc

    distance = result.distance_m
    return LocationUpdateOut(
        alert_active=result.alert_active,
        distance_meters=round(distance) if distance is not None else None,
        alert_id=result.alert_id,
        message=result.message,
    )


@router.get("/latest/{user_id}", response_model=LatestLocationOut, response_model_exclude_none=True)
async def latest_location(
    user_id: str,
    request: Request,
    current_user: Optional[dict] = Depends(auth_utils.get_optional_user),
    runtime: CareRuntime = Depends(get_runtime),
) -> LatestLocationOut:
    """Latest stable position of ``user_id``, for the user themself or their care team."""
    _ensure_https(request)
    if current_user is None:
        if not settings.disable_authentication:
            raise HTTPException(status_code=401, detail="Missing Bearer token")
    else:
        is_self = str(current_user["uid"]) == user_id
        is_privileged = current_user.get("role") in CAREGIVING_ROLES
        if not is_self and not is_privileged:
            raise HTTPException(status_code=403, detail="Forbidden")

    sample = await runtime.locations.latest(user_id)
    if sample is None:
        return LatestLocationOut(available=False, message="No location data yet for this user")
    return LatestLocationOut(
        available=True,
        user_id=user_id,
        latitude=sample.accepted_latitude,
        longitude=sample.accepted_longitude,
        accuracy=sample.accuracy,
        distance_meters=round(sample.distance_meters or 0),
        outside_radius=sample.outside_radius,
        timestamp=sample.timestamp,
    )
