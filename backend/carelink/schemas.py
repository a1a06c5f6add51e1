"""Pydantic schemas for the HTTP surface.

Bodies use camelCase on the wire (``alertActive``, ``distanceMeters``)
to match the signaling events; Python code uses snake_case names.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LocationUpdate(_CamelModel):
    """Schema for a location update posted by the elderly user's device."""

    latitude: float = Field(..., description="Raw latitude in degrees")
    longitude: float = Field(..., description="Raw longitude in degrees")
    accuracy: Optional[float] = Field(None, description="Reported accuracy radius in meters")
    user_id: Optional[str] = Field(None, description="Subject when authentication is disabled")


class LocationUpdateOut(_CamelModel):
    success: bool = True
    alert_active: bool
    distance_meters: Optional[int] = None
    alert_id: Optional[str] = None
    message: str


class LatestLocationOut(_CamelModel):
    available: bool
    user_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[float] = None
    distance_meters: Optional[int] = None
    outside_radius: Optional[bool] = None
    timestamp: Optional[datetime] = None
    message: Optional[str] = None


class CallRecordOut(_CamelModel):
    """Schema for call history responses."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    caller_id: str
    caller_name: str
    caller_role: str
    callee_id: str
    callee_name: str
    callee_role: str
    room_name: str
    status: str
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
