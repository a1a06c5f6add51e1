"""SQLAlchemy models for the CareLink backend.

Three tables back the realtime core: ``users`` holds the safety profile
of each person (home point, safe radius, emergency contacts),
``calls`` is the append-only history of call attempts, and
``location_samples`` keeps exactly one current sample per user, which
is overwritten on every accepted update.
"""

import uuid
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class User(Base):
    """Safety profile of a CareLink user.

    ``id`` is the Firebase UID.  ``home_latitude``/``home_longitude``
    are set once from the first location sample unless a caregiver has
    configured them.  ``alert_active`` mirrors whether the latest
    accepted position is outside ``safe_radius_meters``.
    ``emergency_contacts`` is a JSON list of ``{name, phone, email,
    relation}`` objects.
    """

    __tablename__ = "users"

    id: str = Column(String(128), primary_key=True)
    name: str = Column(String(128), nullable=False, default="Patient")
    role: str = Column(String(16), nullable=False, default="elderly")
    email: Optional[str] = Column(String(256), nullable=True)

    home_latitude: Optional[float] = Column(Float, nullable=True)
    home_longitude: Optional[float] = Column(Float, nullable=True)
    current_latitude: Optional[float] = Column(Float, nullable=True)
    current_longitude: Optional[float] = Column(Float, nullable=True)
    safe_radius_meters: Optional[float] = Column(Float, nullable=True)
    alert_active: bool = Column(Boolean, nullable=False, default=False)

    emergency_contacts: Optional[list] = Column(JSONB, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def has_home_location(self) -> bool:
        return self.home_latitude is not None and self.home_longitude is not None


class CallRecord(Base):
    """One call attempt between two users.

    ``room_name`` is generated when the call is initiated and handed to
    both clients for the video provider; it never changes.  ``status``
    moves along ringing -> accepted -> ended, or from ringing to one of
    rejected, cancelled or missed.
    """

    __tablename__ = "calls"

    id: str = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    caller_id: str = Column(String(128), nullable=False, index=True)
    caller_name: str = Column(String(128), nullable=False)
    caller_role: str = Column(String(16), nullable=False)
    callee_id: str = Column(String(128), nullable=False, index=True)
    callee_name: str = Column(String(128), nullable=False, default="Unknown")
    callee_role: str = Column(String(16), nullable=False, default="elderly")

    room_name: str = Column(String(64), nullable=False, unique=True)
    status: str = Column(String(16), nullable=False, default="ringing")

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds: Optional[int] = Column(Integer, nullable=True)


class LocationSample(Base):
    """Current location of a user.

    ``latitude``/``longitude`` are the raw fix as reported; the
    ``accepted_*`` pair is the stable position after jitter filtering,
    and ``reference_*`` is the home point the geofence is measured
    from.  ``outside_radius`` is only ever written together with
    ``distance_meters`` by the geofence evaluation.
    """

    __tablename__ = "location_samples"

    user_id: str = Column(String(128), primary_key=True)

    latitude: float = Column(Float, nullable=False)
    longitude: float = Column(Float, nullable=False)
    accuracy: Optional[float] = Column(Float, nullable=True)

    accepted_latitude: float = Column(Float, nullable=False)
    accepted_longitude: float = Column(Float, nullable=False)
    reference_latitude: float = Column(Float, nullable=False)
    reference_longitude: float = Column(Float, nullable=False)

    distance_meters: float = Column(Float, nullable=False, default=0.0)
    outside_radius: bool = Column(Boolean, nullable=False, default=False)

    timestamp = Column(DateTime(timezone=True), nullable=False)
