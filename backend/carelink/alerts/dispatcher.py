"""Fan-out of geofence breaches to caregivers.

Three channels are driven independently: a ``geofence:alert`` socket
event to every connected caregiver, an SMS gated by a per-user
cooldown, and an email to the patient's emergency contacts.  A failing
channel is logged and reported in the ``DispatchReport`` but never
stops the others or reaches the caller.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Protocol

from ..errors import ChannelDeliveryError
from ..models import User
from ..realtime.hub import ConnectionHub
from ..realtime.presence import PresenceRegistry
from ..realtime.protocol import GEOFENCE_ALERT, server_event
from ..settings import CAREGIVING_ROLES


logger = logging.getLogger("carelink")


class SmsProvider(Protocol):
    async def send_alert(
        self,
        *,
        patient_name: str,
        distance: float,
        safe_radius: float,
        latitude: float | None = None,
        longitude: float | None = None,
    ) -> str | None: ...


class EmailProvider(Protocol):
    async def send_alert_email(self, user: User, distance: float) -> bool: ...


@dataclass(frozen=True)
class BreachEvent:
    user_id: str
    patient_name: str
    distance_m: float
    safe_radius_m: float
    latitude: float
    longitude: float
    user: User | None = None
    alert_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def alert_payload(self) -> dict:
        return {
            "alertId": self.alert_id,
            "userId": self.user_id,
            "patientName": self.patient_name,
            "distance": round(self.distance_m),
            "safeRadius": self.safe_radius_m,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class DispatchReport:
    alert_id: str
    socket_deliveries: int = 0
    sms_sent: bool = False
    sms_suppressed: bool = False
    email_sent: bool = False
    failures: list[ChannelDeliveryError] = field(default_factory=list)


class AlertDispatcher:
    def __init__(
        self,
        *,
        hub: ConnectionHub,
        presence: PresenceRegistry,
        sms: SmsProvider,
        email: EmailProvider,
        sms_cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.hub = hub
        self.presence = presence
        self.sms = sms
        self.email = email
        self.sms_cooldown_ms = int(sms_cooldown_seconds * 1000)
        self._clock = clock
        self._last_sms_at_ms: dict[str, int] = {}

    async def dispatch(self, breach: BreachEvent) -> DispatchReport:
        """Handle an inside -> outside transition on all channels."""
        report = DispatchReport(alert_id=breach.alert_id)
        logger.info(
            "Geofence breach for %s: %.1fm from home (limit %sm), alert %s",
            breach.user_id,
            breach.distance_m,
            breach.safe_radius_m,
            breach.alert_id,
        )
        await self._broadcast(breach, report)
        await self._send_sms(breach, report)
        await self._send_email(breach, report)
        return report

    async def repeat(self, breach: BreachEvent) -> DispatchReport:
        """Handle another sample while still outside; only the SMS may go out again."""
        report = DispatchReport(alert_id=breach.alert_id)
        await self._send_sms(breach, report)
        return report

    def claim_sms_slot(self, user_id: str) -> bool:
        """Take the SMS slot for ``user_id`` if its cooldown has expired.

        The timestamp is recorded here, before any provider call is
        awaited, so overlapping evaluations cannot both pass.
        """
        now_ms = int(self._clock() * 1000)
        last_ms = self._last_sms_at_ms.get(user_id)
        if last_ms is not None and now_ms - last_ms <= self.sms_cooldown_ms:
            return False
        self._last_sms_at_ms[user_id] = now_ms
        return True

    async def _broadcast(self, breach: BreachEvent, report: DispatchReport) -> None:
        message = server_event(GEOFENCE_ALERT, **breach.alert_payload())
        try:
            for connection_id in self.presence.connections_for_roles(CAREGIVING_ROLES):
                if await self.hub.send(connection_id, message):
                    report.socket_deliveries += 1
        except Exception as exc:
            self._record_failure(report, ChannelDeliveryError("socket", str(exc)))

    async def _send_sms(self, breach: BreachEvent, report: DispatchReport) -> None:
        if not self.claim_sms_slot(breach.user_id):
            report.sms_suppressed = True
            return
        logger.info("Sending SMS for user %s, distance %.1fm", breach.user_id, breach.distance_m)
        try:
            await self.sms.send_alert(
                patient_name=breach.patient_name,
                distance=breach.distance_m,
                safe_radius=breach.safe_radius_m,
                latitude=breach.latitude,
                longitude=breach.longitude,
            )
        except ChannelDeliveryError as exc:
            self._record_failure(report, exc)
        except Exception as exc:
            self._record_failure(report, ChannelDeliveryError("sms", str(exc)))
        else:
            report.sms_sent = True

    async def _send_email(self, breach: BreachEvent, report: DispatchReport) -> None:
        if breach.user is None:
            return
        try:
            report.email_sent = bool(await self.email.send_alert_email(breach.user, breach.distance_m))
        except ChannelDeliveryError as exc:
            self._record_failure(report, exc)
        except Exception as exc:
            self._record_failure(report, ChannelDeliveryError("email", str(exc)))

    @staticmethod
    def _record_failure(report: DispatchReport, error: ChannelDeliveryError) -> None:
        logger.warning("Alert %s: %s", report.alert_id, error.message)
        report.failures.append(error)
