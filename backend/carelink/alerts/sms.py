"""Twilio SMS channel for geofence-breach notifications.

Messages go through the Twilio Programmable Messaging REST API.  When
the Twilio credentials or the caregiver number are missing the alert is
only logged, which keeps local and test environments quiet.
"""

from __future__ import annotations

import logging

import httpx

from ..errors import ChannelDeliveryError
from ..settings import Settings


logger = logging.getLogger("carelink")

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


def format_alert_body(
    patient_name: str,
    distance: float,
    safe_radius: float,
    latitude: float | None = None,
    longitude: float | None = None,
) -> str:
    map_link = ""
    if latitude is not None and longitude is not None:
        map_link = f"\nMap: https://www.google.com/maps?q={latitude},{longitude}"
    return (
        "ALERT - CareLink Geofence\n"
        f"{patient_name} has left their safe zone.\n"
        f"Distance: {round(distance)} m (limit: {safe_radius:g} m)"
        f"{map_link}"
        "\n\nOpen the CareLink app to respond."
    )


class TwilioSmsProvider:
    def __init__(self, settings: Settings, *, client: httpx.AsyncClient | None = None) -> None:
        self.account_sid = settings.twilio_account_sid
        self.from_number = settings.twilio_from_number
        self.to_number = settings.caregiver_phone_number
        self.configured = settings.twilio_configured
        self._client = client or httpx.AsyncClient(
            base_url=TWILIO_API_BASE,
            auth=(settings.twilio_account_sid, settings.twilio_auth_token),
            timeout=settings.provider_timeout_seconds,
        )
        if not self.configured:
            logger.warning(
                "Twilio credentials or CARELINK_CAREGIVER_PHONE_NUMBER missing; SMS alerts will be mocked"
            )

    async def send_alert(
        self,
        *,
        patient_name: str,
        distance: float,
        safe_radius: float,
        latitude: float | None = None,
        longitude: float | None = None,
        to_number: str | None = None,
    ) -> str | None:
        """Send one breach SMS and return the Twilio message SID."""
        body = format_alert_body(patient_name, distance, safe_radius, latitude, longitude)
        if not self.configured:
            logger.info("[MOCK SMS] to %s: %s", self.to_number or "N/A", body)
            return None

        try:
            response = await self._client.post(
                f"/Accounts/{self.account_sid}/Messages.json",
                data={"To": to_number or self.to_number, "From": self.from_number, "Body": body},
            )
        except httpx.HTTPError as exc:
            raise ChannelDeliveryError("sms", str(exc)) from exc
        if not 200 <= response.status_code < 300:
            raise ChannelDeliveryError("sms", (response.text or "non_2xx")[:240])

        sid = response.json().get("sid")
        logger.info("Geofence SMS sent, SID %s", sid)
        return sid

    async def aclose(self) -> None:
        await self._client.aclose()
