"""Email channel for geofence-breach notifications.

The alert is posted as JSON to an email webhook (a relay such as a
transactional mail service or an automation hook) that delivers it to
the patient's emergency contacts.  Without a webhook or recipients the
email is only logged.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import httpx

from ..errors import ChannelDeliveryError
from ..models import User
from ..settings import Settings


logger = logging.getLogger("carelink")


def alert_recipients(user: User) -> list[str]:
    contacts = user.emergency_contacts or []
    return [
        str(contact["email"])
        for contact in contacts
        if isinstance(contact, dict) and contact.get("email")
    ]


def _format_coordinate(value: float | None) -> str:
    return f"{value:.6f}" if value is not None else "unknown"


class EmailWebhookProvider:
    def __init__(self, settings: Settings, *, client: httpx.AsyncClient | None = None) -> None:
        self.webhook_url = settings.alert_email_webhook_url.strip()
        self._client = client or httpx.AsyncClient(timeout=settings.provider_timeout_seconds)

    async def send_alert_email(self, user: User, distance: float) -> bool:
        """Email every emergency contact of ``user``; returns False when only mocked."""
        recipients = alert_recipients(user)
        name = user.name or "Patient"
        subject = f"CareLink Alert: {name} left the safe zone"
        text = "\n".join(
            [
                "Hello,",
                "",
                f"{name} has moved approximately {round(distance)} metres outside their safe zone.",
                "",
                "Current coordinates: "
                f"{_format_coordinate(user.current_latitude)}, {_format_coordinate(user.current_longitude)}",
                "",
                "Please check on them as soon as possible.",
                "",
                "CareLink Safety System",
            ]
        )

        if not self.webhook_url or not recipients:
            logger.info(
                "[MOCK EMAIL] to %s: %s (%s is %sm outside safe zone)",
                ", ".join(recipients) or "(no recipients configured)",
                subject,
                name,
                round(distance),
            )
            return False

        envelope = {
            "channel": "email",
            "event_type": "geofence_exit",
            "patient_user_id": user.id,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
            "to": recipients,
            "subject": subject,
            "text": text,
        }
        try:
            response = await self._client.post(self.webhook_url, json=envelope)
        except httpx.HTTPError as exc:
            raise ChannelDeliveryError("email", str(exc)) from exc
        if not 200 <= response.status_code < 300:
            raise ChannelDeliveryError("email", (response.text or "non_2xx")[:240])

        logger.info("Alert email sent to %s for user %s", ", ".join(recipients), user.id)
        return True

    async def aclose(self) -> None:
        await self._client.aclose()
