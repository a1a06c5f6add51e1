"""Process-wide realtime state, built once at startup and injected into handlers."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from .alerts.dispatcher import AlertDispatcher, EmailProvider, SmsProvider
from .alerts.emailer import EmailWebhookProvider
from .alerts.sms import TwilioSmsProvider
from .geo.filter import LocationFilter
from .geo.geofence import GeofenceEvaluator
from .realtime.calls import CallSessionCoordinator
from .realtime.hub import ConnectionHub
from .realtime.presence import PresenceRegistry
from .realtime.signaling import SignalingService
from .settings import Settings, settings as default_settings
from .store import DocumentStore
from .tracking import LocationService


@dataclass
class CareRuntime:
    store: DocumentStore
    presence: PresenceRegistry
    hub: ConnectionHub
    calls: CallSessionCoordinator
    signaling: SignalingService
    dispatcher: AlertDispatcher
    locations: LocationService
    sms: SmsProvider
    email: EmailProvider

    async def aclose(self) -> None:
        await self.calls.aclose()
        for provider in (self.sms, self.email):
            aclose = getattr(provider, "aclose", None)
            if aclose is not None:
                await aclose()


def build_runtime(
    config: Settings | None = None,
    *,
    store: DocumentStore | None = None,
    sms: SmsProvider | None = None,
    email: EmailProvider | None = None,
) -> CareRuntime:
    config = config or default_settings
    if store is None:
        from .db import AsyncSessionLocal
        from .store import SqlDocumentStore

        store = SqlDocumentStore(AsyncSessionLocal)
    sms = sms or TwilioSmsProvider(config)
    email = email or EmailWebhookProvider(config)

    presence = PresenceRegistry()
    hub = ConnectionHub()
    calls = CallSessionCoordinator(
        presence=presence,
        hub=hub,
        store=store,
        ring_timeout_seconds=config.ring_timeout_seconds,
    )
    dispatcher = AlertDispatcher(
        hub=hub,
        presence=presence,
        sms=sms,
        email=email,
        sms_cooldown_seconds=config.sms_cooldown_seconds,
    )
    locations = LocationService(
        store=store,
        location_filter=LocationFilter(
            jitter_factor=config.jitter_factor,
            min_threshold_m=config.min_jitter_meters,
            default_accuracy_m=config.default_accuracy_meters,
        ),
        geofence=GeofenceEvaluator(),
        dispatcher=dispatcher,
        default_safe_radius_m=config.default_safe_radius_meters,
    )
    return CareRuntime(
        store=store,
        presence=presence,
        hub=hub,
        calls=calls,
        signaling=SignalingService(presence=presence, hub=hub, calls=calls),
        dispatcher=dispatcher,
        locations=locations,
        sms=sms,
        email=email,
    )


def get_runtime(request: Request) -> CareRuntime:
    """FastAPI dependency returning the runtime attached at startup."""
    return request.app.state.runtime
