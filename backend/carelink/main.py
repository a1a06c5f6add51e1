"""Main FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from .auth import init_firebase, verify_firebase_token
from .call_history import router as call_history_router
from .db import init_db
from .location import limiter, router as location_router
from .realtime.protocol import (
    INBOUND_TYPES,
    CallInitiate,
    InboundEvent,
    UserOnline,
    error_event,
    parse_inbound,
)
from .runtime import CareRuntime, build_runtime
from .settings import settings


logger = logging.getLogger("carelink")

app = FastAPI(title="CareLink Realtime Backend", version="0.3.0")
app.state.limiter = limiter
app.include_router(location_router)
app.include_router(call_history_router)


@app.on_event("startup")
async def startup_event() -> None:
    """Initialise Firebase, create tables and build the realtime runtime."""
    init_firebase()
    await init_db()
    app.state.runtime = build_runtime(settings)
    logger.info(
        "CareLink ready; auth disabled=%s; SMS cooldown=%ss; ring timeout=%ss",
        settings.disable_authentication,
        settings.sms_cooldown_seconds,
        settings.ring_timeout_seconds,
    )


@app.on_event("shutdown")
async def shutdown_event() -> None:
    runtime: CareRuntime | None = getattr(app.state, "runtime", None)
    if runtime is not None:
        await runtime.aclose()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health endpoint to confirm the service is up."""
    return {"status": "ok"}


def _identity_mismatch(event: InboundEvent, uid: str) -> bool:
    if isinstance(event, UserOnline):
        return event.user_id != uid
    if isinstance(event, CallInitiate):
        return event.caller_id != uid
    return False


def _describe_invalid(message: dict, exc: ValidationError) -> str:
    message_type = str(message.get("type", "")).strip()
    if message_type not in INBOUND_TYPES:
        return f"Unsupported message type: {message_type}"
    fields = ", ".join(
        ".".join(str(part) for part in error["loc"]) for error in exc.errors() if error.get("loc")
    )
    return f"Invalid {message_type} message: {fields or 'bad payload'}"


@app.websocket("/ws/signal")
async def signaling_endpoint(ws: WebSocket) -> None:
    """Presence, call signaling, chat relay and geofence alerts for one client."""
    await ws.accept()

    token = ws.query_params.get("token", "").strip()
    claims: dict | None = None
    if token:
        try:
            claims = await asyncio.to_thread(verify_firebase_token, token)
        except HTTPException as exc:
            await ws.send_json(error_event(exc.detail))
            await ws.close(code=1008)
            return
        except Exception as exc:
            logger.exception("Failed to validate websocket token: %s", exc)
            await ws.send_json(error_event("Unable to validate the connection"))
            await ws.close(code=1011)
            return
    elif not settings.disable_authentication:
        await ws.send_json(error_event("Missing token"))
        await ws.close(code=1008)
        return

    runtime: CareRuntime = ws.app.state.runtime
    connection_id = uuid.uuid4().hex
    runtime.hub.attach(connection_id, ws)
    logger.info("Socket connected: %s", connection_id)

    try:
        while True:
            try:
                message = await ws.receive_json()
            except WebSocketDisconnect:
                break
            except (ValueError, TypeError, KeyError):
                await ws.send_json(error_event("Malformed JSON message"))
                continue

            if not isinstance(message, dict):
                await ws.send_json(error_event("Messages must be JSON objects"))
                continue

            try:
                event = parse_inbound(message)
            except ValidationError as exc:
                await ws.send_json(error_event(_describe_invalid(message, exc)))
                continue

            if claims is not None and _identity_mismatch(event, claims["uid"]):
                await ws.send_json(error_event("userId does not match the authenticated user"))
                continue

            try:
                await runtime.signaling.handle(connection_id, event)
            except Exception as exc:
                logger.exception("Signaling message %s failed: %s", event.type, exc)
                await ws.send_json(error_event("Failed to process signaling message"))
    finally:
        runtime.hub.detach(connection_id)
        await runtime.signaling.disconnect(connection_id)
        logger.info("Socket disconnected: %s", connection_id)
        with contextlib.suppress(RuntimeError):
            await ws.close()
