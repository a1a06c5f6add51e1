"""Error taxonomy shared by the signaling and location layers.

Every error carries a stable ``code`` that is sent to clients verbatim
(``call:error`` events, HTTP error bodies), so the class names double as
the wire vocabulary.
"""

from __future__ import annotations


class CareLinkError(Exception):
    code = "CareLinkError"

    def __init__(self, message: str, *, call_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.call_id = call_id

    def to_payload(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.call_id:
            payload["callId"] = self.call_id
        return payload


class UserOffline(CareLinkError):
    """The recipient has no live connection."""

    code = "UserOffline"


class CallNotFound(CareLinkError):
    code = "CallNotFound"


class CallAlreadyResolved(CareLinkError):
    """A transition was requested that the call's current status does not allow."""

    code = "CallAlreadyResolved"

    def __init__(self, call_id: str, status: str, requested: str) -> None:
        super().__init__(
            f"Call {call_id} is already {status}; cannot move to {requested}",
            call_id=call_id,
        )
        self.status = status
        self.requested = requested

    def to_payload(self) -> dict:
        return {**super().to_payload(), "status": self.status}


class NotCallParticipant(CareLinkError):
    """The acting connection is not the party allowed to make this move."""

    code = "NotCallParticipant"


class CallPersistenceError(CareLinkError):
    """Writing the call record failed. The signaling itself still went out."""

    code = "CallPersistenceError"


class InvalidCoordinates(CareLinkError):
    code = "InvalidCoordinates"


class ChannelDeliveryError(CareLinkError):
    """An alert side channel (SMS, email, socket) failed to deliver."""

    code = "ChannelDeliveryError"

    def __init__(self, channel: str, message: str) -> None:
        super().__init__(f"{channel} delivery failed: {message}")
        self.channel = channel
