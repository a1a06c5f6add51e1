from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


CAREGIVING_ROLES = frozenset({"caregiver", "doctor"})
USER_ROLES = frozenset({"elderly"}) | CAREGIVING_ROLES


class Settings(BaseSettings):
    """Global configuration for the CareLink backend."""

    sms_cooldown_seconds: float = 30.0
    default_safe_radius_meters: float = 200.0
    jitter_factor: float = 0.3
    min_jitter_meters: float = 3.0
    default_accuracy_meters: float = 100.0
    ring_timeout_seconds: float = 0.0

    disable_authentication: bool = False
    require_https: bool = False

    disable_rate_limiting: bool = False
    rate_limit_window_seconds: int = Field(default=60, gt=0)
    rate_limit_max_requests: int = Field(default=60, gt=0)

    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    caregiver_phone_number: str = ""
    alert_email_webhook_url: str = ""
    provider_timeout_seconds: float = Field(default=8.0, gt=0)

    model_config = SettingsConfigDict(env_prefix="CARELINK_", extra="ignore")

    @field_validator("sms_cooldown_seconds", "ring_timeout_seconds", "min_jitter_meters")
    @classmethod
    def validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("Value must not be negative.")
        return value

    @property
    def twilio_configured(self) -> bool:
        return all(
            (
                self.twilio_account_sid,
                self.twilio_auth_token,
                self.twilio_from_number,
                self.caregiver_phone_number,
            )
        )


settings = Settings()  # type: ignore[call-arg]
