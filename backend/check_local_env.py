"""Validate the local CareLink backend environment.

Usage:
  set -a
  source backend/.env
  set +a
  python3 backend/check_local_env.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path


ENV_PATH = Path(__file__).resolve().parent / ".env"
TWILIO_VARS = (
    "CARELINK_TWILIO_ACCOUNT_SID",
    "CARELINK_TWILIO_AUTH_TOKEN",
    "CARELINK_TWILIO_FROM_NUMBER",
    "CARELINK_CAREGIVER_PHONE_NUMBER",
)


def load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if value.startswith(("'", '"')) and value.endswith(("'", '"')) and len(value) >= 2:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def check_file_path(name: str, errors: list[str], warnings: list[str]) -> None:
    value = os.getenv(name, "").strip()
    if not value:
        warnings.append(f"{name} is not set")
        return
    if value.startswith("{"):
        return
    if not Path(value).expanduser().exists():
        errors.append(f"{name} points to a missing file: {value}")


def is_truthy(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def main() -> int:
    load_env_file(ENV_PATH)

    py_version = sys.version_info
    if py_version < (3, 11):
        print(
            "Unsupported Python version: "
            f"{py_version.major}.{py_version.minor}. "
            "Use Python 3.11 or newer for this repo."
        )
        return 1

    required = ("DB_USER", "DB_PASSWORD", "DB_NAME", "DB_HOST", "DB_PORT")
    errors: list[str] = []
    warnings: list[str] = []

    for name in required:
        if not os.getenv(name, "").strip():
            errors.append(f"{name} is missing")

    if os.getenv("CLOUDSQL_INSTANCE_CONNECTION_NAME", "").strip():
        warnings.append(
            "CLOUDSQL_INSTANCE_CONNECTION_NAME is set. For local TCP testing, leave it blank and use DB_HOST/DB_PORT."
        )

    check_file_path("FIREBASE_SERVICE_ACCOUNT_JSON", errors, warnings)
    if not os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON", "").strip():
        warnings.append(
            "Firebase Admin will fall back to Application Default Credentials if available."
        )
    if is_truthy("CARELINK_DISABLE_AUTHENTICATION"):
        warnings.append(
            "CARELINK_DISABLE_AUTHENTICATION is on: unauthenticated clients are accepted. Never use this in production."
        )

    if is_truthy("CARELINK_DISABLE_RATE_LIMITING"):
        warnings.append("CARELINK_DISABLE_RATE_LIMITING is on: location updates are not rate-limited")

    twilio_set = [name for name in TWILIO_VARS if os.getenv(name, "").strip()]
    if twilio_set and len(twilio_set) != len(TWILIO_VARS):
        missing = ", ".join(name for name in TWILIO_VARS if name not in twilio_set)
        errors.append(f"Twilio is partially configured; missing {missing}")
    elif not twilio_set:
        warnings.append("Twilio is not configured; geofence SMS alerts will only be logged")

    if not os.getenv("CARELINK_ALERT_EMAIL_WEBHOOK_URL", "").strip():
        warnings.append("CARELINK_ALERT_EMAIL_WEBHOOK_URL is not set; alert emails will only be logged")

    print(f"Loaded env file: {ENV_PATH}")
    if errors:
        print("\nErrors:")
        for item in errors:
            print(f"  - {item}")
    if warnings:
        print("\nWarnings:")
        for item in warnings:
            print(f"  - {item}")

    if errors:
        print("\nLocal environment is not ready.")
        return 1

    print("\nLocal environment looks ready.")
    print("Next:")
    print("  1. cd backend")
    print("  2. uvicorn carelink.main:app --reload")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
