from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation


LOGGER = logging.getLogger("lending_engine.settings")


def _env_decimal(name: str, default: str | None) -> Decimal | None:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return Decimal(default) if default is not None else None
    try:
        value = Decimal(raw)
    except InvalidOperation:
        LOGGER.warning("Invalid %s=%r. Using default: %s.", name, raw, default)
        return Decimal(default) if default is not None else None
    if value < 0:
        LOGGER.warning("Negative %s=%r. Using default: %s.", name, raw, default)
        return Decimal(default) if default is not None else None
    return value


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        LOGGER.warning("Invalid %s=%r. Using default: %s.", name, raw, default)
        return default
    return value if value > 0 else default


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class SmtpSettings:
    host: str
    port: int = 587
    username: str | None = None
    password: str | None = None
    sender: str = "noreply@localhost"
    use_tls: bool = True


@dataclass(frozen=True)
class LendingSettings:
    per_day_rate: Decimal = Decimal("5.00")
    minor_damage_fee: Decimal = Decimal("50.00")
    moderate_damage_fee: Decimal | None = None
    severe_damage_fee: Decimal | None = None
    otp_ttl_seconds: int = 300
    otp_resend_cooldown_seconds: int = 60
    otp_max_attempts: int = 5
    otp_verified_ttl_seconds: int = 1800
    smtp: SmtpSettings | None = None


def load_smtp_settings() -> SmtpSettings | None:
    host = (os.environ.get("SMTP_HOST") or "").strip()
    if not host:
        return None
    username = (os.environ.get("SMTP_USER") or "").strip() or None
    return SmtpSettings(
        host=host,
        port=_env_int("SMTP_PORT", 587),
        username=username,
        password=os.environ.get("SMTP_PASSWORD") or None,
        sender=(os.environ.get("SMTP_FROM") or username or "noreply@localhost").strip(),
        use_tls=_env_bool("SMTP_USE_TLS", True),
    )


def load_settings() -> LendingSettings:
    settings = LendingSettings(
        per_day_rate=_env_decimal("PER_DAY_RATE", "5.00"),
        minor_damage_fee=_env_decimal("MINOR_DAMAGE_FEE", "50.00"),
        moderate_damage_fee=_env_decimal("MODERATE_DAMAGE_FEE", None),
        severe_damage_fee=_env_decimal("SEVERE_DAMAGE_FEE", None),
        otp_ttl_seconds=_env_int("OTP_TTL_SECONDS", 300),
        otp_resend_cooldown_seconds=_env_int("OTP_RESEND_COOLDOWN_SECONDS", 60),
        otp_max_attempts=_env_int("OTP_MAX_ATTEMPTS", 5),
        otp_verified_ttl_seconds=_env_int("OTP_VERIFIED_TTL_SECONDS", 1800),
        smtp=load_smtp_settings(),
    )
    LOGGER.info(
        "Lending settings loaded: per_day_rate=%s minor_damage_fee=%s otp_ttl=%ss smtp=%s",
        settings.per_day_rate,
        settings.minor_damage_fee,
        settings.otp_ttl_seconds,
        "on" if settings.smtp else "off",
    )
    return settings
