from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.lending_models import OtpSession
from .errors import ActionResult, InvalidOtp, ValidationError, VerificationRequired
from .notification_service import Notifier, notify_safely
from .workflow import run_action


LOGGER = logging.getLogger("lending_engine.otp")

_CODE_PATTERN = re.compile(r"^\d{6}$")
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(raw: str | None) -> str:
    email = (raw or "").strip().lower()
    if not email:
        raise ValidationError("Email is required.")
    if not _EMAIL_PATTERN.match(email):
        raise ValidationError("Invalid email format.")
    return email


def _code_hash(code: str, salt: str) -> str:
    return hashlib.sha256(f"{salt}:{code}".encode("utf-8")).hexdigest()


def _generate_code() -> str:
    return f"{secrets.randbelow(10 ** 6):06d}"


def _get_session(db: Session, email: str) -> OtpSession | None:
    return db.execute(select(OtpSession).where(OtpSession.Email == email)).scalars().first()


def send_otp(
    db: Session,
    settings,
    notifier: Notifier,
    email: str,
    first_name: str | None = None,
    last_name: str | None = None,
    now: datetime | None = None,
) -> ActionResult:
    def _issue(outbox):
        stamp = now or datetime.now()
        address = normalize_email(email)
        existing = _get_session(db, address)
        if existing and not existing.Consumed and existing.VerifiedAt is None:
            ready_at = existing.IssuedAt + timedelta(seconds=settings.otp_resend_cooldown_seconds)
            if stamp < ready_at and stamp < existing.ExpiresAt:
                wait = max(1, int((ready_at - stamp).total_seconds()))
                raise ValidationError(
                    f"Please wait {wait} seconds before requesting a new code.",
                    retryAfter=wait,
                )

        code = _generate_code()
        salt = secrets.token_hex(16)
        session = existing or OtpSession(Email=address)
        session.CodeHash = _code_hash(code, salt)
        session.CodeSalt = salt
        session.FirstName = (first_name or "").strip() or None
        session.LastName = (last_name or "").strip() or None
        session.IssuedAt = stamp
        session.ExpiresAt = stamp + timedelta(seconds=settings.otp_ttl_seconds)
        session.Attempts = 0
        session.Consumed = False
        session.VerifiedAt = None
        if existing is None:
            db.add(session)

        name = " ".join(part for part in [session.FirstName, session.LastName] if part) or "Guest"
        outbox.append(
            lambda: notify_safely(
                notifier,
                "otp",
                address,
                {"code": code, "name": name, "ttlSeconds": settings.otp_ttl_seconds},
            )
        )
        LOGGER.info("Issued verification code for %s (expires %s)", address, session.ExpiresAt.isoformat())
        return ActionResult.ok(
            {"email": address, "expiresAt": session.ExpiresAt, "ttlSeconds": settings.otp_ttl_seconds},
            message="OTP sent to your email.",
        )

    return run_action(db, _issue)


def verify_otp(
    db: Session,
    settings,
    email: str,
    code: str,
    now: datetime | None = None,
) -> ActionResult:
    def _verify(outbox):
        stamp = now or datetime.now()
        address = normalize_email(email)
        candidate = (code or "").strip()
        if not _CODE_PATTERN.match(candidate):
            raise ValidationError("OTP must be 6 digits.")

        session = _get_session(db, address)
        if not session or session.Consumed:
            raise InvalidOtp("No active verification code. Please request a new one.")
        if session.VerifiedAt is not None:
            raise InvalidOtp("Verification code has already been used. Please request a new one.")
        if stamp >= session.ExpiresAt:
            raise InvalidOtp("Verification code has expired. Please request a new one.")
        if int(session.Attempts or 0) >= settings.otp_max_attempts:
            raise InvalidOtp("Too many incorrect attempts. Please request a new code.")

        expected = _code_hash(candidate, session.CodeSalt)
        if not hmac.compare_digest(expected, session.CodeHash):
            session.Attempts = int(session.Attempts or 0) + 1
            remaining = max(0, settings.otp_max_attempts - session.Attempts)
            db.commit()
            LOGGER.warning("Verification code mismatch for %s (%s attempts left)", address, remaining)
            raise InvalidOtp("Invalid verification code.", attemptsRemaining=remaining)

        session.VerifiedAt = stamp
        LOGGER.info("Email verified: %s", address)
        return ActionResult.ok({"email": address, "verified": True}, message="Email verified successfully.")

    return run_action(db, _verify)


def _usable_verification(session: OtpSession | None, settings, stamp: datetime) -> bool:
    if not session or session.Consumed or session.VerifiedAt is None:
        return False
    return stamp <= session.VerifiedAt + timedelta(seconds=settings.otp_verified_ttl_seconds)


def is_verified(db: Session, settings, email: str, now: datetime | None = None) -> bool:
    address = (email or "").strip().lower()
    return _usable_verification(_get_session(db, address), settings, now or datetime.now())


def consume_verification(db: Session, settings, email: str, now: datetime | None = None) -> OtpSession:
    """Spends the verification for one submission; the caller commits."""
    stamp = now or datetime.now()
    address = normalize_email(email)
    session = _get_session(db, address)
    if not session or session.VerifiedAt is None or session.Consumed:
        raise VerificationRequired(
            "Email is not verified. Please verify your email before submitting the request."
        )
    if not _usable_verification(session, settings, stamp):
        raise VerificationRequired("Email verification has expired. Please verify your email again.")
    session.Consumed = True
    return session
