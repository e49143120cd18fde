"""In-process one-time passcode store for email verification.

Codes are keyed by normalized email, live for ``OTP_TTL_MINUTES`` and allow
``OTP_MAX_ATTEMPTS`` failed checks. Delivery is fail-open: the record is
stored before any email is attempted and delivery problems are reported
through a :class:`DeliveryResult` that only reaches the log.
"""

from __future__ import annotations

import enum
import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from app.core.config import Settings, settings as default_settings
from app.services.email_service import (
    EmailAuthError,
    EmailDeliveryError,
    EmailNotConfigured,
    EmailSender,
    build_otp_html,
    build_otp_subject,
    normalize_email,
)

_LOG = logging.getLogger("app.otp")

PURPOSE_SIGNUP = "signup"
PURPOSE_SIGNIN = "signin"
PURPOSE_RESET = "reset"
ALLOWED_PURPOSES = {PURPOSE_SIGNUP, PURPOSE_SIGNIN, PURPOSE_RESET}

CODE_MIN = 100000
CODE_MAX = 999999


class OtpError(Exception):
    kind = "otp_error"
    default_reason = "OTP verification failed"

    def __init__(self, reason: str | None = None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)


class OtpNotFound(OtpError):
    kind = "not_found"
    default_reason = "No OTP found for this email"


class OtpExpired(OtpError):
    kind = "expired"
    default_reason = "OTP has expired"


class OtpTooManyAttempts(OtpError):
    kind = "too_many_attempts"
    default_reason = "Too many failed attempts"


class OtpInvalidCode(OtpError):
    kind = "invalid_code"
    default_reason = "Invalid OTP"


class DeliveryStatus(str, enum.Enum):
    SENT = "sent"
    MOCKED = "mocked"
    UNCONFIGURED = "unconfigured"
    TIMEOUT = "timeout"
    AUTH_FAILED = "auth_failed"
    RATE_LIMITED = "rate_limited"
    TRANSPORT_ERROR = "transport_error"


@dataclass
class DeliveryResult:
    status: DeliveryStatus
    attempts: int = 0
    detail: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status in {DeliveryStatus.SENT, DeliveryStatus.MOCKED}


@dataclass
class OtpRecord:
    email: str
    code: str
    expires_at: datetime
    attempts: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


_system_random = secrets.SystemRandom()


class OtpService:
    def __init__(
        self,
        sender: EmailSender,
        *,
        config: Settings | None = None,
        clock: Callable[[], datetime] = _now_utc,
        randint: Callable[[int, int], int] = _system_random.randint,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.sender = sender
        self.config = config or default_settings
        self._clock = clock
        self._randint = randint
        self._sleep = sleep
        self._monotonic = monotonic

        self._records: dict[str, OtpRecord] = {}
        self._lock = threading.Lock()
        self._delivery_configured = False

        self._sweeper: threading.Thread | None = None
        self._stop_event = threading.Event()

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=int(self.config.OTP_TTL_MINUTES))

    @property
    def max_attempts(self) -> int:
        return int(max(self.config.OTP_MAX_ATTEMPTS, 1))

    @property
    def delivery_configured(self) -> bool:
        return self._delivery_configured

    def _reveal_codes(self) -> bool:
        return bool(self.config.OTP_DEV_MODE) or not self.config.is_production

    def generate_code(self) -> str:
        return str(self._randint(CODE_MIN, CODE_MAX))

    # -- delivery probe -------------------------------------------------

    def refresh_delivery_status(self) -> bool:
        """Check that the email provider is configured and reachable."""
        email_from = str(self.config.EMAIL_FROM or "").strip()
        missing = []
        if not self.sender.configured:
            missing.append("provider credentials")
        if not email_from and self.sender.provider != "mock_email":
            missing.append("EMAIL_FROM")
        if missing:
            _LOG.error("Email configuration incomplete, OTP delivery disabled (missing: %s)", ", ".join(missing))
            self._delivery_configured = False
            return False
        try:
            self.sender.probe(timeout=float(self.config.OTP_PROBE_TIMEOUT_SECONDS))
        except EmailDeliveryError as exc:
            _LOG.error("Email provider check failed (%s): %s", exc.status, exc)
            self._delivery_configured = False
            return False
        except Exception:
            _LOG.exception("Email provider check raised unexpectedly, OTP delivery disabled")
            self._delivery_configured = False
            return False
        self._delivery_configured = True
        _LOG.info("Email provider %s is ready for OTP delivery", self.sender.provider)
        return True

    # -- issuance -------------------------------------------------------

    def issue_and_send(self, email: str, purpose: str = PURPOSE_SIGNUP) -> None:
        purpose_norm = str(purpose or "").strip().lower()
        if purpose_norm not in ALLOWED_PURPOSES:
            raise ValueError(f"Unsupported OTP purpose: {purpose}")
        key = normalize_email(email)

        if not self._delivery_configured:
            _LOG.warning("Email delivery not configured, re-checking provider before issuing OTP")
            self.refresh_delivery_status()

        code = self.generate_code()
        expires_at = self._clock() + self.ttl
        with self._lock:
            self._records[key] = OtpRecord(email=key, code=code, expires_at=expires_at, attempts=0)

        if self._reveal_codes():
            _LOG.info("OTP %s issued for %s purpose=%s expires_at=%s", code, key, purpose_norm, expires_at.isoformat())
        else:
            _LOG.info("OTP issued for %s purpose=%s expires_at=%s", key, purpose_norm, expires_at.isoformat())

        if not self._delivery_configured:
            result = DeliveryResult(status=DeliveryStatus.UNCONFIGURED, detail="email delivery is not configured")
        else:
            result = self._deliver(key, code, purpose_norm)
        self._log_delivery(key, code, result)

    def _deliver(self, email: str, code: str, purpose: str) -> DeliveryResult:
        message = {
            "from": str(self.config.EMAIL_FROM or "").strip() or "no-reply@localhost",
            "to": [email],
            "subject": build_otp_subject(purpose),
            "html": build_otp_html(code=code, purpose=purpose, ttl_minutes=int(self.config.OTP_TTL_MINUTES)),
        }
        max_attempts = int(max(self.config.OTP_SEND_MAX_ATTEMPTS, 1))
        delay = float(max(self.config.OTP_SEND_RETRY_DELAY_SECONDS, 0))
        deadline = self._monotonic() + self.config.otp_send_timeout_seconds

        failure = DeliveryResult(status=DeliveryStatus.TIMEOUT, detail="email send budget exhausted")
        attempt = 0
        while attempt < max_attempts:
            remaining = deadline - self._monotonic()
            if remaining <= 0:
                return DeliveryResult(status=DeliveryStatus.TIMEOUT, attempts=attempt, detail=failure.detail)
            attempt += 1
            try:
                response = self.sender.send(message, timeout=remaining)
            except EmailDeliveryError as exc:
                failure = DeliveryResult(status=DeliveryStatus(exc.status), attempts=attempt, detail=str(exc))
                _LOG.warning("OTP email attempt %s/%s to %s failed (%s): %s", attempt, max_attempts, email, exc.status, exc)
                if isinstance(exc, (EmailAuthError, EmailNotConfigured)):
                    break
            except Exception as exc:
                failure = DeliveryResult(status=DeliveryStatus.TRANSPORT_ERROR, attempts=attempt, detail=repr(exc))
                _LOG.exception("OTP email attempt %s/%s to %s raised unexpectedly", attempt, max_attempts, email)
            else:
                status = DeliveryStatus.MOCKED if response.get("mocked") else DeliveryStatus.SENT
                return DeliveryResult(status=status, attempts=attempt, detail=response.get("id"))
            if attempt < max_attempts:
                self._sleep(delay)

        return failure

    def _log_delivery(self, email: str, code: str, result: DeliveryResult) -> None:
        if result.delivered:
            _LOG.info("OTP email to %s %s after %s attempt(s)", email, result.status.value, result.attempts)
            return
        if self._reveal_codes():
            _LOG.warning("OTP stored but email not delivered (%s): %s for %s", result.status.value, code, email)
        else:
            _LOG.warning("OTP stored but email not delivered (%s) for %s", result.status.value, email)
        if result.detail:
            _LOG.warning("OTP delivery detail for %s: %s", email, result.detail)

    # -- verification ---------------------------------------------------

    def verify(self, email: str, code: str) -> bool:
        key = normalize_email(email)
        submitted = str(code or "").strip()
        with self._lock:
            record = self._records.get(key)
            if record is None:
                raise OtpNotFound()
            if record.is_expired(self._clock()):
                del self._records[key]
                raise OtpExpired()
            if record.attempts >= self.max_attempts:
                del self._records[key]
                raise OtpTooManyAttempts()
            if not hmac.compare_digest(record.code.encode("utf-8"), submitted.encode("utf-8")):
                record.attempts += 1
                raise OtpInvalidCode()
            del self._records[key]
        _LOG.info("OTP verified for %s", key)
        return True

    # -- maintenance ----------------------------------------------------

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, record in self._records.items() if record.is_expired(now)]
            for key in expired:
                del self._records[key]
        if expired:
            _LOG.info("Purged %s expired OTP entr%s", len(expired), "y" if len(expired) == 1 else "ies")
        return len(expired)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            total = len(self._records)
            expired = sum(1 for record in self._records.values() if record.is_expired(now))
        return {
            "live": total - expired,
            "expired_pending_sweep": expired,
            "delivery_configured": self._delivery_configured,
            "provider": self.sender.provider,
        }

    def __contains__(self, email: str) -> bool:
        with self._lock:
            return normalize_email(email) in self._records

    def start(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_event = threading.Event()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            args=(self._stop_event, float(self.config.OTP_SWEEP_INTERVAL_SECONDS)),
            name="otp-sweeper",
            daemon=True,
        )
        self._sweeper.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout)
        self._sweeper = None

    @property
    def running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def _sweep_loop(self, stop_event: threading.Event, interval: float) -> None:
        while not stop_event.wait(max(interval, 0.01)):
            try:
                self.purge_expired()
            except Exception:
                _LOG.exception("OTP sweep failed")
