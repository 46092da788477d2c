from __future__ import annotations

import os
import secrets
import time
from typing import Callable, Optional

from utils.logger import get_logger
from utils.otp_store import CodeStore, InMemoryCodeStore, Purpose, VerificationEntry, VerifyOutcome


OTP_EXP_MIN = int(os.getenv("OTP_EXP_MINUTES", "10"))
OTP_MIN = 100000
OTP_MAX = 999999

logger = get_logger(__name__)

Deliver = Callable[[str, str, Purpose], None]


class OtpError(Exception):
    pass


class OtpGenerationError(OtpError):
    """The secure random source failed; no code can be issued."""


class OtpDeliveryError(OtpError):
    """The code could not be dispatched; nothing was stored."""


def generate_otp() -> str:
    try:
        value = OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1)
    except (OSError, NotImplementedError) as e:
        raise OtpGenerationError(f"secure random source unavailable: {e}") from e
    return f"{value}"


def normalize_identity(identity: str) -> str:
    return str(identity or "").strip().casefold()


class CodeLifecycleManager:
    """
    Issues, consumes and expires verification codes.

    Storage is delegated to a CodeStore so the in-process map can be
    replaced by an external TTL store without touching the flow here.
    """

    def __init__(
        self,
        store: Optional[CodeStore] = None,
        *,
        ttl_seconds: int = OTP_EXP_MIN * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store if store is not None else InMemoryCodeStore()
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(
        self,
        identity: str,
        code: str,
        purpose: Purpose = Purpose.EMAIL_VERIFICATION,
    ) -> VerificationEntry:
        """Stores 'code' for 'identity', superseding any outstanding code."""
        now = self._clock()
        entry = VerificationEntry(
            identity_key=normalize_identity(identity),
            purpose=Purpose(purpose),
            code=str(code),
            issued_at=now,
            expires_at=now + self.ttl_seconds,
        )
        self.store.put(entry)
        logger.info("OTP issued for %s (%s)", entry.identity_key, entry.purpose.value)
        return entry

    def check(
        self,
        identity: str,
        code: str,
        purpose: Purpose = Purpose.EMAIL_VERIFICATION,
    ) -> VerifyOutcome:
        key = normalize_identity(identity)
        outcome = self.store.take_if_valid(Purpose(purpose), key, str(code), self._clock())
        logger.info("OTP check for %s (%s): %s", key, Purpose(purpose).value, outcome.value)
        return outcome

    def verify(
        self,
        identity: str,
        code: str,
        purpose: Purpose = Purpose.EMAIL_VERIFICATION,
    ) -> bool:
        return self.check(identity, code, purpose) is VerifyOutcome.MATCH

    def send(
        self,
        identity: str,
        deliver: Deliver,
        purpose: Purpose = Purpose.EMAIL_VERIFICATION,
    ) -> None:
        """
        Generates a code, hands it to 'deliver', and stores it only once
        delivery succeeded. A failed delivery leaves no new verifiable code.
        """
        key = normalize_identity(identity)
        code = generate_otp()
        try:
            deliver(key, code, Purpose(purpose))
        except Exception as e:
            logger.error("OTP delivery to %s failed: %s", key, e)
            raise OtpDeliveryError(str(e)) from e
        self.issue(key, code, purpose)

    def sweep(self) -> int:
        removed = self.store.sweep(self._clock())
        if removed:
            logger.info("OTP sweep removed %d expired entries", removed)
        return removed
