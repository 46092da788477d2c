"""
Keyed storage for outstanding verification codes.

One entry per (purpose, identity). Entries are immutable; issuing again
replaces the whole entry. `take_if_valid` is the only way to read a code and
it consumes the entry on success.
"""

from __future__ import annotations

import hmac
import json
import math
import threading
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

import redis


class Purpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class VerifyOutcome(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    MATCH = "match"


@dataclass(frozen=True)
class VerificationEntry:
    identity_key: str
    purpose: Purpose
    code: str
    issued_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


def secrets_equal(a: str, b: str) -> bool:
    # Constant-time compare
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class CodeStore:
    """Store interface. Implementations must make each call atomic."""

    def put(self, entry: VerificationEntry) -> None:
        raise NotImplementedError

    def take_if_valid(self, purpose: Purpose, identity_key: str, code: str, now: float) -> VerifyOutcome:
        raise NotImplementedError

    def sweep(self, now: float) -> int:
        raise NotImplementedError

    def __len__(self) -> int:
        raise NotImplementedError


class InMemoryCodeStore(CodeStore):
    """Process-local store. A single lock serializes every operation."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[Purpose, str], VerificationEntry] = {}

    def put(self, entry: VerificationEntry) -> None:
        with self._lock:
            self._entries[(entry.purpose, entry.identity_key)] = entry

    def take_if_valid(self, purpose: Purpose, identity_key: str, code: str, now: float) -> VerifyOutcome:
        key = (purpose, identity_key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return VerifyOutcome.NOT_FOUND
            if entry.is_expired(now):
                del self._entries[key]
                return VerifyOutcome.EXPIRED
            if not secrets_equal(entry.code, code):
                return VerifyOutcome.MISMATCH
            del self._entries[key]
            return VerifyOutcome.MATCH

    def get(self, purpose: Purpose, identity_key: str) -> Optional[VerificationEntry]:
        with self._lock:
            return self._entries.get((purpose, identity_key))

    def sweep(self, now: float) -> int:
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.is_expired(now)]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisCodeStore(CodeStore):
    """
    Redis-backed store. Values are JSON entries with a key TTL, so Redis
    evicts abandoned codes itself and `sweep` has nothing to do.
    """

    KEY_PREFIX = "otp"

    def __init__(self, client: "redis.Redis") -> None:
        self._r = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCodeStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def _key(self, purpose: Purpose, identity_key: str) -> str:
        return f"{self.KEY_PREFIX}:{Purpose(purpose).value}:{identity_key}"

    def put(self, entry: VerificationEntry) -> None:
        payload = asdict(entry)
        payload["purpose"] = entry.purpose.value
        ttl_seconds = max(1, math.ceil(entry.expires_at - entry.issued_at))
        self._r.set(self._key(entry.purpose, entry.identity_key), json.dumps(payload), ex=ttl_seconds)

    def take_if_valid(self, purpose: Purpose, identity_key: str, code: str, now: float) -> VerifyOutcome:
        key = self._key(purpose, identity_key)
        with self._r.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is None:
                        pipe.unwatch()
                        return VerifyOutcome.NOT_FOUND
                    data = json.loads(raw)
                    if now > float(data["expires_at"]):
                        outcome = VerifyOutcome.EXPIRED
                    elif not secrets_equal(str(data["code"]), code):
                        pipe.unwatch()
                        return VerifyOutcome.MISMATCH
                    else:
                        outcome = VerifyOutcome.MATCH
                    pipe.multi()
                    pipe.delete(key)
                    pipe.execute()
                    return outcome
                except redis.WatchError:
                    # Entry was replaced or consumed concurrently; re-read it.
                    continue

    def sweep(self, now: float) -> int:
        return 0

    def __len__(self) -> int:
        return sum(1 for _ in self._r.scan_iter(match=f"{self.KEY_PREFIX}:*"))


def build_code_store(redis_url: Optional[str] = None) -> CodeStore:
    if redis_url:
        return RedisCodeStore.from_url(redis_url)
    return InMemoryCodeStore()
