# mgit_server/storage.py
import secrets
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Optional

from .errors import AlreadyVerified, ChallengeNotFound


def challenge_token(nbytes: int = 32) -> str:
    # 256 bits, hex so it can be signed over verbatim as event content
    return secrets.token_hex(nbytes)


class ChallengeKind(str, Enum):
    NOSTR = "nostr"


class ChallengeStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    NOT_FOUND = "notFound"


@dataclass
class Challenge:
    id: str
    created_at: int
    kind: str = ChallengeKind.NOSTR.value
    verified: bool = False
    verified_at: Optional[int] = None
    pubkey: Optional[str] = None
    # session for the device polling this challenge; handed out once
    session_token: Optional[str] = field(default=None, repr=False)

    @property
    def status(self) -> ChallengeStatus:
        return ChallengeStatus.VERIFIED if self.verified else ChallengeStatus.PENDING

    def public_view(self, info_key: str = "userInfo"):
        return {
            "status": self.status.value,
            info_key: {"pubkey": self.pubkey} if self.verified else None,
        }


class ChallengeStore(ABC):
    """
    Outstanding login challenges.

    Implementations must make mark_verified atomic per challenge id: of two
    concurrent calls exactly one succeeds, the other raises AlreadyVerified.
    """

    @abstractmethod
    def create(self, kind: str = ChallengeKind.NOSTR.value) -> Challenge: ...

    @abstractmethod
    def get(self, challenge_id: str) -> Challenge: ...

    @abstractmethod
    def mark_verified(self, challenge_id: str, pubkey: str, session_token: Optional[str] = None) -> Challenge: ...

    @abstractmethod
    def claim_session_token(self, challenge_id: str) -> Optional[str]: ...

    @abstractmethod
    def status(self, challenge_id: str) -> ChallengeStatus: ...

    @abstractmethod
    def evict_expired(self, now: Optional[int] = None) -> int: ...


class InMemoryChallengeStore(ChallengeStore):
    """
    Process-local challenge store.

    Entries expire `ttl_seconds` after creation while pending and
    `verified_retention_seconds` after verification. At most `max_entries`
    are kept; the oldest are dropped first when the bound is hit.

    Not shared across uvicorn workers. Put a shared backend behind
    ChallengeStore for multi-worker deployments.
    """

    def __init__(
        self,
        ttl_seconds: int = 300,
        verified_retention_seconds: int = 3600,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.verified_retention_seconds = verified_retention_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        # insertion order == creation order, used for capacity eviction
        self._challenges: "OrderedDict[str, Challenge]" = OrderedDict()

    def _now(self) -> int:
        return int(self._clock())

    def _is_expired(self, ch: Challenge, now: int) -> bool:
        if ch.verified:
            return now >= (ch.verified_at or ch.created_at) + self.verified_retention_seconds
        return now >= ch.created_at + self.ttl_seconds

    def _lookup_unlocked(self, challenge_id: str, now: int) -> Optional[Challenge]:
        ch = self._challenges.get(challenge_id)
        if ch is None:
            return None
        if self._is_expired(ch, now):
            del self._challenges[challenge_id]
            return None
        return ch

    def _evict_unlocked(self, now: int) -> int:
        dead = [k for k, ch in self._challenges.items() if self._is_expired(ch, now)]
        for k in dead:
            del self._challenges[k]
        return len(dead)

    def _trim_front_unlocked(self, now: int) -> None:
        # cheap per-create sweep: oldest entries first, stop at the first live one
        while self._challenges:
            ch = next(iter(self._challenges.values()))
            if not self._is_expired(ch, now):
                break
            self._challenges.popitem(last=False)

    def create(self, kind: str = ChallengeKind.NOSTR.value) -> Challenge:
        with self._lock:
            now = self._now()
            self._trim_front_unlocked(now)
            while len(self._challenges) >= self.max_entries:
                self._challenges.popitem(last=False)

            challenge_id = challenge_token()
            while challenge_id in self._challenges:
                challenge_id = challenge_token()

            ch = Challenge(id=challenge_id, created_at=now, kind=kind)
            self._challenges[challenge_id] = ch
            return replace(ch)

    def get(self, challenge_id: str) -> Challenge:
        with self._lock:
            ch = self._lookup_unlocked(challenge_id, self._now())
            if ch is None:
                raise ChallengeNotFound()
            # callers get a snapshot; only this class mutates records
            return replace(ch)

    def mark_verified(self, challenge_id: str, pubkey: str, session_token: Optional[str] = None) -> Challenge:
        with self._lock:
            now = self._now()
            ch = self._lookup_unlocked(challenge_id, now)
            if ch is None:
                raise ChallengeNotFound()
            if ch.verified:
                raise AlreadyVerified()
            ch.verified = True
            ch.verified_at = now
            ch.pubkey = pubkey
            ch.session_token = session_token
            return replace(ch)

    def claim_session_token(self, challenge_id: str) -> Optional[str]:
        """Pop the stored session token; None if absent or already claimed."""
        with self._lock:
            ch = self._lookup_unlocked(challenge_id, self._now())
            if ch is None or not ch.verified:
                return None
            token, ch.session_token = ch.session_token, None
            return token

    def status(self, challenge_id: str) -> ChallengeStatus:
        """Cheap poll projection; used for the pending check before a login is committed."""
        with self._lock:
            ch = self._lookup_unlocked(challenge_id, self._now())
            if ch is None:
                return ChallengeStatus.NOT_FOUND
            return ch.status

    def evict_expired(self, now: Optional[int] = None) -> int:
        with self._lock:
            return self._evict_unlocked(self._now() if now is None else now)

    def __len__(self) -> int:
        with self._lock:
            return len(self._challenges)
