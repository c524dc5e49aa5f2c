"""
mgit_server/nostr.py

Login event verification (NIP-01 events, BIP-340 signatures).

The client proves key ownership by signing a Nostr event that references
an outstanding challenge:

  - tag   ["challenge", "<challenge id>"]   (NIP-42 style), or
  - content == "<challenge id>"

Server checks, in this order:
  1) structure: NostrEvent model + event id == sha256(canonical serialization)
  2) signature: Schnorr signature over the event id, by `pubkey`
  3) binding: the referenced challenge exists and is still pending

The verifier never mutates the store; AuthGateway marks the challenge
verified only after the session token has been minted.

The signature scheme is pluggable (SignatureScheme) so tests and future
event types can swap the curve/encoding without touching the flow.
"""

import hashlib
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

from coincurve import PublicKeyXOnly
from pydantic import ValidationError

from .errors import AlreadyVerified, ChallengeNotFound, InvalidSignature, MalformedAssertion
from .models import NostrEvent
from .storage import ChallengeStatus, ChallengeStore


# -----------------------------------------------------------------------------
# Signature schemes
# -----------------------------------------------------------------------------
class SignatureScheme(ABC):
    name: str = ""

    @abstractmethod
    def verify(self, pubkey: bytes, message: bytes, signature: bytes) -> bool:
        """Return True iff `signature` over `message` verifies under `pubkey`."""


class Bip340Schnorr(SignatureScheme):
    """Schnorr over secp256k1 with 32-byte x-only keys, as used by Nostr."""

    name = "BIP-340"

    def verify(self, pubkey: bytes, message: bytes, signature: bytes) -> bool:
        if len(pubkey) != 32 or len(signature) != 64:
            return False
        try:
            return bool(PublicKeyXOnly(pubkey).verify(signature, message))
        except (ValueError, TypeError):
            # not a point on the curve / malformed signature
            return False


# -----------------------------------------------------------------------------
# Canonical event serialization
# -----------------------------------------------------------------------------
def serialize_event(event: NostrEvent) -> bytes:
    """
    NIP-01 canonical form:
        [0, <pubkey>, <created_at>, <kind>, <tags>, <content>]
    compact separators, UTF-8, no ASCII escaping.
    """
    return json.dumps(
        [0, event.pubkey, event.created_at, event.kind, event.tags, event.content],
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def compute_event_id(event: NostrEvent) -> str:
    return hashlib.sha256(serialize_event(event)).hexdigest()


def referenced_challenge(event: NostrEvent) -> Optional[str]:
    tagged = event.tag_values("challenge")
    if tagged:
        return tagged[0]
    content = event.content.strip()
    return content or None


# -----------------------------------------------------------------------------
# Verifier
# -----------------------------------------------------------------------------
@dataclass
class Verification:
    pubkey: str
    challenge_id: str
    event_id: str


class EventVerifier:
    def __init__(
        self,
        store: ChallengeStore,
        scheme: Optional[SignatureScheme] = None,
        max_age_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.scheme = scheme or Bip340Schnorr()
        self.max_age_seconds = max_age_seconds
        self._clock = clock

    def parse(self, raw: Any) -> NostrEvent:
        if not isinstance(raw, dict):
            raise MalformedAssertion()
        try:
            event = NostrEvent.model_validate(raw)
        except ValidationError:
            raise MalformedAssertion()

        if compute_event_id(event) != event.id:
            raise MalformedAssertion()

        if self.max_age_seconds > 0:
            now = int(self._clock())
            if abs(now - event.created_at) > self.max_age_seconds:
                raise MalformedAssertion("Event timestamp outside allowed window")

        return event

    def check_signature(self, event: NostrEvent) -> None:
        ok = self.scheme.verify(
            bytes.fromhex(event.pubkey),
            bytes.fromhex(event.id),
            bytes.fromhex(event.sig),
        )
        if not ok:
            raise InvalidSignature()

    def verify(self, raw: Any) -> Verification:
        """
        Check a login event against the store without mutating it.

        The caller commits the login with store.mark_verified once the
        session token exists; that call is the atomic single-use gate.
        """
        event = self.parse(raw)
        self.check_signature(event)

        challenge_id = referenced_challenge(event)
        if not challenge_id:
            raise MalformedAssertion("Event does not reference a challenge")

        status = self.store.status(challenge_id)
        if status == ChallengeStatus.NOT_FOUND:
            raise ChallengeNotFound()
        if status == ChallengeStatus.VERIFIED:
            raise AlreadyVerified()

        return Verification(pubkey=event.pubkey, challenge_id=challenge_id, event_id=event.id)
