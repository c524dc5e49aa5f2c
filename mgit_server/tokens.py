# mgit_server/tokens.py
#
# -----------------------------------------------------------------------------
# Session tokens
# -----------------------------------------------------------------------------
# Bearer credential handed out after a successful Nostr login.
#
#   - signed by ONE server Ed25519 key (infrastructure secret, never a user key)
#   - self-contained: validation needs no store
#   - invalidated only by expiry
#
# Wire format (JWT-like, three dot-separated parts):
#
#     v1.<payload_b64url>.<signature_b64url>
#
# payload = canonical JSON (sorted keys, no whitespace):
#     {"exp": <int>, "iat": <int>, "sub": "<pubkey hex>", "typ": "session"}
# signature = Ed25519.sign(payload_bytes)
# -----------------------------------------------------------------------------

import base64
import binascii
import json
import logging
import time
from typing import Callable, Tuple

from cryptography.exceptions import InvalidSignature as BadEd25519Signature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from pydantic import ValidationError

from .errors import ExpiredToken, InvalidToken
from .models import SessionClaims

logger = logging.getLogger(__name__)

TOKEN_VERSION = "v1"
TOKEN_TYPE = "session"


def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 without padding."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """URL-safe Base64, missing padding restored."""
    s = str(s).strip()
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s.encode("ascii"))


def load_ed25519_private_key_from_b64(sk_b64: str) -> Ed25519PrivateKey:
    """
    Load a raw Ed25519 private key from Base64.

    The key MUST be exactly 32 bytes (raw seed). No PEM, env var friendly.
    """
    raw = base64.b64decode(sk_b64.strip(), validate=True)
    if len(raw) != 32:
        raise ValueError("Ed25519 raw private key must be 32 bytes (base64 of 32 bytes)")
    return Ed25519PrivateKey.from_private_bytes(raw)


def signing_key_from_settings(sk_b64: str) -> Ed25519PrivateKey:
    if sk_b64.strip():
        return load_ed25519_private_key_from_b64(sk_b64)
    logger.warning(
        "tokens.ephemeral_key SESSION_SIGNING_KEY_B64 not set; "
        "sessions will not survive a restart"
    )
    return Ed25519PrivateKey.generate()


def encode_token(payload_bytes: bytes, sig: bytes) -> str:
    return f"{TOKEN_VERSION}." + b64url_encode(payload_bytes) + "." + b64url_encode(sig)


def decode_token(token: str) -> Tuple[bytes, bytes]:
    """Format validation only; the signature is checked separately."""
    parts = str(token).split(".")
    if len(parts) != 3 or parts[0] != TOKEN_VERSION:
        raise ValueError("bad token format")
    try:
        return b64url_decode(parts[1]), b64url_decode(parts[2])
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError("bad token encoding") from e


def sign_token(sk: Ed25519PrivateKey, payload_obj: dict) -> str:
    payload_bytes = json.dumps(
        payload_obj,
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
    return encode_token(payload_bytes, sk.sign(payload_bytes))


def verify_token(pk: Ed25519PublicKey, token: str) -> dict:
    """
    Verify signature and return the decoded payload.

    Does NOT enforce claims (typ, expiry); SessionIssuer.validate does.
    Raises ValueError / cryptography InvalidSignature.
    """
    payload_bytes, sig = decode_token(token)
    pk.verify(sig, payload_bytes)
    return json.loads(payload_bytes.decode("utf-8"))


class SessionIssuer:
    def __init__(
        self,
        sk: Ed25519PrivateKey,
        ttl_seconds: int = 60 * 60 * 24,
        clock: Callable[[], float] = time.time,
    ):
        self._sk = sk
        self._pk = sk.public_key()
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(self, pubkey: str) -> str:
        now = int(self._clock())
        return sign_token(
            self._sk,
            {"typ": TOKEN_TYPE, "sub": pubkey, "iat": now, "exp": now + self.ttl_seconds},
        )

    def validate(self, token: str) -> SessionClaims:
        try:
            obj = verify_token(self._pk, token)
            claims = SessionClaims.model_validate(obj)
        except (ValueError, BadEd25519Signature, ValidationError):
            # json.JSONDecodeError and UnicodeDecodeError are ValueErrors
            raise InvalidToken()

        if claims.typ != TOKEN_TYPE or not claims.sub:
            raise InvalidToken()

        if int(self._clock()) >= claims.exp:
            raise ExpiredToken()

        return claims
