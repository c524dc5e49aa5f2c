import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator

_HEX64 = re.compile(r"^[0-9a-f]{64}$")
_HEX128 = re.compile(r"^[0-9a-f]{128}$")


class NostrEvent(BaseModel):
    """Signed NIP-01 event. Structural checks only; no crypto here."""

    model_config = ConfigDict(strict=True, extra="ignore")

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: List[List[str]]
    content: str
    sig: str

    @field_validator("id", "pubkey")
    @classmethod
    def hex64(cls, v: str) -> str:
        if not _HEX64.match(v):
            raise ValueError("must be 64 lowercase hex chars")
        return v

    @field_validator("sig")
    @classmethod
    def hex128(cls, v: str) -> str:
        if not _HEX128.match(v):
            raise ValueError("must be 128 lowercase hex chars")
        return v

    @field_validator("created_at", "kind")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    def tag_values(self, name: str) -> List[str]:
        return [t[1] for t in self.tags if len(t) >= 2 and t[0] == name]


class ChallengeResponse(BaseModel):
    challenge: str
    tag: str


class VerifyResponse(BaseModel):
    status: str
    pubkey: str
    metadata: Optional[Dict[str, Any]] = None
    token: str


class SessionClaims(BaseModel):
    typ: str
    sub: str
    iat: int
    exp: int

    @property
    def pubkey(self) -> str:
        return self.sub
