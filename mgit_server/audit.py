"""
mgit_server/audit.py

Tamper-evident login audit log.

One JSON object per line (JSONL), hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each stored line carries `prev_hash` and `hash`. Any edit, deletion or
reordering of lines breaks the chain. The last hash is persisted in
`login_audit.state`; appends are serialized with flock on a lock file so
several workers can share one directory.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64

LOG_NAME = "login_audit.jsonl"
STATE_NAME = "login_audit.state"
LOCK_NAME = "login_audit.lock"


def canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def chain_hash(prev_hash: str, event: Dict[str, Any]) -> str:
    return sha3_256_hex(bytes.fromhex(prev_hash) + canonical_json_bytes(event))


def build_common(
    *,
    action: str,
    result: str,
    challenge_id: Optional[str] = None,
    pubkey: Optional[str] = None,
    event_id: Optional[str] = None,
    reason: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """Common audit fields. Keep this boring and stable."""
    out: Dict[str, Any] = {
        "ts": int(time.time()),
        "action": action,
        "result": result,
    }
    if challenge_id:
        out["challenge_id"] = challenge_id
    if pubkey:
        out["pubkey"] = pubkey
    if event_id:
        out["event_id"] = event_id
    if reason:
        out["reason"] = reason
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]
    return out


class AuditLog:
    def __init__(self, directory: Path, enabled: bool = True):
        self.directory = Path(directory)
        self.enabled = enabled
        self.log_path = self.directory / LOG_NAME
        self.state_path = self.directory / STATE_NAME
        self.lock_path = self.directory / LOCK_NAME

    def _read_last_hash_unlocked(self) -> str:
        # caller holds the lock
        if not self.state_path.exists():
            return GENESIS_HASH
        s = self.state_path.read_text(encoding="utf-8").strip().lower()
        if len(s) != 64:
            return GENESIS_HASH
        try:
            bytes.fromhex(s)
        except ValueError:
            return GENESIS_HASH
        return s

    def append(self, event: Dict[str, Any]) -> Optional[str]:
        """
        Append one event with hash chaining. Returns the new chain hash,
        or None when auditing is disabled.
        """
        if not self.enabled:
            return None

        self.directory.mkdir(parents=True, exist_ok=True)

        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()

                # callers never get to inject chain fields
                e = dict(event)
                e.pop("prev_hash", None)
                e.pop("hash", None)

                next_hash = chain_hash(prev_hash, e)

                stored = dict(e)
                stored["prev_hash"] = prev_hash
                stored["hash"] = next_hash

                with open(self.log_path, "ab") as f:
                    f.write(canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(next_hash + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return next_hash

    def record(self, **fields: Any) -> None:
        """
        Fire-and-forget wrapper used on the request path: an unwritable audit
        directory is logged, it does not fail the login.
        """
        extra = fields.pop("extra", None) or {}
        try:
            self.append({**build_common(**fields), **extra})
        except OSError:
            logger.exception("audit.append_failed action=%s", fields.get("action"))


def verify_log_chain(path: Path) -> bool:
    """True if every line of `path` chains correctly from the genesis hash."""
    if not path.exists():
        return True

    prev = GENESIS_HASH
    try:
        with open(path, "rb") as f:
            for raw_line in f:
                raw_line = raw_line.strip()
                if not raw_line:
                    continue
                obj = json.loads(raw_line.decode("utf-8"))

                if obj.get("prev_hash") != prev:
                    return False

                body = dict(obj)
                body.pop("prev_hash", None)
                line_hash = body.pop("hash", None)

                if chain_hash(prev, body) != line_hash:
                    return False

                prev = line_hash
        return True
    except (OSError, ValueError):
        return False
