#!/usr/bin/env python3
"""
verify_audit.py: verify the hash-chained login audit log (JSONL).

Checks every line links to the previous one via prev_hash/hash
(see mgit_server/audit.py for the chain definition) and, optionally, that
the state file holds the last hash of the log.

Exit codes:
- 0: OK
- 1: Verification failed
- 2: Log missing or unreadable
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

from mgit_server.audit import GENESIS_HASH, chain_hash

EXIT_OK = 0
EXIT_FAIL = 1
EXIT_UNREADABLE = 2


@dataclass
class VerifyResult:
    ok: bool
    lines: int
    last_hash: Optional[str]
    message: str


def _is_hex64(s: Any) -> bool:
    if not isinstance(s, str) or len(s) != 64:
        return False
    try:
        int(s, 16)
        return True
    except ValueError:
        return False


def _iter_jsonl(path: Path) -> Iterable[Tuple[int, Dict[str, Any]]]:
    """Yields (line number starting at 1, parsed object)."""
    with path.open("r", encoding="utf-8") as f:
        for idx, raw in enumerate(f, start=1):
            line = raw.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except ValueError as e:
                raise ValueError(f"{path}:{idx}: invalid JSON: {e}") from e
            if not isinstance(obj, dict):
                raise ValueError(f"{path}:{idx}: JSON root must be an object")
            yield idx, obj


def verify_audit(jsonl_path: Path, state_path: Optional[Path] = None) -> VerifyResult:
    lines = 0
    prev = GENESIS_HASH
    last_hash: Optional[str] = None

    def fail(msg: str) -> VerifyResult:
        return VerifyResult(False, lines, last_hash, msg)

    for lineno, event in _iter_jsonl(jsonl_path):
        lines += 1

        claimed_prev = event.get("prev_hash")
        claimed_hash = event.get("hash")
        if not _is_hex64(claimed_prev) or not _is_hex64(claimed_hash):
            return fail(f"{jsonl_path}:{lineno}: prev_hash/hash missing or not 64-hex")

        if claimed_prev != prev:
            return fail(f"{jsonl_path}:{lineno}: prev_hash mismatch: expected {prev} got {claimed_prev}")

        body = dict(event)
        body.pop("prev_hash")
        body.pop("hash")
        recomputed = chain_hash(prev, body)
        if claimed_hash != recomputed:
            return fail(f"{jsonl_path}:{lineno}: hash mismatch: expected {recomputed} got {claimed_hash}")

        prev = last_hash = claimed_hash

    if state_path is not None:
        if not state_path.exists():
            return fail(f"State file not found: {state_path}")
        state_val = state_path.read_text(encoding="utf-8").strip()
        if state_val != (last_hash or ""):
            return fail(f"State mismatch: state={state_val} log_last={last_hash}")

    return VerifyResult(True, lines, last_hash, "OK")


def main(argv: Optional[list] = None) -> int:
    p = argparse.ArgumentParser(description="Verify MGit login audit log integrity (hash-chained JSONL).")
    p.add_argument("log", type=Path, help="Path to audit JSONL file (e.g. audit/login_audit.jsonl)")
    p.add_argument(
        "--state",
        type=Path,
        default=None,
        help="Optional state file containing the last hash (e.g. audit/login_audit.state)",
    )
    args = p.parse_args(argv)

    if not args.log.exists():
        print(f"FAIL: log not found: {args.log}", file=sys.stderr)
        return EXIT_UNREADABLE

    try:
        res = verify_audit(args.log, state_path=args.state)
    except (OSError, ValueError) as e:
        print(f"FAIL: {e}", file=sys.stderr)
        return EXIT_UNREADABLE

    if res.ok:
        print("OK")
        print(f"lines={res.lines}")
        if res.last_hash:
            print(f"last_hash={res.last_hash}")
        return EXIT_OK

    print("FAIL", file=sys.stderr)
    print(res.message, file=sys.stderr)
    print(f"lines={res.lines}", file=sys.stderr)
    return EXIT_FAIL


if __name__ == "__main__":
    raise SystemExit(main())
