"""
MGit server pytest fixtures.

Provides:
- Deterministic Nostr test keypairs + NIP-01 event signing
- A controllable clock
- An AuthGateway wired to a temp audit dir
- A TestClient with gateway/repos overridden
- A fake `mgit` executable for repository endpoints
"""
import hashlib
import json
import os
import stat
import time
from pathlib import Path
from typing import Optional

# settings are read at import time; keep the app quiet and offline
os.environ.setdefault("AUDIT_ENABLED", "false")
os.environ.setdefault("METADATA_ENABLED", "false")
os.environ.setdefault("PUBLIC_DIR", "/nonexistent-public-dir")

import pytest
from coincurve import PrivateKey
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from fastapi.testclient import TestClient

from mgit_server.audit import AuditLog
from mgit_server.gateway import AuthGateway
from mgit_server.main import app, get_gateway, get_repos
from mgit_server.nostr import EventVerifier
from mgit_server.repos import MGitRepos
from mgit_server.storage import InMemoryChallengeStore
from mgit_server.tokens import SessionIssuer

TEST_SEED = os.environ.get("TEST_SEED", "mgit-nostr-test")


# =============================================================================
# Keys / events
# =============================================================================
def deterministic_key(index: int) -> PrivateKey:
    return PrivateKey(hashlib.sha256(f"{TEST_SEED}:{index}".encode()).digest())


def xonly_hex(sk: PrivateKey) -> str:
    return sk.public_key_xonly.format().hex()


def sign_event(
    sk: PrivateKey,
    content: str = "",
    *,
    tags: Optional[list] = None,
    kind: int = 22242,
    created_at: Optional[int] = None,
) -> dict:
    event = {
        "pubkey": xonly_hex(sk),
        "created_at": int(time.time()) if created_at is None else created_at,
        "kind": kind,
        "tags": tags or [],
        "content": content,
    }
    serialized = json.dumps(
        [0, event["pubkey"], event["created_at"], event["kind"], event["tags"], event["content"]],
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")
    event["id"] = hashlib.sha256(serialized).hexdigest()
    event["sig"] = sk.sign_schnorr(bytes.fromhex(event["id"])).hex()
    return event


def login_event(sk: PrivateKey, challenge: str, **kw) -> dict:
    return sign_event(sk, "", tags=[["challenge", challenge], ["relay", "wss://relay.example"]], **kw)


@pytest.fixture(scope="session")
def alice() -> PrivateKey:
    return deterministic_key(0)


@pytest.fixture(scope="session")
def bob() -> PrivateKey:
    return deterministic_key(1)


# =============================================================================
# Clock / components
# =============================================================================
class FakeClock:
    def __init__(self, now: float = 1_700_000_000):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryChallengeStore:
    return InMemoryChallengeStore(ttl_seconds=300, verified_retention_seconds=3600, max_entries=100)


@pytest.fixture
def issuer() -> SessionIssuer:
    return SessionIssuer(Ed25519PrivateKey.generate(), ttl_seconds=3600)


@pytest.fixture
def audit_dir(tmp_path: Path) -> Path:
    return tmp_path / "audit"


@pytest.fixture
def gateway(store, issuer, audit_dir) -> AuthGateway:
    return AuthGateway(
        store=store,
        verifier=EventVerifier(store),
        issuer=issuer,
        enricher=None,
        audit=AuditLog(audit_dir),
    )


# =============================================================================
# Repositories
# =============================================================================
FAKE_MGIT = r"""#!/bin/sh
cmd="$1"; shift
case "$cmd" in
  branch)
    printf '* main\n  feature/login\n' ;;
  log)
    case "$1" in
      --format=%ct) echo 1700000000 ;;
      -1) printf 'abc1234\037Alice\0371700000000\037Initial commit\n' ;;
      *) printf 'abc1234\037Alice\037alice@example.com\0371700000000\037Initial commit\n' ;;
    esac ;;
  show)
    if [ "$1" = "--no-color" ]; then
      printf 'abc1234ffff\037Alice\037alice@example.com\0371700000000\037Bob\037bob@example.com\0371700000100\037p1 p2\037Initial commit\n\ndiff --git a/README.md b/README.md\n+hello\n'
    else
      printf 'hello world\n'
    fi ;;
  *) exit 1 ;;
esac
"""


@pytest.fixture
def repos_root(tmp_path: Path) -> Path:
    root = tmp_path / "repos"
    repo = root / "alice" / "demo"
    (repo / ".mgit").mkdir(parents=True)
    (repo / ".mgit" / "HEAD").write_text("ref: refs/heads/main\n")
    (repo / ".mgit" / "nostr_mappings.json").write_text(
        json.dumps([{"GitHash": "abc1234", "MGitHash": "m-abc1234", "Pubkey": "ab" * 32}])
    )
    (repo / "README.md").write_text("# Demo repository\n\nbody\n")
    (repo / "LICENSE").write_text("MIT License\n")
    (repo / "src").mkdir()
    (repo / "src" / "main.py").write_text("print('hi')\n")
    # not an mgit repo, must be skipped
    (root / "alice" / "plain").mkdir(parents=True)
    return root


@pytest.fixture
def fake_mgit(tmp_path: Path) -> str:
    path = tmp_path / "bin" / "mgit"
    path.parent.mkdir()
    path.write_text(FAKE_MGIT)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def repos(repos_root, fake_mgit) -> MGitRepos:
    return MGitRepos(repos_root, mgit_bin=fake_mgit)


# =============================================================================
# HTTP client
# =============================================================================
@pytest.fixture
def client(gateway, repos):
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_repos] = lambda: repos
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
