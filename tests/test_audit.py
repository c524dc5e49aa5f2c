import json

from conftest import login_event
from mgit_server.audit import GENESIS_HASH, LOG_NAME, STATE_NAME, AuditLog, build_common, verify_log_chain
from verify_audit import EXIT_FAIL, EXIT_OK, EXIT_UNREADABLE, main, verify_audit


def read_lines(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def test_append_chains_from_genesis(tmp_path):
    log = AuditLog(tmp_path)
    h1 = log.append(build_common(action="challenge", result="issued", challenge_id="c1"))
    h2 = log.append(build_common(action="verify", result="approved", challenge_id="c1", pubkey="ab" * 32))

    lines = read_lines(tmp_path / LOG_NAME)
    assert lines[0]["prev_hash"] == GENESIS_HASH
    assert lines[0]["hash"] == h1
    assert lines[1]["prev_hash"] == h1
    assert lines[1]["hash"] == h2
    assert (tmp_path / STATE_NAME).read_text().strip() == h2
    assert verify_log_chain(tmp_path / LOG_NAME)


def test_callers_cannot_inject_chain_fields(tmp_path):
    log = AuditLog(tmp_path)
    log.append({"action": "x", "prev_hash": "ff" * 32, "hash": "ee" * 32})
    assert read_lines(tmp_path / LOG_NAME)[0]["prev_hash"] == GENESIS_HASH


def test_disabled_log_writes_nothing(tmp_path):
    log = AuditLog(tmp_path / "audit", enabled=False)
    assert log.append({"action": "x"}) is None
    assert not (tmp_path / "audit").exists()


def test_record_swallows_unwritable_directory(tmp_path, caplog):
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")
    AuditLog(blocker / "audit").record(action="challenge", result="issued")
    assert "audit.append_failed" in caplog.text


def test_tampering_is_detected(tmp_path):
    log = AuditLog(tmp_path)
    for i in range(3):
        log.append(build_common(action="challenge", result="issued", challenge_id=f"c{i}"))

    path = tmp_path / LOG_NAME
    lines = path.read_text(encoding="utf-8").splitlines()
    lines[1] = lines[1].replace('"c1"', '"c9"')
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    assert not verify_log_chain(path)
    res = verify_audit(path)
    assert not res.ok
    assert ":2:" in res.message


def test_deleted_line_is_detected(tmp_path):
    log = AuditLog(tmp_path)
    for i in range(3):
        log.append({"action": "a", "n": i})

    path = tmp_path / LOG_NAME
    lines = path.read_text(encoding="utf-8").splitlines()
    path.write_text("\n".join([lines[0], lines[2]]) + "\n", encoding="utf-8")

    assert not verify_log_chain(path)


def test_cli_exit_codes(tmp_path, capsys):
    log = AuditLog(tmp_path)
    log.append({"action": "a"})
    path = tmp_path / LOG_NAME

    assert main([str(path), "--state", str(tmp_path / STATE_NAME)]) == EXIT_OK
    assert "lines=1" in capsys.readouterr().out

    (tmp_path / STATE_NAME).write_text("00" * 32 + "\n")
    assert main([str(path), "--state", str(tmp_path / STATE_NAME)]) == EXIT_FAIL

    assert main([str(tmp_path / "missing.jsonl")]) == EXIT_UNREADABLE

    path.write_text("{not json\n")
    assert main([str(path)]) == EXIT_UNREADABLE


def test_login_flow_is_audited(client, gateway, audit_dir, alice, bob):
    challenge = client.post("/api/auth/nostr/challenge").json()["challenge"]
    bad = login_event(alice, challenge)
    bad["sig"] = bob.sign_schnorr(bytes.fromhex(bad["id"])).hex()
    client.post("/api/auth/nostr/verify", json={"signedEvent": bad})
    good = login_event(alice, challenge)
    client.post("/api/auth/nostr/verify", json={"signedEvent": good})

    entries = read_lines(audit_dir / LOG_NAME)
    assert [(e["action"], e["result"]) for e in entries] == [
        ("challenge", "issued"),
        ("verify", "denied"),
        ("verify", "approved"),
    ]
    assert entries[1]["reason"] == "Invalid signature"
    assert entries[2]["pubkey"] == good["pubkey"]
    assert entries[2]["event_id"] == good["id"]
    assert entries[2]["alg"] == "BIP-340"
    assert entries[2]["metadata"] is False
    assert entries[0]["request_ip"] == "testclient"

    assert verify_audit(audit_dir / LOG_NAME, audit_dir / STATE_NAME).ok
