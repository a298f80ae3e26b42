"""
Tests for the hash-chained audit log.
"""
import json

from vaultseed.audit import GENESIS_HASH, AuditLog, build_common


def test_chain_links(tmp_path):
    log = AuditLog(tmp_path)
    h1 = log.append({"action": "a"})
    h2 = log.append({"action": "b"})
    lines = [json.loads(x) for x in log.log_path.read_text().splitlines()]
    assert lines[0]["prev_hash"] == GENESIS_HASH
    assert lines[0]["hash"] == h1
    assert lines[1]["prev_hash"] == h1
    assert lines[1]["hash"] == h2
    assert log.state_path.read_text().strip() == h2
    assert log.verify_chain()


def test_callers_cannot_inject_chain_fields(tmp_path):
    log = AuditLog(tmp_path)
    log.append({"action": "a", "prev_hash": "f" * 64, "hash": "e" * 64})
    line = json.loads(log.log_path.read_text())
    assert line["prev_hash"] == GENESIS_HASH
    assert log.verify_chain()


def test_tampering_detected(tmp_path):
    log = AuditLog(tmp_path)
    log.append({"action": "login", "result": "denied"})
    log.append({"action": "login", "result": "approved"})
    text = log.log_path.read_text()
    log.log_path.write_text(text.replace('"denied"', '"approved"', 1))
    assert not log.verify_chain()


def test_deletion_detected(tmp_path):
    log = AuditLog(tmp_path)
    for i in range(3):
        log.append({"action": "x", "i": i})
    lines = log.log_path.read_text().splitlines()
    log.log_path.write_text("\n".join(lines[1:]) + "\n")
    assert not log.verify_chain()


def test_disabled_writes_nothing(tmp_path):
    log = AuditLog(tmp_path / "audit", enabled=False)
    assert log.append({"action": "a"}) is None
    assert not (tmp_path / "audit").exists()
    assert log.verify_chain()


def test_build_common_hashes_sensitive_fields():
    e = build_common(action="login", address="0xabc", message="secret message", signature="0x1234", user_agent="u" * 500)
    assert "secret message" not in json.dumps(e)
    assert e["message_len"] == len("secret message")
    assert len(e["message_sha3_256"]) == 64
    assert e["signature_len"] == 6
    assert len(e["user_agent"]) == 200
