"""
vaultseed/audit.py

Tamper-evident audit log of authorization decisions.

We append one JSON object per line (JSONL). Each event is hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

Properties:
- Any modification, deletion, or reordering of log lines breaks the chain.
- Chain state is persisted in <dir>/auth_audit.state
- Uses file locking (flock) to keep chain consistent under concurrency.

The audit log is where the *specific* failure reason lives (invalid_signature
vs nonce_mismatch ...). API callers only ever see a generic "unauthorized".
"""

from __future__ import annotations

import json
import hashlib
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

# Linux file lock (works in Docker/Linux)
import fcntl

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64  # 32 bytes hex


# -----------------------------------------------------------------------------
# Canonical JSON
# -----------------------------------------------------------------------------
def _canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """
    Produce deterministic JSON bytes for hashing and logging:
    - sorted keys
    - no whitespace
    - UTF-8
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


# -----------------------------------------------------------------------------
# Event builder
# -----------------------------------------------------------------------------
def build_common(
    *,
    action: str,
    address: Optional[str] = None,
    record_id: Optional[int] = None,
    message: Optional[str] = None,
    signature: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build common audit fields. Keep this "boring" and stable.

    Note:
    - We store hashes/lengths of the signed message and signature rather
      than the raw values, so logs stay small and cannot be replayed from.
    - Nonces are never logged.
    """
    out: Dict[str, Any] = {
        "ts": int(time.time()),
        "action": action,
    }

    if address:
        out["address"] = address
    if record_id is not None:
        out["record_id"] = record_id
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    if message is not None:
        b = message.encode("utf-8")
        out["message_len"] = len(b)
        out["message_sha3_256"] = _sha3_256_hex(b)

    if signature is not None:
        b = str(signature).encode("utf-8")
        out["signature_len"] = len(b)
        out["signature_sha3_256"] = _sha3_256_hex(b)

    return out


# -----------------------------------------------------------------------------
# Log
# -----------------------------------------------------------------------------
class AuditLog:
    def __init__(self, directory, enabled: bool = True):
        self.enabled = enabled
        self.dir = Path(directory)
        self.log_path = self.dir / "auth_audit.jsonl"
        self.state_path = self.dir / "auth_audit.state"
        self.lock_path = self.dir / "auth_audit.lock"

    def _read_last_hash_unlocked(self) -> str:
        """
        Read last hash from the state file. Caller must hold lock.
        Returns GENESIS_HASH if state missing/empty/corrupt.
        """
        if not self.state_path.exists():
            return GENESIS_HASH
        s = self.state_path.read_text(encoding="utf-8").strip()
        if len(s) != 64:
            return GENESIS_HASH
        try:
            bytes.fromhex(s)
        except ValueError:
            return GENESIS_HASH
        return s.lower()

    def append(self, event: Dict[str, Any]) -> Optional[str]:
        """
        Append one event with hash chaining. Returns the new chain head.

        The function:
        - locks the lock file
        - reads prev hash
        - computes next hash over canonical event (excluding hash fields)
        - writes JSONL line containing prev_hash + hash
        - updates state file

        Audit is telemetry: an I/O failure here is logged, never allowed to
        flip an authorization decision.
        """
        if not self.enabled:
            return None

        try:
            self.dir.mkdir(parents=True, exist_ok=True)

            # Dedicated lock file so it works even if log/state don't exist yet.
            with open(self.lock_path, "a+", encoding="utf-8") as lockf:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
                try:
                    prev_hash = self._read_last_hash_unlocked()

                    # Never allow callers to inject their own chain fields.
                    e = dict(event)
                    e.pop("prev_hash", None)
                    e.pop("hash", None)

                    next_hash = _sha3_256_hex(bytes.fromhex(prev_hash) + _canonical_json_bytes(e))

                    stored = dict(e)
                    stored["prev_hash"] = prev_hash
                    stored["hash"] = next_hash

                    with open(self.log_path, "ab") as f:
                        f.write(_canonical_json_bytes(stored) + b"\n")
                        f.flush()
                        os.fsync(f.fileno())

                    self.state_path.write_text(next_hash + "\n", encoding="utf-8")
                finally:
                    fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)
        except OSError:
            logger.exception("audit append failed (action=%s)", event.get("action"))
            return None

        return next_hash

    def verify_chain(self) -> bool:
        """
        Verify the hash chain of the log file.
        Returns True if valid (or empty), False otherwise.
        """
        if not self.log_path.exists():
            return True

        prev = GENESIS_HASH
        try:
            with open(self.log_path, "rb") as f:
                for raw_line in f:
                    raw_line = raw_line.strip()
                    if not raw_line:
                        continue
                    obj = json.loads(raw_line.decode("utf-8"))

                    if obj.get("prev_hash") != prev:
                        return False

                    # recompute from event excluding hash fields
                    obj2 = dict(obj)
                    obj2.pop("prev_hash", None)
                    line_hash = obj2.pop("hash", None)

                    expect = _sha3_256_hex(bytes.fromhex(prev) + _canonical_json_bytes(obj2))
                    if expect != line_hash:
                        return False

                    prev = line_hash
        except (OSError, ValueError):
            return False

        return True
