"""
vaultseed/signatures.py

Ethereum personal-message signature verification (secp256k1 + keccak256).

Key points:
- The wallet signs:
    keccak256( "\\x19Ethereum Signed Message:\\n" + len(message) + message )
  This framing is the wire contract with the wallet. Verifying against any other
  framing of the same message always fails, which is what stops a key from being
  tricked into signing raw data that happens to look like a challenge.
- The client sends:
    - the message (possibly quoted by the signing UI)
    - a 65-byte signature r||s||v, hex encoded, with or without "0x"
    - the address it claims to be
- Server verifies by recovering the public key from (hash, r, s, parity),
  deriving the address (last 20 bytes of keccak256(pubkey_xy)) and comparing
  case-insensitively.

verify_signature() never raises: every decode/recovery failure is False.
"""

import hashlib
import re
from dataclasses import dataclass
from typing import Optional

from Crypto.Hash import keccak
from ecdsa import SECP256k1, VerifyingKey
from ecdsa.util import sigdecode_string

from .errors import MalformedInput


SIGNATURE_LENGTH = 65
PERSONAL_MESSAGE_PREFIX = b"\x19Ethereum Signed Message:\n"

_ADDRESS_RE = re.compile(r"^[0-9a-fA-F]{40}$")
_HEX_RE = re.compile(r"^[0-9a-fA-F]*$")


# -----------------------------------------------------------------------------
# Hashing
# -----------------------------------------------------------------------------
def keccak256(data: bytes) -> bytes:
    # Ethereum keccak, NOT hashlib.sha3_256 (different padding)
    return keccak.new(digest_bits=256, data=bytes(data)).digest()


def hash_personal_message(message: str) -> bytes:
    """
    Hash a message exactly as a wallet does for personal_sign.

    The declared length is the UTF-8 byte length, not the character count.
    """
    msg = message.encode("utf-8")
    return keccak256(PERSONAL_MESSAGE_PREFIX + str(len(msg)).encode("ascii") + msg)


def normalize_message(message: str) -> str:
    """
    Undo what signing UIs tend to do to a message before it reaches us:
      - surrounding whitespace
      - ONE pair of enclosing double quotes
    """
    m = str(message).strip()
    if len(m) >= 2 and m[0] == '"' and m[-1] == '"':
        m = m[1:-1]
    return m.strip()


# -----------------------------------------------------------------------------
# Addresses
# -----------------------------------------------------------------------------
def normalize_address(address: str) -> str:
    """
    Canonical form used everywhere server-side: lowercase, 0x-prefixed.

    Raises MalformedInput for anything that is not 20 bytes of hex.
    """
    a = str(address or "").strip()
    if a[:2].lower() == "0x":
        a = a[2:]
    if not _ADDRESS_RE.match(a):
        raise MalformedInput("address must be 20 bytes of hex")
    return "0x" + a.lower()


def public_key_to_address(pubkey_xy: bytes) -> str:
    """Address from a raw 64-byte uncompressed public key (x || y, no 0x04 prefix)."""
    if len(pubkey_xy) != 64:
        raise MalformedInput("public key must be 64 bytes (x||y)")
    return "0x" + keccak256(pubkey_xy)[-20:].hex()


def to_checksum_address(address: str) -> str:
    """EIP-55 mixed-case rendering. Display/logging only; never used for comparison."""
    a = normalize_address(address)[2:]
    h = keccak256(a.encode("ascii")).hex()
    return "0x" + "".join(c.upper() if int(h[i], 16) >= 8 else c for i, c in enumerate(a))


# -----------------------------------------------------------------------------
# Signature decoding
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Parity:
    """
    Tagged recovery-byte normalization result.

    recognized=False means the byte matched no known convention; callers must
    fail closed rather than guess.
    """

    recognized: bool
    value: Optional[int] = None


def normalize_parity(v: int) -> Parity:
    """
    Map the recovery byte onto {0, 1}.

      27 / 28  -> legacy convention
      0 / 1    -> canonical
      >= 35    -> EIP-155 chain-id encoding: v = chain_id*2 + 35 + parity
    """
    if v in (0, 1):
        return Parity(True, v)
    if v in (27, 28):
        return Parity(True, v - 27)
    if v >= 35:
        return Parity(True, (v - 35) % 2)
    return Parity(False)


def decode_signature(signature) -> bytes:
    """
    Decode a signature to exactly 65 raw bytes.

    Accepts raw bytes or a hex string with optional 0x prefix.
    """
    if isinstance(signature, (bytes, bytearray)):
        raw = bytes(signature)
    else:
        s = str(signature or "").strip()
        if s[:2].lower() == "0x":
            s = s[2:]
        if len(s) % 2 or not _HEX_RE.match(s):
            raise MalformedInput("signature must be hex")
        raw = bytes.fromhex(s)

    if len(raw) != SIGNATURE_LENGTH:
        raise MalformedInput(f"signature must be {SIGNATURE_LENGTH} bytes, got {len(raw)}")
    return raw


# -----------------------------------------------------------------------------
# Recovery
# -----------------------------------------------------------------------------
def recover_public_key(digest: bytes, signature) -> bytes:
    """
    Recover the signer's raw 64-byte public key from a 32-byte digest.

    ecdsa returns both candidate keys for r: index 0 is the even-y R point,
    index 1 the odd-y one, which lines up with the normalized parity.

    Raises MalformedInput on undecodable input or an unrecognized parity byte.
    """
    raw = decode_signature(signature)
    parity = normalize_parity(raw[64])
    if not parity.recognized:
        raise MalformedInput(f"unrecognized recovery byte: {raw[64]}")

    candidates = VerifyingKey.from_public_key_recovery_with_digest(
        raw[:64],
        digest,
        SECP256k1,
        hashfunc=hashlib.sha256,
        sigdecode=sigdecode_string,
        allow_truncate=True,
    )
    return candidates[parity.value].to_string()


def recover_address(digest: bytes, signature) -> str:
    return public_key_to_address(recover_public_key(digest, signature))


def verify_signature(message: str, signature, claimed_address: str) -> bool:
    """
    True iff `signature` is a personal_sign signature by `claimed_address`
    over normalize_message(message).

    Deterministic and stateless. Never raises.
    """
    try:
        expected = normalize_address(claimed_address)
        digest = hash_personal_message(normalize_message(message))
        return recover_address(digest, signature) == expected
    except Exception:
        return False
