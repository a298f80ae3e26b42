# vaultseed/tokens.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Credential layer: what the server hands out after a verified login.
#
# Wire format:
#
#     vs1.<payload_b64url>.<signature_b64url>
#
# Where:
#   - payload is canonical JSON (sorted keys, no whitespace)
#   - signature = Ed25519.sign(payload_bytes) with the SERVER key
#
# Payload claims:
#   v    : 1
#   typ  : "cred"
#   sub  : lowercase address
#   nh   : base64(sha256(identity nonce at issue))
#   iat  : issued-at (epoch seconds)
#   exp  : expiry (epoch seconds)
#
# The server key is infrastructure authority, never a user identity key.
# "nh" binds the credential to the identity nonce current at issue time: once
# that nonce rotates (next login / key registration) the credential is dead
# even if it has not expired. The raw nonce never appears in the token.
#
# This module only does format + signature. Binding to live state is checked
# by the Authenticator.
# -----------------------------------------------------------------------------

import base64
import hashlib
import json
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .errors import CredentialInvalid

TOKEN_PREFIX = "vs1"
TOKEN_VERSION = 1
TOKEN_TYPE = "cred"


# -----------------------------------------------------------------------------
# Base64 helpers
# -----------------------------------------------------------------------------
def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 WITHOUT padding (header/cookie friendly)."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """Decode URL-safe Base64 with optional missing padding."""
    s = str(s).strip()
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s.encode("ascii"))


def nonce_hash(nonce: str) -> str:
    return base64.b64encode(hashlib.sha256(nonce.encode("utf-8")).digest()).decode("ascii")


# -----------------------------------------------------------------------------
# Key loading
# -----------------------------------------------------------------------------
def load_ed25519_private_key_from_b64(sk_b64: str) -> Ed25519PrivateKey:
    """
    Load a raw Ed25519 private key from Base64.

    The key MUST be exactly 32 bytes (raw seed). No PEM.
    """
    raw = base64.b64decode(sk_b64.strip(), validate=True)
    if len(raw) != 32:
        raise ValueError("Ed25519 raw private key must be 32 bytes (base64 of 32 bytes)")
    return Ed25519PrivateKey.from_private_bytes(raw)


def load_or_generate_server_key(sk_b64: str) -> Tuple[Ed25519PrivateKey, bool]:
    """Returns (key, ephemeral). An empty setting yields a fresh per-process key."""
    if sk_b64 and sk_b64.strip():
        return load_ed25519_private_key_from_b64(sk_b64), False
    return Ed25519PrivateKey.generate(), True


# -----------------------------------------------------------------------------
# Wire format
# -----------------------------------------------------------------------------
def _canonical_json(obj: dict) -> bytes:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")


def encode_token(payload_bytes: bytes, sig: bytes) -> str:
    return f"{TOKEN_PREFIX}." + b64url_encode(payload_bytes) + "." + b64url_encode(sig)


def decode_token(token: str) -> Tuple[bytes, bytes]:
    """Format validation only. Cryptographic verification happens separately."""
    parts = str(token).strip().split(".")
    if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
        raise CredentialInvalid("bad token format")
    try:
        return b64url_decode(parts[1]), b64url_decode(parts[2])
    except (ValueError, UnicodeEncodeError) as e:
        raise CredentialInvalid("bad token encoding") from e


def sign_token(sk: Ed25519PrivateKey, payload_obj: dict) -> str:
    payload_bytes = _canonical_json(payload_obj)
    return encode_token(payload_bytes, sk.sign(payload_bytes))


def verify_token(pk: Ed25519PublicKey, token: str) -> dict:
    """
    Verify signature and return the decoded payload.

    Does NOT enforce claims; see CredentialIssuer.verify.
    """
    payload_bytes, sig = decode_token(token)
    try:
        pk.verify(sig, payload_bytes)
    except InvalidSignature as e:
        raise CredentialInvalid("bad token signature") from e
    try:
        obj = json.loads(payload_bytes.decode("utf-8"))
    except ValueError as e:
        raise CredentialInvalid("bad token payload") from e
    if not isinstance(obj, dict):
        raise CredentialInvalid("bad token payload")
    return obj


# -----------------------------------------------------------------------------
# Credentials
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Credential:
    token: str
    address: str
    nonce_hash: str
    issued_at: int
    expires_at: int


class CredentialIssuer:
    def __init__(self, sk: Ed25519PrivateKey, ttl_seconds: int):
        self._sk = sk
        self._pk = sk.public_key()
        self.ttl_seconds = int(ttl_seconds)

    def issue(self, address: str, nonce: str, now: Optional[int] = None) -> Credential:
        iat = int(time.time()) if now is None else int(now)
        exp = iat + self.ttl_seconds
        nh = nonce_hash(nonce)
        token = sign_token(
            self._sk,
            {"v": TOKEN_VERSION, "typ": TOKEN_TYPE, "sub": address, "nh": nh, "iat": iat, "exp": exp},
        )
        return Credential(token=token, address=address, nonce_hash=nh, issued_at=iat, expires_at=exp)

    def verify(self, token: str, now: Optional[int] = None) -> Credential:
        """Signature + claims + expiry. Raises CredentialInvalid."""
        obj = verify_token(self._pk, token)

        if obj.get("v") != TOKEN_VERSION or obj.get("typ") != TOKEN_TYPE:
            raise CredentialInvalid("bad token claims")

        try:
            sub = str(obj["sub"])
            nh = str(obj["nh"])
            iat = int(obj["iat"])
            exp = int(obj["exp"])
        except (KeyError, TypeError, ValueError) as e:
            raise CredentialInvalid("bad token claims") from e

        now = int(time.time()) if now is None else int(now)
        if now >= exp:
            raise CredentialInvalid("token expired")

        return Credential(token=str(token).strip(), address=sub, nonce_hash=nh, issued_at=iat, expires_at=exp)
