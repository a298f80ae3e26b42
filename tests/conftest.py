"""
Test fixtures for the VaultSeed auth server.
"""
import base64
import hashlib
from typing import Optional

import pytest
from ecdsa import SECP256k1, SigningKey, VerifyingKey
from ecdsa.util import sigdecode_string, sigencode_string
from fastapi.testclient import TestClient

from vaultseed.auth import Authenticator
from vaultseed.config import Settings
from vaultseed.content import ContentAccessController
from vaultseed.main import create_app
from vaultseed.nonces import NonceStore
from vaultseed.signatures import hash_personal_message, public_key_to_address
from vaultseed.storage import InMemoryStore
from vaultseed.tokens import CredentialIssuer, load_ed25519_private_key_from_b64

# fixed so token tests are reproducible
SERVER_SK_B64 = base64.b64encode(bytes(range(32))).decode("ascii")


class Wallet:
    """A secp256k1 key that signs like a browser wallet's personal_sign."""

    def __init__(self, secret: Optional[bytes] = None):
        if secret is None:
            self.sk = SigningKey.generate(curve=SECP256k1)
        else:
            self.sk = SigningKey.from_string(secret, curve=SECP256k1)
        self.public_key = self.sk.get_verifying_key().to_string()
        self.address = public_key_to_address(self.public_key)

    def sign_digest(self, digest: bytes, v_offset: int = 27) -> bytes:
        rs = self.sk.sign_digest_deterministic(digest, hashfunc=hashlib.sha256, sigencode=sigencode_string)
        candidates = VerifyingKey.from_public_key_recovery_with_digest(
            rs, digest, SECP256k1, hashfunc=hashlib.sha256, sigdecode=sigdecode_string, allow_truncate=True
        )
        parity = [c.to_string() for c in candidates].index(self.public_key)
        return rs + bytes([parity + v_offset])

    def sign(self, message: str, v_offset: int = 27) -> str:
        return "0x" + self.sign_digest(hash_personal_message(message), v_offset).hex()


@pytest.fixture
def wallet():
    return Wallet()


@pytest.fixture
def other_wallet():
    return Wallet()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def nonces(store):
    return NonceStore(store)


@pytest.fixture
def issuer():
    return CredentialIssuer(load_ed25519_private_key_from_b64(SERVER_SK_B64), ttl_seconds=3600)


@pytest.fixture
def authenticator(store, nonces, issuer):
    return Authenticator(store, nonces, issuer, service_name="VaultSeed")


@pytest.fixture
def controller(store, nonces):
    return ContentAccessController(store, nonces)


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        SERVICE_NAME="VaultSeed",
        SERVER_ED25519_SK_B64=SERVER_SK_B64,
        STORE_BACKEND="memory",
        AUDIT_ENABLED=True,
        AUDIT_DIR=str(tmp_path / "audit"),
        LOG_LEVEL="DEBUG",
    )


@pytest.fixture
def app(test_settings):
    return create_app(test_settings, store=InMemoryStore())


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def api_login(client, wallet: Wallet) -> str:
    """Fetch the challenge, sign it, log in; returns the bearer token."""
    ch = client.get("/api/auth/nonce", params={"address": wallet.address}).json()
    r = client.post(
        "/api/auth/login",
        json={"address": wallet.address, "message": ch["message"], "signature": wallet.sign(ch["message"])},
    )
    assert r.status_code == 200, r.text
    return r.json()["token"]


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
