"""
vaultseed/auth.py

Login state machine per identity:

    Unprovisioned --(nonce request / login attempt)--> Provisioned(N0)
    Provisioned(Nk) --(verified login over Nk)--> Provisioned(Nk+1)

A login is accepted only if the client signed the login challenge for the
identity's *live* nonce. Unknown addresses are provisioned and rejected in the
same call: there was no challenge for them to have signed yet.
"""

import hmac
import logging
from typing import Optional, Tuple

from .challenges import login_challenge
from .errors import CredentialInvalid, MalformedInput, SignatureInvalid, UnknownIdentity
from .nonces import NonceStore
from .signatures import decode_signature, normalize_address, normalize_message, verify_signature
from .storage import Identity, Store
from .tokens import Credential, CredentialIssuer, nonce_hash

logger = logging.getLogger(__name__)

MAX_PUBLIC_KEY_LENGTH = 4096


class Authenticator:
    def __init__(
        self,
        store: Store,
        nonces: NonceStore,
        credentials: CredentialIssuer,
        service_name: str = "VaultSeed",
    ):
        self._store = store
        self._nonces = nonces
        self._credentials = credentials
        self.service_name = service_name

    def challenge(self, address: str, nonce: str) -> str:
        return login_challenge(self.service_name, address, nonce)

    def get_or_issue_nonce(self, address: str) -> str:
        """Idempotent; provisions unknown identities. No signature required."""
        return self._nonces.issue_or_get(normalize_address(address))

    def challenge_for(self, address: str) -> Tuple[str, str, str]:
        """(canonical address, live nonce, message the wallet should sign)"""
        address = normalize_address(address)
        nonce = self._nonces.issue_or_get(address)
        return address, nonce, self.challenge(address, nonce)

    def _check_signed_challenge(self, address: str, nonce: str, message: str, signature: bytes) -> None:
        expected = self.challenge(address, nonce)
        if normalize_message(message) != expected:
            raise SignatureInvalid("message is not the live login challenge")
        if not verify_signature(expected, signature, address):
            raise SignatureInvalid("signature does not recover to address")

    def login(self, address: str, message: str, signature) -> Credential:
        address = normalize_address(address)
        if not message:
            raise MalformedInput("message is required")
        sig = decode_signature(signature)

        with self._nonces.guard("identity", address):
            current = self._nonces.current(address)
            if current is None:
                self._nonces.issue_or_get(address)
                raise SignatureInvalid("no challenge has been issued to this address")

            self._check_signed_challenge(address, current, message, sig)
            new_nonce = self._nonces.rotate(address, current)

        logger.info("login ok for %s", address)
        return self._credentials.issue(address, new_nonce)

    def register_public_key(self, address: str, public_key: str, message: str, signature) -> Credential:
        """
        Attach a public key to an existing identity.

        Signed over the login challenge for the live nonce, which is then
        rotated so the same signature can't be replayed as a login. The caller
        gets a fresh credential because the old one was bound to that nonce.
        """
        address = normalize_address(address)
        public_key = (public_key or "").strip()
        if not public_key:
            raise MalformedInput("public_key is required")
        if len(public_key) > MAX_PUBLIC_KEY_LENGTH:
            raise MalformedInput("public_key too long")
        if not message:
            raise MalformedInput("message is required")
        sig = decode_signature(signature)

        with self._nonces.guard("identity", address):
            ident = self._store.get_identity(address)
            if ident is None:
                raise UnknownIdentity(address)

            self._check_signed_challenge(address, ident.nonce, message, sig)
            # a lost swap must leave the key untouched
            new_nonce = self._nonces.rotate(address, ident.nonce)
            self._store.set_public_key(address, public_key)

        logger.info("public key registered for %s", address)
        return self._credentials.issue(address, new_nonce)

    def authenticate_credential(self, token: Optional[str]) -> Identity:
        """Resolve a bearer credential to its identity or raise CredentialInvalid."""
        if not token:
            raise CredentialInvalid("missing credential")

        cred = self._credentials.verify(token)
        try:
            address = normalize_address(cred.address)
        except MalformedInput as e:
            raise CredentialInvalid("bad subject") from e

        ident = self._store.get_identity(address)
        if ident is None:
            raise CredentialInvalid("unknown subject")

        if not hmac.compare_digest(nonce_hash(ident.nonce).encode(), cred.nonce_hash.encode("utf-8")):
            raise CredentialInvalid("credential superseded by nonce rotation")

        return ident
