"""
vaultseed/content.py

Gatekeeper for encrypted records.

The server stores ciphertext, the wrapped content key and the IV, all opaque.
It never decrypts anything: a successful authorize_decrypt() only *releases*
the envelope to a caller who proved key possession over the record's live
nonce. Plaintext exists only on the client.

Records owned by someone else are reported exactly like records that do not
exist (UnknownRecord), so ids can't be probed for existence.
"""

import hmac
import logging
from dataclasses import dataclass
from typing import List

from .challenges import decrypt_challenge
from .errors import MalformedInput, NonceMismatch, SignatureInvalid, UnknownRecord
from .nonces import NonceStore, generate_nonce
from .signatures import decode_signature, normalize_address, normalize_message, verify_signature
from .storage import EncryptedRecord, Store

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 100
# SQLite INTEGER range; anything larger can never name a stored record
MAX_RECORD_ID = 2**63 - 1


@dataclass(frozen=True)
class CiphertextEnvelope:
    record_id: int
    title: str
    ciphertext: str
    wrapped_key: str
    iv: str
    created_at: int


def _record_id(value) -> int:
    if isinstance(value, bool):
        raise MalformedInput("record id must be an integer")
    try:
        rid = int(value)
    except (TypeError, ValueError) as e:
        raise MalformedInput("record id must be an integer") from e
    if rid < 1:
        raise MalformedInput("record id must be positive")
    if rid > MAX_RECORD_ID:
        raise UnknownRecord(str(rid))
    return rid


class ContentAccessController:
    def __init__(self, store: Store, nonces: NonceStore):
        self._store = store
        self._nonces = nonces

    def _owned(self, record_id: int, address: str) -> EncryptedRecord:
        rec = self._store.get_record(record_id)
        if rec is None or rec.owner != address:
            raise UnknownRecord(str(record_id))
        return rec

    def submit_record(self, owner: str, title: str, ciphertext: str, wrapped_key: str, iv: str) -> EncryptedRecord:
        owner = normalize_address(owner)
        title = (title or "").strip()
        if not title:
            raise MalformedInput("title is required")
        if len(title) > MAX_TITLE_LENGTH:
            raise MalformedInput(f"title must be at most {MAX_TITLE_LENGTH} characters")
        for name, value in (("encrypted_data", ciphertext), ("encrypted_key", wrapped_key), ("iv", iv)):
            if not value:
                raise MalformedInput(f"{name} is required")

        rec = self._store.create_record(owner, title, ciphertext, wrapped_key, iv, generate_nonce())
        logger.info("record %s created for %s", rec.id, owner)
        return rec

    def list_records(self, owner: str) -> List[EncryptedRecord]:
        return self._store.list_records(normalize_address(owner))

    def record_detail(self, record_id, address: str) -> EncryptedRecord:
        return self._owned(_record_id(record_id), normalize_address(address))

    def get_record_nonce(self, record_id, address: str) -> str:
        """Not privileged: a nonce reveals nothing about plaintext or keys."""
        return self.record_detail(record_id, address).nonce

    def authorize_decrypt(self, record_id, address: str, message: str, nonce: str, signature) -> CiphertextEnvelope:
        record_id = _record_id(record_id)
        address = normalize_address(address)
        if not message:
            raise MalformedInput("message is required")
        if not nonce:
            raise MalformedInput("nonce is required")
        sig = decode_signature(signature)

        with self._nonces.guard("record", record_id):
            rec = self._owned(record_id, address)

            expected = decrypt_challenge(record_id, nonce)
            if normalize_message(message) != expected:
                raise SignatureInvalid("message is not the decrypt challenge")
            if not verify_signature(expected, sig, address):
                raise SignatureInvalid("signature does not recover to address")

            if not hmac.compare_digest(str(nonce).encode("utf-8"), rec.nonce.encode("utf-8")):
                raise NonceMismatch(f"stale nonce for record {record_id}")

            self._nonces.rotate_record(record_id, rec.nonce)

        logger.info("decrypt released record %s to %s", record_id, address)
        return CiphertextEnvelope(
            record_id=rec.id,
            title=rec.title,
            ciphertext=rec.ciphertext,
            wrapped_key=rec.wrapped_key,
            iv=rec.iv,
            created_at=rec.created_at,
        )
