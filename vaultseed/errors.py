# vaultseed/errors.py
#
# Error taxonomy shared by the auth and content layers.
#
# HTTP mapping lives in main.py. The important property is that every
# Unauthorized subclass maps to the SAME response body, and every NotFound
# subclass maps to the SAME response body, so a caller cannot use the API as
# an oracle (e.g. "was the nonce right but the signature wrong?").


class VaultSeedError(Exception):
    """Base class for all domain errors."""

    reason = "error"


class MalformedInput(VaultSeedError):
    """Bad encoding, wrong length, missing field. Never mutates state."""

    reason = "malformed_input"


class NotFound(VaultSeedError):
    reason = "not_found"


class UnknownIdentity(NotFound):
    reason = "unknown_identity"


class UnknownRecord(NotFound):
    # Also raised when the record exists but belongs to another address.
    reason = "unknown_record"


class Unauthorized(VaultSeedError):
    reason = "unauthorized"


class SignatureInvalid(Unauthorized):
    reason = "invalid_signature"


class NonceMismatch(Unauthorized):
    reason = "nonce_mismatch"


class CredentialInvalid(Unauthorized):
    reason = "invalid_credential"


class StorageFailure(VaultSeedError):
    """The backing store failed. Fatal to the request, not to the process."""

    reason = "storage_failure"
