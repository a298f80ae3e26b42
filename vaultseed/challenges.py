# vaultseed/challenges.py
#
# Canonical challenge strings. Wallet and server must build these byte-for-byte
# identically; any change here invalidates every outstanding challenge.
#
# Addresses are always rendered in canonical lowercase form.


def login_challenge(service_name: str, address: str, nonce: str) -> str:
    return f"Sign this message to authenticate with {service_name}. Address: {address}, Nonce: {nonce}"


def decrypt_challenge(record_id: int, nonce: str) -> str:
    return f"Sign this message to decrypt content. Content ID: {record_id}, Nonce: {nonce}"
