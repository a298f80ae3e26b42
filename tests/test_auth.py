"""
Tests for the login / key registration state machine.
"""
import pytest

from vaultseed.auth import Authenticator
from vaultseed.challenges import login_challenge
from vaultseed.errors import (
    CredentialInvalid,
    MalformedInput,
    NonceMismatch,
    SignatureInvalid,
    Unauthorized,
    UnknownIdentity,
)
from vaultseed.nonces import NonceStore
from vaultseed.storage import InMemoryStore


def _signed_login(authenticator, wallet, address=None):
    _, nonce, message = authenticator.challenge_for(wallet.address)
    return authenticator.login(address or wallet.address, message, wallet.sign(message)), nonce


class TestLogin:
    def test_known_nonce_scenario(self, authenticator, store, wallet):
        n0 = "deadbeef" * 8
        store.create_identity(wallet.address, n0)
        message = f"Sign this message to authenticate with VaultSeed. Address: {wallet.address}, Nonce: {n0}"
        sig = wallet.sign(message)

        cred = authenticator.login(wallet.address, message, sig)

        n1 = store.get_identity(wallet.address).nonce
        assert n1 != n0
        assert cred.address == wallet.address
        with pytest.raises(Unauthorized):
            authenticator.login(wallet.address, message, sig)
        assert store.get_identity(wallet.address).nonce == n1

    def test_unknown_identity_is_provisioned_but_rejected(self, authenticator, store, wallet):
        message = login_challenge("VaultSeed", wallet.address, "whatever")
        with pytest.raises(SignatureInvalid):
            authenticator.login(wallet.address, message, wallet.sign(message))
        assert store.get_identity(wallet.address) is not None

    def test_arbitrary_signed_message_rejected(self, authenticator, store, wallet):
        authenticator.get_or_issue_nonce(wallet.address)
        n0 = store.get_identity(wallet.address).nonce
        with pytest.raises(SignatureInvalid):
            authenticator.login(wallet.address, "hello", wallet.sign("hello"))
        assert store.get_identity(wallet.address).nonce == n0

    def test_stale_nonce_rejected(self, authenticator, store, wallet):
        _, n0, old_message = authenticator.challenge_for(wallet.address)
        authenticator.login(wallet.address, old_message, wallet.sign(old_message))
        with pytest.raises(SignatureInvalid):
            authenticator.login(wallet.address, old_message, wallet.sign(old_message))

    def test_other_wallet_signature_rejected(self, authenticator, store, wallet, other_wallet):
        _, n0, message = authenticator.challenge_for(wallet.address)
        with pytest.raises(SignatureInvalid):
            authenticator.login(wallet.address, message, other_wallet.sign(message))
        assert store.get_identity(wallet.address).nonce == n0

    def test_mixed_case_address(self, authenticator, wallet):
        cred, _ = _signed_login(authenticator, wallet, address="0x" + wallet.address[2:].upper())
        assert cred.address == wallet.address

    def test_quoted_message_accepted(self, authenticator, wallet):
        _, _, message = authenticator.challenge_for(wallet.address)
        cred = authenticator.login(wallet.address, f'"{message}"', wallet.sign(message))
        assert cred.address == wallet.address

    def test_malformed_signature(self, authenticator, store, wallet):
        _, n0, message = authenticator.challenge_for(wallet.address)
        with pytest.raises(MalformedInput):
            authenticator.login(wallet.address, message, "0x1234")
        assert store.get_identity(wallet.address).nonce == n0

    def test_malformed_address(self, authenticator, wallet):
        with pytest.raises(MalformedInput):
            authenticator.login("nope", "m", wallet.sign("m"))


class TestNonceIssue:
    def test_get_or_issue_is_idempotent(self, authenticator, wallet):
        n = authenticator.get_or_issue_nonce(wallet.address)
        assert authenticator.get_or_issue_nonce(wallet.address.upper().replace("0X", "0x")) == n
        assert len(n) == 64

    def test_challenge_for_uses_lowercase_address(self, authenticator, wallet):
        addr, nonce, message = authenticator.challenge_for("0x" + wallet.address[2:].upper())
        assert addr == wallet.address
        assert message == login_challenge("VaultSeed", wallet.address, nonce)


class TestRegisterPublicKey:
    def test_unknown_identity(self, authenticator, wallet):
        message = login_challenge("VaultSeed", wallet.address, "x")
        with pytest.raises(UnknownIdentity):
            authenticator.register_public_key(wallet.address, "pk", message, wallet.sign(message))

    def test_register_rotates_and_reissues(self, authenticator, store, wallet):
        cred, _ = _signed_login(authenticator, wallet)
        _, n1, message = authenticator.challenge_for(wallet.address)

        new_cred = authenticator.register_public_key(wallet.address, "pk-blob", message, wallet.sign(message))

        ident = store.get_identity(wallet.address)
        assert ident.public_key == "pk-blob"
        assert ident.nonce != n1
        with pytest.raises(CredentialInvalid):
            authenticator.authenticate_credential(cred.token)
        assert authenticator.authenticate_credential(new_cred.token).address == wallet.address

    def test_register_signature_cannot_be_replayed_as_login(self, authenticator, wallet):
        _signed_login(authenticator, wallet)
        _, _, message = authenticator.challenge_for(wallet.address)
        sig = wallet.sign(message)
        authenticator.register_public_key(wallet.address, "pk", message, sig)
        with pytest.raises(Unauthorized):
            authenticator.login(wallet.address, message, sig)

    def test_bad_signature_leaves_key_unset(self, authenticator, store, wallet, other_wallet):
        _, _, message = authenticator.challenge_for(wallet.address)
        with pytest.raises(SignatureInvalid):
            authenticator.register_public_key(wallet.address, "pk", message, other_wallet.sign(message))
        assert store.get_identity(wallet.address).public_key is None

    def test_lost_nonce_swap_leaves_key_unset(self, issuer, wallet):
        class RacingStore(InMemoryStore):
            # another process rotates the nonce just before our swap lands
            def swap_identity_nonce(self, address, expected, new):
                super().swap_identity_nonce(address, expected, "rotated-elsewhere")
                return super().swap_identity_nonce(address, expected, new)

        store = RacingStore()
        auth = Authenticator(store, NonceStore(store), issuer, service_name="VaultSeed")
        _, _, message = auth.challenge_for(wallet.address)

        with pytest.raises(NonceMismatch):
            auth.register_public_key(wallet.address, "pk", message, wallet.sign(message))

        ident = store.get_identity(wallet.address)
        assert ident.public_key is None
        assert ident.nonce == "rotated-elsewhere"

    def test_empty_public_key(self, authenticator, wallet):
        _, _, message = authenticator.challenge_for(wallet.address)
        with pytest.raises(MalformedInput):
            authenticator.register_public_key(wallet.address, "  ", message, wallet.sign(message))


class TestCredentials:
    def test_valid(self, authenticator, wallet):
        cred, _ = _signed_login(authenticator, wallet)
        assert authenticator.authenticate_credential(cred.token).address == wallet.address

    def test_dies_on_next_login(self, authenticator, wallet):
        first, _ = _signed_login(authenticator, wallet)
        second, _ = _signed_login(authenticator, wallet)
        with pytest.raises(CredentialInvalid):
            authenticator.authenticate_credential(first.token)
        authenticator.authenticate_credential(second.token)

    @pytest.mark.parametrize("token", [None, "", "abc"])
    def test_missing_or_garbage(self, authenticator, token):
        with pytest.raises(CredentialInvalid):
            authenticator.authenticate_credential(token)

    def test_address_nonce_concatenation_is_not_a_credential(self, authenticator, store, wallet):
        _signed_login(authenticator, wallet)
        nonce = store.get_identity(wallet.address).nonce
        with pytest.raises(CredentialInvalid):
            authenticator.authenticate_credential(f"{wallet.address}:{nonce}")
