"""Wallet-signature login and nonce-gated release of client-encrypted records."""

__version__ = "0.1.0"
