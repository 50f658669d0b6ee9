"""
Credential vault for ClickHouse connection passwords.

A 256-bit master key is derived once per process with PBKDF2-HMAC-SHA256
from the configured encryption key and its 64-hex-character salt. Each
value is sealed with AES-256-GCM under a fresh 12-byte nonce and stored
as ``nonce_hex:tag_hex:ciphertext_hex``. Any tampering, truncation or a
wrong key makes ``decrypt`` raise ``CryptoError``; it never returns
partially decrypted plaintext.
"""

from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import CryptoError

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16


def derive_key(secret: str, salt_hex: str, iterations: int) -> bytes:
    if not secret:
        raise CryptoError("Encryption key is not configured")
    try:
        salt = bytes.fromhex(salt_hex)
    except (TypeError, ValueError) as exc:
        raise CryptoError("Encryption salt must be hex encoded") from exc
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_LENGTH, salt=salt, iterations=iterations)
    return kdf.derive(secret.encode("utf-8"))


class CredentialVault:
    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise CryptoError("Vault key must be 32 bytes")
        self._aead = AESGCM(key)

    @classmethod
    def from_secret(cls, secret: str, salt_hex: str, iterations: int) -> "CredentialVault":
        return cls(derive_key(secret, salt_hex, iterations))

    def __repr__(self) -> str:
        return "CredentialVault(<sealed>)"

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        if not isinstance(token, str):
            raise CryptoError("Malformed ciphertext")
        parts = token.split(":")
        if len(parts) != 3:
            raise CryptoError("Malformed ciphertext")
        try:
            nonce = bytes.fromhex(parts[0])
            tag = bytes.fromhex(parts[1])
            ciphertext = bytes.fromhex(parts[2])
        except ValueError as exc:
            raise CryptoError("Malformed ciphertext") from exc
        if len(nonce) != NONCE_LENGTH or len(tag) != TAG_LENGTH:
            raise CryptoError("Malformed ciphertext")
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise CryptoError("Ciphertext failed authentication") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CryptoError("Decrypted credential is not valid UTF-8") from exc
