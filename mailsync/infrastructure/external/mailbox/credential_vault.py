"""Credential vault: AES-256-CBC encryption of OAuth tokens and mailbox passwords.

Records are stored as two hex fields (ciphertext, iv) so rows written by
earlier deployments with the same key stay decryptable.
"""

import base64
import binascii
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from mailsync.application.dtos.credentials import EncryptedValue
from mailsync.core.config import get_settings
from mailsync.domain.exceptions import CredentialException

DECRYPTION_ERROR_MSG = "Failed to decrypt credentials - invalid or corrupted data"
IV_LENGTH = 16
KEY_LENGTH = 32


class CredentialVault:
    """Encrypt/decrypt credential strings with AES-256-CBC and a random IV per value."""

    def __init__(self, key: bytes | None = None) -> None:
        self._key = key if key is not None else self._load_key()
        if len(self._key) != KEY_LENGTH:
            raise CredentialException(
                f"Encryption key must be {KEY_LENGTH} bytes, got {len(self._key)}"
            )

    @staticmethod
    def _load_key() -> bytes:
        """Decode CREDENTIAL_ENCRYPTION_KEY (base64, 32 bytes)."""
        raw = get_settings().credential_encryption_key.get_secret_value()
        try:
            return base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CredentialException("Encryption key is not valid base64") from e

    def encrypt(self, plaintext: str) -> EncryptedValue:
        """Encrypt plaintext; returns hex ciphertext and hex IV."""
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return EncryptedValue(ciphertext=ciphertext.hex(), iv=iv.hex())

    def decrypt(self, ciphertext: str, iv: str) -> str:
        """Decrypt a stored (ciphertext, iv) pair back to the plaintext string.

        Raises:
            CredentialException: If either field is malformed, the key is
                wrong or the data was tampered with.
        """
        try:
            iv_bytes = bytes.fromhex(iv)
            data = bytes.fromhex(ciphertext)
        except ValueError as e:
            raise CredentialException(DECRYPTION_ERROR_MSG) from e
        if len(iv_bytes) != IV_LENGTH or not data or len(data) % IV_LENGTH:
            raise CredentialException(DECRYPTION_ERROR_MSG)
        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv_bytes)).decryptor()
        padded = decryptor.update(data) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            raw = unpadder.update(padded) + unpadder.finalize()
            return raw.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            raise CredentialException(DECRYPTION_ERROR_MSG) from e

    def decrypt_optional(self, ciphertext: str | None, iv: str | None) -> str | None:
        """Decrypt when both fields are present, else return None."""
        if not ciphertext or not iv:
            return None
        return self.decrypt(ciphertext, iv)
