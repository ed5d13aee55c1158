"""Tests for CredentialVault (AES-256-CBC, separate ciphertext and IV)."""

import base64

import pytest

from mailsync.domain.exceptions import CredentialException
from mailsync.infrastructure.external.mailbox.credential_vault import CredentialVault


@pytest.mark.parametrize(
    "plaintext",
    ["", "ya29.a0AfH6SMB", "p@ss wörd ✓", "x" * 16, "y" * 4096],
)
def test_decrypt_returns_original_plaintext(vault: CredentialVault, plaintext: str) -> None:
    """decrypt(encrypt(c)) == c, including empty, unicode and block-aligned values."""
    stored = vault.encrypt(plaintext)
    assert vault.decrypt(stored.ciphertext, stored.iv) == plaintext


def test_each_encryption_uses_a_fresh_iv(vault: CredentialVault) -> None:
    """Same plaintext twice gives different IVs and ciphertexts."""
    a = vault.encrypt("token")
    b = vault.encrypt("token")
    assert a.iv != b.iv
    assert a.ciphertext != b.ciphertext
    assert len(bytes.fromhex(a.iv)) == 16


def test_wrong_key_never_yields_the_plaintext(vault: CredentialVault) -> None:
    """Ciphertext from one key does not decrypt under another."""
    stored = vault.encrypt("refresh-token-value")
    other = CredentialVault(key=b"w" * 32)
    try:
        result = other.decrypt(stored.ciphertext, stored.iv)
    except CredentialException:
        return
    assert result != "refresh-token-value"


@pytest.mark.parametrize(
    "ciphertext, iv",
    [
        ("not-hex", "00" * 16),
        ("00" * 16, "abcd"),
        ("", "00" * 16),
        ("00" * 15, "00" * 16),
    ],
)
def test_malformed_fields_raise_credential_exception(
    vault: CredentialVault, ciphertext: str, iv: str
) -> None:
    with pytest.raises(CredentialException):
        vault.decrypt(ciphertext, iv)


def test_decrypt_optional_needs_both_fields(vault: CredentialVault) -> None:
    stored = vault.encrypt("secret")
    assert vault.decrypt_optional(None, stored.iv) is None
    assert vault.decrypt_optional(stored.ciphertext, None) is None
    assert vault.decrypt_optional(stored.ciphertext, stored.iv) == "secret"


def test_key_must_be_32_bytes() -> None:
    with pytest.raises(CredentialException):
        CredentialVault(key=b"short")


def test_key_is_loaded_from_settings(monkeypatch) -> None:
    """Without an explicit key the vault decodes CREDENTIAL_ENCRYPTION_KEY."""
    from mailsync.core.config import get_settings

    key = b"z" * 32
    monkeypatch.setenv("CREDENTIAL_ENCRYPTION_KEY", base64.b64encode(key).decode())
    get_settings.cache_clear()
    stored = CredentialVault().encrypt("hello")
    assert CredentialVault(key=key).decrypt(stored.ciphertext, stored.iv) == "hello"
