import pytest

from clickstudio.core.errors import CryptoError
from clickstudio.core.vault import CredentialVault

SECRET = "unit-test-encryption-key-0123456789abcdef"
SALT = "a1" * 32


def _vault(secret: str = SECRET, salt: str = SALT) -> CredentialVault:
    return CredentialVault.from_secret(secret, salt, 100_000)


@pytest.mark.parametrize("plaintext", ["", "p@ss", "ünïcødé-密码", "x" * 4096])
def test_round_trip(plaintext):
    vault = _vault()
    assert vault.decrypt(vault.encrypt(plaintext)) == plaintext


def test_ciphertext_format_and_fresh_nonce():
    vault = _vault()
    first = vault.encrypt("same")
    second = vault.encrypt("same")

    nonce, tag, ciphertext = first.split(":")
    assert len(bytes.fromhex(nonce)) == 12
    assert len(bytes.fromhex(tag)) == 16
    assert bytes.fromhex(ciphertext)
    assert first != second


def test_tampered_ciphertext_fails_closed():
    vault = _vault()
    nonce, tag, ciphertext = vault.encrypt("clickhouse-password").split(":")
    flipped = format(int(ciphertext[:2], 16) ^ 0x01, "02x") + ciphertext[2:]

    with pytest.raises(CryptoError):
        vault.decrypt(f"{nonce}:{tag}:{flipped}")


def test_tampered_tag_fails_closed():
    vault = _vault()
    nonce, tag, ciphertext = vault.encrypt("clickhouse-password").split(":")
    bad_tag = "00" * 16 if tag != "00" * 16 else "11" * 16

    with pytest.raises(CryptoError):
        vault.decrypt(f"{nonce}:{bad_tag}:{ciphertext}")


def test_wrong_key_fails_closed():
    sealed = _vault().encrypt("clickhouse-password")
    other = _vault(secret="another-encryption-key-0123456789abcdef")

    with pytest.raises(CryptoError):
        other.decrypt(sealed)


@pytest.mark.parametrize(
    "token",
    ["", "not-a-ciphertext", "zz:zz:zz", "00:00", "00" * 12 + ":" + "00" * 16 + ":" + "00:extra"],
)
def test_malformed_input_raises_crypto_error(token):
    with pytest.raises(CryptoError):
        _vault().decrypt(token)


def test_invalid_salt_is_rejected():
    with pytest.raises(CryptoError):
        _vault(salt="not-hex")


def test_repr_hides_key():
    assert SECRET not in repr(_vault())


def test_crypto_error_maps_to_credential_unusable():
    err = CryptoError()
    assert err.status_code == 500
    assert err.code == "CREDENTIAL_UNUSABLE"
