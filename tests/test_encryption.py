import base64

import pytest

from healermy.config import ConfigurationError, PortalSettings
from healermy.encryption import (
    NONCE_SIZE,
    DecryptionError,
    decrypt,
    decrypt_session,
    encrypt,
    encrypt_session,
)


def test_encrypt_decrypt_roundtrip_unicode():
    text = '{"role":"patient","patientName":"Zoë Ñúñez"}'
    token = encrypt(text)
    assert token != text
    assert decrypt(token) == text


def test_encrypt_uses_fresh_nonce_each_time():
    first = encrypt("same plaintext")
    second = encrypt("same plaintext")
    assert first != second
    assert base64.b64decode(first)[:NONCE_SIZE] != base64.b64decode(second)[:NONCE_SIZE]


def test_tampered_ciphertext_fails():
    raw = bytearray(base64.b64decode(encrypt("sensitive")))
    raw[-1] ^= 0x01
    tampered = base64.b64encode(bytes(raw)).decode("ascii")
    with pytest.raises(DecryptionError):
        decrypt(tampered)


def test_decrypt_with_other_key_fails():
    token = encrypt("sensitive")
    other = PortalSettings(session_secret="another-secret", session_salt="test-session-salt")
    with pytest.raises(DecryptionError):
        decrypt(token, settings=other)


@pytest.mark.parametrize("value", ["", "not base64!!", base64.b64encode(b"short").decode()])
def test_malformed_ciphertext_is_decryption_error(value):
    with pytest.raises(DecryptionError):
        decrypt(value)


def test_decryption_error_is_value_error():
    with pytest.raises(ValueError):
        decrypt("")


def test_missing_keys_raise_configuration_error():
    with pytest.raises(ConfigurationError):
        encrypt("x", settings=PortalSettings(session_secret=None, session_salt="salt"))


def test_session_roundtrip_and_non_object_payload():
    payload = {"role": "provider", "practitioner": "dr1", "expiresAt": 123}
    assert decrypt_session(encrypt_session(payload)) == payload

    with pytest.raises(DecryptionError):
        decrypt_session(encrypt("[1, 2, 3]"))
    with pytest.raises(DecryptionError):
        decrypt_session(encrypt("not json"))
