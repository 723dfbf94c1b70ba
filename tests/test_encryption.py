"""
Tests for the secret cipher (HKDF purpose keys + AES-GCM).
"""

import base64

import pytest

from integrations.encryption import (
    PURPOSE_INTEGRATION_TOKENS,
    PURPOSE_PLATFORM_CREDENTIALS,
    SecretCipher,
)
from integrations.errors import ConfigurationError, DecryptionError

ROOT = "root-secret-for-cipher-tests-0123456789abcdef"


def _flip_bit(ciphertext: str, index: int) -> str:
    version, body = ciphertext.split(".", 1)
    raw = bytearray(base64.urlsafe_b64decode(body + "=" * (-len(body) % 4)))
    raw[index] ^= 0x01
    return version + "." + base64.urlsafe_b64encode(bytes(raw)).rstrip(b"=").decode()


class TestRoundTrip:
    @pytest.mark.parametrize("plaintext", ["", "xoxb-123", "ünïcødé ✓", "x" * 5000])
    def test_decrypt_returns_plaintext(self, plaintext):
        cipher = SecretCipher(ROOT)
        assert cipher.decrypt(cipher.encrypt(plaintext, PURPOSE_INTEGRATION_TOKENS), PURPOSE_INTEGRATION_TOKENS) == plaintext

    def test_json_round_trip(self):
        cipher = SecretCipher(ROOT)
        secrets = {"accessToken": "a", "refreshToken": "r"}
        token = cipher.encrypt_json(secrets, PURPOSE_INTEGRATION_TOKENS)
        assert cipher.decrypt_json(token, PURPOSE_INTEGRATION_TOKENS) == secrets

    def test_nonce_is_random(self):
        cipher = SecretCipher(ROOT)
        assert cipher.encrypt("same", PURPOSE_INTEGRATION_TOKENS) != cipher.encrypt("same", PURPOSE_INTEGRATION_TOKENS)

    def test_separate_instances_share_keys(self):
        token = SecretCipher(ROOT).encrypt("hello", PURPOSE_INTEGRATION_TOKENS)
        assert SecretCipher(ROOT).decrypt(token, PURPOSE_INTEGRATION_TOKENS) == "hello"

    def test_format_is_versioned(self):
        assert SecretCipher(ROOT).encrypt("x", PURPOSE_INTEGRATION_TOKENS).startswith("v1.")


class TestFailsClosed:
    def test_wrong_purpose(self):
        cipher = SecretCipher(ROOT)
        token = cipher.encrypt("secret", PURPOSE_INTEGRATION_TOKENS)
        with pytest.raises(DecryptionError):
            cipher.decrypt(token, PURPOSE_PLATFORM_CREDENTIALS)

    def test_wrong_root_secret(self):
        token = SecretCipher(ROOT).encrypt("secret", PURPOSE_INTEGRATION_TOKENS)
        with pytest.raises(DecryptionError):
            SecretCipher(ROOT + "-other").decrypt(token, PURPOSE_INTEGRATION_TOKENS)

    @pytest.mark.parametrize("index", [0, 11, 12, -1])
    def test_tampered_bytes(self, index):
        cipher = SecretCipher(ROOT)
        token = cipher.encrypt("secret value", PURPOSE_INTEGRATION_TOKENS)
        with pytest.raises(DecryptionError):
            cipher.decrypt(_flip_bit(token, index), PURPOSE_INTEGRATION_TOKENS)

    def test_truncated(self):
        cipher = SecretCipher(ROOT)
        token = cipher.encrypt("secret value", PURPOSE_INTEGRATION_TOKENS)
        with pytest.raises(DecryptionError):
            cipher.decrypt(token[:20], PURPOSE_INTEGRATION_TOKENS)

    @pytest.mark.parametrize("garbage", ["", "not-a-token", "v2.abcd", "v1.!!!!"])
    def test_garbage(self, garbage):
        with pytest.raises(DecryptionError):
            SecretCipher(ROOT).decrypt(garbage, PURPOSE_INTEGRATION_TOKENS)

    def test_json_must_be_object(self):
        cipher = SecretCipher(ROOT)
        token = cipher.encrypt("[1, 2]", PURPOSE_INTEGRATION_TOKENS)
        with pytest.raises(DecryptionError):
            cipher.decrypt_json(token, PURPOSE_INTEGRATION_TOKENS)


class TestConfiguration:
    @pytest.mark.parametrize("secret", ["", "too-short"])
    def test_rejects_weak_root_secret(self, secret):
        with pytest.raises(ConfigurationError):
            SecretCipher(secret)
