"""
Tests for the OAuth state signer.
"""

import base64
import hashlib
import hmac
import json

import pytest

from integrations.encryption import SecretCipher
from integrations.errors import ConfigurationError, InvalidStateError
from integrations.state import StateSigner

SECRET = "state-signing-secret-0123456789abcdefghij"
T0 = 1_700_000_000.0


class Clock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _b64d(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _b64e(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _flip(token: str, part: int, index: int) -> str:
    pieces = token.split(".")
    raw = bytearray(_b64d(pieces[part]))
    raw[index] ^= 0x01
    pieces[part] = _b64e(bytes(raw))
    return ".".join(pieces)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def signer(clock):
    return StateSigner(SECRET, cipher=SecretCipher(SECRET), expiry_seconds=300, clock=clock)


class TestSignVerify:
    def test_round_trip(self, signer):
        token = signer.sign({"type": "slack", "workspaceId": "ws_1", "nonce": "n"})
        data = signer.verify(token)
        assert data["type"] == "slack"
        assert data["workspaceId"] == "ws_1"
        assert data["timestamp"] == int(T0 * 1000)

    def test_format_is_payload_dot_signature(self, signer):
        token = signer.sign({"a": 1})
        payload, signature = token.split(".")
        assert json.loads(_b64d(payload))["a"] == 1
        assert len(_b64d(signature)) == 32

    def test_explicit_timestamp_kept(self, signer):
        token = signer.sign({"timestamp": int(T0 * 1000) - 1000})
        assert signer.verify(token)["timestamp"] == int(T0 * 1000) - 1000

    def test_other_secret_rejected(self, signer, clock):
        token = StateSigner("another-secret-entirely-0123456789", clock=clock).sign({"a": 1})
        with pytest.raises(InvalidStateError) as exc:
            signer.verify(token)
        assert exc.value.reason == "invalid_state"


class TestTamperDetection:
    @pytest.mark.parametrize("index", [0, 5, -1])
    def test_payload_bit_flip(self, signer, index):
        token = signer.sign({"type": "slack", "workspaceId": "ws_1"})
        with pytest.raises(InvalidStateError):
            signer.verify(_flip(token, 0, index))

    @pytest.mark.parametrize("index", [0, 16, 31])
    def test_signature_bit_flip(self, signer, index):
        token = signer.sign({"type": "slack"})
        with pytest.raises(InvalidStateError):
            signer.verify(_flip(token, 1, index))

    def test_every_payload_bit(self, signer):
        token = signer.sign({"t": "x"})
        payload_len = len(_b64d(token.split(".")[0]))
        for index in range(payload_len):
            with pytest.raises(InvalidStateError):
                signer.verify(_flip(token, 0, index))

    def test_truncated_signature(self, signer):
        token = signer.sign({"type": "slack"})
        payload, signature = token.split(".")
        with pytest.raises(InvalidStateError):
            signer.verify(payload + "." + _b64e(_b64d(signature)[:16]))

    @pytest.mark.parametrize("token", ["", "no-separator", ".", "abc.", ".abc", "a.b.c", "!!!.???"])
    def test_malformed(self, signer, token):
        with pytest.raises(InvalidStateError) as exc:
            signer.verify(token)
        assert exc.value.reason == "invalid_state"

    def test_non_object_payload(self, signer):
        payload = b"[1,2,3]"
        sig = hmac.new(SECRET.encode(), payload, hashlib.sha256).digest()
        with pytest.raises(InvalidStateError):
            signer.verify(_b64e(payload) + "." + _b64e(sig))


class TestExpiry:
    def test_valid_just_inside_window(self, signer, clock):
        token = signer.sign({"type": "slack"})
        clock.now = T0 + 4 * 60 + 59
        assert signer.verify(token)["type"] == "slack"

    def test_expired_just_outside_window(self, signer, clock):
        token = signer.sign({"type": "slack"})
        clock.now = T0 + 5 * 60 + 1
        with pytest.raises(InvalidStateError) as exc:
            signer.verify(token)
        assert exc.value.reason == "state_expired"


class TestEncryptedFields:
    def test_code_verifier_round_trip(self, signer):
        encrypted = signer.encrypt_code_verifier("verifier-abc")
        assert "verifier-abc" not in encrypted
        assert signer.decrypt_code_verifier(encrypted) == "verifier-abc"

    def test_oidc_config_round_trip(self, signer):
        oidc = {"issuer": "https://idp.example.com", "clientSecret": "oidc-client-secret-value"}
        encrypted = signer.encrypt_oidc_config(oidc)
        assert "oidc-client-secret-value" not in encrypted
        assert signer.decrypt_oidc_config(encrypted) == oidc

    def test_encrypted_field_survives_signing(self, signer):
        token = signer.sign({"codeVerifier": signer.encrypt_code_verifier("v-123")})
        data = signer.verify(token)
        assert signer.decrypt_code_verifier(data["codeVerifier"]) == "v-123"

    def test_requires_cipher(self, clock):
        with pytest.raises(ConfigurationError):
            StateSigner(SECRET, clock=clock).encrypt_code_verifier("v")

    def test_requires_secret(self):
        with pytest.raises(ConfigurationError):
            StateSigner("")
