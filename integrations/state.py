"""
OAuth handshake state — signed, time-boxed, optionally with encrypted fields.

The token survives a round trip through a third-party redirect, so it is a
flat URL-safe string::

    base64url(json) + "." + base64url(hmac_sha256(json))

The signature covers the *unencoded* JSON.  Anyone holding the redirect URL
can read the payload, so confidential sub-fields (PKCE code verifier,
portable OIDC config) are encrypted with the secret cipher before signing.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Dict

from integrations.encryption import PURPOSE_CODE_VERIFIER, PURPOSE_OIDC_CONFIG, SecretCipher
from integrations.errors import ConfigurationError, InvalidStateError

_SEPARATOR = "."


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _b64decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode())


class StateSigner:
    def __init__(
        self,
        secret: str,
        cipher: SecretCipher | None = None,
        expiry_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ConfigurationError("A signing secret is required for OAuth state")
        self._key = secret.encode()
        self._cipher = cipher
        self.expiry_seconds = expiry_seconds
        self._clock = clock

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _signature(self, payload: bytes) -> bytes:
        return hmac.new(self._key, payload, hashlib.sha256).digest()

    def sign(self, data: Dict[str, Any]) -> str:
        """Sign ``data``; a ``timestamp`` (ms) is added when absent."""
        body = dict(data)
        body.setdefault("timestamp", self.now_ms())
        payload = json.dumps(body, separators=(",", ":"), sort_keys=True).encode()
        return _b64encode(payload) + _SEPARATOR + _b64encode(self._signature(payload))

    def verify(self, token: str) -> Dict[str, Any]:
        """
        Return the state payload, or raise ``InvalidStateError``.

        Reasons: ``invalid_state`` for anything structurally wrong or
        unsigned, ``state_expired`` once ``expiry_seconds`` have elapsed.
        """
        payload_b64, sep, signature_b64 = (token or "").partition(_SEPARATOR)
        if not sep or not payload_b64 or not signature_b64:
            raise InvalidStateError("invalid_state")
        try:
            payload = _b64decode(payload_b64)
            signature = _b64decode(signature_b64)
        except (binascii.Error, ValueError):
            raise InvalidStateError("invalid_state")
        # Reject non-canonical encodings (stray characters, altered padding bits).
        if _b64encode(payload) != payload_b64 or _b64encode(signature) != signature_b64:
            raise InvalidStateError("invalid_state")

        expected = self._signature(payload)
        if len(signature) != len(expected) or not hmac.compare_digest(signature, expected):
            raise InvalidStateError("invalid_state")

        try:
            data = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise InvalidStateError("invalid_state")
        if not isinstance(data, dict) or not isinstance(data.get("timestamp"), (int, float)):
            raise InvalidStateError("invalid_state")

        if self.now_ms() - data["timestamp"] > self.expiry_seconds * 1000:
            raise InvalidStateError("state_expired")
        return data

    # ── Encrypted sub-fields ────────────────────────────────────────────

    def _require_cipher(self) -> SecretCipher:
        if self._cipher is None:
            raise ConfigurationError("StateSigner was built without a cipher")
        return self._cipher

    def encrypt_code_verifier(self, verifier: str) -> str:
        return self._require_cipher().encrypt(verifier, PURPOSE_CODE_VERIFIER)

    def decrypt_code_verifier(self, ciphertext: str) -> str:
        return self._require_cipher().decrypt(ciphertext, PURPOSE_CODE_VERIFIER)

    def encrypt_oidc_config(self, oidc_config: Dict[str, Any]) -> str:
        return self._require_cipher().encrypt_json(oidc_config, PURPOSE_OIDC_CONFIG)

    def decrypt_oidc_config(self, ciphertext: str) -> Dict[str, Any]:
        return self._require_cipher().decrypt_json(ciphertext, PURPOSE_OIDC_CONFIG)
