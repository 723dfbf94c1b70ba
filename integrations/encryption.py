"""
Secret cipher — encrypt / decrypt integration secrets at rest.

Uses AES-256-GCM (``cryptography``'s AESGCM) with a key derived per
*purpose* from a single root secret via HKDF-SHA256, so a value encrypted
for ``"integration-tokens"`` can never be decrypted as
``"integration-platform-credentials"``.

Ciphertext format::

    v1.<base64url(nonce[12] || ciphertext || tag[16])>

Generate a root secret with::

    python -c "import secrets; print(secrets.token_urlsafe(48))"
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from integrations.errors import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

PURPOSE_INTEGRATION_TOKENS = "integration-tokens"
PURPOSE_PLATFORM_CREDENTIALS = "integration-platform-credentials"
PURPOSE_CODE_VERIFIER = "oauth-code-verifier"
PURPOSE_OIDC_CONFIG = "oidc-config"

_VERSION = "v1"
_NONCE_SIZE = 12
_TAG_SIZE = 16
_KEY_SIZE = 32
_MIN_SECRET_LENGTH = 32
_HKDF_SALT = b"integration-hooks/secret-cipher"


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _b64decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode())


class SecretCipher:
    """Authenticated encryption with purpose-scoped keys."""

    def __init__(self, root_secret: str):
        if not root_secret or len(root_secret) < _MIN_SECRET_LENGTH:
            raise ConfigurationError(
                f"INTEGRATION_SECRET_KEY must be set to at least {_MIN_SECRET_LENGTH} characters"
            )
        self._root = root_secret.encode()
        self._keys: Dict[str, AESGCM] = {}

    def _aead(self, purpose: str) -> AESGCM:
        if not purpose:
            raise ValueError("purpose is required")
        aead = self._keys.get(purpose)
        if aead is None:
            key = HKDF(
                algorithm=hashes.SHA256(),
                length=_KEY_SIZE,
                salt=_HKDF_SALT,
                info=purpose.encode(),
            ).derive(self._root)
            aead = AESGCM(key)
            self._keys[purpose] = aead
        return aead

    def encrypt(self, plaintext: str, purpose: str) -> str:
        nonce = os.urandom(_NONCE_SIZE)
        sealed = self._aead(purpose).encrypt(nonce, plaintext.encode(), None)
        return f"{_VERSION}.{_b64encode(nonce + sealed)}"

    def decrypt(self, ciphertext: str, purpose: str) -> str:
        """
        Decrypt a value produced by :meth:`encrypt` under the same purpose.

        Raises ``DecryptionError`` for anything that does not authenticate;
        partial plaintext is never returned.
        """
        version, sep, body = (ciphertext or "").partition(".")
        if not sep or version != _VERSION:
            raise DecryptionError("Unrecognised ciphertext format")
        try:
            raw = _b64decode(body)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Ciphertext is not valid base64") from exc
        if len(raw) < _NONCE_SIZE + _TAG_SIZE:
            raise DecryptionError("Ciphertext is truncated")

        nonce, sealed = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
        try:
            plaintext = self._aead(purpose).decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            logger.warning("Decryption failed for purpose %s (tampered or wrong purpose)", purpose)
            raise DecryptionError("Ciphertext failed authentication") from exc
        return plaintext.decode()

    def encrypt_json(self, data: Dict[str, Any], purpose: str) -> str:
        return self.encrypt(json.dumps(data, separators=(",", ":")), purpose)

    def decrypt_json(self, ciphertext: str, purpose: str) -> Dict[str, Any]:
        plaintext = self.decrypt(ciphertext, purpose)
        try:
            data = json.loads(plaintext)
        except json.JSONDecodeError as exc:
            raise DecryptionError("Decrypted payload is not JSON") from exc
        if not isinstance(data, dict):
            raise DecryptionError("Decrypted payload is not an object")
        return data
