"""Authenticated encryption for marketplace tokens at rest.

Tokens are sealed with AES-GCM using a key derived (HKDF-SHA256) from
``TOKEN_ENCRYPTION_KEY`` or, when that is empty, ``SECRET_KEY``.

Stored format::

    ENC:v1:<base64(nonce || ciphertext || tag)>

:meth:`TokenCipher.decrypt` raises :class:`TokenDecryptionError` for any
value it did not produce, plain text included.
"""

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from marketsync.core.config import get_settings
from marketsync.core.exceptions import TokenDecryptionError


_PREFIX = "ENC:v1:"
_NONCE_SIZE = 12  # 96-bit nonce recommended for AES-GCM
_KEY_SIZE = 32    # 256-bit AES key


def derive_key(secret: str, context: bytes = b"marketsync-token-encryption") -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=_KEY_SIZE,
        salt=None,
        info=context,
    )
    return hkdf.derive(secret.encode("utf-8"))


class TokenCipher:
    def __init__(self, secret: str):
        if not secret:
            raise ValueError("Token encryption secret is empty")
        self._aesgcm = AESGCM(derive_key(secret))

    @classmethod
    def from_settings(cls, settings=None) -> "TokenCipher":
        settings = settings or get_settings()
        return cls(settings.TOKEN_ENCRYPTION_KEY or settings.SECRET_KEY)

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """Encrypt a string value. ``None`` passes through."""
        if plaintext is None:
            return None
        nonce = os.urandom(_NONCE_SIZE)
        ct = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), associated_data=None)
        return _PREFIX + base64.urlsafe_b64encode(nonce + ct).decode("ascii")

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str) or not value.startswith(_PREFIX):
            raise TokenDecryptionError("Value is not an encrypted token")
        try:
            raw = base64.urlsafe_b64decode(value[len(_PREFIX):].encode("ascii"))
        except (binascii.Error, ValueError) as e:
            raise TokenDecryptionError(f"Malformed encrypted token: {e}") from e
        if len(raw) <= _NONCE_SIZE:
            raise TokenDecryptionError("Malformed encrypted token: too short")
        nonce, ct = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
        try:
            return self._aesgcm.decrypt(nonce, ct, associated_data=None).decode("utf-8")
        except InvalidTag as e:
            raise TokenDecryptionError("Encrypted token failed authentication") from e
