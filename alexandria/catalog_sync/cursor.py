"""
Opaque pagination cursors.

The catalog table paginates with a ``LastEvaluatedKey`` that exposes the table
layout. Callers only ever see an encrypted, authenticated wrapper of it.

Wire format:
    base64( nonce[12] || AES-GCM ciphertext || tag[16] )
    plaintext = JSON object (the resume token)

Invariants:
    - A fresh random nonce is used for every encode
    - decode either returns the exact token or raises InvalidCursor
    - InvalidCursor never says which check failed

How to change safely:
    - Rotating the key invalidates all outstanding cursors
    - Keep the nonce length at 12 bytes (GCM standard)
"""

from __future__ import annotations

import base64
import binascii
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12
TAG_SIZE = 16


class InvalidCursor(Exception):
    """The cursor is malformed, tampered with or was sealed with another key."""

    def __init__(self, message: str = "Invalid pagination cursor") -> None:
        super().__init__(message)


class CursorCodec:
    """Encrypts and decrypts pagination cursors.

    Example:
        >>> codec = CursorCodec("0123456789abcdef0123456789abcdef")
        >>> cursor = codec.encode({"PK": "owner#1", "SK": "library#2"})
        >>> codec.decode(cursor)
        {'PK': 'owner#1', 'SK': 'library#2'}
    """

    def __init__(self, secret_key: str | bytes) -> None:
        """Initialize the codec.

        Args:
            secret_key: AES key, 16, 24 or 32 bytes long

        Raises:
            ValueError: If the key length is not a valid AES key size
        """
        key = secret_key.encode("utf-8") if isinstance(secret_key, str) else secret_key
        if len(key) not in (16, 24, 32):
            raise ValueError("Cursor key must be 16, 24 or 32 bytes long")
        self._aead = AESGCM(key)

    def encode(self, resume_token: dict[str, Any]) -> str:
        """Seal a resume token into an opaque cursor."""
        plaintext = json.dumps(resume_token, separators=(",", ":")).encode("utf-8")
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext, None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decode(self, cursor: str) -> dict[str, Any]:
        """Open a cursor produced by encode.

        Raises:
            InvalidCursor: On any decoding, length, authentication or payload error
        """
        try:
            raw = base64.b64decode(cursor, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidCursor() from e

        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise InvalidCursor()

        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as e:
            raise InvalidCursor() from e

        try:
            token = json.loads(plaintext.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidCursor() from e

        if not isinstance(token, dict):
            raise InvalidCursor()
        return token
