"""Versioned AES-256-GCM envelope used for every encrypted file.

Wire format::

    RECALL_ENCRYPTED:v1:<base64 nonce>:<base64 auth tag>:<base64 ciphertext>

The string is parsed into an :class:`Envelope` immediately; nothing past this
module handles the delimited form.
"""

import base64
import binascii
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from recall.errors import AuthenticationFailed, InvalidKeyLength, MalformedEnvelope

ENVELOPE_TAG = "RECALL_ENCRYPTED"
CURRENT_VERSION = 1
KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
_SEGMENTS = 5


@dataclass(frozen=True)
class Envelope:
    """One parsed envelope."""

    version: int
    nonce: bytes
    auth_tag: bytes
    ciphertext: bytes

    @classmethod
    def parse(cls, raw: str) -> "Envelope":
        parts = raw.strip().split(":")
        if len(parts) != _SEGMENTS:
            raise MalformedEnvelope(f"expected {_SEGMENTS} segments, got {len(parts)}")

        tag, version_token, nonce_b64, auth_tag_b64, ciphertext_b64 = parts
        if tag != ENVELOPE_TAG:
            raise MalformedEnvelope(f"unknown envelope tag {tag[:32]!r}")
        if version_token != f"v{CURRENT_VERSION}":
            raise MalformedEnvelope(f"unsupported envelope version {version_token[:16]!r}")

        nonce = _b64decode(nonce_b64, "nonce")
        auth_tag = _b64decode(auth_tag_b64, "auth tag")
        ciphertext = _b64decode(ciphertext_b64, "ciphertext")
        if len(nonce) != NONCE_LENGTH:
            raise MalformedEnvelope(f"nonce must be {NONCE_LENGTH} bytes, got {len(nonce)}")
        if len(auth_tag) != TAG_LENGTH:
            raise MalformedEnvelope(f"auth tag must be {TAG_LENGTH} bytes, got {len(auth_tag)}")

        return cls(CURRENT_VERSION, nonce, auth_tag, ciphertext)

    def serialize(self) -> str:
        return ":".join(
            [
                ENVELOPE_TAG,
                f"v{self.version}",
                base64.b64encode(self.nonce).decode("ascii"),
                base64.b64encode(self.auth_tag).decode("ascii"),
                base64.b64encode(self.ciphertext).decode("ascii"),
            ]
        )


def _b64decode(segment: str, what: str) -> bytes:
    try:
        return base64.b64decode(segment, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedEnvelope(f"{what} is not valid base64") from e


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        length = len(key) if isinstance(key, (bytes, bytearray)) else type(key).__name__
        raise InvalidKeyLength(f"team key must be {KEY_LENGTH} bytes, got {length}")


def is_encrypted(raw: str) -> bool:
    """True if the file content is an envelope rather than legacy plaintext."""
    return raw.startswith(ENVELOPE_TAG + ":")


def encrypt(plaintext: str, key: bytes) -> str:
    """Encrypt plaintext under key with a fresh random nonce."""
    _check_key(key)
    nonce = os.urandom(NONCE_LENGTH)
    sealed = AESGCM(bytes(key)).encrypt(nonce, plaintext.encode("utf-8"), None)
    envelope = Envelope(
        version=CURRENT_VERSION,
        nonce=nonce,
        auth_tag=sealed[-TAG_LENGTH:],
        ciphertext=sealed[:-TAG_LENGTH],
    )
    return envelope.serialize()


def decrypt(raw: str, key: bytes) -> str:
    """Verify and decrypt an envelope string. Never returns partial plaintext."""
    _check_key(key)
    envelope = Envelope.parse(raw)
    try:
        plaintext = AESGCM(bytes(key)).decrypt(
            envelope.nonce, envelope.ciphertext + envelope.auth_tag, None
        )
    except InvalidTag as e:
        raise AuthenticationFailed("envelope failed authentication (wrong key or tampered data)") from e
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedEnvelope("decrypted payload is not UTF-8") from e
