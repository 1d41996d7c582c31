"""Document encryption before upload.

Envelope layout (the only one accepted on decrypt)::

    b"Salted__" | salt (8) | AES-256-CBC ciphertext (PKCS7) | HMAC-SHA256 tag (32)

Key, IV and MAC key come from OpenSSL ``EVP_BytesToKey`` (MD5, one round) over
passphrase + salt, the same salted-header derivation CryptoJS uses, extended to
80 bytes so the tag key never overlaps the cipher key. The tag covers header,
salt and ciphertext and is checked before any decryption, so a wrong
passphrase fails deterministically instead of relying on padding luck.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import os
import secrets
from dataclasses import dataclass

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

logger = logging.getLogger(__name__)

ENVELOPE_MAGIC = b"Salted__"
SALT_SIZE = 8
KEY_SIZE = 32
IV_SIZE = 16
MAC_KEY_SIZE = 32
TAG_SIZE = 32
BLOCK_SIZE_BITS = 128
MIN_ENVELOPE_SIZE = len(ENVELOPE_MAGIC) + SALT_SIZE + IV_SIZE + TAG_SIZE


class EncryptionError(RuntimeError):
    pass


class EnvelopeError(ValueError):
    """Ciphertext does not follow the canonical envelope."""


class DecryptionError(ValueError):
    """Authentication or padding failed (wrong passphrase or tampered data)."""


@dataclass
class EncryptedDocument:
    ciphertext: bytes
    passphrase: str
    salt: bytes
    sha256: str

    def as_base64(self) -> str:
        return base64.b64encode(self.ciphertext).decode("ascii")


def generate_passphrase() -> str:
    return secrets.token_hex(32)


def evp_bytes_to_key(passphrase: bytes, salt: bytes, length: int) -> bytes:
    derived = b""
    block = b""
    while len(derived) < length:
        block = hashlib.md5(block + passphrase + salt).digest()
        derived += block
    return derived[:length]


def _derive(passphrase: str, salt: bytes) -> tuple[bytes, bytes, bytes]:
    material = evp_bytes_to_key(passphrase.encode("utf-8"), salt, KEY_SIZE + IV_SIZE + MAC_KEY_SIZE)
    return (
        material[:KEY_SIZE],
        material[KEY_SIZE : KEY_SIZE + IV_SIZE],
        material[KEY_SIZE + IV_SIZE :],
    )


def encrypt_document(data: bytes, passphrase: str | None = None, *, salt: bytes | None = None) -> EncryptedDocument:
    if not data:
        raise EncryptionError("Document is empty")
    passphrase = passphrase or generate_passphrase()
    salt = salt if salt is not None else os.urandom(SALT_SIZE)
    if len(salt) != SALT_SIZE:
        raise EncryptionError(f"Salt must be {SALT_SIZE} bytes")
    try:
        key, iv, mac_key = _derive(passphrase, salt)
        padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
        padded = padder.update(data) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        body = encryptor.update(padded) + encryptor.finalize()
    except (ValueError, TypeError) as exc:
        raise EncryptionError(f"Encryption failed: {exc}") from exc

    header = ENVELOPE_MAGIC + salt + body
    tag = hmac.new(mac_key, header, hashlib.sha256).digest()
    ciphertext = header + tag
    logger.info("document_encrypted plaintext_bytes=%s envelope_bytes=%s", len(data), len(ciphertext))
    return EncryptedDocument(
        ciphertext=ciphertext,
        passphrase=passphrase,
        salt=salt,
        sha256=hashlib.sha256(ciphertext).hexdigest(),
    )


def decrypt_document(envelope: bytes, passphrase: str) -> bytes:
    if len(envelope) < MIN_ENVELOPE_SIZE:
        raise EnvelopeError("Envelope too short")
    if not envelope.startswith(ENVELOPE_MAGIC):
        raise EnvelopeError("Missing salted header")
    body_len = len(envelope) - len(ENVELOPE_MAGIC) - SALT_SIZE - TAG_SIZE
    if body_len % IV_SIZE != 0:
        raise EnvelopeError("Ciphertext is not block aligned")

    salt = envelope[len(ENVELOPE_MAGIC) : len(ENVELOPE_MAGIC) + SALT_SIZE]
    header, tag = envelope[:-TAG_SIZE], envelope[-TAG_SIZE:]
    key, iv, mac_key = _derive(passphrase, salt)
    expected = hmac.new(mac_key, header, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, tag):
        raise DecryptionError("Authentication failed")

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(header[len(ENVELOPE_MAGIC) + SALT_SIZE :]) + decryptor.finalize()
    unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise DecryptionError("Invalid padding") from exc


def decrypt_base64(envelope_b64: str, passphrase: str) -> bytes:
    try:
        envelope = base64.b64decode(envelope_b64, validate=True)
    except ValueError as exc:
        raise EnvelopeError("Envelope is not valid base64") from exc
    return decrypt_document(envelope, passphrase)
