"""
crypto.py – Cryptographic operations for the quota manager.

This module contains Cipher, which is the single place responsible for
every cryptographic concern in the application:

  - Key derivation from a password using PBKDF2-HMAC-SHA512.
  - Encrypting and decrypting text payloads with AES-256-GCM
    (provided by the 'cryptography' package).  Each call to encrypt()
    draws a fresh salt and IV, so identical plaintexts never produce
    identical blobs.
  - Hashing and verifying the unlock password stored in auth.json.

Blob format (all segments lowercase hex, joined with ':'):

    salt:iv:tag:ciphertext

decrypt() is all-or-nothing: it either returns the complete plaintext or
raises MalformedBlobError / AuthenticationFailedError.
"""

import hmac
import logging
import os
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import (
    APP_NAME,
    BLOB_DELIMITER,
    IV_LENGTH,
    KDF_ITERATIONS,
    KEY_LENGTH,
    SALT_LENGTH,
    TAG_LENGTH,
)
from errors import AuthenticationFailedError, MalformedBlobError

logger = logging.getLogger(APP_NAME)


class Cipher:
    """
    Password-based authenticated encryption.

    The object holds no key material between calls; every operation
    derives what it needs from the password it is given.
    """

    # ------------------------------------------------------------------
    # Key derivation
    # ------------------------------------------------------------------

    def derive_key(self, password: str, salt: Union[bytes, str]) -> bytes:
        """
        Derive a 32-byte AES key from *password* and *salt* using
        PBKDF2-HMAC-SHA512 with a fixed iteration count.

        The same inputs always yield the same key.  A str salt is used as
        its UTF-8 bytes, which is how password records store theirs.
        """
        if isinstance(salt, str):
            salt = salt.encode("utf-8")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=KDF_ITERATIONS,
        )
        return kdf.derive(password.encode("utf-8"))

    # ------------------------------------------------------------------
    # Encrypt / decrypt
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str, password: str) -> str:
        """
        Encrypt *plaintext* under a key derived from *password* and return
        the serialised blob ``salt:iv:tag:ciphertext``.
        """
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = self.derive_key(password, salt)

        # AESGCM appends the authentication tag to the ciphertext.
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        return BLOB_DELIMITER.join(
            [salt.hex(), iv.hex(), tag.hex(), ciphertext.hex()]
        )

    def decrypt(self, blob: str, password: str) -> str:
        """
        Decrypt a blob produced by encrypt().

        Raises
        ------
        MalformedBlobError
            The blob does not have four hex segments, or the salt, IV or
            tag has the wrong length.
        AuthenticationFailedError
            The authentication tag does not verify: wrong password,
            corruption or tampering.
        """
        parts = blob.strip().split(BLOB_DELIMITER)
        if len(parts) != 4:
            raise MalformedBlobError(f"expected 4 segments, got {len(parts)}")

        try:
            salt, iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError:
            raise MalformedBlobError("segment is not valid hex") from None

        if not salt or len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise MalformedBlobError("salt, iv or tag has the wrong length")

        key = self.derive_key(password, salt)
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            raise AuthenticationFailedError() from None

        return plaintext.decode("utf-8")

    # ------------------------------------------------------------------
    # Password hashing
    # ------------------------------------------------------------------

    def hash_password(self, password: str, salt: Union[bytes, str]) -> str:
        """Return the hex-encoded KDF output for *password* and *salt*."""
        return self.derive_key(password, salt).hex()

    def verify_password(self, password: str, stored_hash: str, stored_salt: Union[bytes, str]) -> bool:
        """
        Return True if *password* hashes to *stored_hash* under *stored_salt*.

        The comparison runs in constant time with respect to the hash
        contents.
        """
        candidate = self.hash_password(password, stored_salt)
        return hmac.compare_digest(candidate.encode("ascii"), stored_hash.encode("ascii", "replace"))

    @staticmethod
    def new_salt() -> str:
        """Return a fresh random salt as a hex string (password records)."""
        return os.urandom(SALT_LENGTH).hex()
