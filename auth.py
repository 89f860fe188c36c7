"""
auth.py – Password record management.

This module contains AuthManager, which owns auth.json, the plaintext
PasswordRecord that gates access to the encrypted store:

  - First run: no record exists, has_password() is False.
  - set_password(): store a fresh salt and the KDF hash of the password.
  - skip_password(): store a record flagged ``skipped`` whose hash is
    computed from the fixed SKIPPED_PASSWORD_KEY.  The store is then
    encrypted with that well-known key, which hides credentials from
    casual disk inspection but is NOT real secrecy.
  - verify_password(): check a candidate against the record without
    touching the lock state of the store.

auth.json cannot itself be encrypted, since it is what decides whether a
password may decrypt everything else.  It holds only a salt and a slow
hash, never the password.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass
from typing import Optional

from config import APP_NAME, SKIPPED_PASSWORD_KEY

logger = logging.getLogger(APP_NAME)


@dataclass
class PasswordRecord:
    salt: str
    hash: str
    skipped: bool = False


class AuthManager:
    """
    Reads, writes and verifies the PasswordRecord.

    Parameters
    ----------
    config : AppConfig
        Provides the auth.json path.
    cipher : Cipher
        Password hashing primitives.
    """

    def __init__(self, config, cipher) -> None:
        self.config = config
        self.cipher = cipher

    @property
    def skipped_password_key(self) -> str:
        return SKIPPED_PASSWORD_KEY

    # ------------------------------------------------------------------
    # Record I/O
    # ------------------------------------------------------------------

    def has_password(self) -> bool:
        """Return True when a PasswordRecord file exists on disk."""
        return os.path.exists(self.config.auth_path)

    def read_record(self) -> Optional[PasswordRecord]:
        """
        Return the stored record, or None when it is missing or cannot be
        parsed (the failure is logged).
        """
        if not self.has_password():
            return None
        try:
            with open(self.config.auth_path, "r", encoding="utf-8") as fh:
                raw = json.load(fh)
            return PasswordRecord(
                salt=str(raw["salt"]),
                hash=str(raw["hash"]),
                skipped=raw.get("skipped") is True,
            )
        except (OSError, ValueError, KeyError, TypeError):
            logger.exception("Failed to read password record")
            return None

    def write_record(self, record: PasswordRecord) -> None:
        """Atomically replace auth.json with *record*."""
        data = asdict(record)
        if not record.skipped:
            del data["skipped"]
        tmp = self.config.auth_path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(data, fh)
        os.replace(tmp, self.config.auth_path)

    def new_record(self, password: str, skipped: bool = False) -> PasswordRecord:
        salt = self.cipher.new_salt()
        return PasswordRecord(
            salt=salt,
            hash=self.cipher.hash_password(password, salt),
            skipped=skipped,
        )

    # ------------------------------------------------------------------
    # Password flows
    # ------------------------------------------------------------------

    def set_password(self, password: str) -> None:
        self.write_record(self.new_record(password))
        logger.info("Password record created")

    def skip_password(self) -> None:
        self.write_record(self.new_record(SKIPPED_PASSWORD_KEY, skipped=True))
        logger.info("Password record created in no-password mode")

    def is_password_skipped(self) -> bool:
        record = self.read_record()
        return record is not None and record.skipped

    def verify_password(self, password: str) -> bool:
        """
        Return True if *password* matches the stored record.

        Returns False when no record exists or it is unreadable.
        """
        record = self.read_record()
        if record is None:
            return False
        return self.cipher.verify_password(password, record.hash, record.salt)
