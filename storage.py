"""
storage.py – Encrypted account, settings and customization storage.

This module contains CredentialStore, the single class responsible for the
encrypted storage document (credentials.enc):

  - Session state: the store starts Locked.  unlock() decrypts the document
    with a password and caches it in memory; lock() drops both.  Every
    document operation raises NotUnlockedError while locked.
  - Loading: a missing blob yields a fresh default document (not written
    until the first explicit save).  A blob that cannot be decrypted is
    logged and replaced in memory by a default document; the file on disk
    is left untouched until the next explicit save.
  - Migration: documents from older schema versions are migrated on load
    and written back immediately.
  - CRUD over the three provider account collections, the Settings record
    (shallow merge) and the customization state (stored wholesale).
  - Re-keying (change_password, switching to or from no-password mode)
    with backup / atomic write / restore so a failed write never leaves
    the store half-migrated.

Mutations work on a deep copy of the cached document, persist it, and only
then swap it in, under a re-entrant lock, so concurrent writers are
serialised and a failed write leaves the cache as it was.
"""

import copy
import dataclasses
import json
import logging
import os
import shutil
import threading
from typing import Callable, Dict, List, Optional

from auth import AuthManager
from config import (
    APP_NAME,
    CURRENT_DATA_VERSION,
    PROVIDER_IDS,
    SKIPPED_PASSWORD_KEY,
    AppConfig,
    system_language,
)
from crypto import Cipher
from errors import NotUnlockedError, QuotaManagerError, StorageLoadError
from migrations import VERSION_KEY, migrate_document
from models import Account, NotificationThreshold, Settings, account_class, account_from_dict

logger = logging.getLogger(APP_NAME)


class CredentialStore:
    """
    Versioned, encrypted-at-rest document store.

    Parameters
    ----------
    config : AppConfig
        Provides the credentials.enc path.
    cipher : Cipher
        Encrypts and decrypts the serialised document.
    auth : AuthManager
        Owns the PasswordRecord (auth.json).
    language_detector : callable, optional
        Returns the UI language seeded into a first-run document.
        Defaults to the host locale.
    """

    def __init__(self, config, cipher, auth, language_detector: Optional[Callable[[], str]] = None) -> None:
        self.config = config
        self.cipher = cipher
        self.auth = auth
        self._language_detector = language_detector or system_language

        self._password: Optional[str] = None
        self._document: Optional[dict] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Password record (delegated to AuthManager)
    # ------------------------------------------------------------------

    def has_password(self) -> bool:
        return self.auth.has_password()

    def verify_password(self, password: str) -> bool:
        """Check *password* against auth.json; the lock state is unchanged."""
        return self.auth.verify_password(password)

    def is_password_skipped(self) -> bool:
        return self.auth.is_password_skipped()

    def set_password(self, password: str) -> None:
        """
        Create a new PasswordRecord and leave the store unlocked with it.

        When the store is already unlocked (e.g. leaving no-password mode)
        the cached document is re-encrypted under the new password.
        """
        with self._lock:
            if self.is_unlocked():
                self._rekey(password, self.auth.new_record(password))
            else:
                self.auth.set_password(password)
                self.unlock(password)

    def skip_password(self) -> None:
        """Switch to no-password mode, keyed by the fixed internal key."""
        with self._lock:
            if self.is_unlocked():
                record = self.auth.new_record(SKIPPED_PASSWORD_KEY, skipped=True)
                self._rekey(SKIPPED_PASSWORD_KEY, record)
            else:
                self.auth.skip_password()
                self.unlock(SKIPPED_PASSWORD_KEY)

    def change_password(self, old_password: str, new_password: str) -> bool:
        """
        Verify *old_password*, then re-encrypt the whole document under
        *new_password* and persist it together with a new PasswordRecord.

        Returns False when *old_password* is wrong or the write fails.  On
        failure the files on disk and the in-memory password are rolled
        back, so the session keeps working with *old_password*.
        """
        with self._lock:
            if not self.auth.verify_password(old_password):
                return False
            if not self.is_unlocked():
                self.unlock(old_password)
            try:
                self._rekey(new_password, self.auth.new_record(new_password))
            except Exception:
                logger.exception("Password change failed; previous password kept")
                return False
            logger.info("Password changed")
            return True

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def is_unlocked(self) -> bool:
        return self._password is not None

    def unlock(self, password: str) -> bool:
        """
        Load the document with *password* and cache it.

        Returns True when the document was decrypted (or synthesised on
        first run) and False when decryption failed and a default document
        was substituted.  Callers are expected to verify_password() first.
        """
        with self._lock:
            self._password = password
            self._document, ok = self._load()
            return ok

    def lock(self) -> None:
        """Discard the password and the cached document."""
        with self._lock:
            self._password = None
            self._document = None
        logger.info("Storage locked")

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def get_accounts(self, provider: str) -> List[Account]:
        account_class(provider)
        with self._lock:
            raw_items = self._require_document().get(provider) or []
            return [account_from_dict(provider, raw) for raw in raw_items]

    def get_account(self, provider: str, account_id: str) -> Optional[Account]:
        for account in self.get_accounts(provider):
            if account.id == account_id:
                return account
        return None

    def save_account(self, provider: str, account: Account) -> bool:
        """Insert *account*, or replace the stored account with the same id."""
        if not isinstance(account, account_class(provider)):
            raise TypeError(f"{type(account).__name__} cannot be stored under {provider!r}")

        def apply(doc: dict) -> None:
            items = doc.setdefault(provider, [])
            raw = account.to_dict()
            for index, existing in enumerate(items):
                if existing.get("id") == account.id:
                    items[index] = raw
                    return
            items.append(raw)

        self._mutate(apply)
        return True

    def delete_account(self, provider: str, account_id: str) -> bool:
        """Remove the account with *account_id*; an unknown id is a no-op."""
        account_class(provider)

        def apply(doc: dict) -> None:
            doc[provider] = [a for a in doc.get(provider) or [] if a.get("id") != account_id]

        self._mutate(apply)
        return True

    def update_account(self, provider: str, account_id: str, partial: Dict) -> bool:
        """
        Shallow-merge *partial* (snake_case field names) into the stored
        account.  Returns False without writing when the id is unknown.
        """
        cls = account_class(provider)
        if "id" in partial:
            raise ValueError("Account id cannot be changed")

        with self._lock:
            items = self._require_document().get(provider) or []
            if not any(a.get("id") == account_id for a in items):
                return False

            def apply(doc: dict) -> None:
                stored = doc[provider]
                for index, raw in enumerate(stored):
                    if raw.get("id") == account_id:
                        updated = dataclasses.replace(cls.from_dict(raw), **partial)
                        stored[index] = {**raw, **updated.to_dict()}
                        return

            self._mutate(apply)
            return True

    # ------------------------------------------------------------------
    # Settings and customization
    # ------------------------------------------------------------------

    def get_settings(self) -> Settings:
        with self._lock:
            return Settings.from_dict(self._require_document().get("settings") or {})

    def save_settings(self, partial: Dict) -> Settings:
        """Shallow-merge *partial* (snake_case field names) into Settings."""
        partial = dict(partial)
        if "notification_thresholds" in partial:
            partial["notification_thresholds"] = [
                t if isinstance(t, NotificationThreshold) else NotificationThreshold.from_dict(t)
                for t in partial["notification_thresholds"]
            ]

        saved = {}

        def apply(doc: dict) -> None:
            raw = doc.get("settings") or {}
            merged = dataclasses.replace(Settings.from_dict(raw), **partial)
            doc["settings"] = {**raw, **merged.to_dict()}
            saved["settings"] = merged

        self._mutate(apply)
        return saved["settings"]

    def get_customization(self) -> Optional[dict]:
        with self._lock:
            customization = self._require_document().get("customization")
            return copy.deepcopy(customization) if customization is not None else None

    def save_customization(self, customization: dict) -> bool:
        """Replace the customization state wholesale."""
        def apply(doc: dict) -> None:
            doc["customization"] = copy.deepcopy(customization)

        self._mutate(apply)
        return True

    # ------------------------------------------------------------------
    # Loading and persisting
    # ------------------------------------------------------------------

    def _require_document(self) -> dict:
        if self._password is None or self._document is None:
            raise NotUnlockedError()
        return self._document

    def _default_document(self) -> dict:
        settings = Settings.from_dict({"language": self._language_detector()})
        doc = {VERSION_KEY: CURRENT_DATA_VERSION, "settings": settings.to_dict()}
        for provider in PROVIDER_IDS:
            doc[provider] = []
        return doc

    def _load(self):
        """
        Read, decrypt and migrate credentials.enc.

        Returns ``(document, ok)``; ``ok`` is False when a default
        document was substituted for one that could not be decrypted.
        """
        path = self.config.credentials_path
        if not os.path.exists(path):
            logger.info("No stored data yet; starting with a fresh document")
            return self._default_document(), True

        try:
            with open(path, "r", encoding="utf-8") as fh:
                blob = fh.read()
            doc = json.loads(self.cipher.decrypt(blob, self._password))
        except (OSError, ValueError, QuotaManagerError) as exc:
            logger.error("%s", StorageLoadError(path, str(exc)))
            return self._default_document(), False

        doc, changed = migrate_document(doc)
        for provider in PROVIDER_IDS:
            if not isinstance(doc.get(provider), list):
                doc[provider] = []
        if changed:
            try:
                self._write_document(doc)
            except OSError:
                logger.exception("Failed to persist migrated document")
        return doc, True

    def _mutate(self, apply: Callable[[dict], None]) -> None:
        with self._lock:
            doc = copy.deepcopy(self._require_document())
            apply(doc)
            self._write_document(doc)
            self._document = doc

    def _write_document(self, doc: dict) -> None:
        if self._password is None:
            raise NotUnlockedError()
        payload = json.dumps(doc, indent=2, ensure_ascii=False)
        self._write_blob(self.cipher.encrypt(payload, self._password))

    def _write_blob(self, blob: str) -> None:
        """Atomically replace credentials.enc with *blob*."""
        path = self.config.credentials_path
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            fh.write(blob)
        os.replace(tmp, path)

    # ------------------------------------------------------------------
    # Re-keying
    # ------------------------------------------------------------------

    def _rekey(self, new_password: str, record) -> None:
        """
        Re-encrypt the cached document under *new_password* and store
        *record* as the new PasswordRecord, using a three-phase strategy:

          Phase 1 – Copy auth.json and credentials.enc to *.bak*.
          Phase 2 – Write the re-encrypted blob, then the new record.
          Phase 3 – Remove the backups.

        If phase 2 fails the backups are restored, the in-memory password
        is rolled back and the exception is re-raised.
        """
        doc = self._require_document()
        old_password = self._password
        paths = [self.config.credentials_path, self.config.auth_path]
        backups: Dict[str, Optional[str]] = {}

        for path in paths:
            if os.path.exists(path):
                shutil.copy2(path, path + ".bak")
                backups[path] = path + ".bak"
            else:
                backups[path] = None

        try:
            self._password = new_password
            self._write_document(doc)
            self.auth.write_record(record)
        except Exception:
            self._password = old_password
            self._restore_backups(backups)
            raise
        finally:
            for bak in backups.values():
                if bak and os.path.exists(bak):
                    os.remove(bak)

    @staticmethod
    def _restore_backups(backups: Dict[str, Optional[str]]) -> None:
        """Best-effort rollback: put back .bak files, remove files that did not exist."""
        for orig, bak in backups.items():
            try:
                if bak:
                    shutil.copy2(bak, orig)
                elif os.path.exists(orig):
                    os.remove(orig)
            except OSError:
                logger.exception("Failed to restore backup for %s", orig)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_store: Optional[CredentialStore] = None


def get_or_create_store(config=None) -> CredentialStore:
    """
    Return the process-wide store, constructing it on first use.

    Construction itself stays side-effect free; consumers that need a
    private instance (tests, tools) build CredentialStore directly.
    """
    global _store
    if _store is None:
        config = config or AppConfig()
        cipher = Cipher()
        _store = CredentialStore(config, cipher, AuthManager(config, cipher))
    return _store
