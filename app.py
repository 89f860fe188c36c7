"""
app.py – Application wiring.

QuotaApp is the composition root.  It builds every service once, in
dependency order, and hands each one its collaborators by reference:

  config.py        – AppConfig           : paths, preferences, logging
  crypto.py        – Cipher              : key derivation, AES-GCM, hashing
  auth.py          – AuthManager         : auth.json password record
  storage.py       – CredentialStore     : encrypted document, migrations
  notification.py  – ThresholdEngine     : tiered low-quota alerts
  refresh.py       – RefreshOrchestrator : background refresh timer

The operations below are what a dashboard front end calls.  They are
coroutines so the host's event loop never blocks on key derivation or
disk I/O; blocking store calls run in a worker thread.
"""

import asyncio
import logging
import uuid
from typing import Dict, List, Optional

from auth import AuthManager
from config import APP_NAME, APP_VERSION, SKIPPED_PASSWORD_KEY, AppConfig
from crypto import Cipher
from errors import UnknownProviderError
from models import ZAI_CODING, LoginResult, Settings, UsageResult, ZaiCodingAccount, account_class
from notification import ThresholdEngine
from notifier import DesktopNotifier
from refresh import RefreshOrchestrator
from storage import CredentialStore

logger = logging.getLogger(APP_NAME)


class QuotaApp:
    """
    Owns the service graph and the session lifecycle.

    Parameters
    ----------
    config : AppConfig, optional
        Built from the OS user-data directory when omitted.
    providers : dict, optional
        ProviderAdapter instances keyed by provider id.
    notifier : object, optional
        Display collaborator for alerts; DesktopNotifier by default.
    scheduler : AsyncIOScheduler, optional
        Passed through to RefreshOrchestrator.
    language_detector : callable, optional
        Seeds the language of a first-run document.
    on_navigate : callable, optional
        Called when the user clicks an alert.
    """

    def __init__(self, config: Optional[AppConfig] = None, providers: Optional[Dict] = None,
                 notifier=None, scheduler=None, language_detector=None, on_navigate=None) -> None:
        self.config = config or AppConfig()
        self.cipher = Cipher()
        self.auth = AuthManager(self.config, self.cipher)
        self.store = CredentialStore(self.config, self.cipher, self.auth, language_detector)
        self.engine = ThresholdEngine(
            notifier if notifier is not None else DesktopNotifier(),
            on_navigate=on_navigate,
        )
        self.providers = dict(providers or {})
        self.orchestrator = RefreshOrchestrator(self.store, self.engine, self.providers, scheduler)
        logger.info("%s %s started", APP_NAME, APP_VERSION)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def needs_setup(self) -> bool:
        """True on first run, before any password record exists."""
        return not self.store.has_password()

    async def unlock(self, password: str) -> bool:
        """
        Verify *password* and open the session.

        Returns False for a wrong password and for a stored document that
        cannot be decrypted; the caller cannot tell the two apart.  In the
        latter case the session still opens on an empty default document
        and the file on disk is kept until the next save.
        """
        if not await asyncio.to_thread(self.store.verify_password, password):
            logger.warning("Unlock rejected")
            return False
        ok = await asyncio.to_thread(self.store.unlock, password)
        self._start_session()
        return ok

    async def try_auto_unlock(self) -> bool:
        """Open the session without prompting when no-password mode is on."""
        if not self.store.is_password_skipped():
            return False
        return await self.unlock(SKIPPED_PASSWORD_KEY)

    async def setup_password(self, password: str) -> None:
        """Create (or replace, from no-password mode) the password and unlock."""
        await asyncio.to_thread(self.store.set_password, password)
        self._start_session()

    async def skip_password(self) -> None:
        await asyncio.to_thread(self.store.skip_password)
        self._start_session()

    async def change_password(self, old_password: str, new_password: str) -> bool:
        return await asyncio.to_thread(self.store.change_password, old_password, new_password)

    def lock(self) -> None:
        """Stop background work and forget the password and cached data."""
        self.orchestrator.stop()
        self.engine.reset_state()
        self.store.lock()

    def shutdown(self) -> None:
        self.lock()
        self.orchestrator.shutdown()

    def _start_session(self) -> None:
        if not self.config.get("background_refresh", True):
            return
        self.orchestrator.start()
        self.orchestrator.run_soon(self.config.get("initial_refresh_delay", 5))

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def update_settings(self, partial: Dict) -> Settings:
        """
        Merge *partial* into Settings.  A changed threshold configuration
        clears the alert memory; a changed interval re-arms the timer.
        """
        before = self.store.get_settings()
        after = await asyncio.to_thread(self.store.save_settings, partial)

        if after.notification_thresholds != before.notification_thresholds:
            self.engine.reset_state()
        if after.refresh_interval != before.refresh_interval and self.orchestrator.is_running:
            self.orchestrator.restart()
        return after

    def set_background_refresh(self, enabled: bool) -> None:
        self.config.set("background_refresh", bool(enabled))
        self.config.save()
        if enabled:
            self.orchestrator.start()
        else:
            self.orchestrator.stop()

    def reset_notification_state(self) -> None:
        self.engine.reset_state()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def _adapter(self, provider: str):
        account_class(provider)
        adapter = self.providers.get(provider)
        if adapter is None:
            raise UnknownProviderError(provider)
        return adapter

    async def login(self, provider: str) -> LoginResult:
        """Run the provider's interactive login and store the account it returns."""
        result = await self._adapter(provider).login()
        if not result.success or result.account is None:
            logger.warning("Login for %s failed: %s", provider, result.error)
            return result

        account = result.account
        if not account.id:
            account.id = uuid.uuid4().hex
        await asyncio.to_thread(self.store.save_account, provider, account)
        logger.info("Added %s account %s", provider, account.id)
        return result

    async def add_api_key_account(self, name: str, api_key: str) -> Optional[ZaiCodingAccount]:
        """Validate a Z.ai API key and store it; None when the key is rejected."""
        if not await self._adapter(ZAI_CODING).validate_credential(api_key):
            logger.warning("Rejected API key for %s account %r", ZAI_CODING, name)
            return None

        account = ZaiCodingAccount(id=uuid.uuid4().hex, display_name=name, name=name, api_key=api_key)
        await asyncio.to_thread(self.store.save_account, ZAI_CODING, account)
        logger.info("Added %s account %s", ZAI_CODING, account.id)
        return account

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh_now(self) -> Dict[str, List[UsageResult]]:
        """Run one refresh cycle immediately, alerts included."""
        return await self.orchestrator.tick()
