"""
refresh.py – Periodic usage refresh.

This module contains RefreshOrchestrator, which ties the store, the
provider adapters and the threshold engine together:

  - One recurring APScheduler job drives background refreshes.  Arming it
    again replaces the previous job in one step, so there is never more
    than one timer; removing it does not abort a tick already running.
  - Every tick fetches usage for all accounts of all providers
    concurrently.  Each account gets its own result slot; a failure in
    one account (token refresh or fetch) is recorded in that slot and
    never cancels or delays the others.
  - OAuth tokens expiring within REFRESH_THRESHOLD_MS are refreshed before
    use and the new tokens are written back through the store.
  - The collected results go to ThresholdEngine.check_and_notify().

The scheduler must be started from the thread running the event loop.
"""

import asyncio
import dataclasses
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config import APP_NAME, REFRESH_THRESHOLD_MS
from errors import ProviderFetchError, ProviderRefreshError
from models import Account, DisplayFilters, UsageResult

logger = logging.getLogger(APP_NAME)

REFRESH_JOB_ID = "background_refresh"
INITIAL_REFRESH_JOB_ID = "initial_refresh"


def account_label(account: Account) -> str:
    """Name shown for *account* in results and notifications."""
    for attr in ("display_name", "email", "login", "name"):
        value = getattr(account, attr, "")
        if value:
            return value
    return account.id


class RefreshOrchestrator:
    """
    Coordinates background refreshes.

    Parameters
    ----------
    store : CredentialStore
        Source of accounts and settings; receives refreshed tokens.
    engine : ThresholdEngine
        Receives every completed batch.
    providers : dict
        ProviderAdapter instances keyed by provider id.  Providers without
        an adapter are skipped.
    scheduler : AsyncIOScheduler, optional
        Injected for tests; a private scheduler is created otherwise.
    clock : callable, optional
        Returns the current time in seconds (``time.time`` by default).
    """

    def __init__(self, store, engine, providers: Dict, scheduler: Optional[AsyncIOScheduler] = None,
                 clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.engine = engine
        self.providers = dict(providers)
        self.scheduler = scheduler or AsyncIOScheduler()
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def ensure_fresh(self, provider: str, account: Account) -> Account:
        """
        Return *account* with valid tokens, refreshing them first when
        they expire within the look-ahead window.

        Raises ProviderRefreshError when the adapter reports a definitive
        refresh failure.
        """
        adapter = self.providers[provider]
        if not adapter.supports_refresh or not account.needs_refresh(self._now_ms(), REFRESH_THRESHOLD_MS):
            return account

        tokens = await adapter.refresh_token(account.refresh_token)
        if tokens is None:
            raise ProviderRefreshError(provider, account.id)

        updates = {
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token,
            "expires_at": tokens.expires_at,
        }
        await asyncio.to_thread(self.store.update_account, provider, account.id, updates)
        logger.info("Refreshed token for %s account %s", provider, account.id)
        return dataclasses.replace(account, **updates)

    async def fetch_account(self, provider: str, account: Account) -> UsageResult:
        """Refresh (if needed) and fetch one account; failures land in the result."""
        name = account_label(account)
        try:
            current = await self.ensure_fresh(provider, account)
            usage = await self.providers[provider].fetch_usage(current)
        except ProviderRefreshError as exc:
            logger.error("Token refresh failed for %s account %s", provider, account.id)
            return UsageResult(account_id=account.id, account_name=name, error=str(exc))
        except Exception as exc:
            logger.error("%s", ProviderFetchError(provider, account.id, repr(exc)))
            return UsageResult(account_id=account.id, account_name=name, error=str(exc) or type(exc).__name__)
        return UsageResult(account_id=account.id, account_name=name, usage=usage)

    async def fetch_provider(self, provider: str) -> List[UsageResult]:
        """Fetch every account of *provider* concurrently, one slot per account."""
        accounts = self.store.get_accounts(provider)
        if not accounts:
            return []
        results = await asyncio.gather(*(self.fetch_account(provider, a) for a in accounts))
        return list(results)

    async def refresh_all(self) -> Dict[str, List[UsageResult]]:
        """Fetch all providers; empty when the store is locked."""
        if not self.store.is_unlocked():
            return {}
        providers = list(self.providers)
        batches = await asyncio.gather(
            *(self.fetch_provider(p) for p in providers), return_exceptions=True
        )
        results: Dict[str, List[UsageResult]] = {}
        for provider, batch in zip(providers, batches):
            if isinstance(batch, Exception):
                logger.error("Refresh of %s failed: %r", provider, batch)
                batch = []
            results[provider] = batch
        return results

    async def tick(self) -> Dict[str, List[UsageResult]]:
        """One refresh cycle: fetch everything, then evaluate thresholds."""
        results: Dict[str, List[UsageResult]] = {}
        try:
            results = await self.refresh_all()
            if results:
                settings = self.store.get_settings()
                filters = DisplayFilters.from_customization(self.store.get_customization())
                await self.engine.check_and_notify(results, settings, filters)
        except Exception:
            logger.exception("Background refresh failed")
        return results

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def _ensure_scheduler(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()

    def start(self, interval: Optional[int] = None) -> bool:
        """
        Arm the refresh timer, replacing any previous one.  The interval
        defaults to the stored refresh interval.  Returns False when the
        store is locked.
        """
        if not self.store.is_unlocked():
            return False
        seconds = interval or self.store.get_settings().refresh_interval
        self._ensure_scheduler()
        self.scheduler.add_job(
            self.tick,
            "interval",
            seconds=seconds,
            id=REFRESH_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Background refresh every %s s", seconds)
        return True

    def restart(self) -> bool:
        """Re-arm the timer with the current settings."""
        return self.start()

    def run_soon(self, delay: float = 0) -> None:
        """Schedule a single extra refresh *delay* seconds from now."""
        self._ensure_scheduler()
        self.scheduler.add_job(
            self.tick,
            "date",
            run_date=datetime.now() + timedelta(seconds=delay),
            id=INITIAL_REFRESH_JOB_ID,
            replace_existing=True,
        )

    def stop(self) -> None:
        """Cancel the timer; a tick already running completes."""
        if self.scheduler.running and self.scheduler.get_job(REFRESH_JOB_ID):
            self.scheduler.remove_job(REFRESH_JOB_ID)
            logger.info("Background refresh stopped")

    @property
    def is_running(self) -> bool:
        return self.scheduler.running and self.scheduler.get_job(REFRESH_JOB_ID) is not None

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
