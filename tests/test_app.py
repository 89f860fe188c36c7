import asyncio
import json
from datetime import timedelta

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app import QuotaApp
from errors import UnknownProviderError
from models import ANTIGRAVITY, ZAI_CODING, AntigravityAccount, LoginResult, ZaiLimit, ZaiUsage
from refresh import INITIAL_REFRESH_JOB_ID, REFRESH_JOB_ID


@pytest.fixture
def adapters(fake_adapter):
    return {
        ANTIGRAVITY: fake_adapter(ANTIGRAVITY),
        ZAI_CODING: fake_adapter(ZAI_CODING, valid_keys={"good-key"}),
    }


@pytest.fixture
def app(config, adapters, notifier):
    config.set("background_refresh", False)
    return QuotaApp(
        config=config,
        providers=adapters,
        notifier=notifier,
        scheduler=AsyncIOScheduler(),
        language_detector=lambda: "en",
    )


async def _close(app):
    app.shutdown()
    await asyncio.sleep(0)


class TestSession:

    @pytest.mark.asyncio
    async def test_first_run_setup(self, app):
        assert app.needs_setup()
        await app.setup_password("hunter2")
        assert not app.needs_setup()
        assert app.store.is_unlocked()

    @pytest.mark.asyncio
    async def test_unlock(self, app):
        await app.setup_password("hunter2")
        app.lock()

        assert not await app.unlock("wrong")
        assert not app.store.is_unlocked()
        assert await app.unlock("hunter2")
        assert app.store.is_unlocked()

    @pytest.mark.asyncio
    async def test_unlock_corrupt_store_reports_failure(self, app, config):
        await app.setup_password("hunter2")
        await app.add_api_key_account("Main", "good-key")
        app.lock()
        with open(config.credentials_path, "w", encoding="utf-8") as fh:
            fh.write("garbage")

        assert not await app.unlock("hunter2")
        assert app.store.get_accounts(ZAI_CODING) == []

    @pytest.mark.asyncio
    async def test_auto_unlock_in_no_password_mode(self, app):
        assert not await app.try_auto_unlock()

        await app.skip_password()
        app.lock()

        assert await app.try_auto_unlock()
        assert app.store.is_unlocked()

    @pytest.mark.asyncio
    async def test_change_password(self, app):
        await app.setup_password("hunter2")
        assert await app.change_password("hunter2", "n3w")
        assert not await app.change_password("hunter2", "other")
        app.lock()
        assert await app.unlock("n3w")

    @pytest.mark.asyncio
    async def test_lock_clears_notification_state(self, app):
        await app.setup_password("hunter2")
        app.engine.check_threshold_crossing("item", 3, [25, 10, 5])
        app.lock()
        assert app.engine.get_state() == {}


class TestSettings:

    @pytest.mark.asyncio
    async def test_threshold_change_resets_state(self, app):
        await app.setup_password("hunter2")
        app.engine.check_threshold_crossing("item", 3, [25, 10, 5])

        await app.update_settings({"language": "zh-CN"})
        assert app.engine.get_state("item") is not None

        await app.update_settings({"notification_thresholds": [{"value": 40}, {"value": 5}]})
        assert app.engine.get_state() == {}
        assert app.store.get_settings().enabled_thresholds() == [40, 5]

    @pytest.mark.asyncio
    async def test_interval_change_rearms_timer(self, app, config):
        config.set("background_refresh", True)
        try:
            await app.setup_password("hunter2")
            assert app.orchestrator.is_running
            assert app.orchestrator.scheduler.get_job(INITIAL_REFRESH_JOB_ID) is not None

            await app.update_settings({"refresh_interval": 300})

            job = app.orchestrator.scheduler.get_job(REFRESH_JOB_ID)
            assert job.trigger.interval == timedelta(seconds=300)
        finally:
            await _close(app)

    @pytest.mark.asyncio
    async def test_toggle_background_refresh(self, app, config):
        try:
            await app.setup_password("hunter2")
            assert not app.orchestrator.is_running

            app.set_background_refresh(True)
            assert app.orchestrator.is_running

            app.set_background_refresh(False)
            assert not app.orchestrator.is_running
            with open(config.config_path, encoding="utf-8") as fh:
                assert json.load(fh)["background_refresh"] is False
        finally:
            await _close(app)

    @pytest.mark.asyncio
    async def test_lock_stops_timer(self, app, config):
        config.set("background_refresh", True)
        try:
            await app.setup_password("hunter2")
            app.lock()
            assert not app.orchestrator.is_running
        finally:
            await _close(app)


class TestAccounts:

    @pytest.mark.asyncio
    async def test_login_saves_account(self, app, adapters):
        await app.setup_password("hunter2")
        adapters[ANTIGRAVITY].login_result = LoginResult(
            success=True, account=AntigravityAccount(email="a@x.com", display_name="a@x.com"),
        )

        result = await app.login(ANTIGRAVITY)

        assert result.success
        stored = app.store.get_accounts(ANTIGRAVITY)
        assert len(stored) == 1
        assert stored[0].id
        assert stored[0].email == "a@x.com"

    @pytest.mark.asyncio
    async def test_failed_login_saves_nothing(self, app):
        await app.setup_password("hunter2")
        result = await app.login(ANTIGRAVITY)
        assert not result.success
        assert app.store.get_accounts(ANTIGRAVITY) == []

    @pytest.mark.asyncio
    async def test_login_without_adapter(self, app):
        await app.setup_password("hunter2")
        with pytest.raises(UnknownProviderError):
            await app.login("githubCopilot")

    @pytest.mark.asyncio
    async def test_add_api_key_account(self, app):
        await app.setup_password("hunter2")

        assert await app.add_api_key_account("Main", "bad-key") is None
        account = await app.add_api_key_account("Main", "good-key")

        assert account.display_name == "Main"
        assert [a.api_key for a in app.store.get_accounts(ZAI_CODING)] == ["good-key"]


class TestRefresh:

    @pytest.mark.asyncio
    async def test_refresh_now_notifies(self, app, adapters, notifier):
        await app.setup_password("hunter2")
        account = await app.add_api_key_account("Main", "good-key")
        adapters[ZAI_CODING].usage_by_id[account.id] = ZaiUsage(limits=[
            ZaiLimit(type="TOKENS_LIMIT", usage=100, current_value=80, remaining=20, percentage=80),
        ])

        results = await app.refresh_now()

        assert results[ZAI_CODING][0].error is None
        assert [n["severity"] for n in notifier.shown] == ["warning"]

        app.reset_notification_state()
        await app.refresh_now()
        assert len(notifier.shown) == 2
