import logging

import pytest

from auth import AuthManager
from config import APP_NAME, AppConfig
from crypto import Cipher
from models import TokenBundle
from providers import ProviderAdapter
from storage import CredentialStore


@pytest.fixture
def config(tmp_path):
    cfg = AppConfig(data_dir=str(tmp_path / "userdata"))
    yield cfg
    logger = logging.getLogger(APP_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, "baseFilename", None) == str(tmp_path / "userdata" / "app.log"):
            logger.removeHandler(handler)
            handler.close()


@pytest.fixture
def cipher():
    return Cipher()


@pytest.fixture
def auth(config, cipher):
    return AuthManager(config, cipher)


@pytest.fixture
def store(config, cipher, auth):
    return CredentialStore(config, cipher, auth, language_detector=lambda: "en")


@pytest.fixture
def unlocked_store(store):
    store.set_password("hunter2")
    return store


class RecordingNotifier:
    """Collects every shown notification."""

    def __init__(self):
        self.shown = []

    def show(self, title, body, severity="warning", on_click=None):
        self.shown.append({"title": title, "body": body, "severity": severity, "on_click": on_click})
        return True


@pytest.fixture
def notifier():
    return RecordingNotifier()


class FakeAdapter(ProviderAdapter):
    """
    Adapter serving canned usage per account id.  A value that is an
    exception instance is raised instead of returned.
    """

    def __init__(self, provider_id, usage_by_id=None, refreshed=None, supports_refresh=False, valid_keys=None):
        self.provider_id = provider_id
        self.usage_by_id = usage_by_id or {}
        self.refreshed = refreshed
        self.supports_refresh = supports_refresh
        self.valid_keys = valid_keys
        self.fetched = []
        self.refresh_calls = []
        self.login_result = None

    async def fetch_usage(self, account):
        self.fetched.append(account)
        value = self.usage_by_id.get(account.id)
        if isinstance(value, Exception):
            raise value
        return value

    async def refresh_token(self, refresh_token):
        self.refresh_calls.append(refresh_token)
        return self.refreshed

    async def login(self):
        if self.login_result is None:
            return await super().login()
        return self.login_result

    async def validate_credential(self, credential):
        if self.valid_keys is None:
            return True
        return credential in self.valid_keys


@pytest.fixture
def fake_adapter():
    return FakeAdapter


@pytest.fixture
def token_bundle():
    return TokenBundle(access_token="new-access", refresh_token="new-refresh", expires_at=9_999_999_999_999)
