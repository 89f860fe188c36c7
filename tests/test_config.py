import json
import os

import pytest

import config as config_module
from config import DEFAULT_CONFIG, AppConfig, map_locale_to_language, system_language


@pytest.mark.parametrize("locale_name, expected", [
    ("zh_TW", "zh-TW"),
    ("zh-Hant", "zh-TW"),
    ("zh_CN", "zh-CN"),
    ("zh-Hans", "zh-CN"),
    ("zh", "zh-CN"),
    ("en_US", "en"),
    ("de-DE", "en"),
    ("", "en"),
    (None, "en"),
])
def test_map_locale_to_language(locale_name, expected):
    assert map_locale_to_language(locale_name) == expected


def test_system_language_falls_back_to_lang(monkeypatch):
    monkeypatch.setattr(config_module.locale, "getlocale", lambda: (None, None))
    monkeypatch.setenv("LANG", "zh_TW.UTF-8")
    assert system_language() == "zh-TW"


class TestAppConfig:

    def test_paths(self, config, tmp_path):
        root = str(tmp_path / "userdata")
        assert config.user_data_dir == root
        assert config.credentials_path == os.path.join(root, "data", "credentials.enc")
        assert config.auth_path == os.path.join(root, "data", "auth.json")
        assert os.path.isdir(config.data_dir)

    def test_defaults(self, config):
        assert config.data == DEFAULT_CONFIG
        assert config.get("missing", 7) == 7

    def test_save_and_reload_back_fills(self, config):
        config.set("log_level", "DEBUG")
        config.save()

        with open(config.config_path, encoding="utf-8") as fh:
            raw = json.load(fh)
        del raw["initial_refresh_delay"]
        with open(config.config_path, "w", encoding="utf-8") as fh:
            json.dump(raw, fh)

        reloaded = AppConfig(data_dir=config.user_data_dir)
        assert reloaded.get("log_level") == "DEBUG"
        assert reloaded.get("initial_refresh_delay") == DEFAULT_CONFIG["initial_refresh_delay"]

    def test_corrupt_config_uses_defaults(self, config):
        with open(config.config_path, "w", encoding="utf-8") as fh:
            fh.write("{broken")
        assert AppConfig(data_dir=config.user_data_dir).data == DEFAULT_CONFIG

    def test_log_handler_is_not_duplicated(self, config):
        before = len(config.logger.handlers)
        AppConfig(data_dir=config.user_data_dir)
        assert len(config.logger.handlers) == before
