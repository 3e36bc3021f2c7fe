"""
Tests for YAML settings loading.
"""
import textwrap

import pytest

import config.settings as settings_module
from config.settings import Settings, load_settings
from ivr.scenarios import ScenarioRegistry


@pytest.fixture(autouse=True)
def _keep_global_settings(monkeypatch):
    # load_settings replaces the process-wide instance; restore it afterwards
    monkeypatch.setattr(settings_module, "_settings", settings_module._settings)


def test_env_substitution(tmp_path, monkeypatch):
    monkeypatch.setenv("TEST_BOT_TOKEN", "123:abc")
    monkeypatch.delenv("TEST_UNSET_TOKEN", raising=False)
    path = tmp_path / "settings.yaml"
    path.write_text(textwrap.dedent("""
        chat:
          bot_token: "${TEST_BOT_TOKEN}"
        telephony:
          auth_token: "${TEST_UNSET_TOKEN}"
          public_base_url: "https://ivr.example.com/"
          validate_signatures: "true"
        notifications:
          max_retries: 5
          pacing_ms: 0
        scenarios:
          - key: pin
            digits: 4
    """))

    settings = load_settings(str(path))

    assert settings.chat.bot_token == "123:abc"
    assert settings.telephony.auth_token == ""
    assert settings.telephony.public_base_url == "https://ivr.example.com"
    assert settings.telephony.validate_signatures is True
    assert settings.notifications.max_retries == 5
    assert settings.notifications.pacing_ms == 0
    assert settings.notifications.batch_size == 50
    assert settings.scenarios == [{"key": "pin", "digits": 4}]


def test_missing_file_gives_defaults(tmp_path):
    settings = load_settings(str(tmp_path / "absent.yaml"))
    assert settings == Settings()
    assert settings.database.store_backend == "memory"


def test_bundled_settings_load():
    settings = load_settings()
    assert settings.app_name == "IvrRelay"
    assert settings.scenarios == []

    registry = ScenarioRegistry.from_config(settings.scenarios)
    assert {"otp", "pin", "card_payment"} <= {s.key for s in registry.list_scenarios()}
