"""
Settings parsing and validation tests.
"""

from config import Settings, _parse_quotas


def test_parse_quotas():
    assert _parse_quotas("gemini=60, ollama=120") == {"gemini": 60, "ollama": 120}


def test_parse_quotas_skips_malformed_entries():
    assert _parse_quotas("gemini=60,bogus,ollama=lots") == {"gemini": 60}


class TestSettingsValidation:

    def test_defaults_are_valid_apart_from_api_key(self, monkeypatch):
        monkeypatch.setattr(Settings, "GEMINI_API_KEY", "key")
        monkeypatch.setattr(Settings, "WHISPER_MODEL_SIZE", "tiny")
        monkeypatch.setattr(Settings, "KEY_BACKEND", "keyring")
        monkeypatch.setattr(Settings, "ACTIVE_PROVIDER", "gemini")
        monkeypatch.setattr(Settings, "CONFIDENCE_THRESHOLD", 0.7)
        monkeypatch.setattr(Settings, "RETENTION_DAYS", 30)

        assert Settings.validate() == []

    def test_reports_each_problem(self, monkeypatch):
        monkeypatch.setattr(Settings, "WHISPER_MODEL_SIZE", "huge")
        monkeypatch.setattr(Settings, "KEY_BACKEND", "vault")
        monkeypatch.setattr(Settings, "ACTIVE_PROVIDER", "mock")
        monkeypatch.setattr(Settings, "CONFIDENCE_THRESHOLD", 1.5)
        monkeypatch.setattr(Settings, "RETENTION_DAYS", -1)

        assert len(Settings.validate()) == 4

    def test_provider_chain_puts_active_first(self, monkeypatch):
        monkeypatch.setattr(Settings, "ACTIVE_PROVIDER", "ollama")

        assert Settings.provider_chain() == ["ollama", "gemini"]
