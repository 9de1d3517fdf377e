import json

import pytest

from coursepass.config import DEFAULT_SETTINGS, EngineConfig


class TestEngineConfigLoad:
    """Tests for EngineConfig.load."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for key in list(DEFAULT_SETTINGS) + ["DATA_DIR", "DATABASE_URL", "SECRET_KEY"]:
            monkeypatch.delenv(f"COURSEPASS_{key}", raising=False)

    def test_first_start_writes_default_settings(self, tmp_path):
        config = EngineConfig.load(tmp_path / "data")

        settings_file = tmp_path / "data" / "settings.json"
        assert settings_file.exists()
        assert json.loads(settings_file.read_text(encoding="utf-8")) == DEFAULT_SETTINGS
        assert config.storage == "file"
        assert config.order_ttl_minutes == 15
        assert config.persistence_retry_delays == (0.1, 0.5, 1.0)
        assert config.database_url.endswith("coursepass.db")

    def test_settings_file_values_are_used(self, tmp_path):
        (tmp_path / "settings.json").write_text(
            json.dumps({"ORDER_TTL_MINUTES": 30, "NEVER_ACTIVATED_POLICY": "cancelled"}),
            encoding="utf-8",
        )

        config = EngineConfig.load(tmp_path)

        assert config.order_ttl_minutes == 30
        assert config.never_activated_policy == "cancelled"
        assert config.payment_success_rate == 0.8

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        (tmp_path / "settings.json").write_text(json.dumps({"STORAGE": "file"}), encoding="utf-8")
        monkeypatch.setenv("COURSEPASS_STORAGE", "memory")
        monkeypatch.setenv("COURSEPASS_SWEEPER_ENABLED", "false")
        monkeypatch.setenv("COURSEPASS_PERSISTENCE_RETRY_DELAYS", "0.2,0.4")

        config = EngineConfig.load(tmp_path)

        assert config.storage == "memory"
        assert config.sweeper_enabled is False
        assert config.persistence_retry_delays == (0.2, 0.4)

    def test_invalid_json_is_reported(self, tmp_path):
        (tmp_path / "settings.json").write_text("{broken", encoding="utf-8")
        with pytest.raises(ValueError):
            EngineConfig.load(tmp_path)


class TestEngineConfigValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"storage": "redis"},
            {"never_activated_policy": "archived"},
            {"payment_success_rate": 1.5},
            {"payment_min_latency_seconds": 5.0, "payment_max_latency_seconds": 1.0},
            {"order_ttl_minutes": 0},
        ],
    )
    def test_bad_values_are_rejected(self, tmp_path, overrides):
        with pytest.raises(ValueError):
            EngineConfig(data_dir=tmp_path, **overrides)
