"""
Unit tests for the settings overlay in config.py.
"""
import json

import pytest

from bootstrap import ensure_config_files
from config import Config


@pytest.fixture
def config_dir(temp_dir, monkeypatch):
    path = temp_dir / "config"
    monkeypatch.setenv("CONFIG_DIR", str(path))
    for var in ("SIMILARITY_STRATEGY", "CREATION_WORKERS", "HANDOFF_TTL_MINUTES"):
        monkeypatch.delenv(var, raising=False)
    return path


@pytest.mark.unit
class TestSettingsOverlay:

    def test_settings_file_applies(self, config_dir):
        config_dir.mkdir(parents=True)
        (config_dir / "import_settings.json").write_text(json.dumps({
            "_comment": "ignored",
            "creation_workers": 3,
            "fuzzy_threshold": "55",
            "similarity_strategy": "fuzzy",
        }))

        config = Config()

        assert config.creation_workers == 3
        assert config.fuzzy_threshold == 55
        assert config.similarity_strategy == "fuzzy"

    def test_environment_wins_over_restored_defaults(self, config_dir, monkeypatch):
        ensure_config_files(config_dir)
        monkeypatch.setenv("SIMILARITY_STRATEGY", "fuzzy")
        monkeypatch.setenv("CREATION_WORKERS", "4")
        monkeypatch.setenv("HANDOFF_TTL_MINUTES", "5")

        config = Config()

        assert config.similarity_strategy == "fuzzy"
        assert config.creation_workers == 4
        assert config.handoff_ttl_minutes == 5

    def test_keys_without_env_var_still_apply(self, config_dir, monkeypatch):
        config_dir.mkdir(parents=True)
        (config_dir / "import_settings.json").write_text(json.dumps({"max_suggestions": 2}))
        monkeypatch.setenv("CREATION_WORKERS", "4")

        config = Config()

        assert config.max_suggestions == 2
        assert config.creation_workers == 4

    def test_corrupt_settings_keep_defaults(self, config_dir):
        config_dir.mkdir(parents=True)
        (config_dir / "import_settings.json").write_text("{broken")

        config = Config()

        assert config.creation_workers == 1
        assert config.similarity_strategy == "token"
