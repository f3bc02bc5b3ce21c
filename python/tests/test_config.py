"""
Tests for configuration loading, environment overrides and validation.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import ConfigManager, ConfigurationError

MISSING = "/nonexistent/config.yaml"


def write_config(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


class TestDefaults:

    def test_defaults_without_file(self):
        config = ConfigManager(config_path=MISSING, environ={})

        assert config.screening.hit_threshold == 0.85
        assert config.screening.fuzziness == 0.6
        assert config.screening.demo
        assert config.verification.demo
        assert not config.registry.enabled
        assert config.retry.max_attempts == 3
        assert config.auth.admin_api_key is None

    def test_to_dict_hides_secrets(self):
        config = ConfigManager(
            config_path=MISSING,
            environ={"PLATFORM_ADMIN_API_KEY": "admin-secret", "CRON_SECRET": "cron"},
        )
        data = config.to_dict()
        assert data["auth"] == {"admin_api_key_set": True, "cron_secret_set": True}
        assert "admin-secret" not in str(data)


class TestFileLoading:

    def test_yaml_sections(self, tmp_path):
        path = write_config(tmp_path, """
screening:
  hit_threshold: 0.9
  top_matches: 5
retry:
  max_attempts: 5
  min_wait: 0
  max_wait: 2
registry:
  rpc_url: http://127.0.0.1:8545
  chain_id: 31337
  factory_address: "0x1212121212121212121212121212121212121212"
  admin_private_key: "11"
logging:
  level: DEBUG
""")
        config = ConfigManager(config_path=path, environ={})

        assert config.screening.hit_threshold == 0.9
        assert config.screening.top_matches == 5
        assert config.retry.max_attempts == 5
        assert config.registry.chain_id == 31337
        assert config.registry.enabled
        assert config.logging.level == "DEBUG"

    def test_empty_section_uses_defaults(self, tmp_path):
        path = write_config(tmp_path, "screening:\nretry:\n")
        config = ConfigManager(config_path=path, environ={})
        assert config.screening.hit_threshold == 0.85

    def test_invalid_yaml(self, tmp_path):
        path = write_config(tmp_path, "screening: [unclosed\n")
        with pytest.raises(ConfigurationError):
            ConfigManager(config_path=path, environ={})

    def test_top_level_must_be_mapping(self, tmp_path):
        path = write_config(tmp_path, "- a\n- b\n")
        with pytest.raises(ConfigurationError):
            ConfigManager(config_path=path, environ={})


class TestEnvironmentOverrides:

    def test_env_wins_over_file(self, tmp_path):
        path = write_config(tmp_path, "auth:\n  cron_secret: from-file\n")
        config = ConfigManager(config_path=path, environ={"CRON_SECRET": "from-env"})
        assert config.auth.cron_secret == "from-env"

    def test_blank_env_is_ignored(self, tmp_path):
        path = write_config(tmp_path, "auth:\n  cron_secret: from-file\n")
        config = ConfigManager(config_path=path, environ={"CRON_SECRET": "   "})
        assert config.auth.cron_secret == "from-file"

    def test_provider_keys_leave_demo_mode(self):
        config = ConfigManager(config_path=MISSING, environ={
            "COMPLY_ADVANTAGE_API_KEY": "ca",
            "SUMSUB_APP_TOKEN": "app",
            "SUMSUB_SECRET_KEY": "secret",
        })
        assert not config.screening.demo
        assert not config.verification.demo

    def test_chain_id_must_be_integer(self):
        with pytest.raises(ConfigurationError):
            ConfigManager(config_path=MISSING, environ={"CHAIN_ID": "mainnet"})

    def test_chain_id_parsed(self):
        config = ConfigManager(config_path=MISSING, environ={"CHAIN_ID": "8453"})
        assert config.registry.chain_id == 8453


class TestValidation:

    @pytest.mark.parametrize("text", [
        "screening:\n  hit_threshold: 0\n",
        "screening:\n  hit_threshold: 1.5\n",
        "screening:\n  fuzziness: -0.1\n",
        "retry:\n  max_attempts: 0\n",
        "retry:\n  min_wait: 5\n  max_wait: 1\n",
        "logging:\n  level: LOUD\n",
        "registry:\n  factory_address: '1212'\n",
    ])
    def test_rejects(self, tmp_path, text):
        with pytest.raises(ConfigurationError):
            ConfigManager(config_path=write_config(tmp_path, text), environ={})

    def test_threshold_of_one_is_allowed(self, tmp_path):
        config = ConfigManager(
            config_path=write_config(tmp_path, "screening:\n  hit_threshold: 1.0\n"), environ={}
        )
        assert config.screening.hit_threshold == 1.0
