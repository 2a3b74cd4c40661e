"""Unit tests for configuration management."""

import os
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

import pytest
from conductor.infrastructure.config import Config, ConfigManager, ProviderConfig, QueueConfig
from pydantic import ValidationError


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """No CONDUCTOR_* or provider variables and an empty home directory."""
    for name in list(os.environ):
        if name.startswith("CONDUCTOR_") or name.endswith("_API_KEY"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(Path, "home", lambda: tmp_path / "home")


class TestConfig:
    """Tests for Config model."""

    def test_default_config(self) -> None:
        config = Config()

        assert config.log_level == "INFO"
        assert config.default_user_id == "default"
        assert config.queue.poll_interval_seconds == 30
        assert config.queue.batch_size == 5
        assert config.queue.default_max_retries == 3
        assert config.queue.max_continuations == 10
        assert config.providers.preference == ["openai", "anthropic", "groq", "xai"]
        assert config.providers.failure_threshold == 3
        assert config.providers.cooldown_seconds == 300
        assert config.workflow.use_llm is True

    def test_provider_preference_normalized(self) -> None:
        config = ProviderConfig(preference=[" Anthropic", "openai", "anthropic"])

        assert config.preference == ["anthropic", "openai"]

    def test_unknown_provider_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ProviderConfig(preference=["openai", "mistral"])

    def test_invalid_queue_values_rejected(self) -> None:
        with pytest.raises(ValidationError):
            QueueConfig(batch_size=0)


class TestConfigManager:
    """Tests for ConfigManager."""

    def test_load_default_config(self) -> None:
        with TemporaryDirectory() as tmpdir:
            config = ConfigManager(project_root=Path(tmpdir)).load_config()

            assert config.version == "0.1.0"
            assert config.log_level == "INFO"

    def test_yaml_hierarchy(self) -> None:
        with TemporaryDirectory() as tmpdir:
            project_root = Path(tmpdir)
            config_dir = project_root / ".conductor"
            config_dir.mkdir()
            (config_dir / "config.yaml").write_text(
                "log_level: DEBUG\nqueue:\n  batch_size: 8\n  default_max_retries: 5\n"
            )
            (config_dir / "local.yaml").write_text("queue:\n  batch_size: 2\n")

            config = ConfigManager(project_root=project_root).load_config()

            assert config.log_level == "DEBUG"
            assert config.queue.batch_size == 2
            assert config.queue.default_max_retries == 5

    def test_env_vars_override_files(self, monkeypatch) -> None:
        with TemporaryDirectory() as tmpdir:
            project_root = Path(tmpdir)
            (project_root / ".conductor").mkdir()
            (project_root / ".conductor" / "config.yaml").write_text("log_level: DEBUG\n")

            monkeypatch.setenv("CONDUCTOR_LOG_LEVEL", "WARNING")
            monkeypatch.setenv("CONDUCTOR_BATCH_SIZE", "12")
            monkeypatch.setenv("CONDUCTOR_DEFAULT_USER", "alice")
            monkeypatch.setenv("CONDUCTOR_PROVIDERS", "groq,openai")

            config = ConfigManager(project_root=project_root).load_config()

            assert config.log_level == "WARNING"
            assert config.queue.batch_size == 12
            assert config.default_user_id == "alice"
            assert config.providers.preference == ["groq", "openai"]

    def test_config_is_cached(self) -> None:
        with TemporaryDirectory() as tmpdir:
            manager = ConfigManager(project_root=Path(tmpdir))

            assert manager.load_config() is manager.load_config()

    def test_api_key_from_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env-key-0123456789")
        with TemporaryDirectory() as tmpdir:
            manager = ConfigManager(project_root=Path(tmpdir))

            with patch("conductor.infrastructure.config.keyring.get_password") as get_password:
                assert manager.get_api_key("openai") == "sk-env-key-0123456789"
                get_password.assert_not_called()

    def test_api_key_from_keychain_per_user(self) -> None:
        with TemporaryDirectory() as tmpdir:
            manager = ConfigManager(project_root=Path(tmpdir))

            with patch(
                "conductor.infrastructure.config.keyring.get_password",
                return_value="gsk_keychain0123456",
            ) as get_password:
                assert manager.get_api_key("groq", "alice") == "gsk_keychain0123456"
                get_password.assert_called_once_with("conductor", "alice:groq_api_key")

    def test_api_key_from_env_file(self) -> None:
        with TemporaryDirectory() as tmpdir:
            project_root = Path(tmpdir)
            (project_root / ".env").write_text('XAI_API_KEY="xai-from-dotenv-0123"\n')
            manager = ConfigManager(project_root=project_root)

            with patch(
                "conductor.infrastructure.config.keyring.get_password",
                side_effect=RuntimeError("no keyring backend"),
            ):
                assert manager.get_api_key("xai") == "xai-from-dotenv-0123"

    def test_missing_api_key_returns_none(self) -> None:
        with TemporaryDirectory() as tmpdir:
            manager = ConfigManager(project_root=Path(tmpdir))

            with patch(
                "conductor.infrastructure.config.keyring.get_password", return_value=None
            ):
                assert manager.get_api_key("anthropic") is None

    def test_set_api_key_to_env_file(self) -> None:
        with TemporaryDirectory() as tmpdir:
            project_root = Path(tmpdir)
            manager = ConfigManager(project_root=project_root)

            manager.set_api_key("groq", "gsk_stored0123456", use_keychain=False)

            env_file = project_root / ".env"
            assert "GROQ_API_KEY=gsk_stored0123456" in env_file.read_text()
            assert env_file.stat().st_mode & 0o777 == 0o600

    def test_set_api_key_to_keychain(self) -> None:
        with TemporaryDirectory() as tmpdir:
            manager = ConfigManager(project_root=Path(tmpdir))

            with patch("conductor.infrastructure.config.keyring.set_password") as set_password:
                manager.set_api_key("openai", "sk-stored0123456", user_id="bob")

            set_password.assert_called_once_with(
                "conductor", "bob:openai_api_key", "sk-stored0123456"
            )

    def test_set_api_key_unknown_provider(self) -> None:
        with TemporaryDirectory() as tmpdir:
            manager = ConfigManager(project_root=Path(tmpdir))

            with pytest.raises(ValueError, match="Unknown provider"):
                manager.set_api_key("mistral", "key-0123456789")

    def test_paths_created(self) -> None:
        with TemporaryDirectory() as tmpdir:
            manager = ConfigManager(project_root=Path(tmpdir))

            assert manager.get_database_path() == Path(tmpdir) / ".conductor" / "conductor.db"
            assert manager.get_log_dir().is_dir()
