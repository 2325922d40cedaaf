"""Tests for Settings loading."""

import pytest

from imagegen.sdk.client import GenerationClient
from imagegen.sdk.config import Settings
from imagegen.sdk.errors import ConfigError


class TestSettings:
    """Tests for Settings sources."""

    def test_defaults(self):
        settings = Settings()
        assert settings.base_url == "http://localhost:3000"
        assert settings.api_key is None
        assert settings.poll.max_attempts == 150

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "imagegen.yaml"
        path.write_text(
            "base_url: https://studio.example.com/\n"
            "api_key: sk-from-file-123456\n"
            "poll:\n"
            "  interval: 1.5\n"
            "  not_found_tolerance: 30\n"
        )
        settings = Settings.from_yaml(path)

        assert settings.base_url == "https://studio.example.com"
        assert settings.api_key.get_secret_value() == "sk-from-file-123456"
        assert settings.poll.interval == 1.5
        assert settings.poll.not_found_tolerance == 30

    def test_api_key_is_not_printed(self):
        settings = Settings(api_key="sk-very-secret-value")
        assert "sk-very-secret-value" not in repr(settings)
        assert "sk-very-secret-value" not in str(settings.model_dump())

    def test_from_env(self):
        environ = {
            "IMAGEGEN_BASE_URL": "https://api.example.com",
            "IMAGEGEN_TIMEOUT": "12.5",
            "IMAGEGEN_POLL_MAX_ATTEMPTS": "40",
            "IMAGEGEN_POLL_NOT_FOUND_TOLERANCE": "20",
            "IMAGEGEN_JOBS_PATH": "",
        }
        settings = Settings.from_env(environ=environ)

        assert settings.base_url == "https://api.example.com"
        assert settings.timeout == 12.5
        assert settings.poll.max_attempts == 40
        assert settings.poll.not_found_tolerance == 20
        assert settings.jobs_path == "/api/jobs"

    def test_load_layers_env_over_yaml(self, tmp_path):
        path = tmp_path / "imagegen.yaml"
        path.write_text("base_url: https://file.example.com\npoll:\n  interval: 3\n  max_attempts: 10\n")
        settings = Settings.load(path, environ={"IMAGEGEN_POLL_MAX_ATTEMPTS": "99"})

        assert settings.base_url == "https://file.example.com"
        assert settings.poll.interval == 3
        assert settings.poll.max_attempts == 99

    def test_load_without_file(self):
        settings = Settings.load(environ={})
        assert settings == Settings()

    def test_empty_poll_section_uses_defaults(self, tmp_path):
        path = tmp_path / "imagegen.yaml"
        path.write_text("base_url: https://file.example.com\npoll:\n")

        assert Settings.from_yaml(path).poll.max_attempts == 150
        settings = Settings.load(path, environ={"IMAGEGEN_POLL_INTERVAL": "4"})
        assert settings.poll.interval == 4
        assert settings.poll.max_attempts == 150

    def test_create_client(self):
        settings = Settings(base_url="https://studio.example.com", api_key="sk-abc", jobs_path="/v1/jobs")
        client = settings.create_client()
        assert isinstance(client, GenerationClient)
        assert client.api_key == "sk-abc"
        assert client.jobs_path == "/v1/jobs"

    def test_create_normalizer(self):
        settings = Settings(fetch_retries=2)
        client = settings.create_client()
        normalizer = settings.create_normalizer(client)
        assert normalizer.fetch == client.fetch_image
        assert normalizer.fetch_retries == 2
        assert settings.create_normalizer().fetch is None


class TestSettingsErrors:
    """Tests for configuration failures."""

    def test_invalid_value(self):
        with pytest.raises(ConfigError):
            Settings.from_env(environ={"IMAGEGEN_TIMEOUT": "soon"})

    def test_invalid_base_url(self):
        with pytest.raises(ConfigError):
            Settings.from_mapping({"base_url": "ftp://example.com"})

    def test_unknown_key(self):
        with pytest.raises(ConfigError):
            Settings.from_mapping({"base_ulr": "https://typo.example.com"})

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError) as exc_info:
            Settings.from_yaml(tmp_path / "missing.yaml")
        assert exc_info.value.details == {"path": str(tmp_path / "missing.yaml")}

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("base_url: [unclosed\n")
        with pytest.raises(ConfigError):
            Settings.from_yaml(path)

    def test_yaml_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            Settings.from_yaml(path)

    def test_poll_section_not_a_mapping(self, tmp_path):
        path = tmp_path / "imagegen.yaml"
        path.write_text("poll:\n  - 1\n  - 2\n")
        with pytest.raises(ConfigError):
            Settings.load(path, environ={"IMAGEGEN_POLL_INTERVAL": "4"})
