"""Tests for configuration management."""

import pytest
import yaml

from pvewatch.server.config import REDACTED, Config, ProxmoxConfig, ServerConfig, StreamConfig


class TestConfig:
    def test_default_config(self):
        config = Config()
        assert config.deployment_name == "Proxmox Monitor"
        assert config.server.host == "0.0.0.0"
        assert config.server.port == 15000
        assert config.stream.poll_interval == 5.0
        assert config.stream.cache_ttl == 2.0
        assert config.stream.max_sessions is None
        assert config.proxmox.mock is False

    def test_from_dict(self):
        data = {
            "deployment": {"name": "Lab"},
            "server": {"host": "127.0.0.1", "port": 9000, "url_prefix": "/monitor"},
            "proxmox": {
                "base_url": "https://pve.lan:8006",
                "token_id": "root@pam!monitor",
                "token_secret": "s3cret",
                "insecure_tls": "yes",
            },
            "stream": {
                "poll_interval": 2,
                "max_sessions": 10,
                "cache": {"ttl": 1.5, "max_entries": 50},
                "client": {"heartbeat_interval": 15, "max_retries": 7},
            },
            "logging": {"level": "debug"},
        }
        config = Config.from_dict(data)

        assert config.deployment_name == "Lab"
        assert config.server.url_prefix == "/monitor"
        assert config.proxmox.insecure_tls is True
        assert config.stream.poll_interval == 2.0
        assert config.stream.max_sessions == 10
        assert config.stream.cache_ttl == 1.5
        assert config.stream.cache_max_entries == 50
        assert config.stream.heartbeat_interval == 15.0
        assert config.stream.max_retries == 7
        assert config.stream.retry_delay == 3.0
        assert config.logging_level == "DEBUG"

    def test_poll_interval_floor(self):
        config = Config.from_dict({"stream": {"poll_interval": 0.1}})
        assert config.stream.poll_interval == 0.5

    def test_from_yaml(self, tmp_path):
        yaml_content = """
deployment:
  name: "YAML Test"
server:
  port: 8888
proxmox:
  mock: true
stream:
  cache:
    ttl: 4
"""
        config_file = tmp_path / "config.yaml"
        config_file.write_text(yaml_content)

        config = Config.from_yaml(config_file)

        assert config.deployment_name == "YAML Test"
        assert config.server.port == 8888
        assert config.proxmox.mock is True
        assert config.stream.cache_ttl == 4.0

    def test_from_yaml_missing_file(self, tmp_path):
        config = Config.from_yaml(tmp_path / "nope.yaml")
        assert config.server.port == 15000

    def test_from_yaml_empty_file(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("")
        assert Config.from_yaml(config_file).deployment_name == "Proxmox Monitor"

    def test_to_dict_round_trip_redacts_secret(self):
        config = Config(proxmox=ProxmoxConfig(base_url="https://pve", token_id="id", token_secret="secret"))
        data = config.to_dict()
        assert data["proxmox"]["token_secret"] == REDACTED
        assert "secret" not in yaml.safe_dump(data).replace("token_secret", "")

        restored = Config.from_dict(data)
        assert restored.proxmox.base_url == "https://pve"
        assert restored.stream == config.stream
        assert restored.server == config.server

    def test_to_dict_without_secret(self):
        assert Config().to_dict()["proxmox"]["token_secret"] is None


class TestLoad:
    def test_explicit_path(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config_file = tmp_path / "custom.yaml"
        config_file.write_text("server:\n  port: 7000\n")
        config = Config.load(str(config_file), environ={})
        assert config.server.port == 7000

    def test_env_var_path(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config_file = tmp_path / "env.yaml"
        config_file.write_text("server:\n  port: 7001\n")
        config = Config.load(environ={"PVEWATCH_CONFIG": str(config_file)})
        assert config.server.port == 7001

    def test_configs_directory(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "configs").mkdir()
        (tmp_path / "configs" / "config.yaml").write_text("deployment:\n  name: From configs\n")
        assert Config.load(environ={}).deployment_name == "From configs"

    def test_defaults_when_nothing_found(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        assert Config.load(environ={}).server.port == 15000


class TestEnvironment:
    def test_overrides(self):
        config = Config()
        config.apply_env({
            "PROXMOX_BASE_URL": "https://pve.example:8006",
            "PROXMOX_API_TOKEN_ID": "root@pam!watch",
            "PROXMOX_API_TOKEN_SECRET": "abc",
            "PROXMOX_INSECURE_TLS": "true",
            "POLL_INTERVAL_MS": "2500",
            "SERVER_CACHE_TTL_MS": "1000",
            "PORT": "18000",
        })
        assert config.proxmox.base_url == "https://pve.example:8006"
        assert config.proxmox.token_id == "root@pam!watch"
        assert config.proxmox.token_secret == "abc"
        assert config.proxmox.insecure_tls is True
        assert config.stream.poll_interval == 2.5
        assert config.stream.cache_ttl == 1.0
        assert config.server.port == 18000

    def test_poll_interval_env_floor(self):
        config = Config()
        config.apply_env({"POLL_INTERVAL_MS": "10"})
        assert config.stream.poll_interval == 0.5

    def test_mock_flag(self):
        config = Config()
        config.apply_env({"ENABLE_MOCK": "1"})
        assert config.proxmox.mock is True
        config.apply_env({"ENABLE_MOCK": "false"})
        assert config.proxmox.mock is False

    def test_env_wins_over_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config_file = tmp_path / "config.yaml"
        config_file.write_text("server:\n  port: 7000\n")
        config = Config.load(str(config_file), environ={"PORT": "7100"})
        assert config.server.port == 7100


class TestValidate:
    def test_mock_needs_no_upstream(self):
        Config(proxmox=ProxmoxConfig(mock=True)).validate()

    def test_missing_base_url(self):
        with pytest.raises(ValueError, match="PROXMOX_BASE_URL"):
            Config().validate()

    def test_bad_scheme(self):
        config = Config(proxmox=ProxmoxConfig(base_url="ftp://pve", token_id="a", token_secret="b"))
        with pytest.raises(ValueError, match="Invalid Proxmox base URL"):
            config.validate()

    def test_missing_token(self):
        config = Config(proxmox=ProxmoxConfig(base_url="https://pve", token_id="a"))
        with pytest.raises(ValueError, match="TOKEN"):
            config.validate()

    def test_complete_upstream(self):
        Config(proxmox=ProxmoxConfig(base_url="https://pve", token_id="a", token_secret="b")).validate()

    def test_bad_port(self):
        config = Config(server=ServerConfig(port=0), proxmox=ProxmoxConfig(mock=True))
        with pytest.raises(ValueError, match="port"):
            config.validate()

    def test_bad_stream_bounds(self):
        config = Config(proxmox=ProxmoxConfig(mock=True), stream=StreamConfig(max_sessions=0))
        with pytest.raises(ValueError, match="max_sessions"):
            config.validate()
        config = Config(proxmox=ProxmoxConfig(mock=True), stream=StreamConfig(max_retries=0))
        with pytest.raises(ValueError, match="max_retries"):
            config.validate()
