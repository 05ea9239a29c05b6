"""
Tests for the JSON configuration
"""
import json

import pytest

from replica_watch.config import DEFAULT_CONFIG, Config


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "cfg" / "config.json"


class TestConfig:

    def test_creates_default_file(self, config_path):
        cfg = Config(config_path)
        assert config_path.exists()
        assert json.loads(config_path.read_text()) == DEFAULT_CONFIG
        assert not cfg.is_configured()
        assert cfg.digest_algorithm == "sha256"
        assert cfg.probe_timeout == 10
        assert cfg.grace_seconds == 5
        assert cfg.batch_timeout is None
        assert cfg.verify_tls is True
        assert cfg.tiers == ["etag", "content", "timestamp"]

    def test_stored_values_merge_over_defaults(self, config_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text(json.dumps({
            "source_folder": "/srv/site",
            "servers": ["https://web1.example.org/", "https://web2.example.org"],
            "batch_timeout_seconds": 30,
        }))
        cfg = Config(config_path)
        assert cfg.is_configured()
        assert cfg.servers == ["https://web1.example.org", "https://web2.example.org"]
        assert [t.base_url for t in cfg.server_targets()] == cfg.servers
        assert cfg.batch_timeout == 30
        assert cfg.include_patterns == ["*"]

    def test_malformed_file_falls_back_to_defaults(self, config_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text("{not json")
        cfg = Config(config_path)
        assert cfg.servers == []
        assert cfg.log_level == "INFO"

    def test_non_object_json_falls_back_to_defaults(self, config_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text("[1, 2]")
        assert Config(config_path).servers == []

    def test_setters_normalise_and_persist(self, config_path):
        cfg = Config(config_path)
        cfg.source_folder = " /srv/site "
        cfg.servers = ["http://a/", "", "http://a", "http://b"]
        cfg.probe_timeout = 0
        cfg.grace_seconds = -3
        cfg.include_patterns = ["*.xml", " "]
        cfg.save()

        reloaded = Config(config_path)
        assert reloaded.source_folder == "/srv/site"
        assert reloaded.servers == ["http://a", "http://b"]
        assert reloaded.probe_timeout == 1
        assert reloaded.grace_seconds == 0
        assert reloaded.include_patterns == ["*.xml"]

    def test_invalid_tiers_and_digest_rejected(self, config_path):
        cfg = Config(config_path)
        with pytest.raises(ValueError):
            cfg.tiers = ["etag", "psychic"]
        with pytest.raises(ValueError):
            cfg.digest_algorithm = "sha-999"
        cfg.tiers = ["Timestamp", "etag"]
        assert cfg.tiers == ["timestamp", "etag"]

    def test_unknown_stored_values_degrade_gracefully(self, config_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text(json.dumps({"digest_algorithm": "crc99", "tiers": ["bogus"]}))
        cfg = Config(config_path)
        assert cfg.digest_algorithm == "sha256"
        assert cfg.tiers == ["etag", "content", "timestamp"]
