"""
Unit tests for configuration loading.
"""

import json

import pytest

from replisync.utils.config import ConfigLoader, ReplisyncConfig, load_config
from replisync.utils.errors import ConfigurationError


class TestConfigDefaults:
    """Test ReplisyncConfig defaults."""

    def test_defaults(self):
        config = ReplisyncConfig()

        assert config.transport.polling_interval_ms == 5000
        assert config.transport.polling_min_ms == 1000
        assert config.transport.polling_max_ms == 10000
        assert config.liveness.liveness_window_ms == 15000
        assert config.liveness.initial_presence_window_ms == 10000
        assert config.merge.failure_threshold == 3
        assert config.merge.resolved_values == ["claimed"]
        assert config.storage.backend == "memory"

    def test_invalid_backend(self):
        with pytest.raises(ValueError):
            ReplisyncConfig(storage={"backend": "floppy"})


class TestConfigLoader:
    """Test ConfigLoader class."""

    @pytest.mark.asyncio
    async def test_priority_merge(self, temp_dir):
        """Test that higher-priority sources win field by field."""
        (temp_dir / "base.json").write_text(json.dumps({
            "transport": {"polling_interval_ms": 2000, "channel_name": "lost-and-found"},
        }))
        (temp_dir / "override.yaml").write_text("transport:\n  polling_interval_ms: 3000\n")

        loader = ConfigLoader()
        loader.add_source(temp_dir / "override.yaml", priority=20)
        loader.add_source(temp_dir / "base.json", priority=10)
        config = await loader.load()

        assert config.transport.polling_interval_ms == 3000
        assert config.transport.channel_name == "lost-and-found"
        assert loader.get_config() is config

    @pytest.mark.asyncio
    async def test_toml_and_env_files(self, temp_dir):
        (temp_dir / "replisync.toml").write_text("[merge]\nid_scheme = \"sequential\"\n")
        (temp_dir / "local.env").write_text(
            "# comment\nREPLISYNC_QUEUE__MAX_PENDING_CONFLICTS=7\nRETRY__JITTER=0.5\n"
        )

        loader = ConfigLoader()
        loader.add_source(temp_dir / "replisync.toml")
        loader.add_source(temp_dir / "local.env", priority=5)
        config = await loader.load()

        assert config.merge.id_scheme == "sequential"
        assert config.queue.max_pending_conflicts == 7
        assert config.retry.jitter == 0.5

    @pytest.mark.asyncio
    async def test_environment_variables_win(self, monkeypatch):
        """Test REPLISYNC_ environment overrides."""
        monkeypatch.setenv("REPLISYNC_MERGE__FAILURE_THRESHOLD", "5")
        monkeypatch.setenv("REPLISYNC_TRANSPORT__ENABLE_BROADCAST", "false")
        monkeypatch.setenv("REPLISYNC_MERGE__EMPTY_MARKERS", "-,N/A")

        loader = ConfigLoader()
        loader.add_source({"merge": {"failure_threshold": 4}}, priority=100)
        config = await loader.load()

        assert config.merge.failure_threshold == 5
        assert config.transport.enable_broadcast is False
        assert config.merge.empty_markers == ["-", "N/A"]

    @pytest.mark.asyncio
    async def test_missing_file_is_skipped(self, temp_dir):
        loader = ConfigLoader()
        loader.add_source(temp_dir / "absent.yaml")

        config = await loader.load()

        assert config == ReplisyncConfig()

    def test_unknown_file_type(self, temp_dir):
        with pytest.raises(ConfigurationError):
            ConfigLoader().add_source(temp_dir / "config.ini")

    @pytest.mark.asyncio
    async def test_unparseable_file(self, temp_dir):
        (temp_dir / "broken.json").write_text("{nope")
        loader = ConfigLoader()
        loader.add_source(temp_dir / "broken.json")

        with pytest.raises(ConfigurationError):
            await loader.load()

    @pytest.mark.asyncio
    async def test_validation_failure(self):
        """Test that schema violations name the offending field."""
        loader = ConfigLoader()
        loader.add_source({"logging": {"level": "LOUD"}})

        with pytest.raises(ConfigurationError) as exc_info:
            await loader.load()
        assert "logging.level" in str(exc_info.value)

    def test_get_config_before_load(self):
        with pytest.raises(ConfigurationError):
            ConfigLoader().get_config()

    @pytest.mark.asyncio
    async def test_reload_notifies_callbacks(self, temp_dir):
        """Test reload callbacks fire only on change."""
        path = temp_dir / "config.json"
        path.write_text(json.dumps({"merge": {"failure_threshold": 3}}))
        loader = ConfigLoader()
        loader.add_source(path)
        await loader.load()
        seen = []
        loader.register_callback(seen.append)

        await loader.reload()
        assert seen == []

        path.write_text(json.dumps({"merge": {"failure_threshold": 6}}))
        await loader.reload()

        assert [c.merge.failure_threshold for c in seen] == [6]

    @pytest.mark.asyncio
    async def test_load_config_helper(self, temp_dir):
        path = temp_dir / "extra.yaml"
        path.write_text("liveness:\n  liveness_window_ms: 20000\n")

        config = await load_config([path], extra_config={"liveness": {"initial_presence_window_ms": 5000}})

        assert config.liveness.liveness_window_ms == 20000
        assert config.liveness.initial_presence_window_ms == 5000
