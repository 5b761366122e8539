"""Unit tests for Specster configuration."""

from pathlib import Path

import pytest

from specster.config import SpecsterConfig
from specster.models import Phase


class TestSpecsterConfig:
    """Test cases for SpecsterConfig."""

    def test_defaults(self):
        """Defaults match the documented behaviour."""
        config = SpecsterConfig()

        assert config.cache_ttl == 300.0
        assert config.lock_timeout == 30.0
        assert config.lock_poll_interval == 0.1
        assert config.approval_timeout is None
        assert config.requires_approval(Phase.DESIGN)
        assert config.requires_approval(Phase.COMPLETE)
        assert not config.requires_approval(Phase.REQUIREMENTS)

    def test_directories(self):
        """State and documents live under the base directory."""
        config = SpecsterConfig()
        root = Path("/project")

        assert config.state_dir(root) == Path("/project/.specster/state")
        assert config.specs_dir(root) == Path("/project/.specster/specs")

    def test_from_env(self):
        """SPECSTER_* variables override defaults."""
        config = SpecsterConfig.from_env(
            {
                "SPECSTER_STORAGE_TYPE": "Memory",
                "SPECSTER_CACHE_TTL": "60",
                "SPECSTER_APPROVAL_TIMEOUT": "3600",
                "SPECSTER_ENABLE_APPROVALS": "false",
                "SPECSTER_EVENT_HISTORY_LIMIT": "10",
                "SPECSTER_LOG_LEVEL": "debug",
                "SPECSTER_LOG_FILE": "/tmp/specster.log",
            }
        )

        assert config.storage_type == "memory"
        assert config.cache_ttl == 60.0
        assert config.approval_timeout == 3600.0
        assert config.event_history_limit == 10
        assert config.log_level == "DEBUG"
        assert config.log_file == Path("/tmp/specster.log")
        assert not config.requires_approval(Phase.DESIGN)

    def test_from_env_empty(self):
        """An empty environment yields the defaults."""
        assert SpecsterConfig.from_env({}) == SpecsterConfig()

    @pytest.mark.parametrize(
        "env",
        [
            {"SPECSTER_CACHE_TTL": "soon"},
            {"SPECSTER_LOCK_TIMEOUT": "-1"},
            {"SPECSTER_ENABLE_APPROVALS": "maybe"},
            {"SPECSTER_STORAGE_TYPE": "redis"},
            {"SPECSTER_EVENT_HISTORY_LIMIT": "many"},
        ],
    )
    def test_from_env_rejects_bad_values(self, env):
        """Malformed values fail loudly."""
        with pytest.raises(ValueError):
            SpecsterConfig.from_env(env)

    def test_approval_required_accepts_strings(self):
        """Phase names are converted to Phase members."""
        config = SpecsterConfig(approval_required=("design",))

        assert config.approval_required == (Phase.DESIGN,)
        assert not config.requires_approval(Phase.TASKS)
