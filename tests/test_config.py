"""Tests for Flotilla config loading."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from flotilla.config import RESERVED_DEFINITION, load_config, save_scaling_policy


@pytest.fixture
def flotilla_dir(tmp_path: Path) -> Path:
    """Create a minimal .flotilla/ directory for testing."""
    fl = tmp_path / ".flotilla"
    fl.mkdir()

    config = {
        "project": {"name": "test-project"},
        "reconciliation": {"interval": 5, "cooldown": 20},
        "agents": {
            "worker": {"max": 4},
            "reviewer": {"min": 1, "max": 2, "definition": "review-box"},
        },
    }
    (fl / "config.yaml").write_text(yaml.dump(config))
    return fl


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("FLOTILLA_DATA_DIR", "FLOTILLA_RUNTIME", "FLOTILLA_ALLOW_PRIVILEGED"):
        monkeypatch.delenv(var, raising=False)


class TestLoadConfig:
    def test_missing_config_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / ".flotilla")

    def test_empty_config_uses_defaults(self, tmp_path):
        fl = tmp_path / ".flotilla"
        fl.mkdir()
        (fl / "config.yaml").write_text("")

        config = load_config(fl)
        assert config.reconciliation.interval == 30
        assert config.reconciliation.cooldown == 60
        assert config.reconciliation.goodbye_grace == 15
        assert config.reconciliation.failed_spawn_retention == 300
        assert config.registry.stale_after == 1800
        assert config.runtime.engine == "containerd"
        assert config.runtime.allow_privileged is False
        assert set(config.agents) == {"worker", "planner", "buddy"}
        assert config.agents["worker"].work_aware is True

    def test_values_loaded(self, flotilla_dir):
        config = load_config(flotilla_dir)
        assert config.project.name == "test-project"
        assert config.reconciliation.interval == 5
        assert config.reconciliation.cooldown == 20

    def test_configured_agents_merge_with_builtins(self, flotilla_dir):
        config = load_config(flotilla_dir)
        # Built-in types survive
        assert "planner" in config.agents
        # Overrides keep the built-in fields they don't mention
        worker = config.agents["worker"]
        assert worker.max == 4
        assert worker.work_aware is True
        assert config.agents["reviewer"].min == 1

    def test_policy_for_unknown_type(self, flotilla_dir):
        policy = load_config(flotilla_dir).policy_for("ghost")
        assert (policy.min, policy.max) == (0, 1)
        assert policy.work_aware is False

    def test_policy_for_fills_reserved_definition(self, flotilla_dir):
        config = load_config(flotilla_dir)
        assert config.policy_for("planner").definition == RESERVED_DEFINITION
        assert config.policy_for("reviewer").definition == "review-box"

    def test_invalid_engine_rejected(self, tmp_path):
        fl = tmp_path / ".flotilla"
        fl.mkdir()
        (fl / "config.yaml").write_text(yaml.dump({"runtime": {"engine": "docker"}}))
        with pytest.raises(ValidationError):
            load_config(fl)

    def test_min_above_max_rejected(self, tmp_path):
        fl = tmp_path / ".flotilla"
        fl.mkdir()
        (fl / "config.yaml").write_text(yaml.dump({"agents": {"worker": {"min": 3, "max": 1}}}))
        with pytest.raises(ValidationError):
            load_config(fl)

    def test_data_dir_default(self, flotilla_dir):
        config = load_config(flotilla_dir)
        repo_root = flotilla_dir.parent
        assert config.resolve_data_dir(repo_root) == repo_root / ".flotilla" / "data"


class TestEnvOverrides:
    def test_data_dir_override(self, flotilla_dir, monkeypatch, tmp_path):
        monkeypatch.setenv("FLOTILLA_DATA_DIR", str(tmp_path / "elsewhere"))
        config = load_config(flotilla_dir)
        assert config.resolve_data_dir(flotilla_dir.parent) == tmp_path / "elsewhere"

    def test_runtime_override(self, flotilla_dir, monkeypatch):
        monkeypatch.setenv("FLOTILLA_RUNTIME", "podman")
        config = load_config(flotilla_dir)
        assert config.runtime.engine == "podman"
        assert config.runtime.resolved_binary == "podman"

    def test_runtime_override_validated(self, flotilla_dir, monkeypatch):
        monkeypatch.setenv("FLOTILLA_RUNTIME", "lxc")
        with pytest.raises(ValidationError):
            load_config(flotilla_dir)

    @pytest.mark.parametrize("value,expected", [("1", True), ("true", True), ("no", False)])
    def test_allow_privileged_override(self, flotilla_dir, monkeypatch, value, expected):
        monkeypatch.setenv("FLOTILLA_ALLOW_PRIVILEGED", value)
        assert load_config(flotilla_dir).runtime.allow_privileged is expected


class TestSaveScalingPolicy:
    def test_updates_only_given_fields(self, flotilla_dir):
        policy = save_scaling_policy(flotilla_dir, "worker", min_count=1)
        assert (policy.min, policy.max, policy.work_aware) == (1, 4, True)

        reloaded = load_config(flotilla_dir)
        assert reloaded.agents["worker"].min == 1
        assert reloaded.agents["worker"].max == 4
        # Other settings are preserved
        assert reloaded.project.name == "test-project"

    def test_new_type(self, flotilla_dir):
        policy = save_scaling_policy(flotilla_dir, "tester", max_count=3, work_aware=True)
        assert (policy.min, policy.max, policy.work_aware) == (0, 3, True)
        assert load_config(flotilla_dir).agents["tester"].max == 3

    def test_invalid_policy_leaves_file_untouched(self, flotilla_dir):
        before = (flotilla_dir / "config.yaml").read_text()
        with pytest.raises(ValidationError):
            save_scaling_policy(flotilla_dir, "worker", min_count=5, max_count=2)
        assert (flotilla_dir / "config.yaml").read_text() == before
