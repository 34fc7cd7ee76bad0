"""Tests for layered configuration."""

from pathlib import Path

import pytest

from stet.config import Config, load_config
from stet.constants import DEFAULT_MODEL
from stet.errors import ConfigError


@pytest.fixture
def no_global(tmp_path) -> Path:
    return tmp_path / "missing-global.toml"


def _write_repo_config(repo: Path, text: str) -> None:
    (repo / ".review").mkdir(parents=True, exist_ok=True)
    (repo / ".review" / "config.toml").write_text(text)


class TestLoadConfig:
    def test_defaults(self, tmp_path, no_global):
        cfg = load_config(tmp_path, env={}, global_path=no_global)
        assert cfg.model == DEFAULT_MODEL
        assert cfg.exclude_patterns is None
        assert cfg.resolved_state_dir(tmp_path) == tmp_path / ".review"
        assert cfg.resolved_worktree_root(tmp_path) == tmp_path / ".review" / "worktrees"

    def test_layer_precedence(self, tmp_path):
        global_path = tmp_path / "global.toml"
        global_path.write_text('model = "global-model"\ntemperature = 0.5\nnum_ctx = 8192\n')
        _write_repo_config(tmp_path, 'model = "repo-model"\ntemperature = 0.3\n')
        env = {"STET_MODEL": "env-model"}

        cfg = load_config(tmp_path, overrides={"model": "cli-model", "nitpicky": None}, env=env, global_path=global_path)
        assert cfg.model == "cli-model"
        assert cfg.temperature == 0.3
        assert cfg.num_ctx == 8192
        assert cfg.nitpicky is False

        cfg = load_config(tmp_path, env=env, global_path=global_path)
        assert cfg.model == "env-model"

    def test_env_coercion(self, tmp_path, no_global):
        env = {"STET_CONTEXT_LIMIT": "4096", "STET_NITPICKY": "yes", "STET_WARN_THRESHOLD": "0.5"}
        cfg = load_config(tmp_path, env=env, global_path=no_global)
        assert cfg.context_limit == 4096
        assert cfg.nitpicky is True
        assert cfg.warn_threshold == 0.5

    def test_exclude_patterns_tri_state(self, tmp_path, no_global):
        _write_repo_config(tmp_path, "exclude_patterns = []\n")
        assert load_config(tmp_path, env={}, global_path=no_global).exclude_patterns == []
        _write_repo_config(tmp_path, 'exclude_patterns = ["*.gen.go"]\n')
        assert load_config(tmp_path, env={}, global_path=no_global).exclude_patterns == ["*.gen.go"]

    @pytest.mark.parametrize(
        "env",
        [
            {"STET_CONTEXT_LIMIT": "lots"},
            {"STET_NITPICKY": "sometimes"},
            {"STET_STRICTNESS": "harsh"},
            {"STET_WARN_THRESHOLD": "2"},
            {"STET_TIMEOUT": "0"},
        ],
    )
    def test_malformed_values(self, tmp_path, no_global, env):
        with pytest.raises(ConfigError):
            load_config(tmp_path, env=env, global_path=no_global)

    def test_malformed_toml(self, tmp_path, no_global):
        _write_repo_config(tmp_path, "model = \n")
        with pytest.raises(ConfigError):
            load_config(tmp_path, env={}, global_path=no_global)

    def test_unknown_keys_ignored(self, tmp_path, no_global, caplog):
        _write_repo_config(tmp_path, 'flavour = "mint"\n')
        load_config(tmp_path, env={}, global_path=no_global)
        assert "flavour" in caplog.text


class TestConfig:
    def test_critic_model(self):
        assert Config().effective_critic_model == ""
        assert Config(critic_enabled=True, model="m").effective_critic_model == "m"
        assert Config(critic_enabled=True, critic_model="c").effective_critic_model == "c"

    def test_explicit_dirs(self, tmp_path):
        cfg = Config(state_dir=str(tmp_path / "s"), worktree_root=str(tmp_path / "w"))
        assert cfg.resolved_state_dir(tmp_path) == tmp_path / "s"
        assert cfg.resolved_worktree_root(tmp_path) == tmp_path / "w"
