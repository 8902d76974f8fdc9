"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from stratactl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Defaults apply when no config file is present."""
    monkeypatch.chdir(tmp_path)

    config = load_config(env={})

    assert isinstance(config, AppConfig)
    assert config.config_file == Path("stratactl.yml")
    assert config.state_dir == Path(".stratactl/state")
    assert config.provider.name == "memory"
    assert config.provider_state_file == Path(".stratactl/state/cloud.yml")
    assert config.executor.max_concurrency == 10
    assert config.executor.retry_attempts == 5
    assert config.provisioner.failure_policy == "taint"
    assert config.lock_timeout == 30.0


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "stratactl.yml"
    cfg.write_text(
        "state_dir: {root}/state\n"
        "provider:\n"
        "  state_file: {root}/cloud.yml\n"
        "executor:\n"
        "  max_concurrency: 2\n"
        "  retry_base_delay: 0.25\n"
        "provisioner:\n"
        "  failure_policy: keep\n"
        "  ssh_bin: /usr/local/bin/ssh\n".format(root=tmp_path)
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.state_dir == tmp_path / "state"
    assert config.provider_state_file == tmp_path / "cloud.yml"
    assert config.executor.max_concurrency == 2
    assert config.executor.retry_base_delay == 0.25
    assert config.provisioner.failure_policy == "keep"
    assert config.provisioner.ssh_bin == "/usr/local/bin/ssh"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "stratactl.yml"
    cfg.write_text("executor:\n  max_concurrency: 2\n")
    state_dir = tmp_path / "state"
    env = {
        "STRATACTL_CONFIG_FILE": str(cfg),
        "STRATACTL_STATE_DIR": str(state_dir),
        "STRATACTL_LOCK_TIMEOUT": "45",
        "STRATACTL_EXECUTOR__MAX_CONCURRENCY": "4",
        "STRATACTL_PROVISIONER__FAILURE_POLICY": "destroy",
        "STRATACTL_PROVISIONER__MAX_ATTEMPTS": "7",
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.state_dir == state_dir
    assert config.provider_state_file == state_dir / "cloud.yml"
    assert config.lock_timeout == 45.0
    assert config.executor.max_concurrency == 4
    assert config.provisioner.failure_policy == "destroy"
    assert config.provisioner.max_attempts == 7


def test_explicit_missing_config_file_raises(tmp_path: Path) -> None:
    """A config file named on the command line must exist."""
    with pytest.raises(ConfigError, match="does not exist"):
        load_config(config_file=tmp_path / "missing.yml", env={})


def test_env_selected_missing_config_file_is_ignored(tmp_path: Path) -> None:
    """A config file chosen through the environment is optional."""
    env = {"STRATACTL_CONFIG_FILE": str(tmp_path / "missing.yml")}

    config = load_config(env=env)

    assert config.config_file == tmp_path / "missing.yml"


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A non-mapping document raises a ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("unknown: value\n", "Unknown configuration keys"),
        ("executor:\n  workers: 3\n", "Unknown executor configuration keys"),
        ("provider:\n  name: aws\n", "Unsupported provider"),
        ("provisioner:\n  failure_policy: ignore\n", "Unsupported provisioner failure policy"),
        ("executor:\n  max_concurrency: 0\n", "greater than zero"),
        ("executor:\n  retry_attempts: 1\n", "at least 2"),
        ("executor:\n  retry_multiplier: 0.5\n", "at least 1"),
        ("lock_timeout: soon\n", "Invalid number"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, content: str, message: str) -> None:
    """Unknown keys and out-of-range values trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(content)

    with pytest.raises(ConfigError, match=message):
        load_config(config_file=cfg, env={})


def test_to_dict_is_serialisable(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """The resolved config renders to plain values for ``config show``."""
    monkeypatch.chdir(tmp_path)
    config = load_config(env={"STRATACTL_STATE_DIR": str(tmp_path)})

    payload = config.to_dict()

    assert payload["state_dir"] == str(tmp_path)
    assert payload["provider"] == {"name": "memory", "state_file": None}
    executor = payload["executor"]
    assert isinstance(executor, dict)
    assert executor["max_concurrency"] == 10
