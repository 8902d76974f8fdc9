"""Configuration loader for stratactl.

Configuration values are read from several sources, later ones winning:

1. Built-in defaults.
2. ``./stratactl.yml`` (or the path given with ``--config-file`` or
   ``STRATACTL_CONFIG_FILE``).
3. Environment variables prefixed with ``STRATACTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export STRATACTL_EXECUTOR__MAX_CONCURRENCY=4
    export STRATACTL_PROVISIONER__FAILURE_POLICY=keep

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load stratactl configuration. Install with "
        "`pip install stratactl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .errors import StratactlError

ENV_PREFIX = "STRATACTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(StratactlError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ProviderConfig:
    """Which provider backs the apply cycle."""

    name: str = "memory"
    state_file: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "state_file": str(self.state_file) if self.state_file else None,
        }


@dataclass(frozen=True)
class ExecutorConfig:
    """Worker pool size and rate-limit retry policy."""

    max_concurrency: int = 10
    retry_attempts: int = 5
    retry_base_delay: float = 0.5
    retry_multiplier: float = 2.0
    retry_max_delay: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "max_concurrency": self.max_concurrency,
            "retry_attempts": self.retry_attempts,
            "retry_base_delay": self.retry_base_delay,
            "retry_multiplier": self.retry_multiplier,
            "retry_max_delay": self.retry_max_delay,
        }


@dataclass(frozen=True)
class ProvisionerConfig:
    """SSH connect retry policy and what happens when provisioning fails."""

    max_attempts: int = 5
    base_delay: float = 2.0
    max_delay: float = 30.0
    connect_timeout: float = 10.0
    ssh_bin: str = "ssh"
    scp_bin: str = "scp"
    failure_policy: str = "taint"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "max_attempts": self.max_attempts,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "connect_timeout": self.connect_timeout,
            "ssh_bin": self.ssh_bin,
            "scp_bin": self.scp_bin,
            "failure_policy": self.failure_policy,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for stratactl."""

    config_file: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    provider: ProviderConfig
    executor: ExecutorConfig
    provisioner: ProvisionerConfig

    @property
    def provider_state_file(self) -> Path:
        """Return where the simulated provider persists its objects."""
        return self.provider.state_file or self.state_dir / "cloud.yml"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "provider": self.provider.to_dict(),
            "executor": self.executor.to_dict(),
            "provisioner": self.provisioner.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "stratactl.yml",
    "state_dir": ".stratactl/state",
    "logs_dir": ".stratactl/logs",
    "runtime_dir": ".stratactl/run",
    "lock_timeout": 30.0,
    "provider": {
        "name": "memory",
        "state_file": None,  # derived from state_dir when absent
    },
    "executor": {
        "max_concurrency": 10,
        "retry_attempts": 5,
        "retry_base_delay": 0.5,
        "retry_multiplier": 2.0,
        "retry_max_delay": 30.0,
    },
    "provisioner": {
        "max_attempts": 5,
        "base_delay": 2.0,
        "max_delay": 30.0,
        "connect_timeout": 10.0,
        "ssh_bin": "ssh",
        "scp_bin": "scp",
        "failure_policy": "taint",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_PROVIDERS = {"memory"}
ALLOWED_FAILURE_POLICIES = {"taint", "keep", "destroy"}
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("provider", "executor", "provisioner")
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path, required=bool(config_file))
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path, *, required: bool = False) -> dict[str, object]:
    if not path.exists():
        if required:
            raise ConfigError(f"Config file {path} does not exist.")
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    provider_map = _as_dict(raw.get("provider"), "provider")
    name = str(provider_map.get("name", "memory"))
    if name not in ALLOWED_PROVIDERS:
        allowed_names = ", ".join(sorted(ALLOWED_PROVIDERS))
        raise ConfigError(f"Unsupported provider '{name}'. Allowed: {allowed_names}.")

    provisioner_map = _as_dict(raw.get("provisioner"), "provisioner")
    policy = str(provisioner_map.get("failure_policy", "taint"))
    if policy not in ALLOWED_FAILURE_POLICIES:
        allowed_policies = ", ".join(sorted(ALLOWED_FAILURE_POLICIES))
        raise ConfigError(
            f"Unsupported provisioner failure policy '{policy}'. Allowed: {allowed_policies}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    provider_map = _as_dict(raw.get("provider"), "provider")
    state_file_value = provider_map.get("state_file")
    state_file: Path | None = None
    if isinstance(state_file_value, (str, Path)):
        if str(state_file_value).strip():
            state_file = _to_path(state_file_value)
    elif state_file_value is not None:
        raise ConfigError("provider.state_file must be a string path or null.")
    provider = ProviderConfig(name=str(provider_map.get("name", "memory")), state_file=state_file)

    executor_map = _as_dict(raw.get("executor"), "executor")
    executor = ExecutorConfig(
        max_concurrency=_expect_positive_int(
            executor_map.get("max_concurrency"), "executor.max_concurrency", default=10
        ),
        retry_attempts=_expect_positive_int(
            executor_map.get("retry_attempts"), "executor.retry_attempts", default=5
        ),
        retry_base_delay=_expect_positive_float(
            executor_map.get("retry_base_delay"), "executor.retry_base_delay", default=0.5
        ),
        retry_multiplier=_expect_positive_float(
            executor_map.get("retry_multiplier"), "executor.retry_multiplier", default=2.0
        ),
        retry_max_delay=_expect_positive_float(
            executor_map.get("retry_max_delay"), "executor.retry_max_delay", default=30.0
        ),
    )
    if executor.retry_attempts < 2:
        raise ConfigError("executor.retry_attempts must be at least 2.")
    if executor.retry_multiplier < 1:
        raise ConfigError("executor.retry_multiplier must be at least 1.")

    provisioner_map = _as_dict(raw.get("provisioner"), "provisioner")
    provisioner = ProvisionerConfig(
        max_attempts=_expect_positive_int(
            provisioner_map.get("max_attempts"), "provisioner.max_attempts", default=5
        ),
        base_delay=_expect_positive_float(
            provisioner_map.get("base_delay"), "provisioner.base_delay", default=2.0
        ),
        max_delay=_expect_positive_float(
            provisioner_map.get("max_delay"), "provisioner.max_delay", default=30.0
        ),
        connect_timeout=_expect_positive_float(
            provisioner_map.get("connect_timeout"), "provisioner.connect_timeout", default=10.0
        ),
        ssh_bin=_expect_str(provisioner_map.get("ssh_bin", "ssh"), "provisioner.ssh_bin"),
        scp_bin=_expect_str(provisioner_map.get("scp_bin", "scp"), "provisioner.scp_bin"),
        failure_policy=str(provisioner_map.get("failure_policy", "taint")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        state_dir=_to_path(raw.get("state_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        provider=provider,
        executor=executor,
        provisioner=provisioner,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_int(value: object | None, label: str, *, default: int) -> int:
    number = _expect_int(value, label, default=default)
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "ExecutorConfig",
    "ProviderConfig",
    "ProvisionerConfig",
    "load_config",
]
