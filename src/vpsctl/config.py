"""Configuration loader for vpsctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/vpsctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``VPSCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export VPSCTL_SSH__PORT=2222
    export VPSCTL_ROLLOUT__HEALTH_TIMEOUT=90

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "VPSCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
SECRET_ENV_PREFIX = f"{ENV_PREFIX}SECRET_"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

ALLOWED_PARTIAL_POLICIES = {"fail", "converge"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SSHConfig:
    """How vpsctl reaches remote hosts."""

    user: str = "root"
    port: int = 22
    identity_file: Path | None = None
    ssh_bin: str = "ssh"
    connect_timeout: float = 10.0
    command_timeout: float = 300.0
    options: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "user": self.user,
            "port": self.port,
            "identity_file": str(self.identity_file) if self.identity_file else None,
            "ssh_bin": self.ssh_bin,
            "connect_timeout": self.connect_timeout,
            "command_timeout": self.command_timeout,
            "options": list(self.options),
        }


@dataclass(frozen=True)
class ProbeConfig:
    """Retry budget for host probing."""

    retries: int = 2
    retry_delay: float = 1.0
    timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "retries": self.retries,
            "retry_delay": self.retry_delay,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class NginxConfig:
    """Reverse proxy locations on the managed host."""

    bin: str = "nginx"
    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    staging_dir: Path = Path("/etc/nginx/vpsctl-staging")
    mime_types: Path = Path("/etc/nginx/mime.types")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bin": self.bin,
            "sites_available": str(self.sites_available),
            "sites_enabled": str(self.sites_enabled),
            "staging_dir": str(self.staging_dir),
            "mime_types": str(self.mime_types),
        }


@dataclass(frozen=True)
class TLSConfig:
    """Certificate authority client settings."""

    live_dir: Path = Path("/etc/letsencrypt/live")
    certbot_bin: str = "certbot"
    renew_before_days: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "live_dir": str(self.live_dir),
            "certbot_bin": self.certbot_bin,
            "renew_before_days": self.renew_before_days,
        }


@dataclass(frozen=True)
class ContainersConfig:
    """Container runtime and registry settings."""

    docker_bin: str = "docker"
    name_prefix: str = "vpsctl"
    registry: str | None = None
    registry_user: str | None = None
    registry_secret: str = "registry-token"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docker_bin": self.docker_bin,
            "name_prefix": self.name_prefix,
            "registry": self.registry,
            "registry_user": self.registry_user,
            "registry_secret": self.registry_secret,
        }


@dataclass(frozen=True)
class RolloutConfig:
    """Rollout pacing, retry and health-check windows."""

    queue_depth: int = 4
    pull_attempts: int = 3
    pull_backoff: float = 2.0
    health_timeout: float = 60.0
    health_interval: float = 2.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "queue_depth": self.queue_depth,
            "pull_attempts": self.pull_attempts,
            "pull_backoff": self.pull_backoff,
            "health_timeout": self.health_timeout,
            "health_interval": self.health_interval,
        }


@dataclass(frozen=True)
class SecretsConfig:
    """Secret store location and per-secret scope policy."""

    directory: Path = Path("/run/secrets")
    scopes: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "directory": str(self.directory),
            "scopes": {name: list(scopes) for name, scopes in self.scopes.items()},
        }


@dataclass(frozen=True)
class ProvisionConfig:
    """Provisioning run policy."""

    marker_path: Path = Path("/run/vpsctl-provision.lock")
    on_partial: str = "fail"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"marker_path": str(self.marker_path), "on_partial": self.on_partial}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for vpsctl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    ssh: SSHConfig
    probe: ProbeConfig
    nginx: NginxConfig
    tls: TLSConfig
    containers: ContainersConfig
    rollout: RolloutConfig
    secrets: SecretsConfig
    provision: ProvisionConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "ssh": self.ssh.to_dict(),
            "probe": self.probe.to_dict(),
            "nginx": self.nginx.to_dict(),
            "tls": self.tls.to_dict(),
            "containers": self.containers.to_dict(),
            "rollout": self.rollout.to_dict(),
            "secrets": self.secrets.to_dict(),
            "provision": self.provision.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/vpsctl/config.yml",
    "state_dir": "/var/lib/vpsctl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/vpsctl",
    "runtime_dir": "/run/vpsctl",
    "templates_dir": "/etc/vpsctl/templates",
    "lock_timeout": 30.0,
    "ssh": {
        "user": "root",
        "port": 22,
        "identity_file": None,
        "ssh_bin": "ssh",
        "connect_timeout": 10.0,
        "command_timeout": 300.0,
        "options": [],
    },
    "probe": {
        "retries": 2,
        "retry_delay": 1.0,
        "timeout": 30.0,
    },
    "nginx": {
        "bin": "nginx",
        "sites_available": "/etc/nginx/sites-available",
        "sites_enabled": "/etc/nginx/sites-enabled",
        "staging_dir": "/etc/nginx/vpsctl-staging",
        "mime_types": "/etc/nginx/mime.types",
    },
    "tls": {
        "live_dir": "/etc/letsencrypt/live",
        "certbot_bin": "certbot",
        "renew_before_days": 30,
    },
    "containers": {
        "docker_bin": "docker",
        "name_prefix": "vpsctl",
        "registry": None,
        "registry_user": None,
        "registry_secret": "registry-token",
    },
    "rollout": {
        "queue_depth": 4,
        "pull_attempts": 3,
        "pull_backoff": 2.0,
        "health_timeout": 60.0,
        "health_interval": 2.0,
    },
    "secrets": {
        "directory": "/run/secrets",
        "scopes": {},
    },
    "provision": {
        "marker_path": "/run/vpsctl-provision.lock",
        "on_partial": "fail",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    name: set(cast(Mapping[str, object], value).keys())
    for name, value in DEFAULTS.items()
    if isinstance(value, Mapping)
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

    file_values = _load_yaml_file(config_path)
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


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
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

    for section, allowed in SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    provision = _as_dict(raw.get("provision"), "provision")
    policy = provision.get("on_partial")
    if policy is not None and str(policy) not in ALLOWED_PARTIAL_POLICIES:
        allowed_policies = ", ".join(sorted(ALLOWED_PARTIAL_POLICIES))
        raise ConfigError(
            f"Unsupported provision.on_partial '{policy}'. Allowed: {allowed_policies}."
        )

    secrets = _as_dict(raw.get("secrets"), "secrets")
    scopes = _as_dict(secrets.get("scopes"), "secrets.scopes")
    for name, allowed_scopes in scopes.items():
        _as_sequence(allowed_scopes, f"secrets.scopes.{name}")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    ssh_mapping = _as_dict(raw.get("ssh"), "ssh")
    identity_value = ssh_mapping.get("identity_file")
    ssh = SSHConfig(
        user=str(ssh_mapping.get("user", "root")),
        port=_expect_int(ssh_mapping.get("port"), "ssh.port", default=22),
        identity_file=_to_path(identity_value) if identity_value else None,
        ssh_bin=str(ssh_mapping.get("ssh_bin", "ssh")),
        connect_timeout=_expect_positive_float(
            ssh_mapping.get("connect_timeout"), "ssh.connect_timeout", default=10.0
        ),
        command_timeout=_expect_positive_float(
            ssh_mapping.get("command_timeout"), "ssh.command_timeout", default=300.0
        ),
        options=tuple(
            str(option)
            for option in _as_sequence(ssh_mapping.get("options") or [], "ssh.options")
        ),
    )

    probe_mapping = _as_dict(raw.get("probe"), "probe")
    retries = _expect_int(probe_mapping.get("retries"), "probe.retries", default=2)
    if retries < 0:
        raise ConfigError("probe.retries must be non-negative.")
    probe = ProbeConfig(
        retries=retries,
        retry_delay=_expect_non_negative_float(
            probe_mapping.get("retry_delay"), "probe.retry_delay", default=1.0
        ),
        timeout=_expect_positive_float(probe_mapping.get("timeout"), "probe.timeout", default=30.0),
    )

    nginx_mapping = _as_dict(raw.get("nginx"), "nginx")
    nginx = NginxConfig(
        bin=str(nginx_mapping.get("bin", "nginx")),
        sites_available=_to_path(
            nginx_mapping.get("sites_available", "/etc/nginx/sites-available")
        ),
        sites_enabled=_to_path(nginx_mapping.get("sites_enabled", "/etc/nginx/sites-enabled")),
        staging_dir=_to_path(nginx_mapping.get("staging_dir", "/etc/nginx/vpsctl-staging")),
        mime_types=_to_path(nginx_mapping.get("mime_types", "/etc/nginx/mime.types")),
    )

    tls_mapping = _as_dict(raw.get("tls"), "tls")
    renew_before = _expect_int(
        tls_mapping.get("renew_before_days"), "tls.renew_before_days", default=30
    )
    if renew_before < 0:
        raise ConfigError("tls.renew_before_days must be non-negative.")
    tls = TLSConfig(
        live_dir=_to_path(tls_mapping.get("live_dir", "/etc/letsencrypt/live")),
        certbot_bin=str(tls_mapping.get("certbot_bin", "certbot")),
        renew_before_days=renew_before,
    )

    containers_mapping = _as_dict(raw.get("containers"), "containers")
    registry_value = containers_mapping.get("registry")
    registry_user_value = containers_mapping.get("registry_user")
    containers = ContainersConfig(
        docker_bin=str(containers_mapping.get("docker_bin", "docker")),
        name_prefix=str(containers_mapping.get("name_prefix", "vpsctl")),
        registry=str(registry_value) if registry_value else None,
        registry_user=str(registry_user_value) if registry_user_value else None,
        registry_secret=str(containers_mapping.get("registry_secret", "registry-token")),
    )

    rollout_mapping = _as_dict(raw.get("rollout"), "rollout")
    queue_depth = _expect_int(rollout_mapping.get("queue_depth"), "rollout.queue_depth", default=4)
    if queue_depth < 1:
        raise ConfigError("rollout.queue_depth must be at least 1.")
    pull_attempts = _expect_int(
        rollout_mapping.get("pull_attempts"), "rollout.pull_attempts", default=3
    )
    if pull_attempts < 1:
        raise ConfigError("rollout.pull_attempts must be at least 1.")
    rollout = RolloutConfig(
        queue_depth=queue_depth,
        pull_attempts=pull_attempts,
        pull_backoff=_expect_non_negative_float(
            rollout_mapping.get("pull_backoff"), "rollout.pull_backoff", default=2.0
        ),
        health_timeout=_expect_positive_float(
            rollout_mapping.get("health_timeout"), "rollout.health_timeout", default=60.0
        ),
        health_interval=_expect_positive_float(
            rollout_mapping.get("health_interval"), "rollout.health_interval", default=2.0
        ),
    )

    secrets_mapping = _as_dict(raw.get("secrets"), "secrets")
    scopes_mapping = _as_dict(secrets_mapping.get("scopes"), "secrets.scopes")
    secrets = SecretsConfig(
        directory=_to_path(secrets_mapping.get("directory", "/run/secrets")),
        scopes={
            name: tuple(str(scope) for scope in _as_sequence(value, f"secrets.scopes.{name}"))
            for name, value in scopes_mapping.items()
        },
    )

    provision_mapping = _as_dict(raw.get("provision"), "provision")
    provision = ProvisionConfig(
        marker_path=_to_path(provision_mapping.get("marker_path", "/run/vpsctl-provision.lock")),
        on_partial=str(provision_mapping.get("on_partial", "fail")),
    )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        ssh=ssh,
        probe=probe,
        nginx=nginx,
        tls=tls,
        containers=containers,
        rollout=rollout,
        secrets=secrets,
        provision=provision,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if key.startswith(SECRET_ENV_PREFIX):
            # Secret values are read by the secret store, never merged into config.
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
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


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


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be non-negative. Got {numeric}.")
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
    "ContainersConfig",
    "NginxConfig",
    "ProbeConfig",
    "ProvisionConfig",
    "RolloutConfig",
    "SSHConfig",
    "SecretsConfig",
    "TLSConfig",
    "load_config",
]
