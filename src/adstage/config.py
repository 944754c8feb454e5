"""Configuration loader for adstage.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/adstage/config.yml`` (or an override path).
3. Environment variables prefixed with ``ADSTAGE_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export ADSTAGE_LOOKUP__ATTEMPTS=5
    export ADSTAGE_DIRECTORY__BIND_PASSWORD='s3cret'

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
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
        "PyYAML is required to load adstage configuration. Install with "
        "`pip install adstage` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "ADSTAGE_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
MASKED_VALUE = "********"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class DirectoryConfig:
    """Connection settings for the directory service."""

    server: str | None = None
    port: int | None = None
    use_ssl: bool = True
    ca_cert: Path | None = None
    verify_tls: bool = True
    base_dn: str | None = None
    bind_user: str | None = None
    bind_password: str | None = None
    authentication: str = "simple"
    connect_timeout: float = 10.0

    @property
    def effective_port(self) -> int:
        """Return the configured port or the protocol default."""
        if self.port is not None:
            return self.port
        return 636 if self.use_ssl else 389

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation with the password masked."""
        return {
            "server": self.server,
            "port": self.effective_port,
            "use_ssl": self.use_ssl,
            "ca_cert": str(self.ca_cert) if self.ca_cert is not None else None,
            "verify_tls": self.verify_tls,
            "base_dn": self.base_dn,
            "bind_user": self.bind_user,
            "bind_password": MASKED_VALUE if self.bind_password else None,
            "authentication": self.authentication,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True)
class NamingConfig:
    """Computer name generation settings."""

    prefix: str = "OSN"
    max_length: int = 15

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"prefix": self.prefix, "max_length": self.max_length}


@dataclass(frozen=True)
class LookupConfig:
    """Retry budget used while waiting for replication."""

    attempts: int = 10
    delay: float = 3.0
    backoff: float = 1.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"attempts": self.attempts, "delay": self.delay, "backoff": self.backoff}


@dataclass(frozen=True)
class DefaultsConfig:
    """Per-record fallbacks applied when an input row leaves a field blank."""

    container_path: str | None = None
    description: str = ""
    join_principal: str | None = None
    groups: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "container_path": self.container_path,
            "description": self.description,
            "join_principal": self.join_principal,
            "groups": list(self.groups),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for adstage."""

    config_file: Path
    logs_dir: Path
    directory: DirectoryConfig
    naming: NamingConfig
    lookup: LookupConfig
    defaults: DefaultsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "directory": self.directory.to_dict(),
            "naming": self.naming.to_dict(),
            "lookup": self.lookup.to_dict(),
            "defaults": self.defaults.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/adstage/config.yml",
    "logs_dir": "/var/log/adstage",
    "directory": {
        "server": None,
        "port": None,
        "use_ssl": True,
        "ca_cert": None,
        "verify_tls": True,
        "base_dn": None,
        "bind_user": None,
        "bind_password": None,
        "authentication": "simple",
        "connect_timeout": 10.0,
    },
    "naming": {
        "prefix": "OSN",
        "max_length": 15,
    },
    "lookup": {
        "attempts": 10,
        "delay": 3.0,
        "backoff": 1.0,
    },
    "defaults": {
        "container_path": None,
        "description": "",
        "join_principal": None,
        "groups": [],
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("directory", "naming", "lookup", "defaults")
}
ALLOWED_AUTHENTICATION = {"simple", "ntlm"}


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

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    directory = _as_dict(raw.get("directory"), "directory")
    authentication = str(directory.get("authentication", "simple")).lower()
    if authentication not in ALLOWED_AUTHENTICATION:
        allowed_auth = ", ".join(sorted(ALLOWED_AUTHENTICATION))
        raise ConfigError(
            f"Unsupported directory authentication '{authentication}'. Allowed: {allowed_auth}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    logs_dir = _to_path(raw.get("logs_dir"))

    directory_map = _as_dict(raw.get("directory"), "directory")
    port_value = directory_map.get("port")
    port = None if port_value is None else _expect_int(port_value, "directory.port", default=0)
    if port is not None and not 0 < port < 65536:
        raise ConfigError(f"directory.port must be between 1 and 65535. Got {port}.")
    ca_cert_value = directory_map.get("ca_cert")
    directory = DirectoryConfig(
        server=_optional_str(directory_map.get("server"), "directory.server"),
        port=port,
        use_ssl=_expect_bool(directory_map.get("use_ssl"), "directory.use_ssl", default=True),
        ca_cert=_to_path(ca_cert_value) if ca_cert_value else None,
        verify_tls=_expect_bool(
            directory_map.get("verify_tls"), "directory.verify_tls", default=True
        ),
        base_dn=_optional_str(directory_map.get("base_dn"), "directory.base_dn"),
        bind_user=_optional_str(directory_map.get("bind_user"), "directory.bind_user"),
        bind_password=_optional_str(
            directory_map.get("bind_password"), "directory.bind_password"
        ),
        authentication=str(directory_map.get("authentication", "simple")).lower(),
        connect_timeout=_expect_positive_float(
            directory_map.get("connect_timeout"), "directory.connect_timeout", default=10.0
        ),
    )

    naming_map = _as_dict(raw.get("naming"), "naming")
    prefix = _optional_str(naming_map.get("prefix", "OSN"), "naming.prefix") or ""
    max_length = _expect_int(naming_map.get("max_length"), "naming.max_length", default=15)
    if max_length <= 0:
        raise ConfigError(f"naming.max_length must be greater than zero. Got {max_length}.")
    naming = NamingConfig(prefix=prefix, max_length=max_length)

    lookup_map = _as_dict(raw.get("lookup"), "lookup")
    attempts = _expect_int(lookup_map.get("attempts"), "lookup.attempts", default=10)
    if attempts < 1:
        raise ConfigError(f"lookup.attempts must be at least 1. Got {attempts}.")
    delay = _expect_non_negative_float(lookup_map.get("delay"), "lookup.delay", default=3.0)
    backoff = _expect_positive_float(lookup_map.get("backoff"), "lookup.backoff", default=1.0)
    if backoff < 1:
        raise ConfigError(f"lookup.backoff must be >= 1. Got {backoff}.")
    lookup = LookupConfig(attempts=attempts, delay=delay, backoff=backoff)

    defaults_map = _as_dict(raw.get("defaults"), "defaults")
    groups_value = defaults_map.get("groups") or []
    if isinstance(groups_value, str):
        groups = tuple(part.strip() for part in groups_value.split(";") if part.strip())
    elif isinstance(groups_value, list):
        groups = tuple(str(item).strip() for item in groups_value if str(item).strip())
    else:
        raise ConfigError("defaults.groups must be a list or a ';'-separated string.")
    defaults = DefaultsConfig(
        container_path=_optional_str(
            defaults_map.get("container_path"), "defaults.container_path"
        ),
        description=_optional_str(defaults_map.get("description"), "defaults.description")
        or "",
        join_principal=_optional_str(
            defaults_map.get("join_principal"), "defaults.join_principal"
        ),
        groups=groups,
    )

    return AppConfig(
        config_file=config_file,
        logs_dir=logs_dir,
        directory=directory,
        naming=naming,
        lookup=lookup,
        defaults=defaults,
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
        if path_segments[-1] == "bind_password":
            # Passwords are taken verbatim; YAML coercion would mangle values like "yes".
            _assign_nested(overrides, path_segments, value)
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


def _optional_str(value: object | None, label: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a string. Got boolean {value!r}.")
    if isinstance(value, (str, int, float)):
        text = str(value).strip()
        return text or None
    raise ConfigError(f"Expected {label} to be a string. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "on", "1"}:
            return True
        if lowered in {"false", "no", "off", "0"}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


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


def _expect_float(value: object, label: str) -> float:
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
    numeric = _expect_float(value, label)
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
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
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
    "DefaultsConfig",
    "DirectoryConfig",
    "LookupConfig",
    "NamingConfig",
    "load_config",
]
