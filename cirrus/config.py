"""TOML-based engine and provider configuration.

Loads ~/.cirrus/defaults.toml (global) and cirrus.toml (project), merges
them, and builds Settings and provider configs from the result.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any

from cirrus.core.exceptions import ConfigurationError
from cirrus.logging import LogConfig

if TYPE_CHECKING:
    from cirrus.providers.aws.config import AWS
    from cirrus.providers.memory import Memory

    type ProviderConfig = AWS | Memory

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".cirrus" / "defaults.toml"
PROJECT_CONFIG_NAME = "cirrus.toml"


@dataclass(frozen=True, slots=True)
class Timeouts:
    """Convergence budgets in seconds, per resource kind."""

    node_running: float = 1200.0
    node_terminated: float = 30.0
    node_suspended: float = 120.0
    image_available: float = 3600.0


@dataclass(frozen=True, slots=True)
class Polling:
    interval: float = 1.0
    max_interval: float = 10.0
    backoff: float = 1.5


@dataclass(frozen=True, slots=True)
class Creation:
    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 10.0


@dataclass(frozen=True, slots=True)
class Naming:
    prefix: str = "cirrus"
    delimiter: str = "-"


@dataclass(frozen=True, slots=True)
class Settings:
    timeouts: Timeouts = field(default_factory=Timeouts)
    polling: Polling = field(default_factory=Polling)
    creation: Creation = field(default_factory=Creation)
    naming: Naming = field(default_factory=Naming)
    logging: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def from_raw(cls, raw: RawConfig) -> Settings:
        sections = {f.name: f.default_factory for f in fields(cls)}  # type: ignore[misc]
        unknown = set(raw) - set(sections) - {"providers"}
        if unknown:
            raise ConfigurationError(f"Unknown config section(s): {', '.join(sorted(unknown))}")

        built: dict[str, Any] = {}
        for name, factory in sections.items():
            section = raw.get(name, {})
            if not isinstance(section, dict):
                raise ConfigurationError(f"[{name}] must be a table")
            try:
                built[name] = factory(**section)
            except TypeError as e:
                raise ConfigurationError(f"Invalid [{name}] section: {e}") from e
        return cls(**built)


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("providers", {})
    return merged


def load_settings(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> Settings:
    return Settings.from_raw(load_config(project_dir=project_dir, global_path=global_path))


def _get_provider_map() -> dict[str, type]:
    from cirrus.providers.aws.config import AWS
    from cirrus.providers.memory import Memory

    return {
        "aws": AWS,
        "memory": Memory,
    }


def _build_provider(name: str, raw: RawConfig) -> ProviderConfig:
    raw = dict(raw)
    provider_type = raw.pop("type", None)
    if provider_type is None:
        raise ConfigurationError(f"Provider '{name}' missing 'type' field")

    provider_map = _get_provider_map()
    cls = provider_map.get(provider_type)
    if cls is None:
        raise ConfigurationError(
            f"Unknown provider type '{provider_type}'. "
            f"Valid: {', '.join(provider_map)}"
        )
    for key, value in raw.items():
        if isinstance(value, list):
            raw[key] = tuple(value)
    try:
        return cls(**raw)
    except TypeError as e:
        raise ConfigurationError(f"Invalid provider '{name}': {e}") from e


def resolve_provider(
    name: str,
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> ProviderConfig:
    config = load_config(project_dir=project_dir, global_path=global_path)
    providers = config["providers"]
    if name not in providers:
        raise ConfigurationError(
            f"Provider '{name}' not found. Available: {', '.join(providers) or 'none'}"
        )
    return _build_provider(name, providers[name])
