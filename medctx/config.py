"""
Configuration management for context retrieval sessions.

The configuration is stored as a TOML file in the config directory.
It specifies memory limits, ranking parameters, which embedding
providers to use, and how the term search treats temporal keywords.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w  # tomllib is read-only


CONFIG_FILENAME = "medctx.toml"
CONFIG_VERSION = 1

DEFAULT_TEMPORAL_TERMS = ("latest", "recent", "historical")


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    type: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class StoreSettings:
    """Memory budget for the embedding store."""
    max_memory_mb: float = 50.0
    record_overhead_bytes: int = 1024
    eviction_ratio: float = 0.8
    max_summary_length: int = 1000


@dataclass
class SearchSettings:
    """Ranking parameters for vector and hybrid search."""
    max_results: int = 10
    half_life_days: float = 30.0
    min_weight: float = 0.1
    vector_weight: float = 0.7
    keyword_weight: float = 0.3
    excerpt_length: int = 200


@dataclass
class ProviderSettings:
    """Provider selection, fallback order, and call limits."""
    primary: Optional[str] = None
    fallbacks: list[str] = field(default_factory=list)
    timeout: Optional[float] = 30.0
    failure_threshold: int = 3
    cooldown_seconds: float = 60.0
    providers: list[ProviderConfig] = field(default_factory=list)


@dataclass
class TermSearchSettings:
    """Behaviour of the three-stage term search."""
    temporal_terms: tuple[str, ...] = DEFAULT_TEMPORAL_TERMS
    latest_fraction: float = 0.2
    recent_days: int = 30
    default_limit: int = 10
    default_threshold: float = 0.6
    enforce_threshold: bool = False


@dataclass
class LoaderSettings:
    """Batch loading and embedding generation for source documents."""
    batch_size: int = 10
    generation_batch_size: int = 5


@dataclass
class ContextConfig:
    """Complete configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    store: StoreSettings = field(default_factory=StoreSettings)
    search: SearchSettings = field(default_factory=SearchSettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    term_search: TermSearchSettings = field(default_factory=TermSearchSettings)
    loader: LoaderSettings = field(default_factory=LoaderSettings)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_config_dir() -> Path:
    """Config directory: MEDCTX_CONFIG_DIR, else ~/.medctx."""
    env = os.environ.get("MEDCTX_CONFIG_DIR")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".medctx"


def detect_default_providers() -> ProviderSettings:
    """
    Detect usable embedding providers for the current environment.

    Priority:
    1. OpenAI (if an API key is available), with the hash provider as fallback
    2. Fallback only: the deterministic hash provider (offline, always available)
    """
    hash_provider = ProviderConfig("hash", "hash", {"dimensions": 384})
    has_openai_key = bool(
        os.environ.get("MEDCTX_OPENAI_API_KEY") or
        os.environ.get("OPENAI_API_KEY")
    )
    if has_openai_key:
        openai = ProviderConfig(
            "openai", "openai",
            {"model": "text-embedding-3-small", "dimensions": 1536},
        )
        return ProviderSettings(
            primary="openai",
            fallbacks=["hash"],
            providers=[openai, hash_provider],
        )
    return ProviderSettings(primary="hash", providers=[hash_provider])


def create_default_config(config_dir: Path) -> ContextConfig:
    """Create a new config with auto-detected defaults."""
    return ContextConfig(path=config_dir, providers=detect_default_providers())


def _section(data: dict, name: str) -> dict:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ValueError(f"Config section [{name}] must be a table")
    return value


def _pick(section: dict, cls: type, **converters) -> Any:
    """Build a settings dataclass from the keys of ``section`` it knows."""
    known = {f for f in cls.__dataclass_fields__}
    values = {}
    for key, value in section.items():
        if key in known:
            convert = converters.get(key)
            values[key] = convert(value) if convert else value
    return cls(**values)


def _parse_providers(section: dict) -> ProviderSettings:
    scalar = {k: v for k, v in section.items() if not isinstance(v, dict)}
    settings = _pick(scalar, ProviderSettings, fallbacks=list)
    if settings.timeout is not None and settings.timeout <= 0:
        settings.timeout = None
    providers = []
    for name, table in section.items():
        if not isinstance(table, dict):
            continue
        providers.append(ProviderConfig(
            name=name,
            type=table.get("type", name),
            params={k: v for k, v in table.items() if k != "type"},
        ))
    settings.providers = providers
    return settings


def load_config(config_dir: Path) -> ContextConfig:
    """
    Load configuration from a config directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = config_dir / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid config {config_path}: {e}") from e

    store_section = _section(data, "store")
    version = store_section.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    return ContextConfig(
        path=config_dir,
        version=version,
        created=store_section.get("created", ""),
        store=_pick(store_section, StoreSettings),
        search=_pick(_section(data, "search"), SearchSettings),
        providers=_parse_providers(_section(data, "providers")),
        term_search=_pick(
            _section(data, "term_search"), TermSearchSettings,
            temporal_terms=lambda v: tuple(str(t).lower() for t in v),
        ),
        loader=_pick(_section(data, "loader"), LoaderSettings),
    )


def config_to_dict(config: ContextConfig) -> dict:
    """TOML-ready representation of a config."""
    store = {"version": config.version, "created": config.created}
    store.update(vars(config.store))

    providers: dict[str, Any] = {
        "fallbacks": list(config.providers.fallbacks),
        "timeout": config.providers.timeout or 0,
        "failure_threshold": config.providers.failure_threshold,
        "cooldown_seconds": config.providers.cooldown_seconds,
    }
    if config.providers.primary:
        providers["primary"] = config.providers.primary
    for p in config.providers.providers:
        table = {"type": p.type}
        table.update(p.params)
        providers[p.name] = table

    term_search = dict(vars(config.term_search))
    term_search["temporal_terms"] = list(config.term_search.temporal_terms)

    return {
        "store": store,
        "search": dict(vars(config.search)),
        "providers": providers,
        "term_search": term_search,
        "loader": dict(vars(config.loader)),
    }


def save_config(config: ContextConfig) -> None:
    """
    Save configuration to the config directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)
    with open(config.config_path, "wb") as f:
        tomli_w.dump(config_to_dict(config), f)


def load_or_create_config(config_dir: Optional[Path] = None) -> ContextConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_dir = config_dir or get_config_dir()
    if (config_dir / CONFIG_FILENAME).exists():
        return load_config(config_dir)
    config = create_default_config(config_dir)
    save_config(config)
    return config
