"""
Configuration management for trove stores.

The configuration is stored as a TOML file in the store directory.
It names the embedding provider, the vector dimension, and where the
three stores live relative to the store directory.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import tomli_w


CONFIG_FILENAME = "trove.toml"
CONFIG_VERSION = 1

DEFAULT_DIMENSION = 1536
DEFAULT_EMBED_TIMEOUT = 30.0


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # Locations, relative to path unless absolute
    knowledge_dir: str = "knowledge"
    database: str = "trove.db"
    vectors: str = "vectors"

    embedding: ProviderConfig = field(default_factory=lambda: ProviderConfig("zero"))
    dimension: int = DEFAULT_DIMENSION

    default_limit: int = 10
    embed_timeout: float = DEFAULT_EMBED_TIMEOUT
    watch_debounce: float = 0.5
    watch_max_pending: int = 500

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def knowledge_path(self) -> Path:
        return self.path / self.knowledge_dir

    @property
    def database_path(self) -> Path:
        return self.path / self.database

    @property
    def vectors_path(self) -> Path:
        return self.path / self.vectors

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_config_dir() -> Path:
    """Store directory: TROVE_STORE_PATH, else ~/.trove."""
    store = os.environ.get("TROVE_STORE_PATH")
    if store:
        return Path(store).expanduser().resolve()
    return Path.home() / ".trove"


def detect_default_embedding() -> ProviderConfig:
    """
    Pick the embedding provider for a new store.

    OpenAI when an API key is available, otherwise the zero-vector
    placeholder (semantic search degrades, keyword search is unaffected).
    """
    if os.environ.get("TROVE_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY"):
        return ProviderConfig("openai", {"model": "text-embedding-3-small"})
    return ProviderConfig("zero")


def create_default_config(store_path: Path) -> StoreConfig:
    """Create a new config with auto-detected defaults."""
    return StoreConfig(path=store_path, embedding=detect_default_embedding())


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    def parse_provider(section: dict) -> ProviderConfig:
        return ProviderConfig(
            name=section.get("name", ""),
            params={k: v for k, v in section.items() if k != "name"},
        )

    paths = data.get("paths", {})
    vector = data.get("vector", {})
    search = data.get("search", {})
    timeouts = data.get("timeouts", {})
    watch = data.get("watch", {})

    dimension = int(vector.get("dimension", DEFAULT_DIMENSION))
    if dimension <= 0:
        raise ValueError(f"Invalid vector dimension: {dimension}")

    return StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        knowledge_dir=paths.get("knowledge_dir", "knowledge"),
        database=paths.get("database", "trove.db"),
        vectors=paths.get("vectors", "vectors"),
        embedding=parse_provider(data.get("embedding", {"name": "zero"})),
        dimension=dimension,
        default_limit=int(search.get("default_limit", 10)),
        embed_timeout=float(timeouts.get("embed_seconds", DEFAULT_EMBED_TIMEOUT)),
        watch_debounce=float(watch.get("debounce_seconds", 0.5)),
        watch_max_pending=int(watch.get("max_pending", 500)),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    embedding = {"name": config.embedding.name}
    embedding.update(config.embedding.params)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "paths": {
            "knowledge_dir": config.knowledge_dir,
            "database": config.database,
            "vectors": config.vectors,
        },
        "embedding": embedding,
        "vector": {"dimension": config.dimension},
        "search": {"default_limit": config.default_limit},
        "timeouts": {"embed_seconds": config.embed_timeout},
        "watch": {
            "debounce_seconds": config.watch_debounce,
            "max_pending": config.watch_max_pending,
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = create_default_config(store_path)
    save_config(config)
    return config
