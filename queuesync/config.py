"""
Configuration management for queuesync.

The configuration is stored as a TOML file (``queuesync.toml``).
Credentials may also come from environment variables, which win over
the file. A loaded SyncConfig is an explicit value: each client is
constructed from it and passed to the components that need it.
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

# tomli_w for writing TOML (tomllib is read-only)
try:
    import tomli_w
except ImportError:
    tomli_w = None  # type: ignore

from .errors import NotConfigured


CONFIG_FILENAME = "queuesync.toml"
CONFIG_VERSION = 1

DEFAULT_GITHUB_API = "https://api.github.com"
DEFAULT_DESTINATION_API = "https://degenerates.site"
DEFAULT_STORE_API = "https://store.steampowered.com"


def get_config_dir() -> Path:
    home = os.environ.get("QUEUESYNC_HOME")
    if home:
        return Path(home)
    return Path.home() / ".queuesync"


def get_config_path() -> Path:
    """Resolve the config file path, respecting QUEUESYNC_CONFIG."""
    explicit = os.environ.get("QUEUESYNC_CONFIG")
    if explicit:
        return Path(explicit)
    return get_config_dir() / CONFIG_FILENAME


@dataclass
class DocumentConfig:
    """Where the versioned document lives."""
    token: str = ""
    owner: str = ""
    repo: str = ""
    path: str = "games.json"
    branch: Optional[str] = None
    api_url: str = DEFAULT_GITHUB_API

    def is_configured(self) -> bool:
        return bool(self.token and self.owner and self.repo)

    def require(self) -> "DocumentConfig":
        missing = [name for name in ("token", "owner", "repo") if not getattr(self, name)]
        if missing:
            raise NotConfigured(
                f"Document store not configured (missing: {', '.join(missing)}). "
                "Set QUEUESYNC_GITHUB_TOKEN / QUEUESYNC_OWNER / QUEUESYNC_REPO "
                "or run: queuesync init"
            )
        return self


@dataclass
class DestinationConfig:
    """The relational backend the batch reconciler writes into."""
    api_url: str = DEFAULT_DESTINATION_API
    token: str = ""
    page_size: int = 100

    def require(self) -> "DestinationConfig":
        if not self.token:
            raise NotConfigured(
                "Destination token not configured. Set QUEUESYNC_DEST_TOKEN "
                "(or GAME_GALLERY_TOKEN)"
            )
        if not self.api_url:
            raise NotConfigured("Destination api_url not configured")
        return self


@dataclass
class MetadataConfig:
    api_url: str = DEFAULT_STORE_API
    language: str = "schinese"
    country: str = "CN"
    timeout: float = 15.0


@dataclass
class EnrichmentConfig:
    initial_delay: float = 2.0
    interval: float = 30 * 60.0
    item_delay: float = 1.0
    new_record_delay: float = 0.5


@dataclass
class ReconcileConfig:
    item_delay: float = 0.5


@dataclass
class SyncConfig:
    """Complete queuesync configuration."""
    path: Optional[Path] = None
    version: int = CONFIG_VERSION
    document: DocumentConfig = field(default_factory=DocumentConfig)
    destination: DestinationConfig = field(default_factory=DestinationConfig)
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)


def _section(cls, data: dict):
    """Build a section dataclass, ignoring unknown keys."""
    allowed = set(cls.__dataclass_fields__)
    return cls(**{k: v for k, v in data.items() if k in allowed})


def _apply_env(config: SyncConfig) -> SyncConfig:
    """Environment variables override file values."""
    env = os.environ
    doc = config.document
    doc.token = env.get("QUEUESYNC_GITHUB_TOKEN") or env.get("GITHUB_TOKEN") or doc.token
    doc.owner = env.get("QUEUESYNC_OWNER") or doc.owner
    doc.repo = env.get("QUEUESYNC_REPO") or doc.repo
    doc.path = env.get("QUEUESYNC_DOCUMENT_PATH") or doc.path

    dest = config.destination
    dest.api_url = env.get("QUEUESYNC_DEST_URL") or dest.api_url
    dest.token = env.get("QUEUESYNC_DEST_TOKEN") or env.get("GAME_GALLERY_TOKEN") or dest.token
    return config


def load_config(config_path: Optional[Path] = None) -> SyncConfig:
    """
    Load configuration from a TOML file plus environment overrides.

    A missing file is not an error: defaults plus environment are used.

    Raises:
        ValueError: If the config file is invalid or too new
    """
    config_path = config_path or get_config_path()
    data: dict = {}
    if config_path.exists():
        with open(config_path, "rb") as f:
            try:
                data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ValueError(f"Invalid config {config_path}: {e}") from e

    version = data.get("queuesync", {}).get("version", CONFIG_VERSION)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    config = SyncConfig(
        path=config_path,
        version=version,
        document=_section(DocumentConfig, data.get("document", {})),
        destination=_section(DestinationConfig, data.get("destination", {})),
        metadata=_section(MetadataConfig, data.get("metadata", {})),
        enrichment=_section(EnrichmentConfig, data.get("enrichment", {})),
        reconcile=_section(ReconcileConfig, data.get("reconcile", {})),
    )
    return _apply_env(config)


def save_config(config: SyncConfig, config_path: Optional[Path] = None) -> Path:
    """
    Save configuration as TOML.

    Creates the directory if it doesn't exist. Returns the path written.
    """
    if tomli_w is None:
        raise RuntimeError("tomli_w is required to save config. Install with: pip install tomli-w")

    config_path = config_path or config.path or get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    def section_to_dict(section) -> dict:
        # TOML has no null
        return {k: v for k, v in vars(section).items() if v is not None}

    data = {
        "queuesync": {"version": config.version},
        "document": section_to_dict(config.document),
        "destination": section_to_dict(config.destination),
        "metadata": section_to_dict(config.metadata),
        "enrichment": section_to_dict(config.enrichment),
        "reconcile": section_to_dict(config.reconcile),
    }

    with open(config_path, "wb") as f:
        tomli_w.dump(data, f)
    os.chmod(config_path, 0o600)
    return config_path
