"""
Store configuration for worldstore.

Provides:
- Search, index and write tuning sections
- JSON load/save and environment overrides
- Configuration validation
"""
from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from worldstore.storage.errors import InvalidConfiguration
from worldstore.storage.schema import SCHEMA_VERSION
from worldstore.storage.skolem import DEFAULT_AUTHORITY

logger = logging.getLogger(__name__)

CONFIG_FILE = "worldstore.json"


@dataclass
class SearchConfig:
    """Hybrid search configuration."""
    rrf_k: float = 60
    default_limit: int = 10
    candidate_limit: int = 50

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rrf_k": self.rrf_k,
            "default_limit": self.default_limit,
            "candidate_limit": self.candidate_limit,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchConfig":
        return cls(
            rrf_k=data.get("rrf_k", 60),
            default_limit=data.get("default_limit", 10),
            candidate_limit=data.get("candidate_limit", 50),
        )


@dataclass
class IndexConfig:
    """Chunk index configuration."""
    embedding_dimensions: int = 512
    chunk_literals: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "embedding_dimensions": self.embedding_dimensions,
            "chunk_literals": self.chunk_literals,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexConfig":
        return cls(
            embedding_dimensions=data.get("embedding_dimensions", 512),
            chunk_literals=data.get("chunk_literals", True),
        )


@dataclass
class WriteConfig:
    """Write scope configuration."""
    lock_timeout_seconds: Optional[float] = 30.0
    scope_timeout_seconds: Optional[float] = None
    busy_timeout_ms: int = 5000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lock_timeout_seconds": self.lock_timeout_seconds,
            "scope_timeout_seconds": self.scope_timeout_seconds,
            "busy_timeout_ms": self.busy_timeout_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WriteConfig":
        return cls(
            lock_timeout_seconds=data.get("lock_timeout_seconds", 30.0),
            scope_timeout_seconds=data.get("scope_timeout_seconds"),
            busy_timeout_ms=data.get("busy_timeout_ms", 5000),
        )


@dataclass
class StoreConfig:
    """
    Complete configuration for a worldstore deployment.

    data_dir=None keeps every world in a private in-memory database.
    """
    data_dir: Optional[Path] = None
    skolem_authority: str = DEFAULT_AUTHORITY
    schema_version: int = SCHEMA_VERSION

    search: SearchConfig = field(default_factory=SearchConfig)
    index: IndexConfig = field(default_factory=IndexConfig)
    write: WriteConfig = field(default_factory=WriteConfig)

    def __post_init__(self):
        if self.data_dir is not None and not isinstance(self.data_dir, Path):
            self.data_dir = Path(self.data_dir)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data_dir": str(self.data_dir) if self.data_dir else None,
            "skolem_authority": self.skolem_authority,
            "schema_version": self.schema_version,
            "search": self.search.to_dict(),
            "index": self.index.to_dict(),
            "write": self.write.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoreConfig":
        data_dir = data.get("data_dir")
        return cls(
            data_dir=Path(data_dir) if data_dir else None,
            skolem_authority=data.get("skolem_authority", DEFAULT_AUTHORITY),
            schema_version=data.get("schema_version", SCHEMA_VERSION),
            search=SearchConfig.from_dict(data.get("search", {})),
            index=IndexConfig.from_dict(data.get("index", {})),
            write=WriteConfig.from_dict(data.get("write", {})),
        )

    def save(self, path: Path) -> None:
        """Save configuration to ``path/worldstore.json``."""
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        with open(path / CONFIG_FILE, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: Path) -> "StoreConfig":
        """Load configuration from ``path/worldstore.json``, defaults if absent."""
        config_file = Path(path) / CONFIG_FILE
        if config_file.exists():
            with open(config_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            logger.debug(f"Loaded store configuration from {config_file}")
            return cls.from_dict(data)
        return cls()

    @classmethod
    def from_env(cls, base: Optional["StoreConfig"] = None) -> "StoreConfig":
        """
        Overlay WORLDSTORE_* environment variables on a config.

        Recognized: WORLDSTORE_DATA_DIR, WORLDSTORE_RRF_K,
        WORLDSTORE_EMBEDDING_DIMENSIONS.
        """
        config = StoreConfig.from_dict(base.to_dict()) if base else cls()
        env = os.environ
        try:
            if env.get("WORLDSTORE_DATA_DIR"):
                config.data_dir = Path(env["WORLDSTORE_DATA_DIR"])
            if env.get("WORLDSTORE_RRF_K"):
                config.search.rrf_k = float(env["WORLDSTORE_RRF_K"])
            if env.get("WORLDSTORE_EMBEDDING_DIMENSIONS"):
                config.index.embedding_dimensions = int(env["WORLDSTORE_EMBEDDING_DIMENSIONS"])
        except ValueError as e:
            raise InvalidConfiguration(f"Invalid WORLDSTORE_* environment value: {e}") from e
        return config


class ConfigValidator:
    """Validates store configuration."""

    @staticmethod
    def validate(config: StoreConfig) -> List[str]:
        """
        Validate configuration.

        Returns list of error messages (empty if valid).
        """
        errors = []

        if isinstance(config.search.rrf_k, bool) or not isinstance(config.search.rrf_k, (int, float)):
            errors.append("rrf_k must be a number")
        elif not config.search.rrf_k > 0:
            errors.append("rrf_k must be positive")
        elif math.isinf(config.search.rrf_k):
            errors.append("rrf_k must be finite")

        if config.search.default_limit < 1:
            errors.append("default_limit must be at least 1")

        if config.search.candidate_limit < 1:
            errors.append("candidate_limit must be at least 1")

        if config.index.embedding_dimensions < 1:
            errors.append("embedding_dimensions must be at least 1")

        lock_timeout = config.write.lock_timeout_seconds
        if lock_timeout is not None and lock_timeout <= 0:
            errors.append("lock_timeout_seconds must be positive")

        scope_timeout = config.write.scope_timeout_seconds
        if scope_timeout is not None and scope_timeout <= 0:
            errors.append("scope_timeout_seconds must be positive")

        if config.write.busy_timeout_ms < 0:
            errors.append("busy_timeout_ms cannot be negative")

        if not config.skolem_authority:
            errors.append("skolem_authority cannot be empty")

        if config.schema_version > SCHEMA_VERSION:
            errors.append(
                f"schema_version {config.schema_version} is newer than supported {SCHEMA_VERSION}"
            )

        return errors

    @staticmethod
    def validate_or_raise(config: StoreConfig) -> None:
        """Validate configuration, raising on errors."""
        errors = ConfigValidator.validate(config)
        if errors:
            raise InvalidConfiguration("; ".join(errors))
