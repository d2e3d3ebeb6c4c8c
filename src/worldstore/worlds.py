"""
World catalog and manager for worldstore.

A world is one mutable knowledge graph. Worlds are partitioned physically:
each owns its own SQLite database, and the catalog (kb_worlds) records
their metadata in a separate database.

Features:
- Create/update/soft-delete/restore worlds
- List worlds per account
- Cached per-world QuadStores
- Invalidation callbacks for the graph-engine cache
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from worldstore.config import ConfigValidator, StoreConfig
from worldstore.storage.errors import ConstraintViolation, NotFound
from worldstore.storage.schema import connect, init_catalog_schema
from worldstore.storage.terms import Statement
from worldstore.storage.transactions import TransactionCoordinator
from worldstore.store import QuadStore

logger = logging.getLogger(__name__)

CATALOG_FILE = "catalog.sqlite"
WORLDS_DIR = "worlds"
CATALOG_ID = "__catalog__"
MAX_WORLD_ID_LENGTH = 128

_WORLD_COLUMNS = (
    "world_id, account_id, name, description, created_at, updated_at, deleted_at, is_public"
)

# Marks "leave this field unchanged" in update_world()
_UNSET = object()


def now_ms() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)


def validate_world_id(world_id: str) -> str:
    """World ids double as file names: alphanumerics, hyphens and underscores only."""
    if not world_id:
        raise ConstraintViolation("World id cannot be empty")
    if len(world_id) > MAX_WORLD_ID_LENGTH:
        raise ConstraintViolation(f"World id is longer than {MAX_WORLD_ID_LENGTH} characters")
    if not all(c.isascii() and (c.isalnum() or c in "-_") for c in world_id):
        raise ConstraintViolation(
            "World id can only contain alphanumeric characters, hyphens, and underscores"
        )
    if world_id == CATALOG_ID:
        raise ConstraintViolation(f"World id '{CATALOG_ID}' is reserved")
    return world_id


@dataclass
class WorldInfo:
    """Metadata about a world. Timestamps are Unix milliseconds."""
    world_id: str
    account_id: str
    name: str
    created_at: int
    updated_at: int
    description: Optional[str] = None
    deleted_at: Optional[int] = None
    is_public: bool = False

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> dict:
        return {
            "world_id": self.world_id,
            "account_id": self.account_id,
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "deleted_at": self.deleted_at,
            "is_public": self.is_public,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorldInfo":
        return cls(
            world_id=data["world_id"],
            account_id=data["account_id"],
            name=data["name"],
            created_at=int(data["created_at"]),
            updated_at=int(data["updated_at"]),
            description=data.get("description"),
            deleted_at=data.get("deleted_at"),
            is_public=bool(data.get("is_public", False)),
        )

    @classmethod
    def from_row(cls, row) -> "WorldInfo":
        return cls.from_dict(dict(row))


class WorldCatalog:
    """
    The kb_worlds table.

    Usage:
        catalog = WorldCatalog()
        info = catalog.create_world("acct-1", "Research notes")
        catalog.delete_world(info.world_id)   # soft delete
        catalog.restore_world(info.world_id)
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        busy_timeout_ms: int = 5000,
        lock_timeout: Optional[float] = 30.0,
    ):
        self._path = Path(path) if path is not None else None
        self._conn = connect(self._path, busy_timeout_ms=busy_timeout_ms)
        init_catalog_schema(self._conn)
        self._coordinator = TransactionCoordinator(self._conn, CATALOG_ID, lock_timeout=lock_timeout)

    def _fetch(self, conn, world_id: str) -> Optional[WorldInfo]:
        row = conn.execute(
            f"SELECT {_WORLD_COLUMNS} FROM kb_worlds WHERE world_id = ?", (world_id,)
        ).fetchone()
        return WorldInfo.from_row(row) if row else None

    def create_world(
        self,
        account_id: str,
        name: str,
        world_id: Optional[str] = None,
        description: Optional[str] = None,
        is_public: bool = False,
    ) -> WorldInfo:
        """
        Register a new world.

        Args:
            account_id: Owning account
            name: Display name
            world_id: Explicit id (random if omitted)
            description: Optional description
            is_public: Whether the world is publicly readable

        Raises:
            ConstraintViolation: invalid or already used world id, empty name
        """
        world_id = validate_world_id(world_id or uuid.uuid4().hex)
        if not account_id:
            raise ConstraintViolation("Account id cannot be empty")
        if not name:
            raise ConstraintViolation("World name cannot be empty")

        created = now_ms()
        info = WorldInfo(
            world_id=world_id,
            account_id=account_id,
            name=name,
            description=description,
            created_at=created,
            updated_at=created,
            is_public=is_public,
        )
        with self._coordinator.write_scope() as scope:
            if self._fetch(scope.connection, world_id) is not None:
                raise ConstraintViolation(f"World '{world_id}' already exists")
            scope.execute(
                f"INSERT INTO kb_worlds ({_WORLD_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    info.world_id, info.account_id, info.name, info.description,
                    info.created_at, info.updated_at, info.deleted_at, int(info.is_public),
                ),
            )
            scope.record(inserts=1)

        logger.info(f"Created world {world_id} for account {account_id}")
        return info

    def get_world(self, world_id: str) -> WorldInfo:
        """
        Get a world's metadata, soft-deleted worlds included.

        Raises:
            NotFound: no such world
        """
        with self._coordinator.read_scope() as conn:
            info = self._fetch(conn, world_id)
        if info is None:
            raise NotFound(f"World '{world_id}' does not exist")
        return info

    def exists(self, world_id: str) -> bool:
        with self._coordinator.read_scope() as conn:
            info = self._fetch(conn, world_id)
        return info is not None and not info.is_deleted

    def list_worlds(
        self,
        account_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[WorldInfo]:
        """List worlds ordered by creation time."""
        clauses = []
        params: list = []
        if account_id is not None:
            clauses.append("account_id = ?")
            params.append(account_id)
        if not include_deleted:
            clauses.append("deleted_at IS NULL")
        sql = f"SELECT {_WORLD_COLUMNS} FROM kb_worlds"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, world_id"
        with self._coordinator.read_scope() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [WorldInfo.from_row(row) for row in rows]

    def update_world(
        self,
        world_id: str,
        name: Optional[str] = None,
        description: Any = _UNSET,
        is_public: Optional[bool] = None,
    ) -> WorldInfo:
        """
        Update a live world's metadata.

        Raises:
            NotFound: no such world, or it is soft-deleted
        """
        if name is not None and not name:
            raise ConstraintViolation("World name cannot be empty")
        with self._coordinator.write_scope() as scope:
            info = self._fetch(scope.connection, world_id)
            if info is None or info.is_deleted:
                raise NotFound(f"World '{world_id}' does not exist")
            if name is not None:
                info.name = name
            if description is not _UNSET:
                info.description = description
            if is_public is not None:
                info.is_public = is_public
            info.updated_at = max(now_ms(), info.updated_at)
            scope.execute(
                "UPDATE kb_worlds SET name = ?, description = ?, is_public = ?, updated_at = ? "
                "WHERE world_id = ?",
                (info.name, info.description, int(info.is_public), info.updated_at, world_id),
            )
            scope.record(inserts=1)
        return info

    def delete_world(self, world_id: str) -> WorldInfo:
        """
        Soft-delete a world. Deleting a deleted world is a no-op.

        Raises:
            NotFound: no such world
        """
        with self._coordinator.write_scope() as scope:
            info = self._fetch(scope.connection, world_id)
            if info is None:
                raise NotFound(f"World '{world_id}' does not exist")
            if info.is_deleted:
                return info
            info.deleted_at = max(now_ms(), info.updated_at)
            info.updated_at = info.deleted_at
            scope.execute(
                "UPDATE kb_worlds SET deleted_at = ?, updated_at = ? WHERE world_id = ?",
                (info.deleted_at, info.updated_at, world_id),
            )
            scope.record(deletes=1)
        logger.info(f"Soft-deleted world {world_id}")
        return info

    def restore_world(self, world_id: str) -> WorldInfo:
        """
        Undo a soft delete.

        Raises:
            NotFound: no such world
        """
        with self._coordinator.write_scope() as scope:
            info = self._fetch(scope.connection, world_id)
            if info is None:
                raise NotFound(f"World '{world_id}' does not exist")
            if not info.is_deleted:
                return info
            info.deleted_at = None
            info.updated_at = max(now_ms(), info.updated_at)
            scope.execute(
                "UPDATE kb_worlds SET deleted_at = NULL, updated_at = ? WHERE world_id = ?",
                (info.updated_at, world_id),
            )
            scope.record(inserts=1)
        logger.info(f"Restored world {world_id}")
        return info

    def close(self) -> None:
        with self._coordinator.read_scope():
            self._conn.close()


class WorldManager:
    """
    Catalog plus cached per-world QuadStores.

    Usage:
        manager = WorldManager(StoreConfig(data_dir=Path("./data")))
        info = manager.create_world("acct-1", "Notes")
        manager.store(info.world_id).add_nquads(data)
        manager.subscribe(lambda world_id: cache.evict(world_id))
        statements = manager.wake(info.world_id)
    """

    def __init__(self, config: Optional[StoreConfig] = None):
        """
        Args:
            config: Store configuration; data_dir=None keeps everything in memory
        """
        self.config = config or StoreConfig()
        ConfigValidator.validate_or_raise(self.config)

        data_dir = self.config.data_dir
        if data_dir is not None:
            data_dir.mkdir(parents=True, exist_ok=True)
        self.catalog = WorldCatalog(
            data_dir / CATALOG_FILE if data_dir is not None else None,
            busy_timeout_ms=self.config.write.busy_timeout_ms,
            lock_timeout=self.config.write.lock_timeout_seconds,
        )

        # In-memory worlds live only as long as their cached store
        self._stores: Dict[str, QuadStore] = {}
        self._lock = threading.Lock()
        self._listeners: List[Callable[[str], None]] = []

    def world_path(self, world_id: str) -> Optional[Path]:
        """Database file of a world, None in in-memory mode."""
        if self.config.data_dir is None:
            return None
        return self.config.data_dir / WORLDS_DIR / f"{validate_world_id(world_id)}.sqlite"

    def create_world(self, account_id: str, name: str, **kwargs) -> WorldInfo:
        return self.catalog.create_world(account_id, name, **kwargs)

    def get_world(self, world_id: str) -> WorldInfo:
        return self.catalog.get_world(world_id)

    def list_worlds(self, account_id: Optional[str] = None, include_deleted: bool = False) -> List[WorldInfo]:
        return self.catalog.list_worlds(account_id=account_id, include_deleted=include_deleted)

    def update_world(self, world_id: str, **changes) -> WorldInfo:
        return self.catalog.update_world(world_id, **changes)

    def store(self, world_id: str) -> QuadStore:
        """
        Get the store of a live world, opening it on first use.

        Raises:
            NotFound: unknown or soft-deleted world
        """
        info = self.catalog.get_world(world_id)
        if info.is_deleted:
            raise NotFound(f"World '{world_id}' is deleted")

        with self._lock:
            store = self._stores.get(world_id)
            if store is None or store.closed:
                store = QuadStore(world_id, self.world_path(world_id), self.config)
                store.add_commit_listener(self._notify)
                self._stores[world_id] = store
            elif store.retired:
                store.reinstate()
        return store

    def wake(self, world_id: str) -> List[Statement]:
        """
        Hydration entry point for the graph engine.

        Raises:
            NotFound: unknown or soft-deleted world
        """
        return self.store(world_id).wake()

    def delete_world(self, world_id: str) -> WorldInfo:
        """
        Soft-delete a world, release its store and notify subscribers.

        File-backed stores are closed. In-memory stores hold the only copy of
        the data, so they stay cached but retired and refuse writes until
        the world is restored.
        """
        info = self.catalog.delete_world(world_id)
        if self.config.data_dir is None:
            with self._lock:
                store = self._stores.get(world_id)
            if store is not None:
                store.retire()
        else:
            with self._lock:
                store = self._stores.pop(world_id, None)
            if store is not None:
                store.close()
        self._notify(world_id)
        return info

    def restore_world(self, world_id: str) -> WorldInfo:
        info = self.catalog.restore_world(world_id)
        with self._lock:
            store = self._stores.get(world_id)
        if store is not None and not store.closed:
            store.reinstate()
        self._notify(world_id)
        return info

    def subscribe(self, listener: Callable[[str], None]) -> Callable[[str], None]:
        """Register ``listener(world_id)``, called after committed writes and deletes."""
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: Callable[[str], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, world_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(world_id)
            except Exception:
                logger.exception(f"Invalidation listener failed for world {world_id}")

    def close(self) -> None:
        """Close every open store and the catalog."""
        with self._lock:
            stores = list(self._stores.values())
            self._stores.clear()
        for store in stores:
            store.close()
        self.catalog.close()

    def __enter__(self) -> "WorldManager":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
