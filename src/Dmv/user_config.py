"""Per-user settings (currently just a timezone).

Reads are cache-first: a miss falls through to the store inside the caller's
unit of work and populates the cache. Writes go to the store and update the
cache only after the unit of work commits.

Consistency: ``set_timezone`` serializes read-modify-write per user with an
``asyncio.Lock``, which covers concurrent handlers in this process. A lock
lives only while some set for that user is running or waiting. Reads do not
take the lock; a read that misses the cache never overwrites an entry a
concurrent set cached first. Nothing coordinates with other processes sharing
the same database; there the policy is last writer wins.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import Counter
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, replace
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from sqlalchemy.exc import SQLAlchemyError

from Dmv import repos
from Dmv.db import Database
from Dmv.exceptions import StoreError

log = structlog.get_logger()


@dataclass(frozen=True)
class UserConfig:
    timezone: ZoneInfo | None = None


def load_zone(name: str) -> ZoneInfo:
    """Resolve an IANA zone name, raising ValueError for unknown or malformed names."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, OSError) as err:
        raise ValueError(f"unknown time zone {name!r}") from err


# --- Store protocol: a unit of work exposing two row operations ---
class UserConfigTx(Protocol):
    async def get_timezone(self, user_id: str) -> str | None: ...

    async def upsert_timezone(self, user_id: str, timezone: str) -> None: ...


class UserConfigStore(Protocol):
    def unit_of_work(self) -> AbstractAsyncContextManager[UserConfigTx]: ...

    async def ping(self) -> None: ...


class _MemoryTx:
    def __init__(self, rows: dict[str, str]):
        self._rows = rows
        self.staged: dict[str, str] = {}

    async def get_timezone(self, user_id: str) -> str | None:
        if user_id in self.staged:
            return self.staged[user_id]
        return self._rows.get(user_id)

    async def upsert_timezone(self, user_id: str, timezone: str) -> None:
        self.staged[user_id] = timezone


class MemoryUserConfigStore:
    """Process-local store; staged writes are applied only when the unit of work exits cleanly."""

    def __init__(self, rows: dict[str, str] | None = None):
        self.rows: dict[str, str] = dict(rows or {})

    @contextlib.asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[_MemoryTx]:
        tx = _MemoryTx(self.rows)
        yield tx
        self.rows.update(tx.staged)

    async def ping(self) -> None:
        return None


class _SqlTx:
    def __init__(self, session):
        self._s = session

    async def get_timezone(self, user_id: str) -> str | None:
        return await repos.get_user_timezone(self._s, user_id)

    async def upsert_timezone(self, user_id: str, timezone: str) -> None:
        await repos.upsert_user_timezone(self._s, user_id, timezone)


class SqlUserConfigStore:
    def __init__(self, database: Database):
        self.database = database

    @contextlib.asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[_SqlTx]:
        try:
            async with self.database.session_scope() as s:
                yield _SqlTx(s)
        except SQLAlchemyError as err:
            raise StoreError(f"user config store failed: {err}") from err

    async def ping(self) -> None:
        try:
            async with self.database.session_scope() as s:
                await repos.healthcheck(s)
        except (SQLAlchemyError, OSError) as err:
            raise StoreError(f"user config store unreachable: {err}") from err

    async def create_schema(self) -> None:
        try:
            await self.database.create_all()
        except SQLAlchemyError as err:
            raise StoreError(f"could not create the user config schema: {err}") from err


class UserConfigManager:
    def __init__(self, store: UserConfigStore | None = None):
        self.store: UserConfigStore = store or MemoryUserConfigStore()
        self.user_configs: dict[str, UserConfig] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: Counter[str] = Counter()

    @contextlib.asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_holders[user_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[user_id] -= 1
            if self._lock_holders[user_id] <= 0:
                del self._lock_holders[user_id]
                del self._locks[user_id]

    async def get_user_config(self, tx: UserConfigTx, user_id: str) -> UserConfig:
        cached = self.user_configs.get(user_id)
        if cached is not None:
            return cached
        name = await tx.get_timezone(user_id)
        if name is None:
            return UserConfig()
        try:
            zone = load_zone(name)
        except ValueError as err:
            raise StoreError(f"stored timezone {name!r} for user {user_id} is invalid") from err
        # A set that committed while this read was in flight has already cached a newer value
        return self.user_configs.setdefault(user_id, UserConfig(timezone=zone))

    async def update_user_config(self, tx: UserConfigTx, user_id: str, cfg: UserConfig) -> None:
        if cfg.timezone is None:
            raise ValueError("refusing to store an empty timezone")
        await tx.upsert_timezone(user_id, cfg.timezone.key)

    async def set_timezone(self, user_id: str, zone: ZoneInfo) -> UserConfig:
        async with self._user_lock(user_id):
            async with self.store.unit_of_work() as tx:
                cfg = await self.get_user_config(tx, user_id)
                cfg = replace(cfg, timezone=zone)
                await self.update_user_config(tx, user_id, cfg)
            self.user_configs[user_id] = cfg
        log.info("user_config.updated", user_id=user_id, timezone=zone.key)
        return cfg

    async def get_timezone(self, user_id: str) -> ZoneInfo | None:
        async with self.store.unit_of_work() as tx:
            cfg = await self.get_user_config(tx, user_id)
        return cfg.timezone
