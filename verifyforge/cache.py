"""
Content-Addressed Caches
========================

Single-slot caches keyed by (cache name, logical key). Each slot holds the
payload computed for exactly one fingerprint; storing under a different
fingerprint supersedes the old entry rather than keeping a history.

An entry is served only when the caller's freshly computed fingerprint equals
the stored one. Cache-layer failures (unreadable database, corrupt payload)
are absorbed here and reported as a miss.

Storage: entries live in the cache_entries table of .verifyforge/state.db.

Usage:
    from verifyforge.cache import ProfileCache

    cache = ProfileCache()
    result = await cache.get_profile(project_dir, discover=run_discovery)
    if result.hit:
        print("reused cached profile")
"""

import asyncio
import inspect
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verifyforge.config import CACHE_MAX_AGE_DAYS
from verifyforge.db.connection import get_session_maker
from verifyforge.db.models import CacheEntryModel
from verifyforge.fingerprint import (
    ContentFingerprinter,
    FingerprintInput,
    project_inputs,
    project_key,
    text_source,
)

logger = logging.getLogger(__name__)

# Anything the storage layer can raise while reading or writing an entry.
# RuntimeError covers an uninitialized database.
CACHE_ERRORS = (SQLAlchemyError, ValueError, TypeError, OSError, RuntimeError)

ComputeFn = Callable[[], Union[Any, Awaitable[Any]]]


def _utcnow() -> datetime:
    # SQLite stores naive timestamps; keep everything in naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class CacheEntry:
    """A live cache entry."""
    fingerprint: str
    payload: Any
    created_at: Optional[datetime]
    logical_key: str = ""
    cache_name: str = ""


@dataclass
class CacheResult:
    """Outcome of get_or_compute."""
    payload: Any
    fingerprint: str
    hit: bool
    stored: bool = False


class ContentCache:
    """
    Single-slot-per-key content-addressed cache.

    One ContentCache instance owns writes for its cache name; per-key locks
    keep a recompute-and-store from racing another store on the same key.
    Readers never take the lock and may observe the previous entry until the
    new one is committed.
    """

    CACHE_NAME = "default"

    def __init__(
        self,
        cache_name: Optional[str] = None,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        fingerprinter: Optional[ContentFingerprinter] = None,
    ):
        self.cache_name = cache_name or self.CACHE_NAME
        self._session_maker = session_maker
        self.fingerprinter = fingerprinter or ContentFingerprinter()
        # A key's lock lives only while some caller holds or waits on it.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

        self.stats = {"hits": 0, "misses": 0, "stores": 0, "errors": 0}

    def _maker(self) -> async_sessionmaker[AsyncSession]:
        return self._session_maker or get_session_maker()

    def _lock_for(self, logical_key: str) -> asyncio.Lock:
        lock = self._locks.get(logical_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[logical_key] = lock
        return lock

    # =========================================================================
    # Raw slot access (errors propagate; callers decide)
    # =========================================================================

    async def _read_slot(self, logical_key: str) -> Optional[CacheEntry]:
        async with self._maker()() as session:
            result = await session.execute(
                select(CacheEntryModel).where(
                    CacheEntryModel.cache_name == self.cache_name,
                    CacheEntryModel.logical_key == logical_key,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return CacheEntry(
                fingerprint=row.fingerprint,
                payload=row.payload,
                created_at=row.created_at,
                logical_key=row.logical_key,
                cache_name=row.cache_name,
            )

    async def _write_slot(self, logical_key: str, fingerprint: str, payload: Any) -> None:
        # Replace without loading the old row; its payload may be unreadable.
        async with self._maker()() as session:
            async with session.begin():
                await session.execute(
                    delete(CacheEntryModel).where(
                        CacheEntryModel.cache_name == self.cache_name,
                        CacheEntryModel.logical_key == logical_key,
                    )
                )
                session.add(CacheEntryModel(
                    cache_name=self.cache_name,
                    logical_key=logical_key,
                    fingerprint=fingerprint,
                    payload=payload,
                    created_at=_utcnow(),
                ))

    # =========================================================================
    # Public API
    # =========================================================================

    async def lookup(self, logical_key: str, fingerprint: str) -> Optional[CacheEntry]:
        """
        Return the entry for logical_key only if it was stored under fingerprint.

        Mismatches, absent entries and unreadable entries are all misses.
        """
        try:
            entry = await self._read_slot(logical_key)
        except CACHE_ERRORS as e:
            self.stats["errors"] += 1
            logger.warning("Cache %s/%s unreadable, treating as miss: %s", self.cache_name, logical_key, e)
            return None

        if entry is None or entry.fingerprint != fingerprint:
            return None
        return entry

    async def store(self, logical_key: str, fingerprint: str, payload: Any) -> bool:
        """
        Store payload under fingerprint, replacing any entry for another fingerprint.

        Returns False if the write failed; the failure is logged, never raised.
        """
        async with self._lock_for(logical_key):
            return await self._store_locked(logical_key, fingerprint, payload)

    async def _store_locked(self, logical_key: str, fingerprint: str, payload: Any) -> bool:
        try:
            await self._write_slot(logical_key, fingerprint, payload)
        except CACHE_ERRORS as e:
            self.stats["errors"] += 1
            logger.warning("Cache %s/%s store failed: %s", self.cache_name, logical_key, e)
            return False
        self.stats["stores"] += 1
        return True

    async def invalidate(self, logical_key: str) -> bool:
        """Drop the entry for logical_key. Returns True if one existed."""
        async with self._lock_for(logical_key):
            try:
                async with self._maker()() as session:
                    async with session.begin():
                        result = await session.execute(
                            delete(CacheEntryModel).where(
                                CacheEntryModel.cache_name == self.cache_name,
                                CacheEntryModel.logical_key == logical_key,
                            )
                        )
                return (result.rowcount or 0) > 0
            except CACHE_ERRORS as e:
                self.stats["errors"] += 1
                logger.warning("Cache %s/%s invalidate failed: %s", self.cache_name, logical_key, e)
                return False

    async def get_or_compute(
        self,
        logical_key: str,
        inputs: Sequence[FingerprintInput],
        compute: ComputeFn,
        refresh: bool = False,
    ) -> CacheResult:
        """
        Serve the cached payload for these inputs, or compute and store it.

        The fingerprint is recomputed from inputs on every call. refresh=True
        skips the lookup and supersedes whatever is stored.
        """
        fingerprint = self.fingerprinter.fingerprint(inputs)

        if not refresh:
            entry = await self.lookup(logical_key, fingerprint)
            if entry is not None:
                self.stats["hits"] += 1
                return CacheResult(payload=entry.payload, fingerprint=fingerprint, hit=True)

        async with self._lock_for(logical_key):
            # Another writer may have committed this fingerprint while we waited.
            if not refresh:
                entry = await self.lookup(logical_key, fingerprint)
                if entry is not None:
                    self.stats["hits"] += 1
                    return CacheResult(payload=entry.payload, fingerprint=fingerprint, hit=True)

            self.stats["misses"] += 1
            payload = compute()
            if inspect.isawaitable(payload):
                payload = await payload
            stored = await self._store_locked(logical_key, fingerprint, payload)

        return CacheResult(payload=payload, fingerprint=fingerprint, hit=False, stored=stored)

    async def entries(self) -> list[CacheEntry]:
        """List all entries of this cache (newest first)."""
        try:
            async with self._maker()() as session:
                result = await session.execute(
                    select(CacheEntryModel)
                    .where(CacheEntryModel.cache_name == self.cache_name)
                    .order_by(CacheEntryModel.created_at.desc())
                )
                return [
                    CacheEntry(
                        fingerprint=row.fingerprint,
                        payload=row.payload,
                        created_at=row.created_at,
                        logical_key=row.logical_key,
                        cache_name=row.cache_name,
                    )
                    for row in result.scalars().all()
                ]
        except CACHE_ERRORS as e:
            logger.warning("Cache %s listing failed: %s", self.cache_name, e)
            return []

    async def cleanup_stale(self, max_age_days: int = CACHE_MAX_AGE_DAYS) -> int:
        """Delete entries older than max_age_days. Returns the number removed."""
        cutoff = _utcnow() - timedelta(days=max_age_days)
        try:
            async with self._maker()() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(CacheEntryModel).where(
                            CacheEntryModel.cache_name == self.cache_name,
                            CacheEntryModel.created_at < cutoff,
                        )
                    )
            removed = result.rowcount or 0
        except CACHE_ERRORS as e:
            logger.warning("Cache %s cleanup failed: %s", self.cache_name, e)
            return 0
        if removed:
            logger.info("Removed %d stale %s cache entries", removed, self.cache_name)
        return removed


class ProfileCache(ContentCache):
    """Project discovery results keyed by project path, fingerprinted over build config and source count."""

    CACHE_NAME = "profile"

    async def get_profile(
        self,
        project_dir: Path,
        discover: ComputeFn,
        refresh: bool = False,
        inputs: Optional[Sequence[FingerprintInput]] = None,
    ) -> CacheResult:
        return await self.get_or_compute(
            project_key(project_dir),
            inputs if inputs is not None else project_inputs(project_dir),
            discover,
            refresh=refresh,
        )


class PatternCache(ContentCache):
    """
    Learned code patterns keyed by project path.

    Fingerprinted over the profile's build config and source count plus the
    profile fingerprint, so patterns are relearned whenever the profile they
    were learned from goes stale.
    """

    CACHE_NAME = "patterns"

    async def get_patterns(
        self,
        project_dir: Path,
        learn: ComputeFn,
        profile_fingerprint: Optional[str] = None,
        refresh: bool = False,
    ) -> CacheResult:
        inputs = project_inputs(project_dir)
        if profile_fingerprint is None:
            profile_fingerprint = self.fingerprinter.fingerprint(inputs)
        inputs.append(text_source("profile_fingerprint", profile_fingerprint))
        return await self.get_or_compute(project_key(project_dir), inputs, learn, refresh=refresh)
