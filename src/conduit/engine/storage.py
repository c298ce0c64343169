"""Cache and artifact storage — content-addressed blobs in SQLite.

Key exports:
    CacheStore, ArtifactStore — Protocols the executor depends on
    SqliteCacheStore — keyed dependency caches with restore-key prefix lookup
    SqliteArtifactStore — per-run named artifacts, published on job success

Both stores share one ``blobs`` table keyed by sha256 digest, so identical
content is stored once. Retention deadlines are recorded on every entry;
eviction is driven externally (``conduit gc``) from configuration.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Protocol

import aiosqlite

from conduit.engine.models import Artifact, CacheEntry
from conduit.engine.registry import _dt_to_str, _str_to_dt
from conduit.errors import ArtifactConflict, InfrastructureError

logger = logging.getLogger(__name__)


# ── Protocols ────────────────────────────────────────────────────────────────


class CacheStore(Protocol):
    async def put(self, key: str, blob: bytes, *, retention_days: int | None = None) -> CacheEntry:
        """Store a blob under ``key``. Concurrent writers: last one wins."""
        ...

    async def get(self, key: str, restore_keys: list[str] | None = None) -> CacheEntry | None:
        """Exact key, else restore-key prefixes in order. None on miss."""
        ...


class ArtifactStore(Protocol):
    async def upload(
        self,
        run_id: str,
        name: str,
        instance_id: str,
        blob: bytes,
        *,
        retention_days: int | None = None,
    ) -> Artifact: ...

    async def publish(self, run_id: str, instance_id: str) -> int: ...

    async def download(self, run_id: str, name: str) -> bytes | None: ...

    async def list_artifacts(self, run_id: str, *, published_only: bool = False) -> list[Artifact]: ...


def digest_of(blob: bytes) -> str:
    return hashlib.sha256(blob).hexdigest()


# ── Shared Blob Table ────────────────────────────────────────────────────────


class _BlobStore:
    """Base class holding the connection and the shared blob table."""

    def __init__(self, db: aiosqlite.Connection, *, default_retention_days: int | None = None):
        self._db = db
        self._default_retention_days = default_retention_days

    async def initialize(self) -> None:
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()

    def _expiry(self, now: datetime, retention_days: int | None) -> datetime | None:
        days = retention_days if retention_days is not None else self._default_retention_days
        if days is None:
            return None
        return now + timedelta(days=days)

    async def _put_blob(self, blob: bytes, now: datetime) -> str:
        digest = digest_of(blob)
        await self._db.execute(
            "INSERT OR IGNORE INTO blobs (digest, size, data, created_at) VALUES (?, ?, ?, ?)",
            (digest, len(blob), blob, _dt_to_str(now)),
        )
        return digest

    async def _get_blob(self, digest: str) -> bytes | None:
        cursor = await self._db.execute("SELECT data FROM blobs WHERE digest = ?", (digest,))
        row = await cursor.fetchone()
        return bytes(row["data"]) if row else None

    async def collect_garbage(self) -> int:
        """Delete blobs no longer referenced by any cache entry or artifact."""
        try:
            cursor = await self._db.execute(
                """
                DELETE FROM blobs WHERE digest NOT IN (
                    SELECT digest FROM cache_entries
                    UNION SELECT digest FROM artifacts
                )
                """
            )
            await self._db.commit()
        except aiosqlite.Error as e:
            raise InfrastructureError(f"Blob garbage collection failed: {e}") from e
        return cursor.rowcount


# ── Cache Store ──────────────────────────────────────────────────────────────


class SqliteCacheStore(_BlobStore):
    """Dependency cache keyed by string, shared across runs.

    A hit is advisory: callers treat ``None`` (miss) as normal.
    """

    async def put(self, key: str, blob: bytes, *, retention_days: int | None = None) -> CacheEntry:
        now = datetime.now(timezone.utc)
        expires = self._expiry(now, retention_days)
        try:
            digest = await self._put_blob(blob, now)
            await self._db.execute(
                """
                INSERT OR REPLACE INTO cache_entries
                    (key, digest, size, created_at, last_access_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (key, digest, len(blob), _dt_to_str(now), _dt_to_str(now), _dt_to_str(expires)),
            )
            await self._db.commit()
        except aiosqlite.Error as e:
            raise InfrastructureError(f"Cache save failed for key '{key}': {e}") from e

        logger.info("Cache saved: %s (%d bytes)", key, len(blob))
        return CacheEntry(
            key=key,
            digest=digest,
            size=len(blob),
            created_at=now,
            last_access_at=now,
            expires_at=expires,
        )

    async def get(self, key: str, restore_keys: list[str] | None = None) -> CacheEntry | None:
        try:
            row = await self._fetch_exact(key)
            exact = row is not None
            if row is None:
                # Most specific prefix first; equal lengths keep declared order
                for prefix in sorted(restore_keys or [], key=len, reverse=True):
                    row = await self._fetch_prefix(prefix)
                    if row is not None:
                        break
            if row is None:
                return None

            blob = await self._get_blob(row["digest"])
            if blob is None:
                logger.warning("Cache entry '%s' references a missing blob", row["key"])
                return None

            now = datetime.now(timezone.utc)
            await self._db.execute(
                "UPDATE cache_entries SET last_access_at = ? WHERE key = ?",
                (_dt_to_str(now), row["key"]),
            )
            await self._db.commit()
        except aiosqlite.Error as e:
            raise InfrastructureError(f"Cache lookup failed for key '{key}': {e}") from e

        entry = _row_to_cache_entry(row)
        entry.blob = blob
        entry.exact = exact
        entry.last_access_at = now
        return entry

    async def _fetch_exact(self, key: str) -> aiosqlite.Row | None:
        cursor = await self._db.execute("SELECT * FROM cache_entries WHERE key = ?", (key,))
        return await cursor.fetchone()

    async def _fetch_prefix(self, prefix: str) -> aiosqlite.Row | None:
        # Most recently written entry under this prefix
        cursor = await self._db.execute(
            """
            SELECT * FROM cache_entries
            WHERE substr(key, 1, ?) = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (len(prefix), prefix),
        )
        return await cursor.fetchone()

    async def list_entries(self) -> list[CacheEntry]:
        cursor = await self._db.execute("SELECT * FROM cache_entries ORDER BY key")
        rows = await cursor.fetchall()
        return [_row_to_cache_entry(r) for r in rows]

    async def delete(self, key: str) -> bool:
        cursor = await self._db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        await self._db.commit()
        return cursor.rowcount > 0

    async def evict_expired(self, now: datetime | None = None) -> int:
        """Remove entries past their retention deadline."""
        now = now or datetime.now(timezone.utc)
        cursor = await self._db.execute(
            "DELETE FROM cache_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (_dt_to_str(now),),
        )
        await self._db.commit()
        if cursor.rowcount:
            logger.info("Evicted %d expired cache entries", cursor.rowcount)
        return cursor.rowcount

    async def evict_to_size(self, max_bytes: int) -> int:
        """Remove least-recently-accessed entries until the total fits ``max_bytes``."""
        cursor = await self._db.execute(
            "SELECT key, size FROM cache_entries ORDER BY last_access_at DESC, rowid DESC"
        )
        rows = await cursor.fetchall()
        total = 0
        doomed: list[str] = []
        for row in rows:
            total += row["size"]
            if total > max_bytes:
                doomed.append(row["key"])
        for key in doomed:
            await self._db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        await self._db.commit()
        if doomed:
            logger.info("Evicted %d cache entries to fit %d bytes", len(doomed), max_bytes)
        return len(doomed)


# ── Artifact Store ───────────────────────────────────────────────────────────


class SqliteArtifactStore(_BlobStore):
    """Named artifacts, unique per run.

    Uploads are recorded unpublished; :meth:`publish` makes an instance's
    artifacts visible to downstream jobs once that instance has succeeded.
    """

    async def upload(
        self,
        run_id: str,
        name: str,
        instance_id: str,
        blob: bytes,
        *,
        retention_days: int | None = None,
    ) -> Artifact:
        now = datetime.now(timezone.utc)
        expires = self._expiry(now, retention_days)
        try:
            digest = await self._put_blob(blob, now)
            await self._db.execute(
                """
                INSERT INTO artifacts
                    (run_id, name, instance_id, digest, size, published, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    run_id,
                    name,
                    instance_id,
                    digest,
                    len(blob),
                    _dt_to_str(now),
                    _dt_to_str(expires),
                ),
            )
            await self._db.commit()
        except aiosqlite.IntegrityError as e:
            raise ArtifactConflict(run_id, name) from e
        except aiosqlite.Error as e:
            raise InfrastructureError(f"Artifact upload failed for '{name}': {e}") from e

        logger.info("Artifact uploaded: %s/%s by %s (%d bytes)", run_id, name, instance_id, len(blob))
        return Artifact(
            run_id=run_id,
            name=name,
            instance_id=instance_id,
            digest=digest,
            size=len(blob),
            created_at=now,
            expires_at=expires,
        )

    async def publish(self, run_id: str, instance_id: str) -> int:
        """Make every artifact produced by ``instance_id`` visible."""
        try:
            cursor = await self._db.execute(
                "UPDATE artifacts SET published = 1 WHERE run_id = ? AND instance_id = ?",
                (run_id, instance_id),
            )
            await self._db.commit()
        except aiosqlite.Error as e:
            raise InfrastructureError(f"Artifact publish failed for {instance_id}: {e}") from e
        return cursor.rowcount

    async def download(self, run_id: str, name: str) -> bytes | None:
        """Blob of a published artifact, or None if absent or not yet visible."""
        try:
            cursor = await self._db.execute(
                "SELECT digest FROM artifacts WHERE run_id = ? AND name = ? AND published = 1",
                (run_id, name),
            )
            row = await cursor.fetchone()
            if not row:
                return None
            return await self._get_blob(row["digest"])
        except aiosqlite.Error as e:
            raise InfrastructureError(f"Artifact download failed for '{name}': {e}") from e

    async def list_artifacts(self, run_id: str, *, published_only: bool = False) -> list[Artifact]:
        query = "SELECT * FROM artifacts WHERE run_id = ?"
        if published_only:
            query += " AND published = 1"
        cursor = await self._db.execute(query + " ORDER BY created_at, name", (run_id,))
        rows = await cursor.fetchall()
        return [_row_to_artifact(r) for r in rows]

    async def evict_expired(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        cursor = await self._db.execute(
            "DELETE FROM artifacts WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (_dt_to_str(now),),
        )
        await self._db.commit()
        if cursor.rowcount:
            logger.info("Evicted %d expired artifacts", cursor.rowcount)
        return cursor.rowcount


# ── Schema & Converters ──────────────────────────────────────────────────────


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS blobs (
    digest TEXT PRIMARY KEY,
    size INTEGER NOT NULL,
    data BLOB NOT NULL,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    digest TEXT NOT NULL,
    size INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    last_access_at TEXT NOT NULL,
    expires_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_cache_entries_access
    ON cache_entries(last_access_at);

CREATE TABLE IF NOT EXISTS artifacts (
    run_id TEXT NOT NULL,
    name TEXT NOT NULL,
    instance_id TEXT NOT NULL,
    digest TEXT NOT NULL,
    size INTEGER NOT NULL,
    published INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    expires_at TEXT,

    PRIMARY KEY(run_id, name)
);

CREATE INDEX IF NOT EXISTS idx_artifacts_instance
    ON artifacts(run_id, instance_id);
"""


def _row_to_cache_entry(row: aiosqlite.Row) -> CacheEntry:
    return CacheEntry(
        key=row["key"],
        digest=row["digest"],
        size=row["size"],
        created_at=_str_to_dt(row["created_at"]) or datetime.now(timezone.utc),
        last_access_at=_str_to_dt(row["last_access_at"]) or datetime.now(timezone.utc),
        expires_at=_str_to_dt(row["expires_at"]),
    )


def _row_to_artifact(row: aiosqlite.Row) -> Artifact:
    return Artifact(
        run_id=row["run_id"],
        name=row["name"],
        instance_id=row["instance_id"],
        digest=row["digest"],
        size=row["size"],
        published=bool(row["published"]),
        created_at=_str_to_dt(row["created_at"]) or datetime.now(timezone.utc),
        expires_at=_str_to_dt(row["expires_at"]),
    )
