"""
Versioned response cache store.

CacheStorage holds any number of named caches (one per cache version tag).
Each Cache maps a request identity (method + URL) to a captured response.

Response bodies are stored as files under {cache_dir}/blobs/{sha256_hash}
and entry metadata in SQLite at {cache_dir}/cache.db.
"""

from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

import aiosqlite
import orjson

from medicache.exceptions import CacheStoreError, NetworkError
from medicache.logging import get_logger
from medicache.types import Request, Response, ResponseType, utc_now

if TYPE_CHECKING:
    from medicache.network import Network

logger = get_logger(__name__)


class CacheStorage:
    """All named caches for one application origin.

    Mirrors the browser CacheStorage surface: open, has, keys, delete, match.
    """

    def __init__(self, cache_dir: str | Path) -> None:
        """Initialize cache storage.

        Args:
            cache_dir: Base directory for cache storage.
        """
        self.cache_dir = Path(cache_dir)
        self.blobs_dir = self.cache_dir / "blobs"
        self.db_path = self.cache_dir / "cache.db"
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def init(self) -> None:
        """Initialize the store - create directories and database schema."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.blobs_dir.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS caches (
                cache_name TEXT PRIMARY KEY,
                created_at TEXT NOT NULL
            )
        """)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                cache_name TEXT NOT NULL,
                request_key TEXT NOT NULL,
                url TEXT NOT NULL,
                method TEXT NOT NULL,
                status INTEGER NOT NULL,
                headers TEXT NOT NULL,
                response_url TEXT NOT NULL,
                response_type TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                stored_at TEXT NOT NULL,
                PRIMARY KEY (cache_name, request_key)
            )
        """)
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_entries_hash ON entries(content_hash)"
        )
        await self._db.commit()
        logger.info("Cache storage initialized", cache_dir=str(self.cache_dir))

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if not self._db:
            raise CacheStoreError(
                "CacheStorage not initialized. Call init() first.",
                context={"cache_dir": str(self.cache_dir)},
            )
        return self._db

    async def open(self, cache_name: str) -> Cache:
        """Open a named cache, creating it if it does not exist."""
        async with self._write_lock:
            await self.db.execute(
                "INSERT OR IGNORE INTO caches (cache_name, created_at) VALUES (?, ?)",
                (cache_name, utc_now().isoformat()),
            )
            await self.db.commit()
        return Cache(self, cache_name)

    async def has(self, cache_name: str) -> bool:
        """Check whether a named cache exists."""
        async with self.db.execute(
            "SELECT 1 FROM caches WHERE cache_name = ?", (cache_name,)
        ) as cursor:
            return await cursor.fetchone() is not None

    async def keys(self) -> list[str]:
        """Names of all caches, in creation order."""
        async with self.db.execute(
            "SELECT cache_name FROM caches ORDER BY created_at, rowid"
        ) as cursor:
            rows = await cursor.fetchall()
        return [row["cache_name"] for row in rows]

    async def delete(self, cache_name: str) -> bool:
        """Delete a named cache and all of its entries.

        Returns:
            True if the cache existed.
        """
        async with self._write_lock:
            cursor = await self.db.execute(
                "DELETE FROM caches WHERE cache_name = ?", (cache_name,)
            )
            existed = cursor.rowcount > 0
            await self.db.execute(
                "DELETE FROM entries WHERE cache_name = ?", (cache_name,)
            )
            await self.db.commit()
            removed = await self._prune_blobs() if existed else 0

        if existed:
            logger.info("Deleted cache", cache_name=cache_name, blobs_removed=removed)
        return existed

    async def match(self, request: Request) -> Response | None:
        """Look a request up across every cache, oldest cache first."""
        async with self.db.execute(
            """
            SELECT e.* FROM entries e JOIN caches c ON c.cache_name = e.cache_name
            WHERE e.request_key = ?
            ORDER BY c.created_at, c.rowid
            LIMIT 1
            """,
            (request.key,),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_response(row) if row else None

    async def entry_counts(self) -> dict[str, int]:
        """Number of entries per cache name."""
        counts = {name: 0 for name in await self.keys()}
        async with self.db.execute(
            "SELECT cache_name, COUNT(*) AS n FROM entries GROUP BY cache_name"
        ) as cursor:
            for row in await cursor.fetchall():
                counts[row["cache_name"]] = row["n"]
        return counts

    async def _prune_blobs(self) -> int:
        # Caller holds _write_lock
        async with self.db.execute("SELECT DISTINCT content_hash FROM entries") as cursor:
            referenced = {row["content_hash"] for row in await cursor.fetchall()}

        removed = 0
        for blob_path in self.blobs_dir.glob("*/*"):
            if blob_path.name not in referenced:
                blob_path.unlink(missing_ok=True)
                removed += 1
        return removed

    def _get_blob_path(self, content_hash: str) -> Path:
        """Get the path for a blob file based on content hash.

        Uses first 2 chars as subdirectory for better filesystem performance.
        """
        return self.blobs_dir / content_hash[:2] / content_hash

    def _store_blob(self, content: bytes) -> str:
        """Store blob content if not already present.

        Returns:
            SHA-256 hash of the content.
        """
        content_hash = hashlib.sha256(content).hexdigest()
        blob_path = self._get_blob_path(content_hash)

        if not blob_path.exists():
            blob_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = blob_path.with_suffix(".tmp")
            tmp_path.write_bytes(content)
            tmp_path.replace(blob_path)
            logger.debug("Stored blob", hash=content_hash[:12], size=len(content))

        return content_hash

    def _read_blob(self, content_hash: str) -> bytes | None:
        blob_path = self._get_blob_path(content_hash)
        if not blob_path.exists():
            logger.warning("Blob file missing", hash=content_hash[:12])
            return None
        return blob_path.read_bytes()

    async def _put_many(
        self, cache_name: str, pairs: Iterable[tuple[Request, Response]]
    ) -> None:
        """Write entries in a single transaction (all or nothing)."""
        stored_at = utc_now().isoformat()

        async with self._write_lock:
            rows = []
            for request, response in pairs:
                content_hash = self._store_blob(response.body)
                rows.append((
                    cache_name,
                    request.key,
                    request.url,
                    request.method,
                    response.status,
                    orjson.dumps(response.headers).decode("utf-8"),
                    response.url or request.url,
                    response.type.value,
                    content_hash,
                    stored_at,
                ))

            try:
                await self.db.executemany(
                    """
                    INSERT OR REPLACE INTO entries (
                        cache_name, request_key, url, method, status, headers,
                        response_url, response_type, content_hash, stored_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                await self.db.commit()
            except aiosqlite.Error as e:
                await self.db.rollback()
                raise CacheStoreError(
                    "Failed to write cache entries",
                    context={"cache_name": cache_name, "operation": "put", "error": str(e)},
                ) from e

    def _row_to_response(self, row: aiosqlite.Row) -> Response | None:
        body = self._read_blob(row["content_hash"])
        if body is None:
            return None
        return Response(
            status=row["status"],
            body=body,
            headers=orjson.loads(row["headers"]),
            url=row["response_url"],
            type=ResponseType(row["response_type"]),
        )


class Cache:
    """One named, versioned cache inside a CacheStorage."""

    def __init__(self, storage: CacheStorage, name: str) -> None:
        self.storage = storage
        self.name = name

    def __repr__(self) -> str:
        return f"Cache({self.name!r})"

    async def match(self, request: Request) -> Response | None:
        """Look up the stored response for a request."""
        async with self.storage.db.execute(
            "SELECT * FROM entries WHERE cache_name = ? AND request_key = ?",
            (self.name, request.key),
        ) as cursor:
            row = await cursor.fetchone()
        return self.storage._row_to_response(row) if row else None

    async def put(self, request: Request, response: Response) -> None:
        """Store a response for a request, overwriting any previous entry."""
        await self.storage._put_many(self.name, [(request, response)])
        logger.debug("Cached response", cache_name=self.name, url=request.url)

    async def add_all(self, requests: list[Request], network: Network) -> None:
        """Fetch every request and store the responses atomically.

        Nothing is written unless every fetch succeeds with an OK status.

        Raises:
            CacheStoreError: If any request fails or returns a non-OK status.
        """
        results = await asyncio.gather(
            *[network.fetch(request) for request in requests],
            return_exceptions=True,
        )

        failed: dict[str, str] = {}
        pairs: list[tuple[Request, Response]] = []
        for request, result in zip(requests, results):
            if isinstance(result, NetworkError):
                failed[request.url] = result.message
            elif isinstance(result, BaseException):
                raise result
            elif not result.ok:
                failed[request.url] = f"HTTP {result.status}"
            else:
                pairs.append((request, result))

        if failed:
            raise CacheStoreError(
                "add_all failed; nothing was cached",
                context={"cache_name": self.name, "operation": "add_all", "failed": failed},
            )

        await self.storage._put_many(self.name, pairs)

    async def delete(self, request: Request) -> bool:
        """Remove the entry for a request.

        Returns:
            True if an entry was removed.
        """
        async with self.storage._write_lock:
            cursor = await self.storage.db.execute(
                "DELETE FROM entries WHERE cache_name = ? AND request_key = ?",
                (self.name, request.key),
            )
            await self.storage.db.commit()
        return cursor.rowcount > 0

    async def keys(self) -> list[str]:
        """Request identities stored in this cache."""
        async with self.storage.db.execute(
            "SELECT request_key FROM entries WHERE cache_name = ? ORDER BY rowid",
            (self.name,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row["request_key"] for row in rows]
