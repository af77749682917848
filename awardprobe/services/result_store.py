"""Persistent key-value storage for research reports.

Keys are award ids, values are the serialized report JSON. Three backends
share the same async ``get``/``put`` interface; every backend failure
surfaces as ``ResultStoreError`` once the retry policy gives up.
"""

from __future__ import annotations

import asyncio
import json
import re
from datetime import datetime, timezone
from hashlib import sha256
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import asyncpg

from awardprobe.config import settings
from awardprobe.services.logger import log_store_operation
from awardprobe.services.retry import RetryPolicy

T = TypeVar("T")

STORE_VERSION = 1
_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]+")


class ResultStoreError(RuntimeError):
    """Raised when the result store cannot be read or written."""


class ResultStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str) -> None: ...


async def _guarded(
    operation: str,
    key: str,
    call: Callable[[], Awaitable[T]],
    retry: RetryPolicy,
) -> T:
    try:
        result = await retry.run(call, label=f"store.{operation}({key})")
    except Exception as exc:
        log_store_operation(operation, key, "error", error=repr(exc))
        raise ResultStoreError(f"{operation} failed for {key!r}: {exc}") from exc
    log_store_operation(operation, key, "ok")
    return result


class MemoryResultStore:
    """In-process store; contents are lost when the process exits."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def put(self, key: str, value: str) -> None:
        self._data[key] = value


def _file_name(key: str) -> str:
    # Readable prefix plus a digest so distinct ids never collide after cleanup.
    readable = _SAFE_KEY.sub("_", key).strip("._")[:64] or "award"
    digest = sha256(key.encode("utf-8")).hexdigest()[:16]
    return f"{readable}-{digest}.json"


class FileResultStore:
    """One JSON file per award id under ``root``."""

    def __init__(self, root: str | Path | None = None, *, retry: RetryPolicy | None = None):
        self.root = Path(root or settings.result_store_dir)
        self.retry = retry or RetryPolicy.from_settings()

    def path_for(self, key: str) -> Path:
        return self.root / _file_name(key)

    def _read(self, key: str) -> str | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        envelope = json.loads(path.read_text(encoding="utf-8"))
        value = envelope.get("value") if isinstance(envelope, dict) else None
        if not isinstance(value, str):
            raise ValueError(f"malformed store file {path}")
        return value

    def _write(self, key: str, value: str) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        envelope = {
            "version": STORE_VERSION,
            "key": key,
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "value": value,
        }
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(envelope, ensure_ascii=True), encoding="utf-8")
        tmp.replace(path)

    async def get(self, key: str) -> str | None:
        return await _guarded("get", key, lambda: asyncio.to_thread(self._read, key), self.retry)

    async def put(self, key: str, value: str) -> None:
        await _guarded("put", key, lambda: asyncio.to_thread(self._write, key, value), self.retry)


class PostgresResultStore:
    """``research_results`` table in PostgreSQL via an asyncpg pool."""

    CREATE_TABLE = """
        CREATE TABLE IF NOT EXISTS research_results (
            award_id TEXT PRIMARY KEY,
            payload JSONB NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """

    def __init__(
        self,
        dsn: str | None = None,
        *,
        retry: RetryPolicy | None = None,
        pool: Any = None,
    ):
        self.dsn = dsn if dsn is not None else settings.database_url
        self.retry = retry or RetryPolicy.from_settings()
        self._pool = pool
        self._schema_ready = False
        self._pool_lock = asyncio.Lock()

    async def _get_pool(self) -> Any:
        async with self._pool_lock:
            if self._pool is None:
                if not self.dsn:
                    raise ResultStoreError("Database not configured. Set DATABASE_URL in .env")
                self._pool = await asyncpg.create_pool(self.dsn, min_size=1, max_size=10)
            if not self._schema_ready:
                async with self._pool.acquire() as conn:
                    await conn.execute(self.CREATE_TABLE)
                self._schema_ready = True
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            self._schema_ready = False

    async def _fetch(self, key: str) -> str | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT payload FROM research_results WHERE award_id = $1",
                key,
            )
        if row is None:
            return None
        payload = row["payload"]
        # asyncpg hands jsonb back as text unless a codec is registered.
        return payload if isinstance(payload, str) else json.dumps(payload)

    async def _upsert(self, key: str, value: str) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO research_results (award_id, payload, updated_at)
                VALUES ($1, $2::jsonb, now())
                ON CONFLICT (award_id)
                DO UPDATE SET payload = EXCLUDED.payload, updated_at = now()
                """,
                key,
                value,
            )

    async def get(self, key: str) -> str | None:
        return await _guarded("get", key, lambda: self._fetch(key), self.retry)

    async def put(self, key: str, value: str) -> None:
        await _guarded("put", key, lambda: self._upsert(key, value), self.retry)


def get_result_store(backend: str | None = None) -> ResultStore:
    """Build the store selected by ``settings.result_store_backend``."""
    choice = (backend or settings.result_store_backend or "file").strip().lower()
    if choice == "memory":
        return MemoryResultStore()
    if choice == "file":
        return FileResultStore()
    if choice in {"postgres", "postgresql"}:
        return PostgresResultStore()
    raise ValueError(f"Unknown result store backend: {choice!r}")
