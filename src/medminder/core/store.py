"""Record store — the persistence capability the engine writes through.

Records are JSON-compatible dicts grouped into named collections and keyed by
their ``id`` field. Every record carries a version that increments on each
write, so callers can do compare-and-set updates.

Two backends implement the :class:`Store` protocol:

- :class:`MemoryStore` — process-local, used by tests and ephemeral runs.
- :class:`PostgresStore` — a single ``records`` table with JSONB values,
  backed by an asyncpg pool.
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol

import asyncpg

from medminder.errors import CASConflictError, PersistenceError

logger = logging.getLogger(__name__)

MEDICATIONS = "medications"
DOSE_EVENTS = "dose_events"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS records (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    value JSONB NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    seq BIGSERIAL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (collection, id)
)
"""

_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class Store(Protocol):
    """Protocol for record store backends."""

    async def get_all(self, collection: str) -> list[dict[str, Any]]:
        """Return every record in *collection*, in insertion order."""
        ...

    async def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        """Return one record, or ``None`` if it does not exist."""
        ...

    async def get_versioned(
        self, collection: str, record_id: str
    ) -> tuple[dict[str, Any], int] | None:
        """Return ``(record, version)``, or ``None`` if it does not exist."""
        ...

    async def put(
        self,
        collection: str,
        item: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> int:
        """Upsert *item* (keyed by ``item["id"]``) and return its new version.

        When *expected_version* is given, the write only succeeds if the stored
        version matches; otherwise :exc:`CASConflictError` is raised.
        """
        ...

    async def remove(self, collection: str, record_id: str) -> None:
        """Delete a record. No-op if it does not exist."""
        ...


def _record_id(item: dict[str, Any]) -> str:
    record_id = item.get("id")
    if not record_id:
        raise ValueError("Record is missing a non-empty 'id' field")
    return str(record_id)


class MemoryStore:
    """In-process store. Values are deep-copied in and out."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, tuple[dict[str, Any], int]]] = {}

    async def get_all(self, collection: str) -> list[dict[str, Any]]:
        rows = self._collections.get(collection, {})
        return [copy.deepcopy(value) for value, _ in rows.values()]

    async def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        found = await self.get_versioned(collection, record_id)
        return None if found is None else found[0]

    async def get_versioned(
        self, collection: str, record_id: str
    ) -> tuple[dict[str, Any], int] | None:
        row = self._collections.get(collection, {}).get(record_id)
        if row is None:
            return None
        value, version = row
        return copy.deepcopy(value), version

    async def put(
        self,
        collection: str,
        item: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> int:
        record_id = _record_id(item)
        rows = self._collections.setdefault(collection, {})
        current = rows.get(record_id)
        actual_version = None if current is None else current[1]
        if expected_version is not None and actual_version != expected_version:
            raise CASConflictError(
                collection=collection,
                record_id=record_id,
                expected_version=expected_version,
                actual_version=actual_version,
            )
        new_version = (actual_version or 0) + 1
        rows[record_id] = (copy.deepcopy(item), new_version)
        return new_version

    async def remove(self, collection: str, record_id: str) -> None:
        self._collections.get(collection, {}).pop(record_id, None)


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value, handling potential double-encoding.

    asyncpg returns JSONB columns as Python strings (text representation)
    when no custom codec is registered.  Normally one ``json.loads`` pass
    suffices.  If the stored JSONB was accidentally double-encoded (a JSON
    string containing JSON text), a second pass is needed.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected — applying second decode pass")
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val


@contextmanager
def _translate_errors(operation: str, collection: str) -> Iterator[None]:
    """Re-raise driver failures as :exc:`PersistenceError`."""
    try:
        yield
    except _DRIVER_ERRORS as exc:
        raise PersistenceError(f"{operation} on {collection!r} failed: {exc}") from exc


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create the ``records`` table if it does not exist."""
    with _translate_errors("ensure_schema", "records"):
        await pool.execute(SCHEMA_SQL)


class PostgresStore:
    """Store backed by the ``records`` table of a PostgreSQL database."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get_all(self, collection: str) -> list[dict[str, Any]]:
        with _translate_errors("get_all", collection):
            rows = await self._pool.fetch(
                "SELECT value FROM records WHERE collection = $1 ORDER BY seq",
                collection,
            )
        return [decode_jsonb(row["value"]) for row in rows]

    async def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        found = await self.get_versioned(collection, record_id)
        return None if found is None else found[0]

    async def get_versioned(
        self, collection: str, record_id: str
    ) -> tuple[dict[str, Any], int] | None:
        with _translate_errors("get", collection):
            row = await self._pool.fetchrow(
                "SELECT value, version FROM records WHERE collection = $1 AND id = $2",
                collection,
                record_id,
            )
        if row is None:
            return None
        return decode_jsonb(row["value"]), row["version"]

    async def put(
        self,
        collection: str,
        item: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> int:
        record_id = _record_id(item)
        json_value = json.dumps(item)

        if expected_version is None:
            with _translate_errors("put", collection):
                new_version: int = await self._pool.fetchval(
                    """
                    INSERT INTO records (collection, id, value, updated_at, version)
                    VALUES ($1, $2, $3::jsonb, now(), 1)
                    ON CONFLICT (collection, id) DO UPDATE
                        SET value = EXCLUDED.value,
                            updated_at = now(),
                            version = records.version + 1
                    RETURNING version
                    """,
                    collection,
                    record_id,
                    json_value,
                )
            return new_version

        with _translate_errors("compare_and_set", collection):
            row = await self._pool.fetchrow(
                """
                UPDATE records
                SET value = $4::jsonb,
                    updated_at = now(),
                    version = version + 1
                WHERE collection = $1 AND id = $2 AND version = $3
                RETURNING version
                """,
                collection,
                record_id,
                expected_version,
                json_value,
            )
            if row is not None:
                return row["version"]

            # The update matched nothing: missing record or version mismatch.
            actual = await self._pool.fetchval(
                "SELECT version FROM records WHERE collection = $1 AND id = $2",
                collection,
                record_id,
            )
        raise CASConflictError(
            collection=collection,
            record_id=record_id,
            expected_version=expected_version,
            actual_version=actual,
        )

    async def remove(self, collection: str, record_id: str) -> None:
        with _translate_errors("remove", collection):
            await self._pool.execute(
                "DELETE FROM records WHERE collection = $1 AND id = $2",
                collection,
                record_id,
            )
