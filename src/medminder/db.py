"""PostgreSQL connection settings and the asyncpg pool behind PostgresStore.

The database must already exist. Connection details come from
``DATABASE_URL`` or, when that is unset, the ``POSTGRES_*`` variables. A
schema may be given so several independent medication stores (one per
person, say) share a database; it is created on connect and put first on the
pool's ``search_path``.
"""

from __future__ import annotations

import logging
import os
import re
from urllib.parse import quote, urlsplit

import asyncpg

from medminder.errors import PersistenceError

logger = logging.getLogger(__name__)

_SCHEMA_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def dsn_from_env(db_name: str) -> str:
    """Return a libpq DSN pointing at *db_name*.

    ``DATABASE_URL`` is used when set, with its path replaced by *db_name* and
    any query (``sslmode`` and friends) kept. Otherwise the DSN is assembled
    from ``POSTGRES_HOST``/``PORT``/``USER``/``PASSWORD``, defaulting to a
    local ``medminder`` role.
    """
    url = os.environ.get("DATABASE_URL")
    if url:
        return urlsplit(url)._replace(path=f"/{db_name}").geturl()

    host = os.environ.get("POSTGRES_HOST", "localhost")
    port = os.environ.get("POSTGRES_PORT", "5432")
    user = quote(os.environ.get("POSTGRES_USER", "medminder"), safe="")
    password = quote(os.environ.get("POSTGRES_PASSWORD", "medminder"), safe="")
    return f"postgresql://{user}:{password}@{host}:{port}/{db_name}"


def validate_schema(schema: str | None) -> str | None:
    """Strip *schema*; blank means none. Raises ValueError if not an identifier."""
    if schema is None or not schema.strip():
        return None
    name = schema.strip()
    if _SCHEMA_NAME.fullmatch(name) is None:
        raise ValueError(f"Invalid schema name: {schema!r}")
    return name


class Database:
    """The connection pool for one medminder store."""

    def __init__(
        self,
        dsn: str,
        schema: str | None = None,
        *,
        min_size: int = 1,
        max_size: int = 5,
    ) -> None:
        self.dsn = dsn
        self.schema = validate_schema(schema)
        self.min_size = min_size
        self.max_size = max_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(cls, db_name: str, schema: str | None = None) -> Database:
        return cls(dsn_from_env(db_name), schema)

    @property
    def target(self) -> str:
        """``host:port/db[.schema]`` for log lines; never includes credentials."""
        parts = urlsplit(self.dsn)
        where = f"{parts.hostname}:{parts.port or 5432}{parts.path}"
        return f"{where}.{self.schema}" if self.schema else where

    async def connect(self) -> asyncpg.Pool:
        """Open the pool, creating the schema first when one is configured.

        Raises:
            PersistenceError: If the server cannot be reached or refuses us.
        """
        server_settings = None
        try:
            if self.schema is not None:
                conn = await asyncpg.connect(self.dsn)
                try:
                    await conn.execute(f'CREATE SCHEMA IF NOT EXISTS "{self.schema}"')
                finally:
                    await conn.close()
                server_settings = {"search_path": f"{self.schema},public"}
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                server_settings=server_settings,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise PersistenceError(f"Cannot connect to {self.target}: {exc}") from exc
        logger.info("Connected to %s", self.target)
        return self.pool

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            logger.info("Closed pool for %s", self.target)
