"""PostgreSQL connection settings, database provisioning and the memory pool."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar
from urllib.parse import parse_qs, urlparse

import asyncpg

if TYPE_CHECKING:
    from memoria.config import DatabaseConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SSL_MODES = frozenset({"disable", "allow", "prefer", "require", "verify-ca", "verify-full"})
# asyncpg reports a server that drops the STARTTLS upgrade with this message
_LOST_DURING_SSL_UPGRADE = "unexpected connection_lost() call"
_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_DEFAULT_CREDENTIAL = "memoria"
_MAINTENANCE_DB = "postgres"


def _ssl_mode(raw: str | None) -> str | None:
    """Return a lower-cased sslmode asyncpg understands, or None."""
    mode = (raw or "").strip().lower()
    if not mode:
        return None
    if mode not in _SSL_MODES:
        logger.warning("Unknown sslmode %r ignored; asyncpg default applies", raw)
        return None
    return mode


def _normalize_schema_name(value: str | None) -> str | None:
    name = (value or "").strip()
    if not name:
        return None
    if not _IDENTIFIER.fullmatch(name):
        raise ValueError(f"Invalid schema name: {value!r} is not a plain SQL identifier")
    return name


def should_retry_with_ssl_disable(exc: BaseException, ssl: str | None) -> bool:
    """True when *exc* is asyncpg losing the connection during the SSL upgrade.

    Only an unset sslmode is downgraded; an explicit one is always honoured.
    """
    return (
        ssl is None
        and isinstance(exc, ConnectionError)
        and _LOST_DURING_SSL_UPGRADE in str(exc)
    )


@dataclass(frozen=True)
class ConnectionParams:
    """Where and how to reach PostgreSQL, independent of the target database."""

    host: str = "localhost"
    port: int = 5432
    user: str = _DEFAULT_CREDENTIAL
    password: str = _DEFAULT_CREDENTIAL
    database: str | None = None
    ssl: str | None = None

    @classmethod
    def from_env(cls) -> ConnectionParams:
        """Read ``DATABASE_URL`` when set, otherwise the ``POSTGRES_*`` variables."""
        url = os.environ.get("DATABASE_URL")
        if url:
            parsed = urlparse(url)
            sslmode = parse_qs(parsed.query).get("sslmode", [None])[0]
            return cls(
                host=parsed.hostname or "localhost",
                port=parsed.port or 5432,
                user=parsed.username or _DEFAULT_CREDENTIAL,
                password=parsed.password or _DEFAULT_CREDENTIAL,
                database=parsed.path.lstrip("/") or None,
                ssl=_ssl_mode(sslmode),
            )
        env = os.environ
        return cls(
            host=env.get("POSTGRES_HOST", "localhost"),
            port=int(env.get("POSTGRES_PORT", "5432")),
            user=env.get("POSTGRES_USER", _DEFAULT_CREDENTIAL),
            password=env.get("POSTGRES_PASSWORD", _DEFAULT_CREDENTIAL),
            database=env.get("POSTGRES_DB") or None,
            ssl=_ssl_mode(env.get("POSTGRES_SSLMODE")),
        )

    def connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs


class Database:
    """One agent's memory database and its asyncpg pool.

    :meth:`provision` creates the database through the maintenance
    database when it is missing.  :meth:`connect` opens the pool; with a
    ``schema`` every pooled connection resolves tables there first.  Both
    retry once with ``ssl=disable`` when the server drops an implicit SSL
    upgrade.
    """

    def __init__(
        self,
        db_name: str,
        params: ConnectionParams | None = None,
        *,
        schema: str | None = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> None:
        self.db_name = db_name
        self.params = params or ConnectionParams()
        self.schema = _normalize_schema_name(schema)
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(cls, db_name: str | None = None) -> Database:
        """Build from the environment; an explicit *db_name* beats the URL's."""
        params = ConnectionParams.from_env()
        return cls(db_name or params.database or "memoria", params)

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> Database:
        """Environment connection params with name, schema and pool sizes from *config*."""
        return cls(
            config.name,
            ConnectionParams.from_env(),
            schema=config.schema_name,
            min_pool_size=config.min_pool_size,
            max_pool_size=config.max_pool_size,
        )

    async def _open(
        self, opener: Callable[..., Awaitable[T]], kwargs: dict[str, Any], what: str
    ) -> T:
        try:
            return await opener(**kwargs)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, self.params.ssl):
                raise
            logger.info(
                "SSL upgrade lost while opening %s for %s; retrying without SSL", what, self.db_name
            )
            return await opener(**{**kwargs, "ssl": "disable"})

    async def provision(self) -> bool:
        """Create the memory database when missing.

        Returns:
            True when the database was created, False when it already existed.
        """
        conn = await self._open(
            asyncpg.connect, self.params.connect_kwargs(_MAINTENANCE_DB), "provision connection"
        )
        try:
            if await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", self.db_name):
                logger.debug("Memory database %s already present", self.db_name)
                return False
            # identifiers cannot be bound as parameters
            quoted = '"' + self.db_name.replace('"', '""') + '"'
            await conn.execute(f"CREATE DATABASE {quoted} TEMPLATE template0")
            logger.info("Created memory database %s", self.db_name)
            return True
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        """Open (or return the already open) pool for the memory database."""
        if self.pool is not None:
            return self.pool
        settings = {"application_name": f"memoria:{self.db_name}"}
        if self.schema is not None:
            settings["search_path"] = f"{self.schema},public"
        kwargs = {
            **self.params.connect_kwargs(self.db_name),
            "min_size": self.min_pool_size,
            "max_size": self.max_pool_size,
            "server_settings": settings,
        }
        self.pool = await self._open(asyncpg.create_pool, kwargs, "pool")
        logger.info(
            "Memory pool open for %s (%d-%d connections, schema=%s)",
            self.db_name,
            self.min_pool_size,
            self.max_pool_size,
            self.schema or "public",
        )
        return self.pool

    async def close(self) -> None:
        """Close the pool; a no-op when it is not open."""
        pool, self.pool = self.pool, None
        if pool is not None:
            await pool.close()
            logger.info("Memory pool closed for %s", self.db_name)

