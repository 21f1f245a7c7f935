"""Plain-SQL migration runner applied on service startup."""
from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Protocol

import asyncpg  # type: ignore[import-untyped]
import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

_SCHEMA_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version text PRIMARY KEY,
    checksum text NOT NULL,
    applied_at timestamptz NOT NULL DEFAULT now()
);
"""


class SettingsProtocol(Protocol):
    database_url: Any


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    sql: str

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.sql.encode("utf-8")).hexdigest()


def find_migrations_dir(possible_paths: Iterable[Path]) -> Path | None:
    for path in possible_paths:
        if path.is_dir():
            return path
    return None


def load_migrations(migrations_dir: Path) -> list[Migration]:
    """Read ``*.sql`` files ordered by name; the file stem is the version."""
    migrations: dict[str, Migration] = {}
    for path in sorted(migrations_dir.glob("*.sql")):
        version = path.stem
        if version in migrations:
            raise ValueError(f"Duplicate migration version detected: {version}")
        migrations[version] = Migration(version, path, path.read_text(encoding="utf-8"))
    return list(migrations.values())


def pending_migrations(migrations: list[Migration], applied: dict[str, str]) -> list[Migration]:
    """Return migrations not yet applied; raise if an applied file was edited."""
    pending = []
    for migration in migrations:
        recorded = applied.get(migration.version)
        if recorded is None:
            pending.append(migration)
        elif recorded != migration.checksum:
            raise RuntimeError(
                f"Checksum mismatch for {migration.version}: "
                f"{recorded} (db) != {migration.checksum} (file)"
            )
    return pending


async def _connect_with_retry(
    dsn: str, *, max_retries: int = 5, retry_delay: float = 2.0
) -> asyncpg.Connection | None:
    for attempt in range(1, max_retries + 1):
        try:
            return await asyncpg.connect(dsn)
        except (OSError, asyncpg.PostgresError) as exc:
            logger.warning(
                "migrations: database not reachable",
                attempt=attempt,
                max_retries=max_retries,
                error=str(exc),
            )
            if attempt < max_retries:
                await asyncio.sleep(retry_delay)
    return None


def create_migration_runner(
    settings: SettingsProtocol,
    possible_paths: Iterable[Path],
) -> Callable[[web.Application], Awaitable[None]]:
    """Create an aiohttp startup hook that applies pending SQL migrations."""
    possible_paths_list = list(possible_paths)

    async def apply_migrations_on_startup(_app: web.Application) -> None:
        migrations_dir = find_migrations_dir(possible_paths_list)
        if migrations_dir is None:
            logger.warning(
                "migrations directory not found, skipping",
                tried=[str(p) for p in possible_paths_list],
            )
            return

        migrations = load_migrations(migrations_dir)
        if not migrations:
            logger.info("no migrations found", path=str(migrations_dir))
            return

        conn = await _connect_with_retry(str(settings.database_url))
        if conn is None:
            logger.error("migrations skipped: could not connect to database")
            return

        try:
            await conn.execute(_SCHEMA_TABLE_SQL)
            rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
            pending = pending_migrations(
                migrations, {row["version"]: row["checksum"] for row in rows}
            )
            if not pending:
                logger.info("no pending migrations")
                return

            for migration in pending:
                logger.info("applying migration", version=migration.version)
                async with conn.transaction():
                    await conn.execute(migration.sql)
                    await conn.execute(
                        "INSERT INTO schema_migrations (version, checksum) VALUES ($1, $2)",
                        migration.version,
                        migration.checksum,
                    )
            logger.info("migrations applied", count=len(pending))
        finally:
            await conn.close()

    return apply_migrations_on_startup
