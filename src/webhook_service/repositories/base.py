"""Shared asyncpg helpers for repositories."""
from __future__ import annotations

import json
from typing import Any, Iterable

import asyncpg  # type: ignore[import-untyped]


class BaseRepository:
    """Thin wrapper over asyncpg pool operations."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        async with self._pool.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def _fetch(self, query: str, *args: Any) -> Iterable[asyncpg.Record]:
        async with self._pool.acquire() as conn:
            return await conn.fetch(query, *args)

    async def _execute(self, query: str, *args: Any) -> str:
        async with self._pool.acquire() as conn:
            return await conn.execute(query, *args)

    @staticmethod
    def _decode_json_fields(payload: dict[str, Any], *fields: str) -> dict[str, Any]:
        """asyncpg returns ``jsonb`` as text unless a codec is registered."""
        for name in fields:
            value = payload.get(name)
            if isinstance(value, str):
                payload[name] = json.loads(value)
        return payload

    @staticmethod
    def _affected_rows(status: str) -> int:
        # asyncpg command tag, e.g. "DELETE 3"
        return int(status.split()[-1])
