import json

import asyncpg

_pool: asyncpg.Pool | None = None

DEPLOYMENTS_DDL = """
CREATE TABLE IF NOT EXISTS dataverse_deployments (
    deployment_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    record JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""


async def _configure_connection(connection: asyncpg.Connection) -> None:
    await connection.set_type_codec(
        "jsonb",
        schema="pg_catalog",
        encoder=json.dumps,
        decoder=json.loads,
        format="text",
    )


async def init_pool(dsn: str, *, min_size: int = 1, max_size: int = 5) -> asyncpg.Pool:
    global _pool
    _pool = await asyncpg.create_pool(
        dsn,
        min_size=min_size,
        max_size=max_size,
        init=_configure_connection,
    )
    await _pool.execute(DEPLOYMENTS_DDL)
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
