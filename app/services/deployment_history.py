import copy
from typing import Protocol

import asyncpg


class DeploymentHistory(Protocol):
    async def get_deployment_by_id(self, deployment_id: str) -> dict | None: ...

    async def update_deployment(self, deployment_id: str, status: str, patch: dict) -> dict | None: ...

    async def record_deployment(self, record: dict) -> dict: ...

    async def list_deployments(self, limit: int = 50) -> list[dict]: ...


def _apply_patch(record: dict, status: str, patch: dict) -> dict:
    updated = copy.deepcopy(record)
    updated.update(copy.deepcopy(patch))
    updated["status"] = status
    return updated


class InMemoryDeploymentHistory:
    def __init__(self) -> None:
        self._records: dict[str, dict] = {}

    async def get_deployment_by_id(self, deployment_id: str) -> dict | None:
        record = self._records.get(deployment_id)
        return copy.deepcopy(record) if record is not None else None

    async def update_deployment(self, deployment_id: str, status: str, patch: dict) -> dict | None:
        record = self._records.get(deployment_id)
        if record is None:
            return None
        self._records[deployment_id] = _apply_patch(record, status, patch)
        return copy.deepcopy(self._records[deployment_id])

    async def record_deployment(self, record: dict) -> dict:
        self._records[record["deployment_id"]] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def list_deployments(self, limit: int = 50) -> list[dict]:
        records = sorted(
            self._records.values(),
            key=lambda record: str(record.get("timestamp") or ""),
            reverse=True,
        )
        return [copy.deepcopy(record) for record in records[:limit]]


class PostgresDeploymentHistory:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get_deployment_by_id(self, deployment_id: str) -> dict | None:
        row = await self.pool.fetchrow(
            """
            SELECT record
            FROM dataverse_deployments
            WHERE deployment_id = $1
            """,
            deployment_id,
        )
        if row is None:
            return None
        return dict(row["record"])

    async def update_deployment(self, deployment_id: str, status: str, patch: dict) -> dict | None:
        async with self.pool.acquire() as connection:
            async with connection.transaction():
                row = await connection.fetchrow(
                    """
                    SELECT record
                    FROM dataverse_deployments
                    WHERE deployment_id = $1
                    FOR UPDATE
                    """,
                    deployment_id,
                )
                if row is None:
                    return None
                updated = _apply_patch(dict(row["record"]), status, patch)
                await connection.execute(
                    """
                    UPDATE dataverse_deployments
                    SET status = $1,
                        record = $2,
                        updated_at = NOW()
                    WHERE deployment_id = $3
                    """,
                    status,
                    updated,
                    deployment_id,
                )
        return updated

    async def record_deployment(self, record: dict) -> dict:
        await self.pool.execute(
            """
            INSERT INTO dataverse_deployments (deployment_id, status, record)
            VALUES ($1, $2, $3)
            ON CONFLICT (deployment_id) DO UPDATE
            SET status = EXCLUDED.status,
                record = EXCLUDED.record,
                updated_at = NOW()
            """,
            record["deployment_id"],
            record["status"],
            record,
        )
        return record

    async def list_deployments(self, limit: int = 50) -> list[dict]:
        rows = await self.pool.fetch(
            """
            SELECT record
            FROM dataverse_deployments
            ORDER BY created_at DESC
            LIMIT $1
            """,
            limit,
        )
        return [dict(row["record"]) for row in rows]
