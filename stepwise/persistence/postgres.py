"""PostgreSQL implementation of the execution repository."""

from __future__ import annotations

import json
from typing import Any, Collection, List, Mapping, Optional

import asyncpg
from pydantic_core import to_jsonable_python

from ..contracts import (
    Execution,
    ExecutionStatus,
    StepExecution,
    StepStatus,
    Workflow,
)
from ..exceptions import ExecutionNotFound, StepExecutionExists, StepExecutionNotFound
from ..graph import validate_workflow
from .repository import MERGED_EXECUTION_FIELDS, ExecutionRepository

EXECUTION_JSON_FIELDS = frozenset({"input", "variables", "step_results", "error"})
STEP_JSON_FIELDS = frozenset({"output", "error"})


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
    )


class PostgresExecutionRepository(ExecutionRepository):
    """Persist execution state using PostgreSQL.

    Merges of ``variables``/``step_results`` run server-side with the
    ``jsonb ||`` operator inside a single ``UPDATE``, so concurrent step
    completions never overwrite each other.
    """

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self._dsn,
                min_size=self._min_size,
                max_size=self._max_size,
                init=_init_connection,
            )
            async with self._pool.acquire() as conn:
                await self._ensure_schema(conn)
        return self._pool

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                definition JSONB NOT NULL,
                PRIMARY KEY (tenant_id, id)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                status TEXT NOT NULL,
                input JSONB NOT NULL DEFAULT '{}'::jsonb,
                variables JSONB NOT NULL DEFAULT '{}'::jsonb,
                step_results JSONB NOT NULL DEFAULT '{}'::jsonb,
                error JSONB,
                created_at TIMESTAMPTZ,
                started_at TIMESTAMPTZ,
                paused_at TIMESTAMPTZ,
                resumed_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                cancelled_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_executions (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                status TEXT NOT NULL,
                output JSONB,
                retry_count INTEGER NOT NULL DEFAULT 0,
                last_retry_at TIMESTAMPTZ,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                error JSONB
            )
            """
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _assignments(
        fields: Mapping[str, Any],
        json_fields: frozenset[str],
        merged_fields: frozenset[str],
        start: int,
    ) -> tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for offset, (key, value) in enumerate(fields.items()):
            placeholder = f"${start + offset}"
            if key in merged_fields:
                clauses.append(f"{key} = {key} || {placeholder}::jsonb")
                params.append(to_jsonable_python(value or {}))
            elif key in json_fields:
                clauses.append(f"{key} = {placeholder}::jsonb")
                params.append(to_jsonable_python(value))
            elif key == "status":
                clauses.append(f"{key} = {placeholder}")
                params.append(value.value if hasattr(value, "value") else value)
            else:
                clauses.append(f"{key} = {placeholder}")
                params.append(value)
        return ", ".join(clauses), params

    async def _guarded_update(
        self,
        table: str,
        record_id: str,
        tenant_id: str,
        fields: Mapping[str, Any],
        json_fields: frozenset[str],
        merged_fields: frozenset[str],
        allowed: frozenset[str],
        expected_status: Optional[Collection[Any]],
    ) -> Optional[bool]:
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update {table} field(s): {', '.join(sorted(unknown))}")
        assignments, params = self._assignments(fields, json_fields, merged_fields, 3)
        query = f"UPDATE {table} SET {assignments} WHERE id = $1 AND tenant_id = $2"
        if expected_status is not None:
            query += f" AND status = ANY(${3 + len(params)}::text[])"
            params.append([getattr(s, "value", s) for s in expected_status])
        query += " RETURNING id"
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            updated = await conn.fetchval(query, record_id, tenant_id, *params)
            if updated is not None:
                return True
            exists = await conn.fetchval(
                f"SELECT 1 FROM {table} WHERE id = $1 AND tenant_id = $2",
                record_id,
                tenant_id,
            )
        return False if exists else None

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        validate_workflow(workflow)
        pool = await self._get_pool()
        await pool.execute(
            """
            INSERT INTO workflows (id, tenant_id, definition) VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (tenant_id, id) DO UPDATE SET definition = EXCLUDED.definition
            """,
            workflow.id,
            workflow.tenant_id,
            workflow.model_dump(mode="json"),
        )

    async def get_workflow(self, workflow_id: str, tenant_id: str) -> Workflow | None:
        pool = await self._get_pool()
        definition = await pool.fetchval(
            "SELECT definition FROM workflows WHERE id = $1 AND tenant_id = $2",
            workflow_id,
            tenant_id,
        )
        return Workflow.model_validate(definition) if definition is not None else None

    async def create_execution(self, execution: Execution) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            INSERT INTO executions (
                id, workflow_id, tenant_id, status, input, variables, step_results,
                error, created_at, started_at, paused_at, resumed_at, completed_at,
                cancelled_at
            ) VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7::jsonb, $8::jsonb,
                      $9, $10, $11, $12, $13, $14)
            """,
            execution.id,
            execution.workflow_id,
            execution.tenant_id,
            execution.status.value,
            to_jsonable_python(execution.input),
            to_jsonable_python(execution.variables),
            to_jsonable_python(execution.step_results),
            to_jsonable_python(execution.error),
            execution.created_at,
            execution.started_at,
            execution.paused_at,
            execution.resumed_at,
            execution.completed_at,
            execution.cancelled_at,
        )

    async def get_execution(self, execution_id: str, tenant_id: str) -> Execution | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "SELECT * FROM executions WHERE id = $1 AND tenant_id = $2",
            execution_id,
            tenant_id,
        )
        return Execution.model_validate(dict(row)) if row else None

    async def update_execution(
        self,
        execution_id: str,
        tenant_id: str,
        fields: Mapping[str, Any],
        expected_status: Optional[Collection[ExecutionStatus]] = None,
    ) -> bool:
        applied = await self._guarded_update(
            "executions",
            execution_id,
            tenant_id,
            fields,
            EXECUTION_JSON_FIELDS,
            MERGED_EXECUTION_FIELDS,
            frozenset(Execution.model_fields) - {"id", "tenant_id"},
            expected_status,
        )
        if applied is None:
            raise ExecutionNotFound(f"Execution {execution_id} not found")
        return applied

    async def list_executions(
        self, tenant_id: str, status: Optional[ExecutionStatus] = None
    ) -> list[Execution]:
        pool = await self._get_pool()
        if status is None:
            rows = await pool.fetch(
                "SELECT * FROM executions WHERE tenant_id = $1 ORDER BY created_at",
                tenant_id,
            )
        else:
            rows = await pool.fetch(
                "SELECT * FROM executions WHERE tenant_id = $1 AND status = $2 ORDER BY created_at",
                tenant_id,
                ExecutionStatus(status).value,
            )
        return [Execution.model_validate(dict(r)) for r in rows]

    async def create_step_execution(self, record: StepExecution) -> None:
        pool = await self._get_pool()
        inserted = await pool.fetchval(
            """
            INSERT INTO step_executions (
                id, execution_id, step_id, tenant_id, status, output, retry_count,
                last_retry_at, started_at, completed_at, error
            ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9, $10, $11::jsonb)
            ON CONFLICT (id) DO NOTHING
            RETURNING id
            """,
            record.id,
            record.execution_id,
            record.step_id,
            record.tenant_id,
            record.status.value,
            to_jsonable_python(record.output),
            record.retry_count,
            record.last_retry_at,
            record.started_at,
            record.completed_at,
            to_jsonable_python(record.error),
        )
        if inserted is None:
            raise StepExecutionExists(f"Step execution {record.id} already exists")

    async def get_step_execution(
        self, step_execution_id: str, tenant_id: str
    ) -> StepExecution | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "SELECT * FROM step_executions WHERE id = $1 AND tenant_id = $2",
            step_execution_id,
            tenant_id,
        )
        return StepExecution.model_validate(dict(row)) if row else None

    async def update_step_execution(
        self,
        step_execution_id: str,
        tenant_id: str,
        fields: Mapping[str, Any],
        expected_status: Optional[Collection[StepStatus]] = None,
    ) -> bool:
        applied = await self._guarded_update(
            "step_executions",
            step_execution_id,
            tenant_id,
            fields,
            STEP_JSON_FIELDS,
            frozenset(),
            frozenset(StepExecution.model_fields) - {"id", "tenant_id"},
            expected_status,
        )
        if applied is None:
            raise StepExecutionNotFound(f"Step execution {step_execution_id} not found")
        return applied

    async def list_step_executions(
        self, execution_id: str, tenant_id: str
    ) -> list[StepExecution]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "SELECT * FROM step_executions WHERE execution_id = $1 AND tenant_id = $2 ORDER BY started_at",
            execution_id,
            tenant_id,
        )
        return [StepExecution.model_validate(dict(r)) for r in rows]

    async def ping(self) -> bool:
        try:
            pool = await self._get_pool()
            await pool.fetchval("SELECT 1")
        except (OSError, asyncpg.PostgresError):
            return False
        return True

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
