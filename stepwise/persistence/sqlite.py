"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Collection, Dict, Mapping, Optional

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
from .repository import (
    ExecutionRepository,
    apply_execution_update,
    apply_step_execution_update,
)

EXECUTION_COLUMNS = (
    "id",
    "workflow_id",
    "tenant_id",
    "status",
    "input",
    "variables",
    "step_results",
    "error",
    "created_at",
    "started_at",
    "paused_at",
    "resumed_at",
    "completed_at",
    "cancelled_at",
)
STEP_COLUMNS = (
    "id",
    "execution_id",
    "step_id",
    "tenant_id",
    "status",
    "output",
    "retry_count",
    "last_retry_at",
    "started_at",
    "completed_at",
    "error",
)
JSON_COLUMNS = frozenset({"input", "variables", "step_results", "error", "output"})


def _to_row(model: Execution | StepExecution, columns: tuple[str, ...]) -> list[Any]:
    data = to_jsonable_python(model)
    return [
        json.dumps(data[col]) if col in JSON_COLUMNS else data[col] for col in columns
    ]


def _from_row(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        key: json.loads(row[key]) if key in JSON_COLUMNS and row[key] is not None else row[key]
        for key in row.keys()
    }


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist execution state using SQLite.

    Partial updates are read-modify-write inside ``BEGIN IMMEDIATE``, which
    takes the database write lock, so concurrent merges cannot lose writes.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._thread_lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._thread_lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    definition TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, id)
                );
                CREATE TABLE IF NOT EXISTS executions (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    input TEXT,
                    variables TEXT,
                    step_results TEXT,
                    error TEXT,
                    created_at TEXT,
                    started_at TEXT,
                    paused_at TEXT,
                    resumed_at TEXT,
                    completed_at TEXT,
                    cancelled_at TEXT
                );
                CREATE TABLE IF NOT EXISTS step_executions (
                    id TEXT PRIMARY KEY,
                    execution_id TEXT NOT NULL,
                    step_id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    output TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    last_retry_at TEXT,
                    started_at TEXT,
                    completed_at TEXT,
                    error TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_step_executions_execution
                    ON step_executions (tenant_id, execution_id);
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._thread_lock:
            cur = self._conn.execute(query, params)
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._thread_lock:
            return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._thread_lock:
            return self._conn.execute(query, params).fetchall()

    def _insert(self, table: str, columns: tuple[str, ...], values: list[Any]) -> None:
        placeholders = ", ".join("?" for _ in columns)
        self._execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            *values,
        )

    def _update_execution_sync(
        self,
        execution_id: str,
        tenant_id: str,
        fields: Mapping[str, Any],
        expected_status: Optional[Collection[ExecutionStatus]],
    ) -> bool:
        with self._thread_lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    "SELECT * FROM executions WHERE id = ? AND tenant_id = ?",
                    (execution_id, tenant_id),
                ).fetchone()
                if row is None:
                    raise ExecutionNotFound(f"Execution {execution_id} not found")
                current = Execution.model_validate(_from_row(row))
                if expected_status is not None and current.status not in expected_status:
                    self._conn.execute("ROLLBACK")
                    return False
                updated = apply_execution_update(current, fields)
                assignments = ", ".join(f"{col} = ?" for col in EXECUTION_COLUMNS[1:])
                self._conn.execute(
                    f"UPDATE executions SET {assignments} WHERE id = ?",
                    (*_to_row(updated, EXECUTION_COLUMNS[1:]), execution_id),
                )
                self._conn.execute("COMMIT")
                return True
            except Exception:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise

    def _update_step_sync(
        self,
        step_execution_id: str,
        tenant_id: str,
        fields: Mapping[str, Any],
        expected_status: Optional[Collection[StepStatus]],
    ) -> bool:
        with self._thread_lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    "SELECT * FROM step_executions WHERE id = ? AND tenant_id = ?",
                    (step_execution_id, tenant_id),
                ).fetchone()
                if row is None:
                    raise StepExecutionNotFound(
                        f"Step execution {step_execution_id} not found"
                    )
                current = StepExecution.model_validate(_from_row(row))
                if expected_status is not None and current.status not in expected_status:
                    self._conn.execute("ROLLBACK")
                    return False
                updated = apply_step_execution_update(current, fields)
                assignments = ", ".join(f"{col} = ?" for col in STEP_COLUMNS[1:])
                self._conn.execute(
                    f"UPDATE step_executions SET {assignments} WHERE id = ?",
                    (*_to_row(updated, STEP_COLUMNS[1:]), step_execution_id),
                )
                self._conn.execute("COMMIT")
                return True
            except Exception:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise

    # ------------------------------------------------------------------
    # Repository API
    async def save_workflow(self, workflow: Workflow) -> None:
        validate_workflow(workflow)
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO workflows (id, tenant_id, definition) VALUES (?, ?, ?)",
            workflow.id,
            workflow.tenant_id,
            workflow.model_dump_json(),
        )

    async def get_workflow(self, workflow_id: str, tenant_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT definition FROM workflows WHERE id = ? AND tenant_id = ?",
            workflow_id,
            tenant_id,
        )
        if not row:
            return None
        return Workflow.model_validate_json(row["definition"])

    async def create_execution(self, execution: Execution) -> None:
        await asyncio.to_thread(
            self._insert,
            "executions",
            EXECUTION_COLUMNS,
            _to_row(execution, EXECUTION_COLUMNS),
        )

    async def get_execution(self, execution_id: str, tenant_id: str) -> Execution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM executions WHERE id = ? AND tenant_id = ?",
            execution_id,
            tenant_id,
        )
        if not row:
            return None
        return Execution.model_validate(_from_row(row))

    async def update_execution(
        self,
        execution_id: str,
        tenant_id: str,
        fields: Mapping[str, Any],
        expected_status: Optional[Collection[ExecutionStatus]] = None,
    ) -> bool:
        return await asyncio.to_thread(
            self._update_execution_sync,
            execution_id,
            tenant_id,
            fields,
            expected_status,
        )

    async def list_executions(
        self, tenant_id: str, status: Optional[ExecutionStatus] = None
    ) -> list[Execution]:
        if status is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM executions WHERE tenant_id = ? ORDER BY created_at",
                tenant_id,
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM executions WHERE tenant_id = ? AND status = ? ORDER BY created_at",
                tenant_id,
                ExecutionStatus(status).value,
            )
        return [Execution.model_validate(_from_row(row)) for row in rows]

    async def create_step_execution(self, record: StepExecution) -> None:
        try:
            await asyncio.to_thread(
                self._insert,
                "step_executions",
                STEP_COLUMNS,
                _to_row(record, STEP_COLUMNS),
            )
        except sqlite3.IntegrityError as exc:
            raise StepExecutionExists(
                f"Step execution {record.id} already exists"
            ) from exc

    async def get_step_execution(
        self, step_execution_id: str, tenant_id: str
    ) -> StepExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM step_executions WHERE id = ? AND tenant_id = ?",
            step_execution_id,
            tenant_id,
        )
        if not row:
            return None
        return StepExecution.model_validate(_from_row(row))

    async def update_step_execution(
        self,
        step_execution_id: str,
        tenant_id: str,
        fields: Mapping[str, Any],
        expected_status: Optional[Collection[StepStatus]] = None,
    ) -> bool:
        return await asyncio.to_thread(
            self._update_step_sync,
            step_execution_id,
            tenant_id,
            fields,
            expected_status,
        )

    async def list_step_executions(
        self, execution_id: str, tenant_id: str
    ) -> list[StepExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM step_executions WHERE execution_id = ? AND tenant_id = ? ORDER BY started_at",
            execution_id,
            tenant_id,
        )
        return [StepExecution.model_validate(_from_row(row)) for row in rows]

    async def ping(self) -> bool:
        try:
            await asyncio.to_thread(self._fetchone, "SELECT 1")
        except sqlite3.Error:
            return False
        return True

    async def close(self) -> None:
        with self._thread_lock:
            self._conn.close()
