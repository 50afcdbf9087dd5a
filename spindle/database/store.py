import json
import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List

import aiosqlite

from ..common.config import get_database_settings
from ..common.errors import (
    ClaimLostError,
    InactiveTaskTypeError,
    InvalidStateTransitionError,
    StoreUnavailableError,
    TaskNotFoundError,
    UnknownTaskTypeError,
)
from ..core.retry import default_retry_strategy, next_delay
from ..lib.utils import (
    create_id,
    from_db_time,
    get_upgrade_migrations,
    to_db_time,
    utc_now,
)
from ..schemas.retry import RetryStrategy
from ..schemas.tasks import (
    CLAIMABLE_STATUSES,
    TERMINAL_STATUSES,
    Task,
    TaskFilter,
    TaskPriority,
    TaskStats,
    TaskStatus,
    TaskType,
    sources_of,
)
from .base import TaskStoreBackend

logger = logging.getLogger(__name__)

WORKER_LOST_ERROR = "Worker lost: task was running for longer than {seconds:.0f}s without reporting"


def _in(statuses: Iterable[TaskStatus]) -> str:
    return ", ".join(f"'{status.value}'" for status in sorted(statuses))


class TaskStore(TaskStoreBackend):
    """Async SQLite task store shared by producers, workers and admin tools.

    Each operation opens a short-lived connection. Every mutation runs in a
    ``BEGIN IMMEDIATE`` transaction, so SQLite's single-writer lock
    serializes state changes across coroutines, threads and processes. The
    claim is a single ``UPDATE ... RETURNING`` statement, which means two
    workers can never leave with the same task.

    The database file must be a real path: every connection to ``:memory:``
    would see its own empty database.

    Example:
        >>> async with TaskStore(".spindle/tasks.db") as store:
        ...     await store.register_task_type("email")
        ...     task = await store.enqueue("email", {"to": "ops@example.com"})
    """

    def __init__(
        self,
        path: str | None = None,
        *,
        busy_timeout: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if path is None or busy_timeout is None:
            settings = get_database_settings()
            path = path or settings["path"]
            if busy_timeout is None:
                busy_timeout = settings["busy_timeout"]

        self.path = path
        self.busy_timeout = busy_timeout
        self._clock = clock
        self._initialized = False
        self.upgrade_migrations = get_upgrade_migrations()

    def now(self) -> datetime:
        return self._clock()

    async def _init_db(self) -> None:
        """Create the data directory and apply any migration not yet recorded."""
        if self._initialized:
            return

        directory = os.path.dirname(self.path)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)

        async with self._connect() as conn:
            await conn.execute("PRAGMA journal_mode = WAL")
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    name TEXT PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
                """
            )
            rows = await conn.execute_fetchall("SELECT name FROM schema_migrations")
            applied = {row["name"] for row in rows}

            for migration in self.upgrade_migrations:
                if migration["name"] in applied:
                    continue
                logger.debug("Applying migration %s to %s", migration["name"], self.path)
                await conn.executescript(migration["sql"])
                await conn.execute(
                    "INSERT OR IGNORE INTO schema_migrations (name, applied_at) VALUES (?, ?)",
                    (migration["name"], to_db_time(self.now())),
                )

        self._initialized = True

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            conn = await aiosqlite.connect(
                self.path, timeout=self.busy_timeout, isolation_level=None
            )
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailableError(f"Cannot open task store at {self.path}: {e}") from e

        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        finally:
            await conn.close()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection holding the write lock until the block exits."""
        async with self._connect() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")

    async def _fetchone(
        self, conn: aiosqlite.Connection, sql: str, params: tuple = ()
    ) -> aiosqlite.Row | None:
        cursor = await conn.execute(sql, params)
        row = await cursor.fetchone()
        await cursor.close()
        return row

    async def _raise_transition(
        self,
        conn: aiosqlite.Connection,
        task_id: str,
        target: str,
        claim_id: str | None = None,
    ) -> None:
        """Raise the error explaining why a conditional update matched nothing."""
        row = await self._fetchone(
            conn, "SELECT status, claim_id FROM tasks WHERE id = ?", (task_id,)
        )
        self._check_claim(row, task_id, target, claim_id)
        raise InvalidStateTransitionError(task_id, row["status"], target)  # type: ignore[index]

    @staticmethod
    def _check_claim(
        row: aiosqlite.Row | None, task_id: str, target: str, claim_id: str | None
    ) -> None:
        """Ensure ``row`` is a running task owned by the run holding ``claim_id``."""
        if row is None:
            raise TaskNotFoundError(task_id)
        if row["status"] != TaskStatus.RUNNING.value:
            raise InvalidStateTransitionError(task_id, row["status"], target)
        if claim_id is not None and row["claim_id"] != claim_id:
            raise ClaimLostError(task_id, row["status"], target)

    async def _transition(
        self,
        task_id: str,
        target: TaskStatus,
        assignments: str,
        params: tuple = (),
        claim_id: str | None = None,
    ) -> Task:
        """Move a task to ``target`` if its current status allows it.

        With ``claim_id`` the update only applies to the run that claimed
        the task under that token.
        """
        claim_clause = "AND claim_id = ?" if claim_id is not None else ""
        claim_params = (claim_id,) if claim_id is not None else ()
        sql = f"""
            UPDATE tasks
                SET status = ?,
                    updated_at = ?,
                    {assignments}
            WHERE id = ?
            AND status IN ({_in(sources_of(target))})
            {claim_clause}
            RETURNING *
        """
        async with self._transaction() as conn:
            now = to_db_time(self.now())
            row = await self._fetchone(
                conn, sql, (target.value, now, *params, task_id, *claim_params)
            )
            if row is None:
                await self._raise_transition(conn, task_id, target.value, claim_id)
        return self._row_to_task(row)  # type: ignore[arg-type]

    # === Producer ===

    async def enqueue(
        self,
        task_type: str,
        payload: Dict[str, Any] | None = None,
        priority: TaskPriority = TaskPriority.NORMAL,
        retry_strategy: RetryStrategy | None = None,
        owner: str | None = None,
        *,
        scheduled_at: datetime | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> Task:
        """Create a pending task.

        Args:
            task_type: Registered, active task type
            payload: JSON document handed to the handler unchanged
            priority: Dispatch priority
            retry_strategy: Policy for this task (configured default if omitted)
            owner: Optional reference to the principal that created the task
            scheduled_at: Earliest time the task may run (now if omitted)
            metadata: Initial free-form annotations

        Returns:
            The stored task

        Raises:
            UnknownTaskTypeError: If the task type is not registered
            InactiveTaskTypeError: If the task type has been deactivated
            ValueError: If the payload or metadata is not JSON serializable
        """
        strategy = retry_strategy or default_retry_strategy()
        priority = TaskPriority.parse(priority)

        try:
            payload_json = json.dumps({} if payload is None else payload)
            metadata_json = json.dumps(metadata or {})
        except (TypeError, ValueError) as e:
            raise ValueError(f"Task payload must be JSON serializable: {e}") from e

        sql = """
            INSERT INTO tasks (
                id, task_type, payload, status, priority, retry_strategy,
                max_attempts, current_attempt, created_at, updated_at,
                scheduled_at, created_by, metadata
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
            RETURNING *
        """

        async with self._transaction() as conn:
            registered = await self._fetchone(
                conn, "SELECT is_active FROM task_types WHERE task_type = ?", (task_type,)
            )
            if registered is None:
                raise UnknownTaskTypeError(task_type)
            if not registered["is_active"]:
                raise InactiveTaskTypeError(task_type)

            now = self.now()
            row = await self._fetchone(
                conn,
                sql,
                (
                    create_id(),
                    task_type,
                    payload_json,
                    TaskStatus.PENDING.value,
                    int(priority),
                    strategy.model_dump_json(),
                    strategy.max_attempts,
                    to_db_time(now),
                    to_db_time(now),
                    to_db_time(scheduled_at or now),
                    owner,
                    metadata_json,
                ),
            )
        return self._row_to_task(row)  # type: ignore[arg-type]

    # === Dispatcher ===

    async def claim_next(self, limit: int) -> List[Task]:
        """Atomically claim up to ``limit`` ready tasks.

        Ready means pending or retrying with ``scheduled_at`` in the past.
        Tasks are taken by priority, then oldest first, flipped to running
        and returned in that order. Each claim gets a fresh ``claim_id``
        that the outcome report of that run must present.

        Raises:
            ValueError: If limit is smaller than 1
        """
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")

        sql = f"""
            UPDATE tasks
                SET status = 'running',
                    started_at = ?,
                    updated_at = ?,
                    claim_id = lower(hex(randomblob(16)))
            WHERE id IN (
                SELECT id
                FROM tasks
                WHERE status IN ({_in(CLAIMABLE_STATUSES)})
                AND scheduled_at <= ?
                ORDER BY priority DESC, created_at ASC, rowid ASC
                LIMIT ?
            )
            RETURNING rowid AS seq, *
        """

        async with self._transaction() as conn:
            now = to_db_time(self.now())
            rows = await conn.execute_fetchall(sql, (now, now, now, limit))

        rows = sorted(rows, key=lambda row: (-row["priority"], row["created_at"], row["seq"]))
        return [self._row_to_task(row) for row in rows]

    async def report_success(
        self,
        task_id: str,
        result_metadata: Dict[str, Any] | None = None,
        *,
        claim_id: str | None = None,
    ) -> Task:
        """Mark a running task completed and merge the handler's metadata.

        Top-level keys of ``result_metadata`` replace existing ones; values
        (including ``None``) are stored exactly as given.
        """
        sql = """
            UPDATE tasks
                SET status = 'completed',
                    completed_at = ?,
                    updated_at = ?,
                    last_error = NULL,
                    metadata = ?
            WHERE id = ?
            RETURNING *
        """
        async with self._transaction() as conn:
            row = await self._fetchone(conn, "SELECT * FROM tasks WHERE id = ?", (task_id,))
            self._check_claim(row, task_id, TaskStatus.COMPLETED.value, claim_id)

            merged = {**json.loads(row["metadata"]), **(result_metadata or {})}  # type: ignore[index]
            now = to_db_time(self.now())
            updated = await self._fetchone(
                conn, sql, (now, now, json.dumps(merged, default=str), task_id)
            )
        return self._row_to_task(updated)  # type: ignore[arg-type]

    async def report_failure(
        self,
        task_id: str,
        error: str,
        retryable: bool = True,
        *,
        claim_id: str | None = None,
    ) -> Task:
        """Record a failed run of a running task.

        The failed run consumes an attempt. While attempts remain and the
        failure is retryable the task goes to retrying with a backoff delay,
        otherwise it is dead-lettered (failed).
        """
        target = TaskStatus.RETRYING if retryable else TaskStatus.FAILED
        async with self._transaction() as conn:
            row = await self._fetchone(conn, "SELECT * FROM tasks WHERE id = ?", (task_id,))
            self._check_claim(row, task_id, target.value, claim_id)
            return await self._fail(conn, row, error, retryable)  # type: ignore[arg-type]

    async def _fail(
        self,
        conn: aiosqlite.Connection,
        row: aiosqlite.Row,
        error: str,
        retryable: bool,
    ) -> Task:
        now = self.now()
        attempt = row["current_attempt"] + 1

        if retryable and attempt < row["max_attempts"]:
            strategy = RetryStrategy.model_validate_json(row["retry_strategy"])
            run_at = now + next_delay(attempt, strategy, seed=row["id"])
            sql = """
                UPDATE tasks
                    SET status = 'retrying',
                        current_attempt = ?,
                        last_error = ?,
                        scheduled_at = ?,
                        updated_at = ?
                WHERE id = ?
                RETURNING *
            """
            params = (attempt, error, to_db_time(run_at), to_db_time(now), row["id"])
        else:
            sql = """
                UPDATE tasks
                    SET status = 'failed',
                        current_attempt = ?,
                        last_error = ?,
                        completed_at = ?,
                        updated_at = ?
                WHERE id = ?
                RETURNING *
            """
            params = (attempt, error, to_db_time(now), to_db_time(now), row["id"])

        updated = await self._fetchone(conn, sql, params)
        return self._row_to_task(updated)  # type: ignore[arg-type]

    async def requeue(
        self, task_id: str, delay: timedelta, *, claim_id: str | None = None
    ) -> Task:
        """Return a running task to the queue without counting an attempt."""
        return await self._transition(
            task_id,
            TaskStatus.RETRYING,
            "scheduled_at = ?",
            (to_db_time(self.now() + delay),),
            claim_id,
        )

    async def recover_stale(self, stale_after: timedelta) -> List[Task]:
        """Fail running tasks whose run started before ``now - stale_after``.

        Each one is treated like a retryable failure, so a task whose worker
        crashed runs again while it still has attempts left.
        """
        cutoff = to_db_time(self.now() - stale_after)
        error = WORKER_LOST_ERROR.format(seconds=stale_after.total_seconds())
        recovered: List[Task] = []

        async with self._transaction() as conn:
            rows = await conn.execute_fetchall(
                "SELECT * FROM tasks WHERE status = 'running' AND started_at < ?",
                (cutoff,),
            )
            for row in rows:
                recovered.append(await self._fail(conn, row, error, retryable=True))

        for task in recovered:
            logger.warning(
                "Recovered stale task %s (%s), now %s",
                task["id"],
                task["task_type"],
                task["status"].value,
            )
        return recovered

    # === Lifecycle control ===

    async def cancel(self, task_id: str) -> Task:
        """Cancel a task that has not started (pending or retrying)."""
        return await self._transition(
            task_id,
            TaskStatus.CANCELLED,
            "completed_at = ?",
            (to_db_time(self.now()),),
        )

    async def retry_manually(self, task_id: str) -> Task:
        """Give a dead-lettered task a fresh attempt budget."""
        return await self._transition(
            task_id,
            TaskStatus.PENDING,
            """current_attempt = 0,
                    scheduled_at = ?,
                    last_error = NULL,
                    started_at = NULL,
                    completed_at = NULL,
                    claim_id = NULL""",
            (to_db_time(self.now()),),
        )

    async def delete(self, task_id: str) -> None:
        """Remove a task in a terminal status."""
        sql = f"""
            DELETE FROM tasks
            WHERE id = ?
            AND status IN ({_in(TERMINAL_STATUSES)})
            RETURNING id
        """
        async with self._transaction() as conn:
            row = await self._fetchone(conn, sql, (task_id,))
            if row is None:
                await self._raise_transition(conn, task_id, "deleted")

    async def purge(
        self,
        older_than: timedelta,
        statuses: Iterable[TaskStatus] = (TaskStatus.COMPLETED,),
        dry_run: bool = False,
    ) -> int:
        """Delete terminal tasks that finished before ``now - older_than``.

        Returns:
            Number of tasks deleted (or that would be deleted on a dry run)

        Raises:
            ValueError: If a non-terminal status is requested
        """
        selected = {TaskStatus.parse(status) for status in statuses}
        if not selected:
            raise ValueError("At least one status is required")
        live = selected - TERMINAL_STATUSES
        if live:
            raise ValueError(
                f"Cannot purge non-terminal statuses: {', '.join(sorted(s.value for s in live))}"
            )

        condition = f"""
            WHERE status IN ({_in(selected)})
            AND COALESCE(completed_at, updated_at) < ?
        """
        cutoff = to_db_time(self.now() - older_than)

        async with self._transaction() as conn:
            if dry_run:
                row = await self._fetchone(
                    conn, f"SELECT COUNT(*) AS n FROM tasks {condition}", (cutoff,)
                )
                return row["n"]  # type: ignore[index]
            cursor = await conn.execute(f"DELETE FROM tasks {condition}", (cutoff,))
            return cursor.rowcount

    # === Queries ===

    async def get_task(self, task_id: str) -> Task:
        """Retrieve a single task.

        Raises:
            TaskNotFoundError: If no task has this id
        """
        async with self._connect() as conn:
            row = await self._fetchone(conn, "SELECT * FROM tasks WHERE id = ?", (task_id,))
        if row is None:
            raise TaskNotFoundError(task_id)
        return self._row_to_task(row)

    async def list_tasks(
        self, filter: TaskFilter | None = None, limit: int = 100, offset: int = 0
    ) -> List[Task]:
        """List tasks matching ``filter``, highest priority and oldest first."""
        filter = filter or {}
        clauses: List[str] = []
        params: List[Any] = []

        if "task_type" in filter:
            clauses.append("task_type = ?")
            params.append(filter["task_type"])
        if "status" in filter:
            clauses.append("status = ?")
            params.append(TaskStatus.parse(filter["status"]).value)
        if "priority" in filter:
            clauses.append("priority = ?")
            params.append(int(TaskPriority.parse(filter["priority"])))
        if "created_by" in filter:
            clauses.append("created_by = ?")
            params.append(filter["created_by"])
        if "created_after" in filter:
            clauses.append("created_at >= ?")
            params.append(to_db_time(filter["created_after"]))
        if "created_before" in filter:
            clauses.append("created_at < ?")
            params.append(to_db_time(filter["created_before"]))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"""
            SELECT * FROM tasks
            {where}
            ORDER BY priority DESC, created_at ASC, rowid ASC
            LIMIT ? OFFSET ?
        """

        async with self._connect() as conn:
            rows = await conn.execute_fetchall(sql, (*params, limit, offset))
        return [self._row_to_task(row) for row in rows]

    async def stats(self) -> TaskStats:
        """Count tasks per status."""
        async with self._connect() as conn:
            rows = await conn.execute_fetchall(
                "SELECT status, COUNT(*) AS n FROM tasks GROUP BY status"
            )

        counts = {row["status"]: row["n"] for row in rows}
        return TaskStats(
            total=sum(counts.values()),
            pending=counts.get("pending", 0),
            running=counts.get("running", 0),
            completed=counts.get("completed", 0),
            failed=counts.get("failed", 0),
            cancelled=counts.get("cancelled", 0),
            retrying=counts.get("retrying", 0),
        )

    async def dead_letter(self, limit: int = 100, offset: int = 0) -> List[Task]:
        """List failed tasks, most recently failed first."""
        sql = """
            SELECT * FROM tasks
            WHERE status = 'failed'
            ORDER BY completed_at DESC, updated_at DESC
            LIMIT ? OFFSET ?
        """
        async with self._connect() as conn:
            rows = await conn.execute_fetchall(sql, (limit, offset))
        return [self._row_to_task(row) for row in rows]

    # === Task type registry ===

    async def register_task_type(
        self, task_type: str, description: str | None = None
    ) -> TaskType:
        """Register (or re-activate) a task type.

        Registering an existing type keeps its description unless a new one
        is given.
        """
        if not task_type or not task_type.strip():
            raise ValueError("Task type name must be a non-empty string")

        sql = """
            INSERT INTO task_types (task_type, description, is_active, created_at, updated_at)
            VALUES (?, ?, 1, ?, ?)
            ON CONFLICT(task_type) DO UPDATE
                SET description = COALESCE(excluded.description, task_types.description),
                    is_active = 1,
                    updated_at = excluded.updated_at
            RETURNING *
        """
        async with self._transaction() as conn:
            now = to_db_time(self.now())
            row = await self._fetchone(conn, sql, (task_type, description, now, now))
        return self._row_to_task_type(row)  # type: ignore[arg-type]

    async def deactivate_task_type(self, task_type: str) -> TaskType:
        """Stop accepting new tasks of this type; queued tasks are untouched."""
        sql = """
            UPDATE task_types
                SET is_active = 0,
                    updated_at = ?
            WHERE task_type = ?
            RETURNING *
        """
        async with self._transaction() as conn:
            row = await self._fetchone(conn, sql, (to_db_time(self.now()), task_type))
        if row is None:
            raise UnknownTaskTypeError(task_type)
        return self._row_to_task_type(row)

    async def get_task_type(self, task_type: str) -> TaskType | None:
        async with self._connect() as conn:
            row = await self._fetchone(
                conn, "SELECT * FROM task_types WHERE task_type = ?", (task_type,)
            )
        return self._row_to_task_type(row) if row else None

    async def list_task_types(self, include_inactive: bool = False) -> List[TaskType]:
        sql = "SELECT * FROM task_types"
        if not include_inactive:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY task_type ASC"

        async with self._connect() as conn:
            rows = await conn.execute_fetchall(sql)
        return [self._row_to_task_type(row) for row in rows]

    # === Utility Methods ===

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> Task:
        return Task(
            id=row["id"],
            task_type=row["task_type"],
            payload=json.loads(row["payload"]),
            status=TaskStatus(row["status"]),
            priority=TaskPriority(row["priority"]),
            retry_strategy=RetryStrategy.model_validate_json(row["retry_strategy"]),
            max_attempts=row["max_attempts"],
            current_attempt=row["current_attempt"],
            last_error=row["last_error"],
            created_at=from_db_time(row["created_at"]),  # type: ignore[typeddict-item]
            updated_at=from_db_time(row["updated_at"]),  # type: ignore[typeddict-item]
            scheduled_at=from_db_time(row["scheduled_at"]),
            started_at=from_db_time(row["started_at"]),
            completed_at=from_db_time(row["completed_at"]),
            claim_id=row["claim_id"],
            created_by=row["created_by"],
            metadata=json.loads(row["metadata"]),
        )

    @staticmethod
    def _row_to_task_type(row: aiosqlite.Row) -> TaskType:
        return TaskType(
            task_type=row["task_type"],
            description=row["description"],
            is_active=bool(row["is_active"]),
            created_at=from_db_time(row["created_at"]),  # type: ignore[typeddict-item]
            updated_at=from_db_time(row["updated_at"]),  # type: ignore[typeddict-item]
        )
