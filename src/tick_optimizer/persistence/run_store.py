"""
OptimizationRunStore — SQLite persistence for finished optimization runs.

One row per run in ``optimization_runs`` and one row per phase in
``phase_results`` (grid runs have none). Stored via aiosqlite.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

import aiosqlite

from tick_optimizer.engine.models import (
    GridSearchResult,
    PhasedOptimizationResult,
    PhaseSummary,
)
from tick_optimizer.exceptions import PersistenceError
from tick_optimizer.logging import get_logger

logger = get_logger(__name__)

CREATE_RUNS_SQL = """
CREATE TABLE IF NOT EXISTS optimization_runs (
    run_id TEXT PRIMARY KEY,
    optimization_type TEXT NOT NULL,
    strategy_slug TEXT NOT NULL,
    session_ids_json TEXT NOT NULL DEFAULT '[]',
    base_params_json TEXT NOT NULL DEFAULT '{}',
    optimize_metric TEXT,
    initial_capital REAL NOT NULL,
    final_params_json TEXT NOT NULL DEFAULT '{}',
    final_metrics_json TEXT NOT NULL DEFAULT '{}',
    total_combinations INTEGER NOT NULL DEFAULT 0,
    duration_seconds REAL NOT NULL DEFAULT 0,
    result_json TEXT,
    created_at TEXT NOT NULL
)
"""

CREATE_PHASES_SQL = """
CREATE TABLE IF NOT EXISTS phase_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES optimization_runs(run_id) ON DELETE CASCADE,
    phase INTEGER NOT NULL,
    name TEXT NOT NULL,
    optimize_metric TEXT NOT NULL,
    combinations_tested INTEGER NOT NULL DEFAULT 0,
    duration_seconds REAL NOT NULL DEFAULT 0,
    best_params_json TEXT NOT NULL DEFAULT '{}',
    top_results_json TEXT NOT NULL DEFAULT '[]',
    skipped INTEGER NOT NULL DEFAULT 0,
    skip_reason TEXT,
    created_at TEXT NOT NULL
)
"""

CREATE_INDEX_SQL = """
CREATE INDEX IF NOT EXISTS idx_runs_created ON optimization_runs(created_at);
CREATE INDEX IF NOT EXISTS idx_runs_type ON optimization_runs(optimization_type);
CREATE INDEX IF NOT EXISTS idx_phase_results_run ON phase_results(run_id);
"""


@dataclass(frozen=True)
class RunMetadata:
    """Request details stored alongside a result."""

    strategy_slug: str
    session_ids: tuple[str, ...]
    base_params: dict[str, float] = field(default_factory=dict)
    initial_capital: float = 1000.0
    optimize_metric: str | None = None


@runtime_checkable
class RunStore(Protocol):
    """Persistence boundary used by the service."""

    async def save_run(
        self,
        result: PhasedOptimizationResult | GridSearchResult,
        metadata: RunMetadata,
    ) -> None:
        ...

    async def get_run(self, run_id: str) -> dict[str, Any] | None:
        ...

    async def list_runs(self, limit: int = 20, offset: int = 0) -> list[dict[str, Any]]:
        ...


class OptimizationRunStore:
    """Async SQLite-backed store for optimization runs and their phase summaries."""

    def __init__(self, db_path: str = "data/optimization_runs.db") -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Create database and tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.execute(CREATE_RUNS_SQL)
        await self._db.execute(CREATE_PHASES_SQL)
        await self._db.executescript(CREATE_INDEX_SQL)
        await self._db.commit()
        logger.info("OptimizationRunStore initialized", db_path=self.db_path)

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise PersistenceError("Run store is not initialized")
        return self._db

    # =========================================================================
    # Writes
    # =========================================================================

    async def save_run(
        self,
        result: PhasedOptimizationResult | GridSearchResult,
        metadata: RunMetadata,
    ) -> None:
        """Store a finished run (and its phases) under its run id."""
        db = self._conn()
        now = datetime.now(timezone.utc).isoformat()

        if isinstance(result, PhasedOptimizationResult):
            row = (
                result.run_id,
                "phased",
                result.final_params,
                result.final_metrics.to_dict(),
                result.total_combinations_tested,
                result.total_duration_seconds,
            )
            phases = result.phase_summaries
        else:
            best = result.best
            row = (
                result.run_id,
                "grid",
                dict(best.parameters) if best else {},
                best.metrics.to_dict() if best else {},
                result.combinations_tested,
                result.duration_seconds,
            )
            phases = []

        run_id, opt_type, final_params, final_metrics, total, duration = row
        try:
            await db.execute(
                """INSERT INTO optimization_runs
                   (run_id, optimization_type, strategy_slug, session_ids_json,
                    base_params_json, optimize_metric, initial_capital,
                    final_params_json, final_metrics_json, total_combinations,
                    duration_seconds, result_json, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    run_id,
                    opt_type,
                    metadata.strategy_slug,
                    json.dumps(list(metadata.session_ids)),
                    json.dumps(metadata.base_params),
                    metadata.optimize_metric,
                    metadata.initial_capital,
                    json.dumps(final_params),
                    json.dumps(final_metrics),
                    total,
                    duration,
                    json.dumps(self._result_payload(result)),
                    now,
                ),
            )
            await self._insert_phases(db, run_id, phases, now)
            await db.commit()
        except aiosqlite.Error as e:
            await db.rollback()
            raise PersistenceError(f"Failed to save run {run_id}: {e}") from e

        logger.info("Run saved", run_id=run_id, optimization_type=opt_type, phases=len(phases))

    async def save_phase_results(self, run_id: str, summaries: list[PhaseSummary]) -> None:
        """Append phase summaries to an existing run."""
        db = self._conn()
        try:
            await self._insert_phases(db, run_id, summaries, datetime.now(timezone.utc).isoformat())
            await db.commit()
        except aiosqlite.Error as e:
            await db.rollback()
            raise PersistenceError(f"Failed to save phases of run {run_id}: {e}") from e

    @staticmethod
    async def _insert_phases(
        db: aiosqlite.Connection,
        run_id: str,
        summaries: list[PhaseSummary],
        now: str,
    ) -> None:
        for s in summaries:
            await db.execute(
                """INSERT INTO phase_results
                   (run_id, phase, name, optimize_metric, combinations_tested,
                    duration_seconds, best_params_json, top_results_json,
                    skipped, skip_reason, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    run_id,
                    s.phase,
                    s.name,
                    s.optimize_metric.value,
                    s.combinations_tested,
                    s.duration_seconds,
                    json.dumps(s.best_params),
                    json.dumps([r.to_dict() for r in s.top_results]),
                    1 if s.skipped else 0,
                    s.skip_reason,
                    now,
                ),
            )

    @staticmethod
    def _result_payload(result: PhasedOptimizationResult | GridSearchResult) -> dict[str, Any]:
        if isinstance(result, PhasedOptimizationResult):
            payload = result.to_dict()
            payload.pop("phase_summaries", None)  # stored in phase_results
            return payload
        return result.to_dict(top_n=20)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_run(self, run_id: str) -> dict[str, Any] | None:
        """Get a run by id, including its phase summaries."""
        db = self._conn()
        async with db.execute(
            "SELECT * FROM optimization_runs WHERE run_id=?", (run_id,)
        ) as cursor:
            row = await cursor.fetchone()
            if row is None:
                return None
            run = self._row_to_dict(row)

        async with db.execute(
            "SELECT * FROM phase_results WHERE run_id=? ORDER BY phase ASC", (run_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            run["phases"] = [self._phase_row_to_dict(r) for r in rows]
        return run

    async def list_runs(
        self,
        limit: int = 20,
        offset: int = 0,
        optimization_type: str | None = None,
        strategy_slug: str | None = None,
    ) -> list[dict[str, Any]]:
        """Most recent runs first, without phase details."""
        conditions = []
        params: list[Any] = []

        if optimization_type:
            conditions.append("optimization_type=?")
            params.append(optimization_type)
        if strategy_slug:
            conditions.append("strategy_slug=?")
            params.append(strategy_slug)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.extend([limit, offset])

        async with self._conn().execute(
            f"SELECT * FROM optimization_runs {where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            params,
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_dict(r, include_result=False) for r in rows]

    async def delete_run(self, run_id: str) -> bool:
        """Delete a run and its phases."""
        db = self._conn()
        await db.execute("DELETE FROM phase_results WHERE run_id=?", (run_id,))
        cursor = await db.execute("DELETE FROM optimization_runs WHERE run_id=?", (run_id,))
        await db.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Run deleted", run_id=run_id)
        return deleted

    async def count(self, optimization_type: str | None = None) -> int:
        if optimization_type:
            query, args = "SELECT COUNT(*) FROM optimization_runs WHERE optimization_type=?", (optimization_type,)
        else:
            query, args = "SELECT COUNT(*) FROM optimization_runs", ()
        async with self._conn().execute(query, args) as cursor:
            row = await cursor.fetchone()
            return row[0]

    @staticmethod
    def _row_to_dict(row: aiosqlite.Row, include_result: bool = True) -> dict[str, Any]:
        d = dict(row)
        d["session_ids"] = json.loads(d.pop("session_ids_json"))
        d["base_params"] = json.loads(d.pop("base_params_json"))
        d["final_params"] = json.loads(d.pop("final_params_json"))
        d["final_metrics"] = json.loads(d.pop("final_metrics_json"))
        result_json = d.pop("result_json", None)
        if include_result and result_json:
            d["result"] = json.loads(result_json)
        return d

    @staticmethod
    def _phase_row_to_dict(row: aiosqlite.Row) -> dict[str, Any]:
        d = dict(row)
        d.pop("id", None)
        d["best_params"] = json.loads(d.pop("best_params_json"))
        d["top_results"] = json.loads(d.pop("top_results_json"))
        d["skipped"] = bool(d["skipped"])
        return d
