"""
Engine Repository: persistence for engine state, operations, learning
results, learning events, variant experiments and the tuned search
configuration.

Behavioral Contract:
- The current EngineState is the most recently active row.
- Learning results are only ever appended to (annotations, performance).
- Search weights are versioned: exactly one active row, replaced by
  deactivate-old/create-new. Deactivation is a compare-and-swap on version.
- Config entries are versioned the same way when the caller supplies the
  version it read.
"""

import json
import sqlite3
from datetime import datetime
from typing import List, Optional

from tuning_kernel.errors import ConcurrentModificationError, DataIntegrityError
from tuning_kernel.models.engine import (
    EngineOperation,
    EngineOperationType,
    EngineState,
)
from tuning_kernel.models.events import LearningEvent, LearningEventStatus
from tuning_kernel.models.experiment import ExperimentConfig, ExperimentStatus
from tuning_kernel.models.learning import EngineLearningResult, PerformanceRecord
from tuning_kernel.models.search_config import ConfigEntry, SearchWeights


class EngineRepository:
    """
    Generic repository for the kernel.
    Prototype: SQLite. Production: any store offering the same operations.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS engine_state (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                last_active TEXT NOT NULL,
                record_json TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_engine_state_last_active
                ON engine_state(last_active);

            CREATE TABLE IF NOT EXISTS engine_operation (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                status TEXT NOT NULL,
                start_time TEXT NOT NULL,
                record_json TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_engine_operation_type
                ON engine_operation(type);

            CREATE TABLE IF NOT EXISTS learning_result (
                id TEXT PRIMARY KEY,
                operation_id TEXT,
                created_at TEXT NOT NULL,
                record_json TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS learning_event (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                status TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                correlation_id TEXT,
                record_json TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_learning_event_status
                ON learning_event(status, timestamp);
            CREATE INDEX IF NOT EXISTS idx_learning_event_correlation
                ON learning_event(correlation_id);

            CREATE TABLE IF NOT EXISTS search_weights (
                id TEXT PRIMARY KEY,
                active INTEGER NOT NULL DEFAULT 1,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                record_json TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_search_weights_active
                ON search_weights(active);

            CREATE TABLE IF NOT EXISTS search_config (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                version INTEGER NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS experiment_config (
                id TEXT PRIMARY KEY,
                strategy_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                record_json TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_experiment_config_status
                ON experiment_config(status);
        """)
        self._conn.commit()

    # --- Engine State ---

    def save_engine_state(self, state: EngineState) -> EngineState:
        """Insert or replace an engine state snapshot."""
        self._conn.execute(
            "INSERT OR REPLACE INTO engine_state (id, status, last_active, record_json) "
            "VALUES (?, ?, ?, ?)",
            (
                state.id,
                state.status.value,
                state.last_active.isoformat(),
                state.model_dump_json(),
            ),
        )
        self._conn.commit()
        return state

    def get_current_engine_state(self) -> Optional[EngineState]:
        """The most recently active engine state, if any."""
        row = self._conn.execute(
            "SELECT record_json FROM engine_state ORDER BY last_active DESC, rowid DESC LIMIT 1"
        ).fetchone()
        return EngineState.model_validate_json(row["record_json"]) if row else None

    # --- Engine Operations ---

    def save_operation(self, operation: EngineOperation) -> EngineOperation:
        self._conn.execute(
            "INSERT OR REPLACE INTO engine_operation (id, type, status, start_time, record_json) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                operation.id,
                operation.type.value,
                operation.status.value,
                operation.start_time.isoformat(),
                operation.model_dump_json(),
            ),
        )
        self._conn.commit()
        return operation

    def get_operation(self, operation_id: str) -> Optional[EngineOperation]:
        row = self._conn.execute(
            "SELECT record_json FROM engine_operation WHERE id = ?", (operation_id,)
        ).fetchone()
        return EngineOperation.model_validate_json(row["record_json"]) if row else None

    def list_operations(
        self,
        operation_type: Optional[EngineOperationType] = None,
        limit: int = 50,
    ) -> List[EngineOperation]:
        """Most recent operations, oldest first."""
        if operation_type:
            rows = self._conn.execute(
                "SELECT record_json FROM engine_operation WHERE type = ? "
                "ORDER BY rowid DESC LIMIT ?",
                (operation_type.value, limit),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT record_json FROM engine_operation ORDER BY rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [EngineOperation.model_validate_json(r["record_json"]) for r in reversed(rows)]

    # --- Learning Results ---

    def save_learning_result(self, result: EngineLearningResult) -> EngineLearningResult:
        self._conn.execute(
            "INSERT OR REPLACE INTO learning_result (id, operation_id, created_at, record_json) "
            "VALUES (?, ?, ?, ?)",
            (
                result.id,
                result.operation_id,
                result.created_at.isoformat(),
                result.model_dump_json(),
            ),
        )
        self._conn.commit()
        return result

    def get_learning_result(self, result_id: str) -> Optional[EngineLearningResult]:
        row = self._conn.execute(
            "SELECT record_json FROM learning_result WHERE id = ?", (result_id,)
        ).fetchone()
        return EngineLearningResult.model_validate_json(row["record_json"]) if row else None

    def list_learning_results(self, limit: int = 50) -> List[EngineLearningResult]:
        rows = self._conn.execute(
            "SELECT record_json FROM learning_result ORDER BY rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [
            EngineLearningResult.model_validate_json(r["record_json"])
            for r in reversed(rows)
        ]

    def _require_learning_result(self, result_id: Optional[str]) -> EngineLearningResult:
        result = self.get_learning_result(result_id) if result_id else None
        if result is None:
            raise DataIntegrityError(f"Learning result {result_id!r} does not exist")
        return result

    def append_execution_annotation(
        self, result_id: Optional[str], annotation: dict
    ) -> EngineLearningResult:
        """Append an executor annotation to a learning result."""
        result = self._require_learning_result(result_id)
        updated = result.model_copy(update={
            "execution_log": result.execution_log + [annotation],
            "applied_at": result.applied_at or datetime.utcnow(),
        })
        return self.save_learning_result(updated)

    def set_performance(
        self, result_id: Optional[str], performance: PerformanceRecord
    ) -> EngineLearningResult:
        """Attach the performance block of a learning result."""
        result = self._require_learning_result(result_id)
        updated = result.model_copy(update={
            "performance": performance,
            "validated_at": datetime.utcnow(),
        })
        return self.save_learning_result(updated)

    # --- Learning Events ---

    def save_event(self, event: LearningEvent) -> LearningEvent:
        self._conn.execute(
            "INSERT OR REPLACE INTO learning_event "
            "(id, type, status, timestamp, correlation_id, record_json) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                event.id,
                event.type.value,
                event.status.value,
                event.timestamp.isoformat(),
                event.correlation_id,
                event.model_dump_json(),
            ),
        )
        self._conn.commit()
        return event

    def get_event(self, event_id: str) -> Optional[LearningEvent]:
        row = self._conn.execute(
            "SELECT record_json FROM learning_event WHERE id = ?", (event_id,)
        ).fetchone()
        return LearningEvent.model_validate_json(row["record_json"]) if row else None

    def find_events(
        self,
        status: Optional[LearningEventStatus] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[LearningEvent]:
        """Events newest first, filtered by status and timestamp."""
        clauses = []
        params: list = []
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        if since:
            clauses.append("timestamp >= ?")
            params.append(since.isoformat())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = self._conn.execute(
            f"SELECT record_json FROM learning_event {where} "
            f"ORDER BY timestamp DESC LIMIT ?",
            params,
        ).fetchall()
        return [LearningEvent.model_validate_json(r["record_json"]) for r in rows]

    def find_related_events(
        self,
        correlation_id: str,
        since: Optional[datetime] = None,
        exclude_id: Optional[str] = None,
    ) -> List[LearningEvent]:
        """Events sharing a correlation id, oldest first."""
        query = "SELECT record_json FROM learning_event WHERE correlation_id = ?"
        params: list = [correlation_id]
        if since:
            query += " AND timestamp >= ?"
            params.append(since.isoformat())
        if exclude_id:
            query += " AND id != ?"
            params.append(exclude_id)
        rows = self._conn.execute(query + " ORDER BY timestamp", params).fetchall()
        return [LearningEvent.model_validate_json(r["record_json"]) for r in rows]

    # --- Search Weights ---

    def get_active_weights(self) -> Optional[SearchWeights]:
        row = self._conn.execute(
            "SELECT record_json FROM search_weights WHERE active = 1 "
            "ORDER BY version DESC, rowid DESC LIMIT 1"
        ).fetchone()
        return SearchWeights.model_validate_json(row["record_json"]) if row else None

    def list_weights(self) -> List[SearchWeights]:
        rows = self._conn.execute(
            "SELECT record_json FROM search_weights ORDER BY version, rowid"
        ).fetchall()
        return [SearchWeights.model_validate_json(r["record_json"]) for r in rows]

    def create_weights(self, weights: SearchWeights) -> SearchWeights:
        self._conn.execute(
            "INSERT INTO search_weights (id, active, version, created_at, record_json) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                weights.id,
                int(weights.active),
                weights.version,
                weights.created_at.isoformat(),
                weights.model_dump_json(),
            ),
        )
        self._conn.commit()
        return weights

    def replace_active_weights(
        self, current: SearchWeights, replacement: SearchWeights
    ) -> SearchWeights:
        """
        Deactivate ``current`` and insert ``replacement`` as the active
        version, in one transaction. Fails if ``current`` is no longer the
        active row at the version the caller read.
        """
        deactivated = current.model_copy(update={"active": False})
        try:
            cursor = self._conn.execute(
                "UPDATE search_weights SET active = 0, record_json = ? "
                "WHERE id = ? AND active = 1 AND version = ?",
                (deactivated.model_dump_json(), current.id, current.version),
            )
            if cursor.rowcount != 1:
                raise ConcurrentModificationError(
                    f"Search weights {current.id} v{current.version} are no longer active"
                )
            self._conn.execute(
                "INSERT INTO search_weights (id, active, version, created_at, record_json) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    replacement.id,
                    int(replacement.active),
                    replacement.version,
                    replacement.created_at.isoformat(),
                    replacement.model_dump_json(),
                ),
            )
        except Exception:
            self._conn.rollback()
            raise
        self._conn.commit()
        return replacement

    # --- Flat Configuration ---

    def get_config(self, key: str) -> Optional[ConfigEntry]:
        row = self._conn.execute(
            "SELECT key, value_json, version, updated_at FROM search_config WHERE key = ?",
            (key,),
        ).fetchone()
        if not row:
            return None
        return ConfigEntry(
            key=row["key"],
            value=json.loads(row["value_json"]),
            version=row["version"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def upsert_config(
        self, key: str, value: dict, expected_version: Optional[int] = None
    ) -> ConfigEntry:
        """
        Insert or update a config entry. When ``expected_version`` is given
        the write only succeeds if the stored version still matches
        (0 meaning "must not exist yet").
        """
        now = datetime.utcnow()
        current = self.get_config(key)
        current_version = current.version if current else 0
        if expected_version is not None and expected_version != current_version:
            raise ConcurrentModificationError(
                f"Config {key!r} is at v{current_version}, expected v{expected_version}"
            )
        new_version = current_version + 1
        if current:
            cursor = self._conn.execute(
                "UPDATE search_config SET value_json = ?, version = ?, updated_at = ? "
                "WHERE key = ? AND version = ?",
                (json.dumps(value, default=str), new_version, now.isoformat(), key, current_version),
            )
            if cursor.rowcount != 1:
                self._conn.rollback()
                raise ConcurrentModificationError(f"Config {key!r} changed during update")
        else:
            self._conn.execute(
                "INSERT INTO search_config (key, value_json, version, updated_at) "
                "VALUES (?, ?, ?, ?)",
                (key, json.dumps(value, default=str), new_version, now.isoformat()),
            )
        self._conn.commit()
        return ConfigEntry(key=key, value=value, version=new_version, updated_at=now)

    def delete_config(self, key: str) -> bool:
        cursor = self._conn.execute("DELETE FROM search_config WHERE key = ?", (key,))
        self._conn.commit()
        return cursor.rowcount > 0

    # --- Experiments ---

    def create_experiment(self, experiment: ExperimentConfig) -> ExperimentConfig:
        """Insert a new experiment; an id already in use is an integrity error."""
        try:
            self._conn.execute(
                "INSERT INTO experiment_config (id, strategy_id, status, created_at, record_json) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    experiment.id,
                    experiment.strategy_id,
                    experiment.status.value,
                    experiment.created_at.isoformat(),
                    experiment.model_dump_json(),
                ),
            )
        except sqlite3.IntegrityError as e:
            self._conn.rollback()
            raise DataIntegrityError(f"Experiment {experiment.id!r} already exists") from e
        self._conn.commit()
        return experiment

    def save_experiment(self, experiment: ExperimentConfig) -> ExperimentConfig:
        self._conn.execute(
            "UPDATE experiment_config SET status = ?, record_json = ? WHERE id = ?",
            (experiment.status.value, experiment.model_dump_json(), experiment.id),
        )
        self._conn.commit()
        return experiment

    def get_experiment(self, experiment_id: str) -> Optional[ExperimentConfig]:
        row = self._conn.execute(
            "SELECT record_json FROM experiment_config WHERE id = ?", (experiment_id,)
        ).fetchone()
        return ExperimentConfig.model_validate_json(row["record_json"]) if row else None

    def list_experiments(
        self, status: Optional[ExperimentStatus] = None, limit: int = 50
    ) -> List[ExperimentConfig]:
        if status:
            rows = self._conn.execute(
                "SELECT record_json FROM experiment_config WHERE status = ? "
                "ORDER BY created_at DESC LIMIT ?",
                (status.value, limit),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT record_json FROM experiment_config ORDER BY created_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [ExperimentConfig.model_validate_json(r["record_json"]) for r in rows]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
