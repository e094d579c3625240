"""
Operation Ledger - Persistent storage for burns, milestones and in-flight slots.

The ledger is the single source of truth. It stores:
1. Action records (append-only, unique per external reference)
2. Threshold definitions (seeded once, completion flag set once)
3. One in-flight slot per operation class
4. Metrics snapshots

Every mutating call commits before returning, so a crash right after a
call never loses what the call wrote.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from inferno.errors import DuplicateReference
from inferno.ledger.models import (
    ActionRecord,
    MetricsSnapshot,
    OperationClass,
    SlotState,
    Stage,
    ThresholdDefinition,
    ValuationSnapshot,
    utc_now,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operation_class TEXT NOT NULL CHECK (operation_class IN ('milestone', 'buyback')),
    quantity INTEGER NOT NULL CHECK (quantity >= 0),
    external_reference TEXT NOT NULL UNIQUE,
    asset_value_in_base REAL,
    base_value_in_quote REAL,
    derived_valuation_in_quote REAL,
    threshold_target REAL,
    input_spent INTEGER,
    output_acquired INTEGER,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_actions_class ON actions(operation_class);
CREATE INDEX IF NOT EXISTS idx_actions_created ON actions(created_at);

CREATE TABLE IF NOT EXISTS thresholds (
    trigger_value REAL PRIMARY KEY,
    action_quantity INTEGER NOT NULL,
    share_of_total REAL NOT NULL,
    completed INTEGER NOT NULL DEFAULT 0,
    completed_at TEXT,
    external_reference TEXT
);

CREATE TABLE IF NOT EXISTS slots (
    operation_class TEXT PRIMARY KEY,
    stage TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    started_at TEXT NOT NULL,
    error TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    total_burned INTEGER NOT NULL,
    circulating_supply INTEGER NOT NULL,
    milestone_burned INTEGER NOT NULL,
    buyback_burned INTEGER NOT NULL,
    market_cap REAL,
    token_price REAL,
    created_at TEXT NOT NULL
);
"""


class OperationLedger:
    """
    SQLite-backed operation ledger.

    Uses a fresh connection per call guarded by a process-wide lock, the
    same way the rest of the storage layer does. WAL mode keeps readers
    (status queries) from blocking the orchestrators.
    """

    def __init__(self, db_path: str = "data/inferno.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        with self._lock:
            conn = sqlite3.connect(str(self.db_path))
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(_SCHEMA)
                conn.commit()
            finally:
                conn.close()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA synchronous=FULL")
        return conn

    # =========================================================================
    # Action records
    # =========================================================================

    def record_action(self, record: ActionRecord) -> int:
        """
        Append an action record.

        Raises:
            DuplicateReference: a record with the same external reference exists.
        """
        with self._lock:
            conn = self._get_conn()
            try:
                row = conn.execute("SELECT MAX(created_at) AS last FROM actions").fetchone()
                created_at = utc_now()
                if row["last"]:
                    last = datetime.fromisoformat(row["last"])
                    if last > created_at:
                        created_at = last

                try:
                    cursor = conn.execute(
                        """
                        INSERT INTO actions (
                            operation_class, quantity, external_reference,
                            asset_value_in_base, base_value_in_quote, derived_valuation_in_quote,
                            threshold_target, input_spent, output_acquired, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            record.operation_class.value,
                            record.quantity,
                            record.external_reference,
                            record.valuation.asset_value_in_base,
                            record.valuation.base_value_in_quote,
                            record.valuation.derived_valuation_in_quote,
                            record.threshold_target,
                            record.input_spent,
                            record.output_acquired,
                            created_at.isoformat(timespec="microseconds"),
                        ),
                    )
                    conn.commit()
                except sqlite3.IntegrityError as exc:
                    conn.rollback()
                    if "external_reference" in str(exc):
                        raise DuplicateReference(record.external_reference) from exc
                    raise
            finally:
                conn.close()

        record.id = cursor.lastrowid
        record.created_at = created_at
        logger.info(
            f"Recorded {record.operation_class.value} burn of {record.quantity} "
            f"units: {record.external_reference}"
        )
        return record.id

    def has_action_with_reference(self, external_reference: str) -> bool:
        with self._lock:
            conn = self._get_conn()
            try:
                row = conn.execute(
                    "SELECT 1 FROM actions WHERE external_reference = ?",
                    (external_reference,),
                ).fetchone()
                return row is not None
            finally:
                conn.close()

    def get_action(self, external_reference: str) -> Optional[ActionRecord]:
        with self._lock:
            conn = self._get_conn()
            try:
                row = conn.execute(
                    "SELECT * FROM actions WHERE external_reference = ?",
                    (external_reference,),
                ).fetchone()
                return self._row_to_action(row) if row else None
            finally:
                conn.close()

    def total_destroyed(self) -> int:
        with self._lock:
            conn = self._get_conn()
            try:
                row = conn.execute("SELECT COALESCE(SUM(quantity), 0) AS total FROM actions").fetchone()
                return int(row["total"])
            finally:
                conn.close()

    def actions_grouped_by_class(self) -> Dict[str, Dict[str, int]]:
        """Return {class: {"count", "total"}} for both classes, zero-filled."""
        grouped = {c.value: {"count": 0, "total": 0} for c in OperationClass}
        with self._lock:
            conn = self._get_conn()
            try:
                rows = conn.execute(
                    """
                    SELECT operation_class, COUNT(*) AS count, COALESCE(SUM(quantity), 0) AS total
                    FROM actions GROUP BY operation_class
                    """
                ).fetchall()
            finally:
                conn.close()
        for row in rows:
            grouped[row["operation_class"]] = {"count": int(row["count"]), "total": int(row["total"])}
        return grouped

    def destroyed_since(self, since: datetime) -> Dict[str, int]:
        """Count and total of burns created at or after `since`."""
        with self._lock:
            conn = self._get_conn()
            try:
                row = conn.execute(
                    """
                    SELECT COUNT(*) AS count, COALESCE(SUM(quantity), 0) AS total
                    FROM actions WHERE created_at >= ?
                    """,
                    (since.isoformat(timespec="microseconds"),),
                ).fetchone()
                return {"count": int(row["count"]), "total": int(row["total"])}
            finally:
                conn.close()

    def destroyed_last_24h(self) -> Dict[str, int]:
        return self.destroyed_since(utc_now() - timedelta(hours=24))

    def recent_actions(self, limit: int = 10) -> List[ActionRecord]:
        return self.list_actions(limit=limit)

    def list_actions(
        self,
        operation_class: Optional[OperationClass] = None,
        limit: int = 50,
    ) -> List[ActionRecord]:
        """Newest first."""
        query = "SELECT * FROM actions"
        params: List[Any] = []
        if operation_class:
            query += " WHERE operation_class = ?"
            params.append(OperationClass(operation_class).value)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        with self._lock:
            conn = self._get_conn()
            try:
                rows = conn.execute(query, params).fetchall()
            finally:
                conn.close()
        return [self._row_to_action(row) for row in rows]

    @staticmethod
    def _row_to_action(row: sqlite3.Row) -> ActionRecord:
        return ActionRecord(
            id=row["id"],
            operation_class=OperationClass(row["operation_class"]),
            quantity=int(row["quantity"]),
            external_reference=row["external_reference"],
            valuation=ValuationSnapshot(
                asset_value_in_base=row["asset_value_in_base"] or 0.0,
                base_value_in_quote=row["base_value_in_quote"] or 0.0,
                derived_valuation_in_quote=row["derived_valuation_in_quote"] or 0.0,
            ),
            threshold_target=row["threshold_target"],
            input_spent=row["input_spent"],
            output_acquired=row["output_acquired"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # =========================================================================
    # Threshold definitions
    # =========================================================================

    def seed_thresholds(self, definitions: Iterable[ThresholdDefinition]) -> int:
        """Insert definitions that do not exist yet. Existing rows are untouched."""
        inserted = 0
        with self._lock:
            conn = self._get_conn()
            try:
                for definition in definitions:
                    cursor = conn.execute(
                        """
                        INSERT OR IGNORE INTO thresholds (trigger_value, action_quantity, share_of_total)
                        VALUES (?, ?, ?)
                        """,
                        (definition.trigger_value, definition.action_quantity, definition.share_of_total),
                    )
                    inserted += cursor.rowcount
                conn.commit()
            finally:
                conn.close()
        if inserted:
            logger.info(f"Seeded {inserted} threshold definitions")
        return inserted

    def list_thresholds(self) -> List[ThresholdDefinition]:
        with self._lock:
            conn = self._get_conn()
            try:
                rows = conn.execute("SELECT * FROM thresholds ORDER BY trigger_value ASC").fetchall()
            finally:
                conn.close()
        return [self._row_to_threshold(row) for row in rows]

    def get_threshold(self, trigger_value: float) -> Optional[ThresholdDefinition]:
        with self._lock:
            conn = self._get_conn()
            try:
                row = conn.execute(
                    "SELECT * FROM thresholds WHERE trigger_value = ?", (trigger_value,)
                ).fetchone()
            finally:
                conn.close()
        return self._row_to_threshold(row) if row else None

    def due_thresholds(self, current_valuation: float) -> List[ThresholdDefinition]:
        """Incomplete thresholds at or below the valuation, ascending."""
        with self._lock:
            conn = self._get_conn()
            try:
                rows = conn.execute(
                    """
                    SELECT * FROM thresholds
                    WHERE completed = 0 AND trigger_value <= ?
                    ORDER BY trigger_value ASC
                    """,
                    (current_valuation,),
                ).fetchall()
            finally:
                conn.close()
        return [self._row_to_threshold(row) for row in rows]

    def next_threshold(self) -> Optional[ThresholdDefinition]:
        with self._lock:
            conn = self._get_conn()
            try:
                row = conn.execute(
                    "SELECT * FROM thresholds WHERE completed = 0 ORDER BY trigger_value ASC LIMIT 1"
                ).fetchone()
            finally:
                conn.close()
        return self._row_to_threshold(row) if row else None

    def complete_threshold(self, trigger_value: float, external_reference: str) -> bool:
        """
        Mark a threshold completed. Returns False if it already was.

        The WHERE clause makes the false->true transition happen at most once.
        """
        with self._lock:
            conn = self._get_conn()
            try:
                cursor = conn.execute(
                    """
                    UPDATE thresholds
                    SET completed = 1, completed_at = ?, external_reference = ?
                    WHERE trigger_value = ? AND completed = 0
                    """,
                    (utc_now().isoformat(), external_reference, trigger_value),
                )
                conn.commit()
                changed = cursor.rowcount > 0
            finally:
                conn.close()
        if changed:
            logger.info(f"Threshold {trigger_value:,.0f} completed: {external_reference}")
        return changed

    def threshold_stats(self) -> Dict[str, Any]:
        with self._lock:
            conn = self._get_conn()
            try:
                row = conn.execute(
                    """
                    SELECT COUNT(*) AS total,
                           COALESCE(SUM(completed), 0) AS completed,
                           COALESCE(SUM(CASE WHEN completed = 1 THEN action_quantity ELSE 0 END), 0) AS burned,
                           COALESCE(SUM(action_quantity), 0) AS scheduled
                    FROM thresholds
                    """
                ).fetchone()
            finally:
                conn.close()
        total = int(row["total"])
        completed = int(row["completed"])
        return {
            "total": total,
            "completed": completed,
            "pending": total - completed,
            "burned": int(row["burned"]),
            "scheduled": int(row["scheduled"]),
        }

    @staticmethod
    def _row_to_threshold(row: sqlite3.Row) -> ThresholdDefinition:
        return ThresholdDefinition(
            trigger_value=row["trigger_value"],
            action_quantity=int(row["action_quantity"]),
            share_of_total=row["share_of_total"],
            completed=bool(row["completed"]),
            completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
            external_reference=row["external_reference"],
        )

    # =========================================================================
    # In-flight slots
    # =========================================================================

    def read_slot(self, operation_class: OperationClass) -> Optional[SlotState]:
        with self._lock:
            conn = self._get_conn()
            try:
                row = conn.execute(
                    "SELECT * FROM slots WHERE operation_class = ?",
                    (OperationClass(operation_class).value,),
                ).fetchone()
            finally:
                conn.close()
        if not row:
            return None
        return SlotState.from_parts(
            OperationClass(row["operation_class"]),
            Stage(row["stage"]),
            json.loads(row["payload_json"]),
            row["started_at"],
            row["error"],
        )

    def write_slot(self, slot: SlotState) -> None:
        """Upsert the slot for the slot's operation class."""
        data = slot.to_dict()
        with self._lock:
            conn = self._get_conn()
            try:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO slots (
                        operation_class, stage, payload_json, started_at, error, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        data["operation_class"],
                        data["stage"],
                        json.dumps(data["payload"]),
                        data["started_at"],
                        data["error"],
                        utc_now().isoformat(),
                    ),
                )
                conn.commit()
            finally:
                conn.close()
        logger.debug(f"Slot {data['operation_class']} -> {data['stage']}")

    def clear_slot(self, operation_class: OperationClass) -> None:
        with self._lock:
            conn = self._get_conn()
            try:
                conn.execute(
                    "DELETE FROM slots WHERE operation_class = ?",
                    (OperationClass(operation_class).value,),
                )
                conn.commit()
            finally:
                conn.close()
        logger.debug(f"Slot {OperationClass(operation_class).value} cleared")

    # =========================================================================
    # Metrics
    # =========================================================================

    def save_metrics_snapshot(self, snapshot: MetricsSnapshot) -> None:
        with self._lock:
            conn = self._get_conn()
            try:
                conn.execute(
                    """
                    INSERT INTO metrics (
                        total_burned, circulating_supply, milestone_burned, buyback_burned,
                        market_cap, token_price, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        snapshot.total_burned,
                        snapshot.circulating_supply,
                        snapshot.milestone_burned,
                        snapshot.buyback_burned,
                        snapshot.market_cap,
                        snapshot.token_price,
                        (snapshot.created_at or utc_now()).isoformat(),
                    ),
                )
                conn.commit()
            finally:
                conn.close()

    def latest_metrics(self) -> Optional[MetricsSnapshot]:
        with self._lock:
            conn = self._get_conn()
            try:
                row = conn.execute("SELECT * FROM metrics ORDER BY id DESC LIMIT 1").fetchone()
            finally:
                conn.close()
        if not row:
            return None
        return MetricsSnapshot(
            total_burned=int(row["total_burned"]),
            circulating_supply=int(row["circulating_supply"]),
            milestone_burned=int(row["milestone_burned"]),
            buyback_burned=int(row["buyback_burned"]),
            market_cap=row["market_cap"] or 0.0,
            token_price=row["token_price"] or 0.0,
            created_at=datetime.fromisoformat(row["created_at"]),
        )
