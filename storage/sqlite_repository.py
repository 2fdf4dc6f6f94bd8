"""SQLite-backed persistence layer for detected opportunities and execution outcomes."""
from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from analysis.models import ArbitrageOpportunity
from services.execution_trigger import ExecutionResult
from storage.models import ExecutionResultRecord, OpportunityRecord

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _format_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(ISO_FORMAT)


class SQLiteRepository:
    """Provides async-friendly helpers for persisting arbitrage activity."""

    def __init__(self, db_path: Path | str = Path("data/arbitrage_history.db")) -> None:
        self.db_path = Path(db_path)
        if self.db_path != Path(":memory:"):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._connection = sqlite3.connect(
            str(self.db_path),
            detect_types=sqlite3.PARSE_DECLTYPES,
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        self._configure()
        self._create_schema()

    def _configure(self) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL;")
            except sqlite3.DatabaseError:
                # In-memory databases refuse WAL.
                pass
            cursor.close()

    def _create_schema(self) -> None:
        statements = [
            """
            CREATE TABLE IF NOT EXISTS opportunity (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                opportunity_key TEXT NOT NULL,
                pair TEXT NOT NULL,
                buy_venue TEXT NOT NULL,
                sell_venue TEXT NOT NULL,
                buy_price TEXT NOT NULL,
                sell_price TEXT NOT NULL,
                price_divergence REAL NOT NULL,
                total_cost_ratio REAL NOT NULL,
                expected_profit_ratio REAL NOT NULL,
                notional_amount TEXT NOT NULL,
                detected_at TEXT NOT NULL
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS execution_result (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                opportunity_key TEXT NOT NULL,
                executed INTEGER NOT NULL,
                tx_hashes TEXT NOT NULL,
                reason TEXT,
                profit TEXT,
                recorded_at TEXT NOT NULL
            );
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_opportunity_pair_time
                ON opportunity(pair, detected_at);
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_execution_result_key
                ON execution_result(opportunity_key);
            """,
        ]

        with self._lock:
            cursor = self._connection.cursor()
            for statement in statements:
                cursor.execute(statement)
            self._connection.commit()
            cursor.close()

    async def record_opportunity(self, opportunity: ArbitrageOpportunity) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._record_opportunity_sync, opportunity)

    def _record_opportunity_sync(self, opportunity: ArbitrageOpportunity) -> int:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO opportunity (
                    opportunity_key,
                    pair,
                    buy_venue,
                    sell_venue,
                    buy_price,
                    sell_price,
                    price_divergence,
                    total_cost_ratio,
                    expected_profit_ratio,
                    notional_amount,
                    detected_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    opportunity.key,
                    opportunity.pair.name,
                    opportunity.buy_venue.name,
                    opportunity.sell_venue.name,
                    str(opportunity.buy_price),
                    str(opportunity.sell_price),
                    float(opportunity.price_divergence),
                    float(opportunity.total_cost_ratio),
                    float(opportunity.expected_profit_ratio),
                    str(opportunity.notional_amount),
                    _format_time(opportunity.detected_at),
                ),
            )
            self._connection.commit()
            opportunity_id = cursor.lastrowid
            cursor.close()
        return opportunity_id

    async def record_execution_result(
        self,
        result: ExecutionResult,
        recorded_at: Optional[datetime] = None,
    ) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            self._record_execution_result_sync,
            result,
            recorded_at or datetime.now(timezone.utc),
        )

    def _record_execution_result_sync(self, result: ExecutionResult, recorded_at: datetime) -> int:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO execution_result (
                    opportunity_key,
                    executed,
                    tx_hashes,
                    reason,
                    profit,
                    recorded_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    result.opportunity_key,
                    1 if result.executed else 0,
                    json.dumps(list(result.tx_hashes)),
                    result.reason,
                    str(result.profit) if result.profit is not None else None,
                    _format_time(recorded_at),
                ),
            )
            self._connection.commit()
            result_id = cursor.lastrowid
            cursor.close()
        return result_id

    async def fetch_recent_opportunities(self, limit: int = 50) -> list[OpportunityRecord]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._fetch_recent_opportunities_sync, limit)

    def _fetch_recent_opportunities_sync(self, limit: int) -> list[OpportunityRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM opportunity
                ORDER BY detected_at DESC, id DESC
                LIMIT ?
                """,
                (limit,)
            )
            rows = cursor.fetchall()
            cursor.close()
        return [
            OpportunityRecord(
                id=row["id"],
                opportunity_key=row["opportunity_key"],
                pair=row["pair"],
                buy_venue=row["buy_venue"],
                sell_venue=row["sell_venue"],
                buy_price=row["buy_price"],
                sell_price=row["sell_price"],
                price_divergence=row["price_divergence"],
                total_cost_ratio=row["total_cost_ratio"],
                expected_profit_ratio=row["expected_profit_ratio"],
                notional_amount=row["notional_amount"],
                detected_at=datetime.strptime(row["detected_at"], ISO_FORMAT),
            )
            for row in rows
        ]

    async def fetch_execution_results(self, opportunity_key: Optional[str] = None, limit: int = 50) -> list[ExecutionResultRecord]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._fetch_execution_results_sync, opportunity_key, limit)

    def _fetch_execution_results_sync(self, opportunity_key: Optional[str], limit: int) -> list[ExecutionResultRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM execution_result
                WHERE (? IS NULL OR opportunity_key = ?)
                ORDER BY recorded_at DESC, id DESC
                LIMIT ?
                """,
                (opportunity_key, opportunity_key, limit),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [
            ExecutionResultRecord(
                id=row["id"],
                opportunity_key=row["opportunity_key"],
                executed=bool(row["executed"]),
                tx_hashes=json.loads(row["tx_hashes"]),
                reason=row["reason"],
                profit=row["profit"],
                recorded_at=datetime.strptime(row["recorded_at"], ISO_FORMAT),
            )
            for row in rows
        ]

    async def fetch_history(self, *, limit: int, pair: Optional[str] = None) -> list[dict]:
        """Recent opportunities joined with the latest execution outcome for each key."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._fetch_history_sync, limit, pair)

    def _fetch_history_sync(self, limit: int, pair: Optional[str]) -> list[dict]:
        query = """
            SELECT
                o.detected_at,
                o.pair,
                o.buy_venue,
                o.sell_venue,
                o.buy_price,
                o.sell_price,
                o.price_divergence,
                o.expected_profit_ratio,
                o.opportunity_key,
                er.executed,
                er.reason,
                er.profit
            FROM opportunity o
            LEFT JOIN execution_result er ON er.id = (
                SELECT id FROM execution_result
                WHERE opportunity_key = o.opportunity_key
                  AND recorded_at >= o.detected_at
                ORDER BY recorded_at ASC, id ASC
                LIMIT 1
            )
            WHERE (? IS NULL OR o.pair = ?)
            ORDER BY o.detected_at DESC, o.id DESC
            LIMIT ?
        """
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(query, (pair, pair, limit))
            rows = cursor.fetchall()
            cursor.close()

        records: list[dict] = []
        for row in rows:
            executed = row["executed"]
            records.append({
                "detected_at": datetime.strptime(row["detected_at"], ISO_FORMAT),
                "pair": row["pair"],
                "buy_venue": row["buy_venue"],
                "sell_venue": row["sell_venue"],
                "buy_price": row["buy_price"],
                "sell_price": row["sell_price"],
                "price_divergence": row["price_divergence"],
                "expected_profit_ratio": row["expected_profit_ratio"],
                "opportunity_key": row["opportunity_key"],
                "executed": bool(executed) if executed is not None else None,
                "reason": row["reason"],
                "profit": row["profit"],
            })
        return records

    async def close(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._close_sync)

    def _close_sync(self) -> None:
        with self._lock:
            self._connection.commit()
            self._connection.close()


__all__ = ["SQLiteRepository", "OpportunityRecord", "ExecutionResultRecord"]
