from __future__ import annotations

import json
from typing import Any, List, Mapping, Optional

from .clock import now_ms
from .hub import ErrorCallback, Subscription, SubscriptionHub
from .log import RecordsCallback, new_record_id, partition_topic
from .records import LogRecord, resolve_server_timestamps
from .sqlite_backend import SQLiteBackend


class SQLiteMessageLog:
    """Durable message log backed by SQLite."""

    def __init__(self, backend: SQLiteBackend, hub: SubscriptionHub | None = None, *, now_func=now_ms) -> None:
        self._backend = backend
        self._hub = hub or SubscriptionHub()
        self._now = now_func

    @property
    def hub(self) -> SubscriptionHub:
        return self._hub

    async def append(
        self,
        partition: str,
        data: Mapping[str, Any],
        record_id: str | None = None,
    ) -> LogRecord:
        """Append a record atomically and enforce idempotency on ``record_id``."""

        record_id = record_id or new_record_id()
        ts_ms = self._now()
        resolved = resolve_server_timestamps(data, ts_ms)
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                row = cursor.execute(
                    "SELECT seq, data_json, ts_ms FROM log_records WHERE part_key=? AND record_id=?",
                    (partition, record_id),
                ).fetchone()
                if row:
                    conn.commit()
                    return LogRecord(
                        partition=partition,
                        seq=row[0],
                        record_id=record_id,
                        data=json.loads(row[1]),
                        ts_ms=row[2],
                    )

                cursor.execute("INSERT OR IGNORE INTO log_seq (part_key, next_seq) VALUES (?, 1)", (partition,))
                seq_row = cursor.execute("SELECT next_seq FROM log_seq WHERE part_key=?", (partition,)).fetchone()
                seq = int(seq_row[0])
                cursor.execute("UPDATE log_seq SET next_seq = next_seq + 1 WHERE part_key=?", (partition,))
                cursor.execute(
                    """
                    INSERT INTO log_records (part_key, seq, record_id, data_json, ts_ms)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (partition, seq, record_id, json.dumps(resolved, sort_keys=True), ts_ms),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

        record = LogRecord(partition=partition, seq=seq, record_id=record_id, data=resolved, ts_ms=ts_ms)
        self._publish(partition)
        return record

    async def list(self, partition: str) -> List[LogRecord]:
        return self.snapshot(partition)

    def snapshot(self, partition: str) -> List[LogRecord]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                """
                SELECT part_key, seq, record_id, data_json, ts_ms FROM log_records
                WHERE part_key=? ORDER BY ts_ms ASC, seq ASC
                """,
                (partition,),
            ).fetchall()
        return [
            LogRecord(
                partition=row[0],
                seq=row[1],
                record_id=row[2],
                data=json.loads(row[3]),
                ts_ms=row[4],
            )
            for row in rows
        ]

    def watch(
        self,
        partition: str,
        on_snapshot: RecordsCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        subscription = self._hub.subscribe(partition_topic(partition), on_snapshot, on_error)
        subscription.deliver(self.snapshot(partition))
        return subscription

    def fail_watchers(self, partition: str, error: Exception) -> None:
        self._hub.fail(partition_topic(partition), error)

    def _publish(self, partition: str) -> None:
        topic = partition_topic(partition)
        if self._hub.has_listeners(topic):
            self._hub.broadcast(topic, self.snapshot(partition))
