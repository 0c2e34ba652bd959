from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .clock import now_ms
from .hub import ErrorCallback, Subscription, SubscriptionHub
from .records import LogRecord, pending_server_timestamps, resolve_server_timestamps

logger = logging.getLogger(__name__)

RecordsCallback = Callable[[List[LogRecord]], None]


def partition_topic(partition: str) -> str:
    return f"log:{partition}"


def new_record_id() -> str:
    return f"r_{secrets.token_hex(10)}"


def ordered_records(records: Iterable[LogRecord]) -> List[LogRecord]:
    """Order by server timestamp ascending, then document order; pending records last."""

    return sorted(records, key=lambda r: (r.ts_ms is None, r.ts_ms or 0, r.seq))


class InMemoryMessageLog:
    """In-memory, append-only message log partitioned by conversation key."""

    def __init__(
        self,
        hub: SubscriptionHub | None = None,
        *,
        now_func=now_ms,
        latency_compensation: bool = False,
    ) -> None:
        self._hub = hub or SubscriptionHub()
        self._now = now_func
        self._latency_compensation = latency_compensation
        self._records: Dict[str, List[LogRecord]] = {}
        self._next_seq: Dict[str, int] = {}
        self._idempotency: Dict[Tuple[str, str], LogRecord] = {}
        self._in_flight: Dict[Tuple[str, str], asyncio.Future] = {}

    @property
    def hub(self) -> SubscriptionHub:
        return self._hub

    async def append(
        self,
        partition: str,
        data: Mapping[str, Any],
        record_id: str | None = None,
    ) -> LogRecord:
        """Append ``data`` and stamp it with the server clock.

        Sequence numbers are monotonic per partition starting at 1. The
        original record is returned when the same ``(partition, record_id)``
        is appended more than once.
        """

        if record_id is not None:
            existing = self._idempotency.get((partition, record_id))
            if existing is not None:
                return existing
            in_flight = self._in_flight.get((partition, record_id))
            if in_flight is not None:
                return await asyncio.shield(in_flight)
        record_id = record_id or new_record_id()
        key = (partition, record_id)

        seq = self._next_seq.get(partition, 1)
        self._next_seq[partition] = seq + 1

        topic = partition_topic(partition)
        if self._latency_compensation and self._hub.has_listeners(topic):
            pending = LogRecord(
                partition=partition,
                seq=seq,
                record_id=record_id,
                data=pending_server_timestamps(data),
                ts_ms=None,
            )
            self._hub.broadcast(topic, ordered_records([*self._records.get(partition, []), pending]))
            # concurrent appends of this record_id wait for this one
            reserved: asyncio.Future = asyncio.get_running_loop().create_future()
            self._in_flight[key] = reserved
            try:
                await asyncio.sleep(0)
                record = self._store(partition, seq, record_id, data)
            except BaseException:
                reserved.cancel()
                raise
            finally:
                self._in_flight.pop(key, None)
            reserved.set_result(record)
            return record

        return self._store(partition, seq, record_id, data)

    def _store(self, partition: str, seq: int, record_id: str, data: Mapping[str, Any]) -> LogRecord:
        ts_ms = self._now()
        record = LogRecord(
            partition=partition,
            seq=seq,
            record_id=record_id,
            data=resolve_server_timestamps(data, ts_ms),
            ts_ms=ts_ms,
        )
        self._records.setdefault(partition, []).append(record)
        self._idempotency[(partition, record_id)] = record
        self._publish(partition)
        return record

    async def list(self, partition: str) -> List[LogRecord]:
        return self.snapshot(partition)

    def snapshot(self, partition: str) -> List[LogRecord]:
        return ordered_records(self._records.get(partition, []))

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
        logger.warning("failing watchers of %s: %s", partition, error)
        self._hub.fail(partition_topic(partition), error)

    def _publish(self, partition: str) -> None:
        topic = partition_topic(partition)
        if self._hub.has_listeners(topic):
            self._hub.broadcast(topic, self.snapshot(partition))
