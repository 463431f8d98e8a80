"""
Append-only usage ledger.

Every attempted provider call lands here, successful or not. The ledger
is the single source of truth for rate limiting and monthly spend.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import MonthlyStats, UsageRecord

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECORDS = 1000


def month_key(timestamp: datetime) -> str:
    """Calendar month of a timestamp as YYYY-MM."""
    return timestamp.strftime("%Y-%m")


def month_start(timestamp: datetime) -> datetime:
    return timestamp.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def aggregate_records(records: Iterable[UsageRecord]) -> List[MonthlyStats]:
    """Group records by calendar month, newest month first.

    Cost is summed over successful records only; failures are counted
    separately but still contribute to request and token totals.
    """
    buckets: Dict[str, dict] = {}
    for record in records:
        bucket = buckets.setdefault(month_key(record.timestamp), {
            "total_requests": 0,
            "total_tokens": 0,
            "total_cost": Decimal("0"),
            "failed_requests": 0,
            "last_request_at": record.timestamp,
        })
        bucket["total_requests"] += 1
        bucket["total_tokens"] += record.tokens_used
        if record.success:
            bucket["total_cost"] += Decimal(str(record.estimated_cost))
        else:
            bucket["failed_requests"] += 1
        if record.timestamp > bucket["last_request_at"]:
            bucket["last_request_at"] = record.timestamp

    return [
        MonthlyStats(
            month=month,
            total_requests=data["total_requests"],
            total_tokens=data["total_tokens"],
            total_cost=float(data["total_cost"]),
            failed_requests=data["failed_requests"],
            last_request_at=data["last_request_at"],
        )
        for month, data in sorted(buckets.items(), reverse=True)
    ]


class UsageLedger(ABC):
    """Base ledger: aggregation, retention and per-provider serialization.

    Subclasses only provide raw storage. Appends and any read used for a
    limiting decision must run under ``provider_lock(provider)``.
    """

    def __init__(
        self,
        max_records: int = DEFAULT_MAX_RECORDS,
        clock: Optional[Callable[[], datetime]] = None
    ):
        if max_records <= 0:
            raise ValueError("max_records must be > 0")
        self.max_records = max_records
        self.clock = clock or datetime.now
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def provider_lock(self, provider: str) -> threading.RLock:
        """Re-entrant lock serializing ledger decisions for one provider."""
        with self._locks_guard:
            lock = self._locks.get(provider)
            if lock is None:
                lock = self._locks[provider] = threading.RLock()
            return lock

    def append(self, record: UsageRecord) -> None:
        """Append a record. Storage failures are logged, never raised.

        Raises:
            ValueError: If a required field is missing
        """
        for field_name in ("id", "provider", "model", "feature"):
            if not getattr(record, field_name):
                raise ValueError(f"usage record is missing '{field_name}'")

        with self.provider_lock(record.provider):
            try:
                self._insert(record)
            except Exception:
                logger.exception(
                    "Failed to persist usage record %s for %s",
                    record.id, record.provider
                )

    def records_after(self, provider: str, after: datetime) -> List[UsageRecord]:
        """Records for a provider strictly newer than ``after``, newest first."""
        return self._records(provider=provider, after=after)

    def query_recent(self, limit: int = 50) -> List[UsageRecord]:
        """Most recent records across providers, newest first."""
        return self._records(limit=limit)

    def aggregate_by_month(self, provider: Optional[str] = None) -> List[MonthlyStats]:
        """Monthly statistics, optionally for a single provider."""
        return aggregate_records(self._records(provider=provider))

    def current_month_cost(self, provider: str) -> float:
        """Successful spend for a provider in the still-open calendar month."""
        now = self.clock()
        current = month_key(now)
        # records_after is exclusive, step back to include midnight of the 1st
        records = self._records(
            provider=provider,
            after=month_start(now) - timedelta(microseconds=1)
        )
        for stats in aggregate_records(records):
            if stats.month == current:
                return stats.total_cost
        return 0.0

    def trim(self, max_records: Optional[int] = None) -> int:
        """Drop the oldest records beyond the retention cap.

        Records from the current calendar month, and any inside the last 24
        hours that the daily rate window still counts, are always kept, even
        if that leaves more than ``max_records`` rows.

        Returns:
            Number of records removed
        """
        cap = max_records if max_records is not None else self.max_records
        if cap < 0:
            raise ValueError("max_records must be >= 0")

        now = self.clock()
        current = month_key(now)
        day_ago = now - timedelta(days=1)
        doomed = [
            r.id for r in self._records()[cap:]
            if month_key(r.timestamp) != current and r.timestamp <= day_ago
        ]
        if doomed:
            self._delete(doomed)
            logger.info("Trimmed %d usage records (cap %d)", len(doomed), cap)
        return len(doomed)

    @abstractmethod
    def _insert(self, record: UsageRecord) -> None:
        ...

    @abstractmethod
    def _records(
        self,
        provider: Optional[str] = None,
        after: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[UsageRecord]:
        """Return matching records ordered newest first."""

    @abstractmethod
    def _delete(self, record_ids: List[str]) -> None:
        ...


class InMemoryUsageLedger(UsageLedger):
    """Process-local ledger, used by tests and short-lived sessions."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._rows: List[UsageRecord] = []
        self._guard = threading.Lock()

    def _insert(self, record: UsageRecord) -> None:
        with self._guard:
            self._rows.append(record)

    def _records(self, provider=None, after=None, limit=None):
        with self._guard:
            rows = list(self._rows)
        if provider is not None:
            rows = [r for r in rows if r.provider == provider]
        if after is not None:
            rows = [r for r in rows if r.timestamp > after]
        rows.sort(key=lambda r: r.timestamp, reverse=True)
        return rows if limit is None else rows[:limit]

    def _delete(self, record_ids: List[str]) -> None:
        doomed = set(record_ids)
        with self._guard:
            self._rows = [r for r in self._rows if r.id not in doomed]


class SQLiteUsageLedger(UsageLedger):
    """Ledger persisted in the ``usage_record`` table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.db_path = db_path

    def _insert(self, record: UsageRecord) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO usage_record
                (id, timestamp, provider, model, feature, tokens_used,
                 estimated_cost, success, error_message)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                _to_text(record.timestamp),
                record.provider,
                record.model,
                record.feature,
                record.tokens_used,
                record.estimated_cost,
                int(record.success),
                record.error_message
            ))
            conn.commit()
        finally:
            conn.close()

    def _records(self, provider=None, after=None, limit=None):
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT id, timestamp, provider, model, feature, tokens_used,
                       estimated_cost, success, error_message
                FROM usage_record
            """
            params = []
            conditions = []

            if provider:
                conditions.append("provider = ?")
                params.append(provider)
            if after is not None:
                conditions.append("timestamp > ?")
                params.append(_to_text(after))

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY timestamp DESC"
            if limit is not None:
                query += " LIMIT ?"
                params.append(limit)

            cursor = conn.execute(query, params)
            return [
                UsageRecord(
                    id=row[0],
                    timestamp=datetime.fromisoformat(row[1]),
                    provider=row[2],
                    model=row[3],
                    feature=row[4],
                    tokens_used=row[5],
                    estimated_cost=row[6],
                    success=bool(row[7]),
                    error_message=row[8]
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def _delete(self, record_ids: List[str]) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.executemany(
                "DELETE FROM usage_record WHERE id = ?",
                [(record_id,) for record_id in record_ids]
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


def _to_text(timestamp: datetime) -> str:
    # fixed width keeps lexicographic order equal to chronological order
    return timestamp.isoformat(timespec="microseconds")
