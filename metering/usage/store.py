"""
Usage store: durable per-user counters and the overage/history logs.

The store is the only owner of UsageRecord mutation. increment_usage is the
single counter-raising primitive and must be atomic per user per call; the
lazy daily rollover happens inside that same atomic operation.

Two implementations exist:
- PostgresUsageStore (metering.usage.postgres_store) for production
- InMemoryUsageStore (below) for development and tests when no database is
  configured
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from metering.exceptions import SchemaMissing, UserNotFound
from metering.types.usage import (
    OverageCharge,
    OverageStatus,
    SchemaStatus,
    UsageHistoryEntry,
    UsageRecord,
)

from .periods import Clock, billing_period_for, today, utcnow

logger = logging.getLogger(__name__)

USAGE_TABLE = "usage_records"
USAGE_COLUMNS = ("user_id", "monthly_count", "billing_period")
DAILY_COLUMNS = ("daily_count", "daily_anchor_date")
OVERAGE_TABLE = "overage_charges"
OVERAGE_COLUMNS = ("id", "user_id", "amount", "unit_count", "date", "status")
HISTORY_TABLE = "usage_history"
HISTORY_COLUMNS = ("user_id", "billing_period", "usage_count", "archived_at")


class UsageStore(ABC):
    """
    Abstract usage store.

    Implementations raise StorageUnavailable when the backend cannot be
    reached and SchemaMissing when a table or column does not exist.
    """

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self._schema_status = SchemaStatus()

    # -- schema flags ---------------------------------------------------------

    @property
    def schema_status(self) -> SchemaStatus:
        return self._schema_status

    @property
    def daily_tracking_enabled(self) -> bool:
        return self._schema_status.daily_tracking_available

    def apply_schema_status(self, status: SchemaStatus) -> None:
        """Adopt the feature flags computed by the Schema Guard."""
        if self._schema_status.daily_tracking_available and not status.daily_tracking_available:
            logger.warning("Daily usage tracking disabled: daily columns are missing")
        self._schema_status = status

    # -- validation -----------------------------------------------------------

    @staticmethod
    def _validate_user_id(user_id: str) -> None:
        if not user_id or not str(user_id).strip():
            raise UserNotFound(user_id, message="A user identifier is required")

    @staticmethod
    def _validate_quantity(qty: int) -> None:
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 1:
            raise ValueError(f"Usage quantity must be a positive integer, got {qty!r}")

    def _today(self):
        return today(self._clock)

    def _current_period(self) -> str:
        return billing_period_for(self._clock())

    # -- usage counters -------------------------------------------------------

    @abstractmethod
    async def get_usage(self, user_id: str) -> UsageRecord:
        """Get a user's record, creating a zeroed one on first access."""

    @abstractmethod
    async def increment_usage(self, user_id: str, qty: int = 1) -> UsageRecord:
        """Atomically add ``qty`` to the monthly and (rolled-over) daily counters."""

    @abstractmethod
    async def reset_monthly(self, billing_period: str) -> int:
        """
        Zero monthly counters of every user not yet in ``billing_period``.

        Returns the number of users reset. Re-running for the same period
        resets nobody.
        """

    # -- overage log ----------------------------------------------------------

    @abstractmethod
    async def insert_overage_charge(self, charge: OverageCharge) -> OverageCharge:
        """Append an overage charge to the log."""

    @abstractmethod
    async def list_overage_charges(
        self,
        user_id: str,
        status: Optional[OverageStatus] = None,
    ) -> List[OverageCharge]:
        """List a user's overage charges, newest first."""

    # -- history --------------------------------------------------------------

    @abstractmethod
    async def get_usage_history(self, user_id: str) -> List[UsageHistoryEntry]:
        """Archived monthly counts for a user, newest period first."""

    # -- introspection --------------------------------------------------------

    @abstractmethod
    async def has_columns(self, table: str, columns: Sequence[str]) -> bool:
        """Check the catalog for a table and its columns."""

    @abstractmethod
    async def can_select(self, table: str, columns: Sequence[str]) -> bool:
        """Check that the columns can be selected from the table."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryUsageStore(UsageStore):
    """
    Process-local usage store.

    Every mutation runs under one asyncio lock, which makes increments atomic
    for all coroutines in the process. Used for development and tests; it is
    not durable across restarts.
    """

    def __init__(
        self,
        clock: Clock = utcnow,
        known_users: Optional[Iterable[str]] = None,
        tables: Optional[Dict[str, Iterable[str]]] = None,
    ):
        """
        Initialize the in-memory store.

        Args:
            clock: Source of the current time.
            known_users: When given, only these user ids are valid.
            tables: Simulated schema as table -> columns. Defaults to the
                full schema.
        """
        super().__init__(clock)
        self._known_users: Optional[Set[str]] = set(known_users) if known_users is not None else None
        if tables is None:
            tables = {
                USAGE_TABLE: USAGE_COLUMNS + DAILY_COLUMNS,
                OVERAGE_TABLE: OVERAGE_COLUMNS,
                HISTORY_TABLE: HISTORY_COLUMNS,
            }
        self._tables: Dict[str, Set[str]] = {name: set(cols) for name, cols in tables.items()}
        self._records: Dict[str, UsageRecord] = {}
        self._charges: List[OverageCharge] = []
        self._history: Dict[Tuple[str, str], UsageHistoryEntry] = {}
        self._lock = asyncio.Lock()

    def _require(self, table: str, columns: Sequence[str] = ()) -> None:
        present = self._tables.get(table)
        if present is None:
            raise SchemaMissing(table, message=f'relation "{table}" does not exist')
        missing = [c for c in columns if c not in present]
        if missing:
            raise SchemaMissing(f"{table}.{missing[0]}", message=f'column "{missing[0]}" does not exist')

    def _check_user(self, user_id: str) -> None:
        self._validate_user_id(user_id)
        if self._known_users is not None and user_id not in self._known_users:
            raise UserNotFound(user_id)

    def _get_or_create(self, user_id: str) -> UsageRecord:
        record = self._records.get(user_id)
        if record is None:
            record = UsageRecord(user_id=user_id, billing_period=self._current_period())
            self._records[user_id] = record
        return record

    def _view(self, record: UsageRecord) -> UsageRecord:
        if self.daily_tracking_enabled:
            return record.model_copy()
        return record.model_copy(update={"daily_count": 0, "daily_anchor_date": None})

    async def get_usage(self, user_id: str) -> UsageRecord:
        self._check_user(user_id)
        self._require(USAGE_TABLE, USAGE_COLUMNS)
        async with self._lock:
            return self._view(self._get_or_create(user_id))

    async def increment_usage(self, user_id: str, qty: int = 1) -> UsageRecord:
        self._check_user(user_id)
        self._validate_quantity(qty)
        self._require(USAGE_TABLE, USAGE_COLUMNS)
        track_daily = self.daily_tracking_enabled
        if track_daily:
            self._require(USAGE_TABLE, DAILY_COLUMNS)

        async with self._lock:
            current = self._get_or_create(user_id)
            # Yield while holding the lock so concurrent callers really contend.
            await asyncio.sleep(0)
            update = {"monthly_count": current.monthly_count + qty}
            if track_daily:
                day = self._today()
                if current.daily_anchor_date == day:
                    update["daily_count"] = current.daily_count + qty
                else:
                    update["daily_count"] = qty
                    update["daily_anchor_date"] = day
            updated = current.model_copy(update=update)
            self._records[user_id] = updated
            return self._view(updated)

    async def reset_monthly(self, billing_period: str) -> int:
        self._require(USAGE_TABLE, USAGE_COLUMNS)
        archive = self.schema_status.usage_history_available and HISTORY_TABLE in self._tables
        archived_at = self._clock()
        reset_count = 0

        async with self._lock:
            for user_id, record in list(self._records.items()):
                if record.billing_period == billing_period:
                    continue
                if archive and record.monthly_count > 0:
                    self._history[(user_id, record.billing_period)] = UsageHistoryEntry(
                        user_id=user_id,
                        billing_period=record.billing_period,
                        usage_count=record.monthly_count,
                        archived_at=archived_at,
                    )
                self._records[user_id] = record.model_copy(
                    update={"monthly_count": 0, "billing_period": billing_period}
                )
                reset_count += 1

        return reset_count

    async def insert_overage_charge(self, charge: OverageCharge) -> OverageCharge:
        self._require(OVERAGE_TABLE, OVERAGE_COLUMNS)
        async with self._lock:
            self._charges.append(charge)
        return charge

    async def list_overage_charges(
        self,
        user_id: str,
        status: Optional[OverageStatus] = None,
    ) -> List[OverageCharge]:
        self._require(OVERAGE_TABLE, OVERAGE_COLUMNS)
        charges = [
            c for c in self._charges
            if c.user_id == user_id and (status is None or c.status == status)
        ]
        return sorted(charges, key=lambda c: c.date, reverse=True)

    async def get_usage_history(self, user_id: str) -> List[UsageHistoryEntry]:
        self._require(HISTORY_TABLE, HISTORY_COLUMNS)
        entries = [e for (uid, _), e in self._history.items() if uid == user_id]
        return sorted(entries, key=lambda e: e.billing_period, reverse=True)

    async def has_columns(self, table: str, columns: Sequence[str]) -> bool:
        present = self._tables.get(table)
        return present is not None and all(c in present for c in columns)

    async def can_select(self, table: str, columns: Sequence[str]) -> bool:
        try:
            self._require(table, columns)
        except SchemaMissing:
            return False
        return True
